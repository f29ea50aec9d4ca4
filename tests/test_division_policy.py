import warnings

import numpy as np
import pytest

from xrygrad.errors import DivisionByZeroError
from xrygrad.tensor import Engine
from tests.utils import tdata, tgrad, assert_close


@pytest.fixture(params=["sequential", "parallel", "compiled"])
def strategy_name(request):
    return request.param


def test_raise_policy_fails_forward(strategy_name, device):
    with Engine(strategy=strategy_name, device=device, division="raise") as eng:
        a = eng.tensor([1.0, 2.0, 3.0])
        b = eng.tensor([1.0, 0.0, 3.0])

        for _ in range(2):
            with pytest.raises(DivisionByZeroError):
                a / b


def test_raise_policy_error_is_zero_division(device):
    eng = Engine(device=device)
    with pytest.raises(ZeroDivisionError):
        eng.ones(2) / eng.zeros(2)


def test_raise_policy_checks_squared_denominator_in_backward():
    eng = Engine(division="raise")
    a = eng.tensor([1.0])
    b = eng.tensor([1e-30])  # nonzero, but b*b underflows in float32

    y = a / b
    assert np.isfinite(tdata(y)).all()

    with pytest.raises(DivisionByZeroError):
        y.backward()


def test_ieee_policy_propagates_inf_and_nan(strategy_name, device):
    with Engine(strategy=strategy_name, device=device, division="ieee") as eng:
        a = eng.tensor([1.0, -1.0, 0.0])
        b = eng.zeros(3)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            y1 = tdata(a / b)
            y2 = tdata(a / b)

        for y in (y1, y2):
            assert np.isposinf(y[0])
            assert np.isneginf(y[1])
            assert np.isnan(y[2])


def test_ieee_policy_backward_produces_non_finite_grads(device):
    eng = Engine(device=device, division="ieee")
    a = eng.tensor([2.0, 2.0])
    b = eng.tensor([0.0, 4.0])

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        (a / b).backward()

    ga, gb = tgrad(a), tgrad(b)
    assert np.isposinf(ga[0])
    assert np.isneginf(gb[0])
    assert_close(ga[1:], np.array([0.25], dtype=np.float32))
    assert_close(gb[1:], np.array([-0.125], dtype=np.float32))


def test_policy_is_fixed_per_engine():
    strict = Engine(division="raise")
    lenient = Engine(division="IEEE")
    assert strict.division == "raise"
    assert lenient.division == "ieee"

    with pytest.raises(DivisionByZeroError):
        strict.ones(1) / strict.zeros(1)
    assert np.isposinf(tdata(lenient.ones(1) / lenient.zeros(1)))[0]


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        Engine(division="saturate")
