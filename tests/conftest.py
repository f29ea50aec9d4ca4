import numpy as np
import pytest
import importlib

from xrygrad.strategy import DataParallelStrategy
from xrygrad.tensor import Engine

@pytest.fixture
def rng():
    return np.random.default_rng(0)

def _has_cupy():
    return importlib.util.find_spec("cupy") is not None

@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and not _has_cupy():
        pytest.skip("cupy not installed")
    return request.param

@pytest.fixture(params=["sequential", "parallel", "compiled"])
def strategy(request):
    if request.param == "parallel":
        # small chunks so the thread pool is exercised on test-sized arrays
        s = DataParallelStrategy(workers=4, min_chunk=8)
        yield s
        s.close()
    else:
        yield request.param

@pytest.fixture
def engine(strategy, device):
    eng = Engine(strategy=strategy, device=device)
    yield eng
    eng.close()
