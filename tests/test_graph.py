import numpy as np
import pytest

from xrygrad.errors import CyclicGraphError, GraphError, ShapeMismatchError
from xrygrad.graph import run_backward, topological_order
from xrygrad.node import GradNode
from xrygrad.tensor import Engine, Tensor
from tests.utils import assert_close


def _leaf(*values):
    return GradNode(np.array(values, dtype=np.float32))


def _sum_node(*operands):
    value = sum(op.value for op in operands)
    return GradNode(value, operands, lambda g: tuple(g for _ in operands))


def test_leaf_invariants():
    leaf = _leaf(1.0, 2.0)
    assert leaf.is_leaf
    assert leaf.operands == ()
    assert leaf.backward_rule is None
    assert leaf.shape == (2,)
    assert_close(leaf.grad, np.zeros(2, dtype=np.float32))

    with pytest.raises(GraphError):
        GradNode(np.ones(2), (), lambda g: ())
    with pytest.raises(GraphError):
        GradNode(np.ones(2), (leaf,), None)
    with pytest.raises(TypeError):
        GradNode(np.ones(2), (np.ones(2),), lambda g: (g,))


def test_nodes_compare_by_identity():
    a = _leaf(1.0)
    b = _leaf(1.0)
    assert a != b
    assert len({a, b, a}) == 2


def test_topological_order_puts_consumers_first():
    a, b, c = _leaf(2.0), _leaf(3.0), _leaf(4.0)
    ab = _sum_node(a, b)
    bc = _sum_node(b, c)
    root = _sum_node(ab, bc)

    order = topological_order(root)
    pos = {id(n): i for i, n in enumerate(order)}

    assert order[0] is root
    assert len(order) == 6
    for node in order:
        for operand in node.operands:
            assert pos[id(node)] < pos[id(operand)]


def test_shared_node_visited_once_and_gets_all_contributions():
    b = _leaf(1.0)
    left = _sum_node(b)
    right = _sum_node(b)
    root = _sum_node(left, right)

    visited = run_backward(root, np.array([5.0], dtype=np.float32))

    assert sum(n is b for n in visited) == 1
    assert_close(b.grad, np.array([10.0], dtype=np.float32))


def test_cycle_detected():
    a = _leaf(1.0)
    b = _sum_node(a)
    # operands are immutable through the public API; force a back edge
    a._operands = (b,)
    a._backward_rule = lambda g: (g,)

    with pytest.raises(CyclicGraphError):
        topological_order(b)
    with pytest.raises(CyclicGraphError):
        Tensor(engine=Engine(), _node=b).backward()


def test_rule_with_wrong_arity_is_rejected():
    a, b = _leaf(1.0), _leaf(2.0)
    bad = GradNode(np.array([3.0], dtype=np.float32), (a, b), lambda g: (g,))
    with pytest.raises(GraphError):
        run_backward(bad, np.ones(1, dtype=np.float32))


def test_contribution_shape_checked():
    a = _leaf(1.0, 2.0)
    bad = GradNode(np.array([3.0, 4.0], dtype=np.float32), (a,), lambda g: (np.ones(3, dtype=np.float32),))
    with pytest.raises(ShapeMismatchError):
        run_backward(bad, np.ones(2, dtype=np.float32))


def test_seed_shape_checked():
    a = _leaf(1.0, 2.0)
    with pytest.raises(ShapeMismatchError):
        run_backward(_sum_node(a), np.ones(3, dtype=np.float32))


def test_run_backward_resets_stale_gradients():
    a = _leaf(1.0)
    root = _sum_node(a)
    a.accumulate(np.array([100.0], dtype=np.float32))

    run_backward(root, np.array([2.0], dtype=np.float32))
    assert_close(a.grad, np.array([2.0], dtype=np.float32))


def test_unreachable_nodes_are_untouched():
    a, other = _leaf(1.0), _leaf(1.0)
    other.accumulate(np.array([7.0], dtype=np.float32))
    run_backward(_sum_node(a), np.array([1.0], dtype=np.float32))
    assert_close(other.grad, np.array([7.0], dtype=np.float32))


def test_concurrent_accumulation_is_serialized():
    from concurrent.futures import ThreadPoolExecutor

    node = _leaf(0.0, 0.0, 0.0)
    one = np.ones(3, dtype=np.float32)

    def _push(_):
        for _ in range(200):
            node.accumulate(one)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_push, range(8)))

    assert_close(node.grad, np.full(3, 1600.0, dtype=np.float32))
