import logging
from typing import Any, List

from xrygrad.errors import CyclicGraphError
from xrygrad.node import GradNode

logger = logging.getLogger(__name__)


def topological_order(root: GradNode) -> List[GradNode]:
    """
    Return every node reachable from ``root``, consumers before operands.

    Depth-first postorder over operand links, reversed. Nodes are tracked by
    identity, so a node shared by several consumers appears exactly once and
    only after all of them. The walk uses an explicit stack, so long chains
    are not limited by the interpreter's recursion depth.

    Raises
    ------
    CyclicGraphError
        If an operand link leads back to a node still being expanded.
    """
    order: List[GradNode] = []
    done = set()
    active = {root}
    stack = [(root, iter(root.operands))]

    while stack:
        node, pending = stack[-1]
        for child in pending:
            if child in active:
                raise CyclicGraphError(f"cycle detected through {child!r}")
            if child not in done:
                active.add(child)
                stack.append((child, iter(child.operands)))
                break
        else:
            stack.pop()
            active.discard(node)
            done.add(node)
            order.append(node)

    order.reverse()
    return order


def run_backward(root: GradNode, seed: Any) -> List[GradNode]:
    """
    Propagate ``seed`` from ``root`` to every reachable node.

    Parameters
    ----------
    root : GradNode
        Node to differentiate.
    seed : numpy.ndarray or cupy.ndarray
        Gradient of the (implicit scalar) objective w.r.t. ``root``; must
        have ``root``'s shape.

    Returns
    -------
    list of GradNode
        Visited nodes, in the order their rules ran.

    Notes
    -----
    - All visited accumulators are reset first, so a pass never mixes with
      gradients left by an earlier one.
    - Contributions are added into operand accumulators, never assigned: a
      node reached along several paths receives the sum of all of them
      before its own rule runs.
    - Two passes over graphs that share nodes must not run concurrently.
    """
    order = topological_order(root)
    for node in order:
        node.reset_grad()
    root.set_grad(seed)

    for node in order:
        if node.backward_rule is None:
            continue
        for operand, contribution in zip(node.operands, node.contributions(node.grad)):
            operand.accumulate(contribution)

    logger.debug("backward pass over %d node(s) from root of shape %s", len(order), root.shape)
    return order
