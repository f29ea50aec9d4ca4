import threading
from typing import Any, Callable, Optional, Sequence, Tuple

from xrygrad.backend import get_backend
from xrygrad.errors import GraphError, ShapeMismatchError

BackwardRule = Callable[[Any], Sequence[Any]]


class GradNode:
    """
    A node of the computation graph.

    Holds the forward ``value``, a gradient accumulator ``grad``, the
    ``operands`` the value was computed from and the ``backward_rule`` that
    maps the gradient arriving at this node to one contribution per operand.

    Parameters
    ----------
    value : numpy.ndarray or cupy.ndarray
        Forward result. Never replaced after construction.
    operands : sequence of GradNode, optional
        Inputs of the op that produced ``value``. Empty for leaves.
    backward_rule : callable, optional
        ``rule(g) -> (contribution_0, contribution_1, ...)``, one entry per
        operand in the same order. Must be absent for leaves.

    Raises
    ------
    GraphError
        If the leaf/non-leaf invariant is violated: a leaf with a rule, or
        operands without a rule.

    Notes
    -----
    - Nodes compare and hash by identity; two nodes holding equal arrays
      are still distinct vertices of the graph.
    - ``grad`` is the only mutable state. Mutations go through
      :meth:`accumulate` and :meth:`reset_grad`, which hold the node's lock.
    - A node may be an operand of several consumers (diamonds). It stays
      alive as long as any consumer or handle references it.
    """
    def __init__(
        self,
        value: Any,
        operands: Sequence["GradNode"] = (),
        backward_rule: Optional[BackwardRule] = None,
    ) -> None:
        operands = tuple(operands)
        if not operands and backward_rule is not None:
            raise GraphError("a leaf node cannot have a backward rule")
        if operands and backward_rule is None:
            raise GraphError("a node with operands needs a backward rule")
        for op in operands:
            if not isinstance(op, GradNode):
                raise TypeError(f"operands must be GradNode instances, got {type(op).__name__}")

        self._value = value
        self._operands = operands
        self._backward_rule = backward_rule
        self._lock = threading.Lock()
        self.grad = get_backend(value).zeros_like(value)

    @property
    def value(self) -> Any:
        return self._value

    @property
    def operands(self) -> Tuple["GradNode", ...]:
        return self._operands

    @property
    def backward_rule(self) -> Optional[BackwardRule]:
        return self._backward_rule

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self._value.shape)

    @property
    def is_leaf(self) -> bool:
        return not self._operands

    def reset_grad(self) -> None:
        """Set the accumulator to the additive identity."""
        with self._lock:
            self.grad = get_backend(self._value).zeros_like(self._value)

    def set_grad(self, grad: Any) -> None:
        """Overwrite the accumulator (used to seed the root of a backward pass)."""
        if tuple(grad.shape) != self.shape:
            raise ShapeMismatchError(self.shape, grad.shape, what="gradient")
        with self._lock:
            self.grad = grad.astype(self._value.dtype, copy=True)

    def accumulate(self, contribution: Any) -> None:
        """Add ``contribution`` elementwise into the accumulator."""
        if tuple(contribution.shape) != self.shape:
            raise ShapeMismatchError(self.shape, contribution.shape, what="gradient contribution")
        with self._lock:
            self.grad += contribution

    def contributions(self, grad: Any) -> Tuple[Any, ...]:
        """
        Evaluate the backward rule for the incoming ``grad``.

        Returns an empty tuple for leaves.

        Raises
        ------
        GraphError
            If the rule does not return exactly one contribution per operand.
        """
        if self._backward_rule is None:
            return ()
        out = tuple(self._backward_rule(grad))
        if len(out) != len(self._operands):
            raise GraphError(
                f"backward rule returned {len(out)} contribution(s) for {len(self._operands)} operand(s)"
            )
        return out

    def __repr__(self) -> str:
        kind = "leaf" if self.is_leaf else f"{len(self._operands)} operand(s)"
        return f"GradNode(shape={self.shape}, dtype={self._value.dtype}, {kind})"
