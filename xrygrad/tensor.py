import logging
from typing import Any, Callable, Optional, Sequence, Tuple, Union

import numpy as np

from xrygrad.backend import (
    backend_for,
    cp,
    device_of,
    is_cupy_array,
    normalize_device,
    normalize_dtype,
)
from xrygrad.errors import DivisionByZeroError, EngineMismatchError, ShapeMismatchError
from xrygrad.graph import run_backward
from xrygrad.kernels import ADD, DIV, MUL, NEG, SUB, ElementwiseOp
from xrygrad.node import GradNode
from xrygrad.strategy import ExecutionStrategy, get_strategy

logger = logging.getLogger(__name__)

_grad_enabled = True
"""bool: Global flag indicating whether forward ops record graph edges.

This flag is toggled by the :class:``no_grad`` context manager.
When ``_grad_enabled`` is ``False``, forward ops return leaf handles.
"""

class no_grad:
    """
    Context manager that temporarily disables graph construction.

    Inside the context, forward ops still compute their values but the
    returned handles are leaves: they have no operands and no backward rule,
    so a later :meth:`Tensor.backward` does not reach past them.

    Examples
    --------
    >>> with no_grad():
    ...     y = x * x      # y is a leaf
    >>> # Outside the context, graphs are recorded again.

    Notes
    -----
    - Nesting is safe; the previous state is restored on exit.
    """
    def __enter__(self):
        global _grad_enabled
        self.prev = _grad_enabled
        _grad_enabled = False

    def __exit__(self, *args):
        global _grad_enabled
        _grad_enabled = self.prev

def is_grad_enabled() -> bool:
    return _grad_enabled

DIVISION_POLICIES = ("raise", "ieee")

def _normalize_division(policy: Optional[str]) -> str:
    """
    Normalize a division-by-zero policy.

    ``"raise"`` fails the operation with :class:`DivisionByZeroError`;
    ``"ieee"`` returns the backend's inf/NaN values.

    Raises
    ------
    ValueError
        If ``policy`` is not one of :data:`DIVISION_POLICIES`.
    """
    if policy is None:
        return "raise"
    if isinstance(policy, str) and policy.lower() in DIVISION_POLICIES:
        return policy.lower()
    raise ValueError(f"Unknown division policy: {policy!r}; expected one of {DIVISION_POLICIES}")


class Engine:
    """
    Configuration and forward ops for a family of tensors.

    An engine fixes, for its whole lifetime, how elements are computed
    (the execution strategy), how division by zero is treated, which
    device arrays live on and their floating dtype. Every :class:`Tensor`
    belongs to exactly one engine, and only tensors of the same engine can
    be combined.

    Parameters
    ----------
    strategy : {'sequential', 'parallel', 'compiled'} or ExecutionStrategy, optional
        Elementwise execution strategy. Defaults to 'sequential'. The choice
        never changes numeric results.
    division : {'raise', 'ieee'}, default='raise'
        Division-by-zero policy, applied to forward division and to the
        denominators of the division backward rule.
    device : {'cpu', 'cuda', 'cuda:0', ...}, default='cpu'
        Storage device. CUDA requires CuPy.
    dtype : {'float32', 'float64'}, default='float32'
        Element type of every array created by the engine.

    Raises
    ------
    ValueError
        For unknown strategy, policy, device or dtype specifiers.
    RuntimeError
        If CUDA is requested but CuPy is not installed/available.

    Examples
    --------
    >>> eng = Engine(strategy="parallel", division="ieee")
    >>> a = eng.tensor([1.0, 2.0])
    >>> b = eng.tensor([3.0, 4.0])
    >>> (a * b).data
    array([3., 8.], dtype=float32)
    """
    def __init__(
        self,
        strategy: Union[str, ExecutionStrategy, None] = None,
        division: str = "raise",
        device: Optional[str] = "cpu",
        dtype: Any = "float32",
    ) -> None:
        self.strategy = get_strategy(strategy)
        self.division = _normalize_division(division)
        self.device = normalize_device(device)
        self.backend = backend_for(self.device)
        self.dtype = normalize_dtype(dtype)
        logger.debug("created %r", self)

    def __repr__(self) -> str:
        return (
            f"Engine(strategy={self.strategy.name!r}, division={self.division!r}, "
            f"device={self.device!r}, dtype={self.dtype.name!r})"
        )

    def close(self) -> None:
        """Release resources held by the execution strategy."""
        self.strategy.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Array and handle construction
    # ------------------------------------------------------------------

    def asarray(self, data: Any) -> Any:
        """
        Copy ``data`` into a fresh array on this engine's device and dtype.

        Accepts Python scalars and sequences, NumPy arrays, CuPy arrays and
        :class:`Tensor` handles (whose value is copied).
        """
        if isinstance(data, Tensor):
            data = data.data
        if self.backend is np:
            if is_cupy_array(data):
                data = cp.asnumpy(data)
            return np.array(data, dtype=self.dtype, copy=True)
        return self.backend.array(data, dtype=self.dtype, copy=True)

    def tensor(self, data: Any) -> "Tensor":
        """
        Create a leaf handle from raw data.

        The data is copied, so later changes to ``data`` never reach the graph.

        Examples
        --------
        >>> eng = Engine()
        >>> x = eng.tensor([[1, 2], [3, 4]])
        >>> x.shape
        (2, 2)
        >>> x.is_leaf
        True
        """
        return self._wrap(self.asarray(data))

    def zeros(self, *shape: int) -> "Tensor":
        """Create a leaf filled with zeros."""
        return self._wrap(self.backend.zeros(shape, dtype=self.dtype))

    def ones(self, *shape: int) -> "Tensor":
        """Create a leaf filled with ones."""
        return self._wrap(self.backend.ones(shape, dtype=self.dtype))

    def full(self, shape: Sequence[int], fill_value: float) -> "Tensor":
        """Create a leaf of ``shape`` with every element set to ``fill_value``."""
        return self._wrap(self.backend.full(tuple(shape), fill_value, dtype=self.dtype))

    def randn(self, *shape: int, scale: float = 1.0) -> "Tensor":
        """
        Create a leaf with values sampled from ``N(0, scale^2)``.

        Parameters
        ----------
        *shape : int
            Shape of the output tensor.
        scale : float, default=1.0
            Multiplicative scale applied to the standard normal samples.
        """
        data = self.backend.asarray(scale * self.backend.random.randn(*shape), dtype=self.dtype)
        return self._wrap(data)

    def _wrap(
        self,
        value: Any,
        operands: Sequence[GradNode] = (),
        rule: Optional[Callable[[Any], Tuple[Any, ...]]] = None,
    ) -> "Tensor":
        # ufuncs return scalars for 0-d inputs
        value = self.backend.asarray(value)
        if self.backend is np:
            value.flags.writeable = False
        if not _grad_enabled:
            operands, rule = (), None
        return Tensor(None, engine=self, _node=GradNode(value, operands, rule))

    def _ensure_tensor(self, x: Union["Tensor", Any]) -> "Tensor":
        """
        Return ``x`` as a handle of this engine.

        Non-tensors become new leaves. Handles of another engine are
        rejected rather than silently converted.
        """
        if isinstance(x, Tensor):
            if x.engine is not self:
                raise EngineMismatchError(f"cannot combine tensors of {x.engine!r} and {self!r}")
            return x
        return self.tensor(x)

    # ------------------------------------------------------------------
    # Forward ops
    # ------------------------------------------------------------------

    def _check_denominator(self, denom: Any, what: str = "denominator") -> None:
        if self.division == "raise" and bool((denom == 0).any()):
            raise DivisionByZeroError(f"{what} contains zero (division policy 'raise')")

    def _apply(self, op: ElementwiseOp, a: Any, b: Any) -> Any:
        return self.strategy.apply(op, a, b)

    def _neg(self, a: Any) -> Any:
        return self.strategy.apply_unary(NEG, a)

    def add(self, x: Union["Tensor", Any], y: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise ``x + y``.

        Gradients: ``dL/dx = g`` and ``dL/dy = g``.
        """
        x, y = self._ensure_tensor(x), self._ensure_tensor(y)
        out = self._apply(ADD, x.data, y.data)

        def _backward(g):
            return g, g

        return self._wrap(out, (x.node, y.node), _backward)

    def sub(self, x: Union["Tensor", Any], y: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise ``x - y``.

        Gradients: ``dL/dx = g`` and ``dL/dy = -g``.
        """
        x, y = self._ensure_tensor(x), self._ensure_tensor(y)
        out = self._apply(SUB, x.data, y.data)

        def _backward(g):
            return g, self._neg(g)

        return self._wrap(out, (x.node, y.node), _backward)

    def mul(self, x: Union["Tensor", Any], y: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise ``x * y``.

        Gradients follow the product rule: each operand receives the incoming
        gradient times the *other* operand's forward value,
        ``dL/dx = g * y`` and ``dL/dy = g * x``.
        """
        x, y = self._ensure_tensor(x), self._ensure_tensor(y)
        a, b = x.data, y.data
        out = self._apply(MUL, a, b)

        def _backward(g):
            return self._apply(MUL, g, b), self._apply(MUL, g, a)

        return self._wrap(out, (x.node, y.node), _backward)

    def div(self, x: Union["Tensor", Any], y: Union["Tensor", Any]) -> "Tensor":
        """
        Elementwise ``x / y``.

        Gradients follow the quotient rule:
        ``dL/dx = g / y`` and ``dL/dy = -g * x / (y * y)``.

        Raises
        ------
        DivisionByZeroError
            Under the 'raise' policy, if ``y`` contains zero, or if ``y * y``
            underflows to zero during the backward pass.
        """
        x, y = self._ensure_tensor(x), self._ensure_tensor(y)
        a, b = x.data, y.data
        if a.shape == b.shape:
            self._check_denominator(b)
        out = self._apply(DIV, a, b)

        def _backward(g):
            b_sq = self._apply(MUL, b, b)
            self._check_denominator(b_sq, what="squared denominator")
            grad_x = self._apply(DIV, g, b)
            grad_y = self._apply(DIV, self._apply(MUL, self._neg(g), a), b_sq)
            return grad_x, grad_y

        return self._wrap(out, (x.node, y.node), _backward)

    def neg(self, x: Union["Tensor", Any]) -> "Tensor":
        """Elementwise ``-x``. Gradient: ``dL/dx = -g``."""
        x = self._ensure_tensor(x)
        out = self._neg(x.data)

        def _backward(g):
            return (self._neg(g),)

        return self._wrap(out, (x.node,), _backward)

    # ------------------------------------------------------------------
    # Backward
    # ------------------------------------------------------------------

    def backward(self, root: "Tensor", gradient: Optional[Any] = None) -> None:
        """
        Backpropagate from ``root`` through its whole graph.

        Parameters
        ----------
        root : Tensor
            Output to differentiate.
        gradient : array-like, optional
            Seed gradient (``dL/droot``). Defaults to ones shaped like
            ``root``, i.e. the gradient of ``root.sum()``.

        Raises
        ------
        ShapeMismatchError
            If ``gradient`` does not have ``root``'s shape.
        CyclicGraphError
            If the graph reachable from ``root`` contains a cycle.
        """
        if root.engine is not self:
            raise EngineMismatchError(f"{root!r} does not belong to {self!r}")
        if gradient is None:
            seed = self.backend.ones_like(root.data)
        else:
            seed = self.asarray(gradient)
            if seed.shape != root.data.shape:
                raise ShapeMismatchError(root.data.shape, seed.shape, what="seed")
        run_backward(root.node, seed)


class Tensor:
    """
    Handle to a node of the computation graph.

    This is the value users compute with. It holds a reference to its
    :class:`GradNode` and to the :class:`Engine` that created it; copying a
    handle shares the node, never the array.

    Parameters
    ----------
    data : Any
        Array-like input for a new leaf. Ignored when ``_node`` is given.
    engine : Engine, optional
        Owning engine. Defaults to :func:`get_default_engine`.
    _node : GradNode, optional
        Internal: existing node to wrap. End users should not set this.

    Notes
    -----
    - All operators require identical shapes; there is no broadcasting.
    - ``.grad`` is always an array (zeros until a backward pass reaches
      the node).
    - Each call to :meth:`backward` resets every gradient in the graph
      before propagating, so repeated calls do not accumulate.

    Examples
    --------
    >>> a = Tensor([2.0, 2.0])
    >>> b = Tensor([3.0, 3.0])
    >>> c = Tensor([4.0, 4.0])
    >>> r = a * b + b / c
    >>> r.backward()
    >>> b.grad
    array([2.25, 2.25], dtype=float32)
    """
    # make ``ndarray op Tensor`` defer to the reflected Tensor operator
    __array_ufunc__ = None

    def __init__(
        self,
        data: Any = None,
        engine: Optional[Engine] = None,
        _node: Optional[GradNode] = None,
    ) -> None:
        self.engine = engine if engine is not None else get_default_engine()
        if _node is None:
            _node = self.engine.tensor(data).node
        self.node = _node

    @property
    def data(self) -> Any:
        """numpy.ndarray or cupy.ndarray: The forward value."""
        return self.node.value

    @property
    def grad(self) -> Any:
        """numpy.ndarray or cupy.ndarray: Gradient from the latest backward pass."""
        return self.node.grad

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The tensor's shape."""
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        """numpy.dtype: The data type of the tensor."""
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return self.data.ndim

    @property
    def size(self) -> int:
        return self.data.size

    @property
    def device(self) -> str:
        return device_of(self.data)

    @property
    def is_leaf(self) -> bool:
        return self.node.is_leaf

    def add(self, other: Union["Tensor", Any]) -> "Tensor":
        return self.engine.add(self, other)

    def sub(self, other: Union["Tensor", Any]) -> "Tensor":
        return self.engine.sub(self, other)

    def mul(self, other: Union["Tensor", Any]) -> "Tensor":
        return self.engine.mul(self, other)

    def div(self, other: Union["Tensor", Any]) -> "Tensor":
        return self.engine.div(self, other)

    __add__ = add
    __sub__ = sub
    __mul__ = mul
    __truediv__ = div

    def __neg__(self) -> "Tensor":
        return self.engine.neg(self)

    def __radd__(self, other: Any) -> "Tensor":
        """Right-hand addition: ``other + self``."""
        return self.engine.add(other, self)

    def __rsub__(self, other: Any) -> "Tensor":
        """Right-hand subtraction: ``other - self``."""
        return self.engine.sub(other, self)

    def __rmul__(self, other: Any) -> "Tensor":
        """Right-hand multiplication: ``other * self``."""
        return self.engine.mul(other, self)

    def __rtruediv__(self, other: Any) -> "Tensor":
        """Right-hand division: ``other / self``."""
        return self.engine.div(other, self)

    def backward(self, gradient: Optional[Any] = None) -> None:
        """
        Performs backpropagation from this tensor.

        Every node reachable from ``self`` gets its gradient reset, then the
        seed is propagated in reverse topological order so that each node's
        backward rule runs once, after all of its consumers have contributed.

        Parameters
        ----------
        gradient : array-like, optional
            Gradient of the output with respect to itself. Defaults to
            ``ones_like(self.data)``, which also works for non-scalar tensors.

        Raises
        ------
        ShapeMismatchError
            If ``gradient`` is given with a different shape.
        CyclicGraphError
            If the graph contains a cycle.

        Examples
        --------
        >>> x = Tensor([2.0, 3.0])
        >>> y = x * x
        >>> y.backward()
        >>> x.grad
        array([4., 6.], dtype=float32)
        """
        self.engine.backward(self, gradient)

    def zero_grad(self) -> None:
        """Resets the gradient of this tensor to zero."""
        self.node.reset_grad()

    def xp(self) -> Any:
        """Return the array backend (NumPy or CuPy) holding this tensor."""
        return self.engine.backend

    def numpy(self) -> np.ndarray:
        """Return a host copy of the value as a NumPy array."""
        if is_cupy_array(self.data):
            return cp.asnumpy(self.data)
        return np.array(self.data)

    def __repr__(self) -> str:
        """
        Returns a readable string representation of the tensor.

        Examples
        --------
        >>> Tensor([[1, 2], [3, 4]])
        tensor([[1., 2.],
                [3., 4.]], dtype=float32, leaf=True, device='cpu')
        """
        data_str = np.array2string(self.numpy(), separator=', ', prefix='tensor(')
        return f"tensor({data_str}, dtype={self.dtype}, leaf={self.is_leaf}, device='{self.device}')"


_default_engine: Optional[Engine] = None

def get_default_engine() -> Engine:
    """Return the engine used by ``Tensor(data)``, creating a sequential CPU engine on first use."""
    global _default_engine
    if _default_engine is None:
        _default_engine = Engine()
    return _default_engine

def set_default_engine(engine: Optional[Engine]) -> Optional[Engine]:
    """Install ``engine`` as the default and return the previous one. ``None`` resets it."""
    global _default_engine
    prev, _default_engine = _default_engine, engine
    return prev

__all__ = [
    "Engine",
    "Tensor",
    "no_grad",
    "is_grad_enabled",
    "get_default_engine",
    "set_default_engine",
]
