from typing import Any, Optional


class ElementwiseOp:
    """
    Descriptor for a pure elementwise kernel.

    An op is identified by ``name`` and knows two ways of running itself:
    the backend ufunc of the same name (``numpy.add``, ``cupy.add``, ...)
    and, optionally, a C expression used to build a compiled kernel.

    Parameters
    ----------
    name : str
        Short identifier, also used as a kernel cache key.
    ufunc : str
        Attribute name of the ufunc on the array backend module.
    arity : int
        1 for unary, 2 for binary ops.
    expr : str, optional
        Body of a ``cupy.ElementwiseKernel`` with inputs ``x`` (and ``y``)
        and output ``z``. ``None`` if the op has no compiled form.
    """
    def __init__(self, name: str, ufunc: str, arity: int, expr: Optional[str] = None) -> None:
        if arity not in (1, 2):
            raise ValueError(f"arity must be 1 or 2, got {arity}")
        self.name = name
        self.ufunc = ufunc
        self.arity = arity
        self.expr = expr

    def resolve(self, backend: Any) -> Any:
        """Return the ufunc implementing this op on ``backend`` (numpy or cupy)."""
        return getattr(backend, self.ufunc)

    def __call__(self, backend: Any, *arrays: Any, out: Any = None) -> Any:
        if len(arrays) != self.arity:
            raise TypeError(f"{self.name} takes {self.arity} operand(s), got {len(arrays)}")
        fn = self.resolve(backend)
        if out is None:
            return fn(*arrays)
        return fn(*arrays, out=out)

    def __repr__(self) -> str:
        return f"ElementwiseOp({self.name!r}, arity={self.arity})"


ADD = ElementwiseOp("add", "add", 2, "z = x + y")
SUB = ElementwiseOp("sub", "subtract", 2, "z = x - y")
MUL = ElementwiseOp("mul", "multiply", 2, "z = x * y")
DIV = ElementwiseOp("div", "true_divide", 2, "z = x / y")
NEG = ElementwiseOp("neg", "negative", 1, "z = -x")

BINARY_OPS = {op.name: op for op in (ADD, SUB, MUL, DIV)}
UNARY_OPS = {op.name: op for op in (NEG,)}
