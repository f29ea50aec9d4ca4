from typing import Sequence


class XryError(Exception):
    """Base class for all errors raised by the autodiff engine."""


class ShapeMismatchError(XryError, ValueError):
    """
    Raised when two arrays that must be conformable have different shapes.

    Covers forward operands, backward seeds and gradient contributions
    returned by a backward rule.
    """
    def __init__(self, expected: Sequence[int], got: Sequence[int], what: str = "operand") -> None:
        self.expected = tuple(expected)
        self.got = tuple(got)
        super().__init__(f"{what} shape {self.got} does not match {self.expected}")


class DivisionByZeroError(XryError, ZeroDivisionError):
    """Raised by division under the ``"raise"`` policy when a denominator holds zero."""


class GraphError(XryError, RuntimeError):
    """Raised when a computation graph violates a node invariant."""


class CyclicGraphError(GraphError):
    """Raised when operand links form a cycle."""


class EngineMismatchError(XryError, ValueError):
    """Raised when handles from different engines or devices are combined."""
