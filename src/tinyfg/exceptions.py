"""
The errors raised by ``tinyfg``. Each one derives from :class:`TinyFGError` as
well as the closest builtin exception, so callers can catch either
``tinyfg.exceptions.MissingKey`` or a plain ``KeyError``.
"""

from __future__ import annotations

__all__ = [
    "TinyFGError",
    "DimensionMismatch",
    "MissingKey",
    "DuplicateKey",
    "SingularPivot",
    "OrderMismatch",
]

from typing import Any


class TinyFGError(Exception):
    """Base class for all errors raised by ``tinyfg``"""


class DimensionMismatch(TinyFGError, ValueError):
    """A matrix, vector or config operand has the wrong dimensions"""


class _KeyError(TinyFGError, KeyError):
    def __init__(self, key: Any, message: str):
        super().__init__(message)
        self.key = key

    # KeyError quotes its argument, we want the plain message
    def __str__(self) -> str:
        return str(self.args[0])


class MissingKey(_KeyError):
    """A symbol referenced in one operand is absent from another"""

    def __init__(self, key: Any, container: str = "config"):
        super().__init__(key, f"{key!r} is not present in the {container}")


class DuplicateKey(_KeyError):
    """A symbol was inserted twice"""

    def __init__(self, key: Any, container: str = "config"):
        super().__init__(key, f"{key!r} is already present in the {container}")


class SingularPivot(TinyFGError, ArithmeticError):
    """Elimination found no information on (part of) a frontal variable"""

    def __init__(self, key: Any, message: str | None = None):
        if message is None:
            message = f"singular pivot while eliminating {key!r}"
        super().__init__(message)
        self.key = key


class OrderMismatch(TinyFGError, ValueError):
    """An errors sequence does not line up with the operator that consumes it"""
