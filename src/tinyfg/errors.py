"""
An :class:`Errors` object is the "range space" counterpart of a
:class:`tinyfg.VectorConfig`: an ordered sequence of residual blocks, one per
factor (or one per conditional, for the identity block of the subgraph
preconditioner). The blocks carry no labels, so the order in which they are
produced is the only thing that ties a block to its factor, and consumers must
traverse an :class:`Errors` in the same order that its producer emitted it.
"""

from __future__ import annotations

__all__ = ["Errors"]

from collections.abc import Iterable, Iterator, Sequence
from typing import Any, overload

import jax
import jax.numpy as jnp
import numpy as np

from tinyfg.exceptions import DimensionMismatch
from tinyfg.helpers import JAXArray, as_vector


@jax.tree_util.register_pytree_node_class
class Errors:
    """An ordered sequence of dense residual vectors

    Args:
        values: The initial blocks, in order.
    """

    __array_priority__ = 2000

    def __init__(self, values: Iterable[Any] = ()):
        self._values: list[JAXArray] = [as_vector(v, name="error") for v in values]

    def tree_flatten(self) -> tuple[list[JAXArray], None]:
        return list(self._values), None

    @classmethod
    def tree_unflatten(cls, aux: None, children: Sequence[Any]) -> Errors:
        del aux
        obj = cls.__new__(cls)
        obj._values = list(children)
        return obj

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[JAXArray]:
        return iter(self._values)

    @overload
    def __getitem__(self, idx: int) -> JAXArray: ...

    @overload
    def __getitem__(self, idx: slice) -> Errors: ...

    def __getitem__(self, idx: int | slice) -> JAXArray | Errors:
        if isinstance(idx, slice):
            return Errors(self._values[idx])
        return self._values[idx]

    def __setitem__(self, idx: int, value: Any) -> None:
        value = as_vector(value, name="error")
        current = self._values[idx]
        if value.shape != current.shape:
            raise DimensionMismatch(
                f"error block {idx} has dimension {current.shape[0]}; "
                f"got {value.shape[0]}"
            )
        self._values[idx] = value

    def append(self, value: Any) -> None:
        self._values.append(as_vector(value, name="error"))

    def splice(self, other: Errors) -> None:
        """Move all the blocks of ``other`` onto the end of this sequence

        Like ``std::list::splice``, ``other`` is left empty.
        """
        self._values.extend(other._values)
        other._values = []

    def dims(self) -> list[int]:
        return [int(v.shape[0]) for v in self._values]

    def dim(self) -> int:
        """The total number of scalar rows"""
        return sum(self.dims())

    def zero(self) -> Errors:
        return Errors(jnp.zeros_like(v) for v in self._values)

    def vector(self) -> JAXArray:
        """All the blocks concatenated into a single dense vector"""
        if not self._values:
            return jnp.zeros(0)
        return jnp.concatenate(self._values)

    def _check_compatible(self, other: Errors) -> None:
        if self.dims() != other.dims():
            raise DimensionMismatch(
                f"incompatible errors: {self.dims()} != {other.dims()}"
            )

    def dot(self, other: Errors) -> JAXArray:
        """The inner product of two errors with pairwise matching blocks"""
        self._check_compatible(other)
        result = jnp.zeros(())
        for a, b in zip(self._values, other._values):
            result = result + jnp.dot(a, b)
        return result

    def scale(self, alpha: Any) -> None:
        """Multiply every block by ``alpha`` in place"""
        self._values = [alpha * v for v in self._values]

    def axpy(self, alpha: Any, other: Errors) -> None:
        """Update in place: ``self += alpha * other``"""
        self._check_compatible(other)
        self._values = [a + alpha * b for a, b in zip(self._values, other._values)]

    def __add__(self, other: Errors) -> Errors:
        if not isinstance(other, Errors):
            return NotImplemented
        self._check_compatible(other)
        return Errors(a + b for a, b in zip(self._values, other._values))

    def __sub__(self, other: Errors) -> Errors:
        if not isinstance(other, Errors):
            return NotImplemented
        self._check_compatible(other)
        return Errors(a - b for a, b in zip(self._values, other._values))

    def __mul__(self, alpha: Any) -> Errors:
        if isinstance(alpha, Errors) or jnp.ndim(alpha) != 0:
            return NotImplemented
        return Errors(alpha * v for v in self._values)

    def __rmul__(self, alpha: Any) -> Errors:
        return self.__mul__(alpha)

    def __neg__(self) -> Errors:
        return Errors(-v for v in self._values)

    def equals(self, other: Errors, tol: float = 1e-9) -> bool:
        if self.dims() != other.dims():
            return False
        return all(
            np.allclose(a, b, rtol=0.0, atol=tol)
            for a, b in zip(self._values, other._values)
        )

    def __repr__(self) -> str:
        body = ", ".join(str(np.asarray(v)) for v in self._values)
        return f"Errors([{body}])"
