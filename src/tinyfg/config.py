"""
A :class:`VectorConfig` is the "vector" of the factor graph world: a mapping
from variable symbols to dense vectors, where every variable carries its own
dimension. Arithmetic between configs is block-wise: configs are combined over
the union of their keys, with a key missing from one operand acting as a zero
block, and every shared key must have the same dimension in both operands.

Since ``jax`` arrays are immutable, the blocks themselves are never modified in
place. Instead, "in place" updates like ``+=`` or :func:`VectorConfig.axpy`
rebind the array stored for a key.
"""

from __future__ import annotations

__all__ = ["VectorConfig"]

from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any, Callable, Union

import jax
import jax.numpy as jnp
import numpy as np

from tinyfg.exceptions import DimensionMismatch, DuplicateKey, MissingKey
from tinyfg.helpers import JAXArray, Symbol, as_vector

ConfigLike = Union[
    "VectorConfig", Mapping[Symbol, Any], Iterable[tuple[Symbol, Any]]
]


@jax.tree_util.register_pytree_node_class
class VectorConfig:
    """A mapping from variable symbols to dense vectors

    Args:
        values: Optionally, a mapping (or another :class:`VectorConfig`) or an
            iterable of ``(symbol, vector)`` pairs used to populate the config.
            The vectors are copied by reference, not by value, but that is
            harmless since ``jax`` arrays are immutable.
    """

    # Must be higher than numpy's so that ``np.float64(2) * config`` defers to
    # our ``__rmul__``
    __array_priority__ = 2000

    def __init__(self, values: ConfigLike | None = None):
        self._values: dict[Symbol, JAXArray] = {}
        if values is None:
            return
        if isinstance(values, (VectorConfig, Mapping)):
            values = values.items()
        for key, value in values:
            self.insert(key, value)

    # Pytree protocol; the flattened order is sorted so that two configs with
    # the same keys always have the same tree structure
    def tree_flatten(self) -> tuple[list[JAXArray], tuple[Symbol, ...]]:
        keys = tuple(sorted(self._values, key=str))
        return [self._values[k] for k in keys], keys

    @classmethod
    def tree_unflatten(
        cls, keys: tuple[Symbol, ...], children: Sequence[Any]
    ) -> VectorConfig:
        obj = cls.__new__(cls)
        obj._values = dict(zip(keys, children))
        return obj

    # Mapping protocol
    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Symbol]:
        return iter(self._values)

    def __contains__(self, key: Symbol) -> bool:
        return key in self._values

    def __getitem__(self, key: Symbol) -> JAXArray:
        try:
            return self._values[key]
        except KeyError:
            raise MissingKey(key) from None

    def __setitem__(self, key: Symbol, value: Any) -> None:
        current = self[key]
        value = as_vector(value, name=f"value for {key!r}")
        if value.shape != current.shape:
            raise DimensionMismatch(
                f"dimension of {key!r} is fixed at {current.shape[0]}; "
                f"got {value.shape[0]}"
            )
        self._values[key] = value

    def keys(self) -> Iterable[Symbol]:
        return self._values.keys()

    def values(self) -> Iterable[JAXArray]:
        return self._values.values()

    def items(self) -> Iterable[tuple[Symbol, JAXArray]]:
        return self._values.items()

    def get(self, key: Symbol, default: Any = None) -> Any:
        return self._values.get(key, default)

    def insert(self, key: Symbol, value: Any) -> None:
        """Add a new variable to the config

        Raises:
            DuplicateKey: If ``key`` is already present.
        """
        if key in self._values:
            raise DuplicateKey(key)
        self._values[key] = as_vector(value, name=f"value for {key!r}")

    def accumulate(self, key: Symbol, value: Any) -> None:
        """Add ``value`` to the block for ``key``, inserting it if needed"""
        if key in self._values:
            self.axpy(1.0, key, value)
        else:
            self.insert(key, value)

    def axpy(self, alpha: Any, key: Symbol, value: Any) -> None:
        """Update the block for ``key`` in place: ``self[key] += alpha * value``"""
        current = self[key]
        value = as_vector(value, name=f"value for {key!r}")
        if value.shape != current.shape:
            raise DimensionMismatch(
                f"cannot add a vector of dimension {value.shape[0]} to {key!r} "
                f"with dimension {current.shape[0]}"
            )
        self._values[key] = current + alpha * value

    def copy(self) -> VectorConfig:
        return VectorConfig(self)

    def dims(self) -> dict[Symbol, int]:
        """The dimension of each variable"""
        return {k: int(v.shape[0]) for k, v in self._values.items()}

    def dim(self) -> int:
        """The total dimension summed over all variables"""
        return sum(int(v.shape[0]) for v in self._values.values())

    def zero(self) -> VectorConfig:
        """A config with the same keys and dimensions, filled with zeros"""
        return VectorConfig((k, jnp.zeros_like(v)) for k, v in self.items())

    def vector(self, order: Iterable[Symbol] | None = None) -> JAXArray:
        """Flatten the config into a single dense vector

        Args:
            order: The order in which to concatenate the blocks. Defaults to the
                insertion order.
        """
        keys = list(self._values) if order is None else list(order)
        if not keys:
            return jnp.zeros(0)
        return jnp.concatenate([self[k] for k in keys])

    @classmethod
    def from_vector(
        cls, vector: Any, order: Iterable[Symbol], dims: Mapping[Symbol, int]
    ) -> VectorConfig:
        """The inverse of :func:`VectorConfig.vector`"""
        vector = as_vector(vector)
        order = list(order)
        total = sum(dims[k] for k in order)
        if vector.shape[0] != total:
            raise DimensionMismatch(
                f"expected a vector of length {total}; got {vector.shape[0]}"
            )
        result = cls()
        offset = 0
        for key in order:
            result.insert(key, vector[offset : offset + dims[key]])
            offset += dims[key]
        return result

    def _check_shared_dims(self, other: VectorConfig) -> None:
        for key, value in other.items():
            mine = self._values.get(key)
            if mine is not None and mine.shape != value.shape:
                raise DimensionMismatch(
                    f"dimension mismatch for {key!r}: "
                    f"{mine.shape[0]} != {value.shape[0]}"
                )

    def _combine(
        self, other: VectorConfig, op: Callable[[JAXArray, JAXArray], JAXArray]
    ) -> VectorConfig:
        if not isinstance(other, VectorConfig):
            return NotImplemented
        self._check_shared_dims(other)
        result = VectorConfig(self)
        for key, value in other.items():
            if key in result:
                result._values[key] = op(result._values[key], value)
            else:
                result._values[key] = op(jnp.zeros_like(value), value)
        return result

    def __add__(self, other: VectorConfig) -> VectorConfig:
        return self._combine(other, jnp.add)

    def __sub__(self, other: VectorConfig) -> VectorConfig:
        return self._combine(other, jnp.subtract)

    def __iadd__(self, other: VectorConfig) -> VectorConfig:
        if not isinstance(other, VectorConfig):
            return NotImplemented
        self._check_shared_dims(other)
        for key, value in other.items():
            if key in self._values:
                self._values[key] = self._values[key] + value
            else:
                self._values[key] = value
        return self

    def __mul__(self, alpha: Any) -> VectorConfig:
        if isinstance(alpha, VectorConfig) or jnp.ndim(alpha) != 0:
            return NotImplemented
        return VectorConfig((k, alpha * v) for k, v in self.items())

    def __rmul__(self, alpha: Any) -> VectorConfig:
        return self.__mul__(alpha)

    def __neg__(self) -> VectorConfig:
        return VectorConfig((k, -v) for k, v in self.items())

    def dot(self, other: VectorConfig) -> JAXArray:
        """The inner product summed over all shared keys

        Keys present in only one of the configs contribute nothing, matching
        the convention that a missing block is zero.
        """
        self._check_shared_dims(other)
        result = jnp.zeros(())
        for key, value in self.items():
            if key in other:
                result = result + jnp.dot(value, other[key])
        return result

    def equals(self, other: VectorConfig, tol: float = 1e-9) -> bool:
        """Check that both configs have the same keys and nearly equal blocks"""
        if set(self.keys()) != set(other.keys()):
            return False
        for key, value in self.items():
            if value.shape != other[key].shape:
                return False
            if not np.allclose(value, other[key], rtol=0.0, atol=tol):
                return False
        return True

    def __repr__(self) -> str:
        body = ", ".join(f"{k!r}: {np.asarray(v)}" for k, v in self.items())
        return f"VectorConfig({{{body}}})"
