from __future__ import annotations

__all__ = ["JAXArray", "Symbol", "as_matrix", "as_vector"]

from collections.abc import Hashable
from typing import Any

import jax
import jax.numpy as jnp

from tinyfg.exceptions import DimensionMismatch

JAXArray = jax.Array

# Variables are named by any hashable, orderable value; strings like "x1" or
# "l3" in practice
Symbol = Hashable


def _as_float(value: Any) -> JAXArray:
    arr = jnp.asarray(value)
    if not jnp.issubdtype(arr.dtype, jnp.floating):
        arr = arr.astype(jnp.result_type(float))
    return arr


def as_vector(value: Any, name: str = "vector") -> JAXArray:
    """Convert ``value`` to a 1-D floating point array"""
    arr = _as_float(value)
    if arr.ndim != 1:
        raise DimensionMismatch(
            f"{name} must be one dimensional; got shape {arr.shape}"
        )
    return arr


def as_matrix(value: Any, name: str = "matrix") -> JAXArray:
    """Convert ``value`` to a 2-D floating point array"""
    arr = _as_float(value)
    if arr.ndim != 2:
        raise DimensionMismatch(
            f"{name} must be two dimensional; got shape {arr.shape}"
        )
    return arr
