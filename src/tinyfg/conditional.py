from __future__ import annotations

__all__ = ["GaussianConditional"]

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jax.scipy import linalg

from tinyfg.config import VectorConfig
from tinyfg.exceptions import (
    DimensionMismatch,
    DuplicateKey,
    MissingKey,
    SingularPivot,
)
from tinyfg.helpers import JAXArray, Symbol, as_matrix, as_vector

if TYPE_CHECKING:
    from tinyfg.factor import LinearFactor


class GaussianConditional(eqx.Module):
    """One block row of an upper triangular Bayes net

    This represents the density on the frontal variable ``x_j`` given its
    parents, defined by the linear system

    .. math::

        R\\,x_j + \\sum_k S_k\\,x_k = d

    where each row is scaled by the matching entry of ``sigmas``. Conditionals
    produced by elimination have a unit diagonal ``R``, with the row scale
    carried by ``sigmas``, so the whitened row is ``(R x_j + S x_k - d) /
    sigma``.

    Args:
        key: The frontal variable.
        d: The right hand side, with shape ``(n,)``. If not provided (along with
            ``R``), the conditional is the parent-less, zero dimensional
            ``P(x_j) = 1`` produced by eliminating an empty factor.
        R: The square upper triangular ``(n, n)`` matrix on the frontal
            variable. Only the upper triangle is used.
        parents: An iterable of ``(symbol, S)`` pairs, where each ``S`` has
            shape ``(n, dim(symbol))``.
        sigmas: The per-row standard deviations, either a scalar or an array
            with shape ``(n,)``.
    """

    key: Symbol = eqx.field(static=True)
    parents: tuple[Symbol, ...] = eqx.field(static=True)
    R: JAXArray
    S: tuple[JAXArray, ...]
    d: JAXArray
    sigmas: JAXArray

    def __init__(
        self,
        key: Symbol,
        d: Any | None = None,
        R: Any | None = None,
        parents: Iterable[tuple[Symbol, Any]] = (),
        sigmas: Any = 1.0,
    ):
        self.key = key
        if d is None and R is None:
            d = jnp.zeros(0)
            R = jnp.zeros((0, 0))
        self.d = as_vector(d, name=f"d for {key!r}")
        self.R = jnp.triu(as_matrix(R, name=f"R for {key!r}"))
        n = self.d.shape[0]
        if self.R.shape != (n, n):
            raise DimensionMismatch(
                f"R for {key!r} must have shape {(n, n)}; got {self.R.shape}"
            )
        if n and np.any(np.diag(np.asarray(self.R)) == 0):
            raise SingularPivot(key, f"R for {key!r} has a zero on its diagonal")

        keys = []
        blocks = []
        for parent, S in parents:
            if parent == key or parent in keys:
                raise DuplicateKey(parent, f"conditional on {key!r}")
            S = as_matrix(S, name=f"S for parent {parent!r}")
            if S.shape[0] != n:
                raise DimensionMismatch(
                    f"S for parent {parent!r} must have {n} rows; got {S.shape[0]}"
                )
            keys.append(parent)
            blocks.append(S)
        self.parents = tuple(keys)
        self.S = tuple(blocks)

        sigmas = jnp.asarray(sigmas, dtype=self.d.dtype)
        if sigmas.ndim == 0:
            sigmas = jnp.full((n,), sigmas)
        if sigmas.shape != (n,):
            raise DimensionMismatch(
                f"sigmas for {key!r} must have shape {(n,)}; got {sigmas.shape}"
            )
        if np.any(np.asarray(sigmas) <= 0):
            raise ValueError(f"sigmas for {key!r} must be strictly positive")
        self.sigmas = sigmas

    @property
    def dim(self) -> int:
        """The dimension of the frontal variable"""
        return int(self.d.shape[0])

    def parent_block(self, parent: Symbol) -> JAXArray:
        try:
            return self.S[self.parents.index(parent)]
        except ValueError:
            raise MissingKey(parent, f"parents of {self.key!r}") from None

    def _parent_value(self, x: VectorConfig, parent: Symbol, S: JAXArray) -> JAXArray:
        value = x[parent]
        if value.shape[0] != S.shape[1]:
            raise DimensionMismatch(
                f"parent {parent!r} of {self.key!r} has dimension {S.shape[1]}; "
                f"got {value.shape[0]}"
            )
        return value

    def solve(self, x: VectorConfig, rhs: Any | None = None) -> JAXArray:
        """Solve for the frontal variable given the values of its parents

        This computes ``R^-1 (d - sum_k S_k x_k)``. If ``rhs`` is provided, it
        replaces ``d`` as a *whitened* right hand side, i.e. ``d`` becomes
        ``rhs * sigmas``; this is how a vector in the preconditioned space is
        pushed through the triangular system.

        Args:
            x: A config holding (at least) every parent.
            rhs: An optional whitened right hand side with shape ``(n,)``.
        """
        if rhs is None:
            z = self.d
        else:
            rhs = as_vector(rhs, name=f"right hand side for {self.key!r}")
            if rhs.shape != self.d.shape:
                raise DimensionMismatch(
                    f"right hand side for {self.key!r} must have dimension "
                    f"{self.dim}; got {rhs.shape[0]}"
                )
            z = rhs * self.sigmas
        for parent, S in zip(self.parents, self.S):
            z = z - S @ self._parent_value(x, parent, S)
        if self.dim == 0:
            return z
        return linalg.solve_triangular(self.R, z, lower=False)

    def solve_transpose(self, gy: VectorConfig) -> JAXArray:
        """One step of transpose back-substitution, updating ``gy`` in place

        This solves ``R^T u = gy[key]``, subtracts ``S_k^T u`` from the block of
        each parent (inserting it if missing), and finally stores the scaled
        solution ``u * sigmas`` as ``gy[key]``.

        Returns:
            The scaled solution that was stored in ``gy[key]``.
        """
        g = gy[self.key]
        if g.shape != self.d.shape:
            raise DimensionMismatch(
                f"{self.key!r} has dimension {self.dim}; got {g.shape[0]}"
            )
        if self.dim == 0:
            return g
        u = linalg.solve_triangular(self.R, g, lower=False, trans=1)
        for parent, S in zip(self.parents, self.S):
            gy.accumulate(parent, -(S.T @ u))
        gy[self.key] = u * self.sigmas
        return gy[self.key]

    def multiply(self, x: VectorConfig) -> JAXArray:
        """The whitened row product ``(R x_j + sum_k S_k x_k) / sigmas``"""
        value = x[self.key]
        if value.shape != self.d.shape:
            raise DimensionMismatch(
                f"{self.key!r} has dimension {self.dim}; got {value.shape[0]}"
            )
        z = self.R @ value
        for parent, S in zip(self.parents, self.S):
            z = z + S @ self._parent_value(x, parent, S)
        return z / self.sigmas

    def to_factor(self) -> LinearFactor:
        """The linear factor ``R x_j + sum_k S_k x_k - d`` with the same sigmas"""
        from tinyfg.factor import LinearFactor

        return LinearFactor.from_conditional(self)

    def equals(self, other: GaussianConditional, tol: float = 1e-9) -> bool:
        if self.key != other.key or self.dim != other.dim:
            return False
        if set(self.parents) != set(other.parents):
            return False

        def close(a: JAXArray, b: JAXArray) -> bool:
            return a.shape == b.shape and bool(
                np.allclose(a, b, rtol=0.0, atol=tol)
            )

        if not (
            close(self.R, other.R)
            and close(self.d, other.d)
            and close(self.sigmas, other.sigmas)
        ):
            return False
        return all(
            close(S, other.parent_block(parent))
            for parent, S in zip(self.parents, self.S)
        )
