"""
A :class:`LinearFactor` is one weighted block row of a sparse least-squares
problem. It stores the blocks ``A_k`` acting on each variable, the right hand
side ``b`` and the per-row standard deviations ``sigmas``, and represents the
whitened residual

.. math::

    e(x) = \\mathrm{diag}(1/\\sigma)\\,\\left(\\sum_k A_k\\,x_k - b\\right)

The most important operation is :func:`LinearFactor.eliminate`, which splits a
factor into a :class:`tinyfg.GaussianConditional` on one variable and a
remainder factor on the others using weighted Gram-Schmidt. The conditional is
normalized to a unit diagonal ``R``, with the row scales pushed into its
``sigmas``.
"""

from __future__ import annotations

__all__ = ["LinearFactor", "weighted_eliminate", "PRECISION_THRESHOLD"]

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, NamedTuple

import equinox as eqx
import jax.numpy as jnp
import numpy as np

from tinyfg.conditional import GaussianConditional
from tinyfg.config import VectorConfig
from tinyfg.exceptions import (
    DimensionMismatch,
    DuplicateKey,
    MissingKey,
    SingularPivot,
)
from tinyfg.helpers import JAXArray, Symbol, as_matrix, as_vector

logger = logging.getLogger(__name__)

# Columns with a weighted squared norm below this carry no information
PRECISION_THRESHOLD = 1e-8


class EliminatedRow(NamedTuple):
    """One row produced by :func:`weighted_eliminate`

    Attributes:
        pivot: The column eliminated by this row.
        r: The row itself, with ``r[pivot] == 1`` and zeros before the pivot.
        d: The matching right hand side.
        sigma: The standard deviation of the row.
    """

    pivot: int
    r: JAXArray
    d: JAXArray
    sigma: JAXArray


def weighted_eliminate(
    A: JAXArray,
    b: JAXArray,
    sigmas: JAXArray,
    *,
    threshold: float = PRECISION_THRESHOLD,
) -> list[EliminatedRow]:
    """Eliminate ``A x = b`` column by column with weighted Gram-Schmidt

    For each column ``a`` in turn, the weighted pseudo-inverse ``p = W a / (a^T
    W a)`` (with ``W = diag(1/sigma^2)``) gives the estimate ``x_j = d - r x``
    of that scalar variable in terms of the later ones, with ``r = p^T A`` and
    ``d = p^T b``, and precision ``a^T W a``. Substituting it back into the
    system zeroes out the column. This is equivalent to a QR factorization of
    the whitened system, up to the scaling of each row.

    Columns without information (precision below ``threshold``) are skipped and
    the loop stops early once the rank of the system is exhausted.

    Args:
        A (m, n): The unwhitened system matrix.
        b (m,): The unwhitened right hand side.
        sigmas (m,): The per-row standard deviations.
        threshold: The smallest precision accepted as a pivot.

    Returns:
        A list of :class:`EliminatedRow` in pivot order.
    """
    m, n = A.shape
    max_rank = min(m, n)
    weights = 1.0 / jnp.square(sigmas)
    rows: list[EliminatedRow] = []
    for j in range(n):
        a = A[:, j]
        precision = jnp.dot(weights, jnp.square(a))
        if float(precision) < threshold:
            logger.debug("no information on column %d, skipping", j)
            continue
        pseudo = weights * a / precision
        r = (pseudo @ A).at[:j].set(0.0).at[j].set(1.0)
        d = jnp.dot(pseudo, b)
        rows.append(EliminatedRow(j, r, d, 1.0 / jnp.sqrt(precision)))
        if len(rows) >= max_rank:
            break

        # A <- A - a r^T and b <- b - d a zeros out column j
        A = A - jnp.outer(a, r)
        b = b - d * a
    return rows


class LinearFactor(eqx.Module):
    """A whitened block row ``diag(1/sigmas) (sum_k A_k x_k - b)``

    Args:
        terms: An iterable of ``(symbol, A)`` pairs, where all the ``A`` blocks
            have the same number of rows. If empty, this is the *empty* factor,
            which contributes nothing to any error or product.
        b: The right hand side with shape ``(m,)``.
        sigmas: The per-row standard deviations, either a scalar or an array
            with shape ``(m,)``. These must be strictly positive.
    """

    keys: tuple[Symbol, ...] = eqx.field(static=True)
    blocks: tuple[JAXArray, ...]
    b: JAXArray
    sigmas: JAXArray

    def __init__(
        self,
        terms: Iterable[tuple[Symbol, Any]] = (),
        b: Any | None = None,
        sigmas: Any = 1.0,
    ):
        keys = []
        blocks = []
        for key, A in terms:
            if key in keys:
                raise DuplicateKey(key, "factor")
            keys.append(key)
            blocks.append(as_matrix(A, name=f"block for {key!r}"))
        self.keys = tuple(keys)
        self.blocks = tuple(blocks)

        if b is None:
            if blocks:
                raise ValueError("a non-empty factor requires a right hand side")
            b = jnp.zeros(0)
        self.b = as_vector(b, name="b")
        m = self.b.shape[0]
        for key, A in zip(self.keys, self.blocks):
            if A.shape[0] != m:
                raise DimensionMismatch(
                    f"block for {key!r} has {A.shape[0]} rows; expected {m}"
                )

        sigmas = jnp.asarray(sigmas, dtype=self.b.dtype)
        if sigmas.ndim == 0:
            sigmas = jnp.full((m,), sigmas)
        if sigmas.shape != (m,):
            raise DimensionMismatch(
                f"sigmas must have shape {(m,)}; got {sigmas.shape}"
            )
        if np.any(np.asarray(sigmas) <= 0):
            raise ValueError("sigmas must be strictly positive")
        self.sigmas = sigmas

    @classmethod
    def combine(cls, factors: Iterable[LinearFactor]) -> LinearFactor:
        """Stack several factors into a single factor

        The keys of the result are ordered by first appearance, and each factor
        gets a zero block for every key that it doesn't involve.
        """
        factors = [f for f in factors if not f.empty]
        if not factors:
            return cls()

        dims: dict[Symbol, int] = {}
        for f in factors:
            for key, A in zip(f.keys, f.blocks):
                if dims.setdefault(key, A.shape[1]) != A.shape[1]:
                    raise DimensionMismatch(
                        f"{key!r} has dimension {dims[key]} and {A.shape[1]} in "
                        "different factors"
                    )

        terms = []
        for key, dim in dims.items():
            terms.append(
                (
                    key,
                    jnp.concatenate(
                        [
                            f.block(key)
                            if f.involves(key)
                            else jnp.zeros((f.num_rows, dim), dtype=f.b.dtype)
                            for f in factors
                        ]
                    ),
                )
            )
        b = jnp.concatenate([f.b for f in factors])
        sigmas = jnp.concatenate([f.sigmas for f in factors])
        return cls(terms, b, sigmas)

    @classmethod
    def from_conditional(cls, cg: GaussianConditional) -> LinearFactor:
        """The factor ``R x_j + sum_k S_k x_k - d`` with the conditional's sigmas"""
        if cg.dim == 0:
            return cls()
        terms = [(cg.key, cg.R)] + list(zip(cg.parents, cg.S))
        return cls(terms, cg.d, cg.sigmas)

    @property
    def empty(self) -> bool:
        return len(self.keys) == 0

    @property
    def num_rows(self) -> int:
        return int(self.b.shape[0])

    @property
    def size(self) -> int:
        """The number of variables involved in this factor"""
        return len(self.keys)

    def involves(self, key: Symbol) -> bool:
        return key in self.keys

    def block(self, key: Symbol) -> JAXArray:
        """The (unwhitened) matrix acting on ``key``"""
        try:
            return self.blocks[self.keys.index(key)]
        except ValueError:
            raise MissingKey(key, "factor") from None

    def get_dim(self, key: Symbol) -> int:
        return int(self.block(key).shape[1])

    def dimensions(self) -> dict[Symbol, int]:
        return {k: int(A.shape[1]) for k, A in zip(self.keys, self.blocks)}

    def _apply(self, x: VectorConfig) -> JAXArray:
        result = jnp.zeros_like(self.b)
        for key, A in zip(self.keys, self.blocks):
            value = x[key]
            if value.shape[0] != A.shape[1]:
                raise DimensionMismatch(
                    f"{key!r} has dimension {A.shape[1]} in the factor; "
                    f"got {value.shape[0]}"
                )
            result = result + A @ value
        return result

    def unwhitened_error(self, x: VectorConfig) -> JAXArray:
        """The residual ``sum_k A_k x_k - b`` without the sigmas"""
        return self._apply(x) - self.b

    def error_vector(self, x: VectorConfig) -> JAXArray:
        """The whitened residual ``(sum_k A_k x_k - b) / sigmas``"""
        return self.unwhitened_error(x) / self.sigmas

    def error(self, x: VectorConfig) -> JAXArray:
        """Half the squared norm of the whitened residual"""
        if self.empty:
            return jnp.zeros(())
        e = self.error_vector(x)
        return 0.5 * jnp.dot(e, e)

    def multiply(self, x: VectorConfig) -> JAXArray:
        """The whitened product ``(sum_k A_k x_k) / sigmas``"""
        return self._apply(x) / self.sigmas

    def __matmul__(self, x: VectorConfig) -> JAXArray:
        return self.multiply(x)

    def transpose_multiply(self, e: Any) -> VectorConfig:
        """The config with ``A_k^T (e / sigmas)`` for each variable ``k``"""
        result = VectorConfig()
        self.transpose_multiply_add(1.0, e, result)
        return result

    def transpose_multiply_add(self, alpha: Any, e: Any, x: VectorConfig) -> None:
        """Accumulate ``alpha A_k^T (e / sigmas)`` into ``x`` in place"""
        e = as_vector(e, name="error")
        if e.shape != self.b.shape:
            raise DimensionMismatch(
                f"factor has {self.num_rows} rows; got an error of dimension "
                f"{e.shape[0]}"
            )
        we = alpha * e / self.sigmas
        for key, A in zip(self.keys, self.blocks):
            x.accumulate(key, A.T @ we)

    def eliminate(
        self, key: Symbol, *, threshold: float = PRECISION_THRESHOLD
    ) -> tuple[GaussianConditional, LinearFactor]:
        """Eliminate one variable from this factor

        The frontal variable's block is moved to the front and the whole system
        is eliminated with :func:`weighted_eliminate`. The first ``dim(key)``
        rows form the conditional, and any remaining rows form a new factor on
        the other variables.

        Args:
            key: The variable to eliminate.
            threshold: The smallest precision accepted as a pivot.

        Returns:
            The conditional on ``key`` and the remainder factor, which is empty
            if the rank of this factor was exhausted. Eliminating an empty
            factor gives the parent-less, zero dimensional conditional and an
            empty remainder.

        Raises:
            SingularPivot: If this factor doesn't fully determine ``key``.
        """
        if self.empty:
            return GaussianConditional(key), LinearFactor()

        frontal = self.block(key)
        parents = [(k, A) for k, A in zip(self.keys, self.blocks) if k != key]
        A = jnp.concatenate([frontal] + [S for _, S in parents], axis=1)
        rows = weighted_eliminate(A, self.b, self.sigmas, threshold=threshold)

        n = frontal.shape[1]
        if len(rows) < n or any(row.pivot != i for i, row in enumerate(rows[:n])):
            raise SingularPivot(
                key,
                f"the factor on {list(self.keys)} does not determine all "
                f"{n} components of {key!r}",
            )

        R = jnp.stack([row.r for row in rows])
        d = jnp.stack([row.d for row in rows])
        sigmas = jnp.stack([row.sigma for row in rows])

        offsets = np.cumsum([n] + [S.shape[1] for _, S in parents])
        blocks = [
            (k, R[:, start:end])
            for (k, _), start, end in zip(parents, offsets[:-1], offsets[1:])
        ]
        conditional = GaussianConditional(
            key,
            d[:n],
            R[:n, :n],
            [(k, S[:n]) for k, S in blocks],
            sigmas[:n],
        )

        if len(rows) == n or not parents:
            remainder = LinearFactor()
        else:
            remainder = LinearFactor(
                [(k, S[n:]) for k, S in blocks], d[n:], sigmas[n:]
            )
        logger.debug(
            "eliminated %r: %d frontal rows, %d remainder rows on %s",
            key,
            n,
            remainder.num_rows,
            list(remainder.keys),
        )
        return conditional, remainder

    def matrix(
        self, order: Sequence[Symbol], dims: Mapping[Symbol, int] | None = None
    ) -> tuple[JAXArray, JAXArray]:
        """Render this factor as a dense ``(A, b)`` without the sigmas

        The blocks are concatenated following ``order``, with zero blocks for
        the variables in ``order`` that this factor doesn't involve. Those
        dimensions must then be given by ``dims``.
        """
        return self._render(order, dims), self.b

    def matrix_augmented(
        self, order: Sequence[Symbol], dims: Mapping[Symbol, int] | None = None
    ) -> JAXArray:
        """Like :func:`LinearFactor.matrix`, but rendered as ``[A | b]``"""
        return jnp.concatenate([self._render(order, dims), self.b[:, None]], axis=1)

    def _render(
        self, order: Sequence[Symbol], dims: Mapping[Symbol, int] | None = None
    ) -> JAXArray:
        columns = []
        for key in order:
            if self.involves(key):
                columns.append(self.block(key))
            elif dims is not None and key in dims:
                columns.append(jnp.zeros((self.num_rows, dims[key]), self.b.dtype))
            else:
                raise MissingKey(key, "factor; its dimension is unknown")
        if not columns:
            return jnp.zeros((self.num_rows, 0), self.b.dtype)
        return jnp.concatenate(columns, axis=1)

    def sparse(
        self,
        order: Sequence[Symbol],
        dims: Mapping[Symbol, int],
        *,
        row_offset: int = 0,
    ) -> tuple[list[int], list[int], list[float]]:
        """Render the whitened factor as sparse triplets

        Args:
            order: The global order of the variables, used to compute the
                column offset of each block.
            dims: The dimension of every variable in ``order``.
            row_offset: The number of rows preceding this factor in the global
                matrix.

        Returns:
            Three lists ``(i, j, s)`` of equal length with the 1-based row and
            column indices and values of the non-zero entries of ``A / sigmas``.
        """
        offsets = {}
        column = 0
        for key in order:
            offsets[key] = column
            column += dims[key]

        sigmas = np.asarray(self.sigmas)
        rows, cols, values = [], [], []
        for key in order:
            if not self.involves(key):
                continue
            A = np.asarray(self.block(key)) / sigmas[:, None]
            for i, j in zip(*np.nonzero(A)):
                rows.append(row_offset + int(i) + 1)
                cols.append(offsets[key] + int(j) + 1)
                values.append(float(A[i, j]))
        return rows, cols, values

    def equals(self, other: LinearFactor, tol: float = 1e-9) -> bool:
        if self.empty or other.empty:
            return self.empty and other.empty
        if set(self.keys) != set(other.keys) or self.num_rows != other.num_rows:
            return False

        def close(a: JAXArray, b: JAXArray) -> bool:
            return a.shape == b.shape and bool(
                np.allclose(a, b, rtol=0.0, atol=tol)
            )

        if not (close(self.b, other.b) and close(self.sigmas, other.sigmas)):
            return False
        return all(close(A, other.block(k)) for k, A in zip(self.keys, self.blocks))
