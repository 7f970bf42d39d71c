from __future__ import annotations

__all__ = ["LinearFactorGraph"]

import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

import equinox as eqx
import jax.numpy as jnp

from tinyfg.bayes_net import GaussianBayesNet
from tinyfg.conditional import GaussianConditional
from tinyfg.config import VectorConfig
from tinyfg.errors import Errors
from tinyfg.exceptions import DimensionMismatch, MissingKey, OrderMismatch
from tinyfg.factor import PRECISION_THRESHOLD, LinearFactor
from tinyfg.helpers import JAXArray, Symbol

logger = logging.getLogger(__name__)


class LinearFactorGraph(eqx.Module):
    """An ordered collection of linear factors

    Taken together, the factors define the whitened linear system ``A x = b``
    where each factor contributes one block of rows. Every operator that
    produces or consumes an :class:`tinyfg.Errors` does so with exactly one
    block per factor, in factor order; an empty factor contributes a block of
    length zero.

    Args:
        factors: The factors, in order.
    """

    factors: tuple[LinearFactor, ...]

    def __init__(self, factors: Iterable[LinearFactor] = ()):
        self.factors = tuple(factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[LinearFactor]:
        return iter(self.factors)

    def __getitem__(self, idx: int) -> LinearFactor:
        return self.factors[idx]

    @property
    def keys(self) -> tuple[Symbol, ...]:
        """All the variables in the graph, in order of first appearance"""
        keys: dict[Symbol, None] = {}
        for f in self.factors:
            keys.update((k, None) for k in f.keys)
        return tuple(keys)

    @property
    def num_rows(self) -> int:
        return sum(f.num_rows for f in self.factors)

    def dimensions(self) -> dict[Symbol, int]:
        """The dimension of each variable

        Raises:
            DimensionMismatch: If two factors disagree about a dimension.
        """
        dims: dict[Symbol, int] = {}
        for f in self.factors:
            for key, dim in f.dimensions().items():
                if dims.setdefault(key, dim) != dim:
                    raise DimensionMismatch(
                        f"{key!r} has dimension {dims[key]} and {dim} in "
                        "different factors"
                    )
        return dims

    def error(self, x: VectorConfig) -> JAXArray:
        """Half the squared norm of the whitened residual of all factors"""
        result = jnp.zeros(())
        for f in self.factors:
            result = result + f.error(x)
        return result

    def errors(self, x: VectorConfig) -> Errors:
        """The whitened residuals ``(A x - b) / sigmas``, one block per factor"""
        return Errors(f.error_vector(x) for f in self.factors)

    def reduced_rhs(self, x: VectorConfig) -> Errors:
        """The whitened residuals with the opposite sign, ``(b - A x) / sigmas``

        For a baseline ``xbar``, this is the right hand side left over once the
        contribution of ``xbar`` has been removed.
        """
        return Errors(-f.error_vector(x) for f in self.factors)

    def rhs(self) -> Errors:
        """The whitened right hand side ``b / sigmas``"""
        return Errors(f.b / f.sigmas for f in self.factors)

    def multiply(self, x: VectorConfig) -> Errors:
        """The whitened product ``A x``, one block per factor"""
        e = Errors()
        for f in self.factors:
            e.append(f.multiply(x))
        return e

    def __matmul__(self, x: VectorConfig) -> Errors:
        return self.multiply(x)

    def multiply_in_place(self, x: VectorConfig, e: Errors, start: int = 0) -> int:
        """Write ``A x`` into a pre-sized errors, starting at block ``start``

        Returns:
            The index of the first block after the ones written by this graph.
        """
        if len(e) - start < len(self.factors):
            raise OrderMismatch(
                f"need {len(self.factors)} blocks after block {start}; "
                f"the errors only has {len(e)} blocks"
            )
        for i, f in enumerate(self.factors):
            e[start + i] = f.multiply(x)
        return start + len(self.factors)

    def _check_errors(self, e: Errors) -> None:
        if len(e) != len(self.factors):
            raise OrderMismatch(
                f"expected {len(self.factors)} error blocks; got {len(e)}"
            )

    def transpose_multiply(self, e: Errors) -> VectorConfig:
        """The whitened product ``A^T e``

        Each factor consumes the block of ``e`` at its own position. The result
        only has values for the variables involved in the graph.
        """
        result = VectorConfig()
        self.transpose_multiply_add(1.0, e, result)
        return result

    def transpose_multiply_add(self, alpha: Any, e: Errors, x: VectorConfig) -> None:
        """Accumulate ``alpha A^T e`` into ``x`` in place"""
        self._check_errors(e)
        for f, ei in zip(self.factors, e):
            f.transpose_multiply_add(alpha, ei, x)

    def combine_factors(self, key: Symbol) -> tuple[LinearFactor, LinearFactorGraph]:
        """Remove the factors involving ``key`` and combine them into one

        Returns:
            The combined factor and the graph of the remaining factors, in the
            same order.
        """
        involved = [f for f in self.factors if f.involves(key)]
        if not involved:
            raise MissingKey(key, "factor graph")
        rest = [f for f in self.factors if not f.involves(key)]
        return LinearFactor.combine(involved), LinearFactorGraph(rest)

    def eliminate_one(
        self, key: Symbol, *, threshold: float = PRECISION_THRESHOLD
    ) -> tuple[GaussianConditional, LinearFactorGraph]:
        """Eliminate a single variable from the graph

        The factors involving ``key`` are combined and eliminated, and the
        remainder factor (if any) is appended to the remaining factors.
        """
        combined, rest = self.combine_factors(key)
        conditional, remainder = combined.eliminate(key, threshold=threshold)
        factors = list(rest)
        if not remainder.empty:
            factors.append(remainder)
        return conditional, LinearFactorGraph(factors)

    def eliminate(
        self, ordering: Sequence[Symbol], *, threshold: float = PRECISION_THRESHOLD
    ) -> GaussianBayesNet:
        """Eliminate variables one at a time following ``ordering``

        Returns:
            The Bayes net of the conditionals, in ``ordering``. Variables that
            are not in ``ordering`` remain as inputs (parents) of the net.
        """
        graph = self
        conditionals = []
        for key in ordering:
            conditional, graph = graph.eliminate_one(key, threshold=threshold)
            conditionals.append(conditional)
        logger.debug(
            "eliminated %d variables; %d factors remain", len(conditionals), len(graph)
        )
        return GaussianBayesNet(conditionals)

    def optimize(
        self, ordering: Sequence[Symbol], *, threshold: float = PRECISION_THRESHOLD
    ) -> VectorConfig:
        """The least-squares solution, by elimination and back-substitution"""
        return self.eliminate(ordering, threshold=threshold).optimize()

    def matrix(self, order: Sequence[Symbol]) -> tuple[JAXArray, JAXArray]:
        """Render the whole graph as a dense ``(A, b)`` without the sigmas"""
        dims = self.dimensions()
        rendered = [f.matrix(order, dims) for f in self.factors if not f.empty]
        if not rendered:
            total = sum(dims[k] for k in order)
            return jnp.zeros((0, total)), jnp.zeros(0)
        return (
            jnp.concatenate([A for A, _ in rendered]),
            jnp.concatenate([b for _, b in rendered]),
        )

    def sparse(
        self, order: Sequence[Symbol]
    ) -> tuple[list[int], list[int], list[float]]:
        """Render the whitened graph as 1-based sparse triplets ``(i, j, s)``"""
        dims = self.dimensions()
        rows: list[int] = []
        cols: list[int] = []
        values: list[float] = []
        row_offset = 0
        for f in self.factors:
            i, j, s = f.sparse(order, dims, row_offset=row_offset)
            rows.extend(i)
            cols.extend(j)
            values.extend(s)
            row_offset += f.num_rows
        return rows, cols, values
