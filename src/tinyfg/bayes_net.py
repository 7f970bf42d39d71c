"""
A :class:`GaussianBayesNet` is the upper triangular factor ``R`` produced by
eliminating a factor graph, stored as an ordered sequence of
:class:`tinyfg.GaussianConditional` objects in elimination order. Throughout
this module, ``R`` refers to the *whitened* triangular operator, where the
row belonging to conditional ``j`` is ``[R_j  S_j] / sigmas_j``, so that the
least-squares objective of the eliminated graph is ``|R x - d / sigmas|^2 / 2``.
"""

from __future__ import annotations

__all__ = ["GaussianBayesNet"]

from collections.abc import Iterable, Iterator

import equinox as eqx
import jax.numpy as jnp

from tinyfg.conditional import GaussianConditional
from tinyfg.config import VectorConfig
from tinyfg.exceptions import DuplicateKey, MissingKey
from tinyfg.helpers import JAXArray, Symbol


class GaussianBayesNet(eqx.Module):
    """An ordered sequence of Gaussian conditionals in elimination order

    Every parent of a conditional must either be the frontal variable of a
    *later* conditional, or not appear in the net at all, in which case it is
    an input that must be provided when back-substituting.

    Args:
        conditionals: The conditionals, first eliminated first.
    """

    conditionals: tuple[GaussianConditional, ...]

    def __init__(self, conditionals: Iterable[GaussianConditional] = ()):
        self.conditionals = tuple(conditionals)
        eliminated: set[Symbol] = set()
        for cg in self.conditionals:
            if cg.key in eliminated:
                raise DuplicateKey(cg.key, "Bayes net")
            eliminated.add(cg.key)
            for parent in cg.parents:
                if parent in eliminated:
                    raise ValueError(
                        f"parent {parent!r} of {cg.key!r} is eliminated before "
                        "its child"
                    )

    def __len__(self) -> int:
        return len(self.conditionals)

    def __iter__(self) -> Iterator[GaussianConditional]:
        return iter(self.conditionals)

    def __getitem__(self, idx: int) -> GaussianConditional:
        return self.conditionals[idx]

    @property
    def keys(self) -> tuple[Symbol, ...]:
        """The frontal variables in elimination order

        Every operator that emits or consumes blocks "in Bayes net order" uses
        this sequence.
        """
        return tuple(cg.key for cg in self.conditionals)

    def dims(self) -> dict[Symbol, int]:
        return {cg.key: cg.dim for cg in self.conditionals}

    def dim(self) -> int:
        return sum(cg.dim for cg in self.conditionals)

    def optimize(self) -> VectorConfig:
        """Solve ``R x = d / sigmas`` by back-substitution"""
        x = VectorConfig()
        for cg in reversed(self.conditionals):
            x.insert(cg.key, cg.solve(x))
        return x

    def back_substitute(self, y: VectorConfig) -> VectorConfig:
        """Compute ``x = R^-1 y``

        The conditionals are visited last eliminated first, and each one is
        solved with its right hand side ``d`` replaced by ``y[key]``.

        Args:
            y: A config with a value for every frontal variable, and for every
                parent that is not itself a frontal variable.
        """
        x = VectorConfig(y)
        for cg in reversed(self.conditionals):
            x[cg.key] = cg.solve(x, y[cg.key])
        return x

    def back_substitute_transpose(self, x: VectorConfig) -> VectorConfig:
        """Compute ``y = R^-T x``

        The conditionals are visited in elimination order. Frontal variables
        missing from ``x`` are treated as zero.
        """
        gy = VectorConfig(x)
        for cg in self.conditionals:
            if cg.key not in gy:
                gy.insert(cg.key, jnp.zeros_like(cg.d))
            cg.solve_transpose(gy)
        return gy

    def multiply(self, x: VectorConfig) -> VectorConfig:
        """Compute ``R x``, the inverse of :func:`GaussianBayesNet.back_substitute`"""
        return VectorConfig((cg.key, cg.multiply(x)) for cg in self.conditionals)

    def transpose_multiply(self, y: VectorConfig) -> VectorConfig:
        """Compute ``R^T y``

        This is the inverse of :func:`GaussianBayesNet.back_substitute_transpose`.
        """
        result = VectorConfig()
        for cg in self.conditionals:
            w = y[cg.key] / cg.sigmas
            result.accumulate(cg.key, cg.R.T @ w)
            for parent, S in zip(cg.parents, cg.S):
                result.accumulate(parent, S.T @ w)
        return result

    def matrix(self) -> tuple[JAXArray, JAXArray]:
        """Render this net as a dense, whitened ``(R, d)`` in elimination order

        This is not optimized and should really only be used for testing.
        """
        keys = self.keys
        dims = self.dims()
        offsets = {}
        offset = 0
        for key in keys:
            offsets[key] = offset
            offset += dims[key]

        R = jnp.zeros((offset, offset))
        for cg in self.conditionals:
            row = offsets[cg.key]
            rows = slice(row, row + cg.dim)
            scale = 1.0 / cg.sigmas[:, None]
            R = R.at[rows, row : row + cg.dim].set(scale * cg.R)
            for parent, S in zip(cg.parents, cg.S):
                if parent not in offsets:
                    raise MissingKey(parent, "Bayes net")
                col = offsets[parent]
                R = R.at[rows, col : col + S.shape[1]].set(scale * S)
        if not self.conditionals:
            return R, jnp.zeros(0)
        d = jnp.concatenate([cg.d / cg.sigmas for cg in self.conditionals])
        return R, d
