"""
The subgraph preconditioner splits a linear least-squares problem ``A x = b``
into a spanning subgraph ``A1 x = b1``, which is cheap to eliminate into the
upper triangular Bayes net ``R1``, and the remaining constraints ``A2 x = b2``.
With the baseline ``xbar = R1^-1 d1`` and the change of variables

.. math::

    x = \\bar{x} + R_1^{-1}\\,y

the least-squares objective becomes ``|A y - bbar|^2 / 2`` with

.. math::

    A = \\left[\\begin{array}{c} I \\\\ A_2\\,R_1^{-1} \\end{array}\\right]
    \\quad \\mathrm{and} \\quad
    \\bar{b} = \\left[\\begin{array}{c} 0 \\\\ b_2 - A_2\\,\\bar{x}
    \\end{array}\\right]

which is much better conditioned than ``A x = b``, since ``R1`` captures the
bulk of the problem. :class:`SubgraphPreconditioner` exposes this operator to
a conjugate gradient loop through a handful of methods on
:class:`tinyfg.VectorConfig` (the ``y`` space) and :class:`tinyfg.Errors` (the
range space).

The blocks of an :class:`tinyfg.Errors` in the range space are laid out as one
block per conditional of ``R1``, in :attr:`SubgraphPreconditioner.ordering`,
followed by one block per factor of ``A2``. Every method below produces and
consumes that same layout.
"""

from __future__ import annotations

__all__ = ["SubgraphPreconditioner"]

import logging
from typing import Any

import equinox as eqx
import jax.numpy as jnp

from tinyfg.bayes_net import GaussianBayesNet
from tinyfg.config import VectorConfig
from tinyfg.errors import Errors
from tinyfg.exceptions import DimensionMismatch, MissingKey, OrderMismatch
from tinyfg.factor_graph import LinearFactorGraph
from tinyfg.helpers import JAXArray, Symbol

logger = logging.getLogger(__name__)


class SubgraphPreconditioner(eqx.Module):
    """The preconditioned operator ``A = [I; A2 R1^-1]`` and its right hand side

    All of the inputs are shared, not copied, and must not be modified while
    the preconditioner is alive.

    Args:
        Ab1: The spanning subgraph. It is only kept for reference.
        Ab2: The constraint graph with the remaining factors.
        Rc1: The Bayes net produced by eliminating ``Ab1``. It must cover every
            variable of ``Ab2``.
        xbar: The solution of the spanning subgraph, ``R1^-1 d1``, with exactly
            the frontal variables of ``Rc1`` as keys. Defaults to
            ``Rc1.optimize()``.
    """

    Ab1: LinearFactorGraph
    Ab2: LinearFactorGraph
    Rc1: GaussianBayesNet
    xbar: VectorConfig
    b2bar: Errors

    def __init__(
        self,
        Ab1: LinearFactorGraph,
        Ab2: LinearFactorGraph,
        Rc1: GaussianBayesNet,
        xbar: VectorConfig | None = None,
    ):
        frontals = Rc1.dims()
        for key in Ab2.keys:
            if key not in frontals:
                raise MissingKey(key, "Bayes net of the spanning subgraph")
        if xbar is None:
            xbar = Rc1.optimize()
        _check_keys(xbar, frontals, "xbar")

        self.Ab1 = Ab1
        self.Ab2 = Ab2
        self.Rc1 = Rc1
        self.xbar = xbar
        self.b2bar = Ab2.reduced_rhs(xbar)
        logger.debug(
            "subgraph preconditioner with %d conditionals (dimension %d) and "
            "%d constraint factors (%d rows)",
            len(Rc1),
            Rc1.dim(),
            len(Ab2),
            Ab2.num_rows,
        )

    @property
    def ordering(self) -> tuple[Symbol, ...]:
        """The order of the identity blocks in the range space"""
        return self.Rc1.keys

    def dims(self) -> dict[Symbol, int]:
        """The dimension of each variable in the ``y`` space"""
        return self.Rc1.dims()

    @property
    def num_rows(self) -> int:
        """The total dimension of the range space"""
        return self.Rc1.dim() + self.Ab2.num_rows

    @property
    def num_blocks(self) -> int:
        """The number of blocks in the range space"""
        return len(self.Rc1) + len(self.Ab2)

    def zero(self) -> VectorConfig:
        """The all-zero ``y``, a typical starting point for conjugate gradients"""
        return VectorConfig(
            (cg.key, jnp.zeros_like(cg.d)) for cg in self.Rc1.conditionals
        )

    def zero_errors(self) -> Errors:
        """A zero-filled range space buffer for :func:`multiply_in_place`"""
        e = Errors(jnp.zeros_like(cg.d) for cg in self.Rc1.conditionals)
        e.splice(Errors(jnp.zeros_like(f.b) for f in self.Ab2.factors))
        return e

    def _check_errors(self, e: Errors) -> None:
        expected = [cg.dim for cg in self.Rc1.conditionals]
        expected += [f.num_rows for f in self.Ab2.factors]
        if e.dims() != expected:
            raise OrderMismatch(
                f"expected error blocks with dimensions {expected}; "
                f"got {e.dims()}"
            )

    def x(self, y: VectorConfig) -> VectorConfig:
        """Map back to the variables of the full problem: ``x = xbar + R1^-1 y``"""
        _check_keys(y, self.dims(), "y")
        return self.xbar + self.Rc1.back_substitute(y)

    def _identity_block(self, y: VectorConfig) -> Errors:
        return Errors(y[key] for key in self.ordering)

    def error(self, y: VectorConfig) -> JAXArray:
        """The objective ``|A y - bbar|^2 / 2``"""
        e = self._identity_block(y)
        e.splice(self.Ab2.errors(self.x(y)))
        return 0.5 * e.dot(e)

    def gradient(self, y: VectorConfig) -> VectorConfig:
        """The gradient of the objective, ``y + R1^-T A2^T (A2 R1^-1 y - b2bar)``"""
        gx2 = self.Ab2.transpose_multiply(self.Ab2.errors(self.x(y)))
        return y + self.Rc1.back_substitute_transpose(gx2)

    def multiply(self, y: VectorConfig) -> Errors:
        """Apply the operator: ``A y = [y; A2 R1^-1 y]``"""
        _check_keys(y, self.dims(), "y")
        e = self._identity_block(y)
        e.splice(self.Ab2.multiply(self.Rc1.back_substitute(y)))
        return e

    def __matmul__(self, y: VectorConfig) -> Errors:
        return self.multiply(y)

    def multiply_in_place(self, y: VectorConfig, e: Errors) -> None:
        """Like :func:`multiply`, but overwriting the pre-sized buffer ``e``"""
        _check_keys(y, self.dims(), "y")
        self._check_errors(e)
        for i, key in enumerate(self.ordering):
            e[i] = y[key]
        self.Ab2.multiply_in_place(self.Rc1.back_substitute(y), e, len(self.Rc1))

    def _split(self, e: Errors) -> tuple[Errors, VectorConfig]:
        # The identity part of e, and R1^-T A2^T applied to the rest
        self._check_errors(e)
        n = len(self.Rc1)
        gx2 = self.Ab2.transpose_multiply(e[n:])
        return e[:n], self.Rc1.back_substitute_transpose(gx2)

    def transpose_multiply(self, e: Errors) -> VectorConfig:
        """Apply the transpose: ``A^T e = e1 + R1^-T A2^T e2``"""
        e1, gy2 = self._split(e)
        y = VectorConfig(zip(self.ordering, e1))
        y += gy2
        return y

    def transpose_multiply_add(self, alpha: Any, e: Errors, y: VectorConfig) -> None:
        """Update ``y`` in place: ``y += alpha A^T e``"""
        _check_keys(y, self.dims(), "y")
        e1, gy2 = self._split(e)
        for key, ej in zip(self.ordering, e1):
            y.axpy(alpha, key, ej)
        y += gy2 * alpha


def _check_keys(config: VectorConfig, dims: dict[Symbol, int], name: str) -> None:
    for key, dim in dims.items():
        if key not in config:
            raise MissingKey(key, name)
        if config[key].shape[0] != dim:
            raise DimensionMismatch(
                f"{key!r} has dimension {dim}; got {config[key].shape[0]} in {name}"
            )
    for key in config:
        if key not in dims:
            raise ValueError(
                f"{name} has a value for {key!r}, which is not a frontal variable "
                "of the Bayes net"
            )
