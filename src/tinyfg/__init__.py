"""
``tinyfg`` is a lightweight library for the linear algebra of Gaussian factor
graphs, built on top of `jax <https://github.com/google/jax>`_. Variables are
addressed by symbol rather than by offset: a :class:`VectorConfig` maps each
symbol to a dense vector, a :class:`LinearFactorGraph` is an ordered collection
of whitened block rows, and eliminating (part of) a graph produces a
:class:`GaussianBayesNet` that can be back-substituted in both directions.

The main entry point is :class:`SubgraphPreconditioner`, which combines the
Bayes net of a spanning subgraph with the remaining constraints into the
well-conditioned operator consumed by a conjugate gradient loop.
"""

__version__ = "0.1.0"
__author__ = "tinyfg developers"
__license__ = "BSD"
__description__ = "Subgraph preconditioning for Gaussian factor graphs in JAX"

from tinyfg import exceptions as exceptions
from tinyfg.bayes_net import GaussianBayesNet as GaussianBayesNet
from tinyfg.conditional import GaussianConditional as GaussianConditional
from tinyfg.config import VectorConfig as VectorConfig
from tinyfg.errors import Errors as Errors
from tinyfg.factor import LinearFactor as LinearFactor
from tinyfg.factor_graph import LinearFactorGraph as LinearFactorGraph
from tinyfg.preconditioner import SubgraphPreconditioner as SubgraphPreconditioner
