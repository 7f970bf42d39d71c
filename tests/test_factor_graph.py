# mypy: ignore-errors

import numpy as np
import pytest

from tinyfg import Errors, LinearFactor, LinearFactorGraph, VectorConfig
from tinyfg.exceptions import DimensionMismatch, MissingKey, OrderMismatch
from tinyfg.test_utils import SMALL_ORDERING, assert_allclose, create_planar_chain


def test_keys(graph):
    assert graph.keys == ("x1", "x2", "l1")
    assert len(graph) == 4
    assert graph.num_rows == 8
    assert graph.dimensions() == {"x1": 2, "x2": 2, "l1": 2}


def test_inconsistent_dimensions():
    graph = LinearFactorGraph(
        [
            LinearFactor([("x", np.eye(2))], np.zeros(2)),
            LinearFactor([("x", np.eye(3))], np.zeros(3)),
        ]
    )
    with pytest.raises(DimensionMismatch):
        graph.dimensions()


def test_error(graph, zero_delta, correct_delta):
    assert_allclose(graph.error(zero_delta), 5.625)
    assert_allclose(graph.error(correct_delta), 0.0)


def test_errors(graph, zero_delta):
    e = graph.errors(zero_delta)
    assert e.dims() == [2, 2, 2, 2]
    assert_allclose(e.vector(), [1.0, 1.0, -2.0, 1.0, 0.0, -1.0, 1.0, -1.5])
    assert graph.reduced_rhs(zero_delta).equals(-e)
    assert graph.rhs().equals(graph.reduced_rhs(zero_delta))
    assert_allclose(0.5 * e.dot(e), graph.error(zero_delta))


def test_multiply(graph, correct_delta):
    e = graph @ correct_delta
    assert e.equals(graph.rhs(), 1e-9)


def test_multiply_in_place(graph, random):
    x = VectorConfig((k, random.standard_normal(2)) for k in graph.keys)
    e = Errors([np.zeros(3)] + [np.zeros(2)] * 4)
    end = graph.multiply_in_place(x, e, 1)
    assert end == 5
    assert_allclose(e[0], np.zeros(3))
    assert e[1:].equals(graph.multiply(x))
    with pytest.raises(OrderMismatch):
        graph.multiply_in_place(x, e, 2)


def test_transpose_multiply(graph, random):
    x = VectorConfig((k, random.standard_normal(2)) for k in graph.keys)
    e = Errors(random.standard_normal(2) for _ in range(len(graph)))
    assert_allclose(graph.multiply(x).dot(e), x.dot(graph.transpose_multiply(e)))

    y = x.copy()
    graph.transpose_multiply_add(-2.0, e, y)
    assert y.equals(x - 2.0 * graph.transpose_multiply(e), 1e-10)

    with pytest.raises(OrderMismatch):
        graph.transpose_multiply(e[1:])


def test_empty_factor_neutrality(graph, zero_delta):
    padded = LinearFactorGraph(list(graph) + [LinearFactor()])
    assert_allclose(padded.error(zero_delta), graph.error(zero_delta))
    e = padded.multiply(zero_delta)
    assert e.dims() == [2, 2, 2, 2, 0]
    g = padded.transpose_multiply(padded.errors(zero_delta))
    assert g.equals(graph.transpose_multiply(graph.errors(zero_delta)), 1e-12)


def test_combine_factors(graph):
    combined, rest = graph.combine_factors("x2")
    assert combined.keys == ("x1", "x2", "l1")
    assert combined.num_rows == 4
    assert len(rest) == 2
    assert rest[0].equals(graph[0])
    assert rest[1].equals(graph[2])
    with pytest.raises(MissingKey):
        graph.combine_factors("x9")


def test_eliminate_one(graph):
    conditional, rest = graph.eliminate_one("x2")
    assert conditional.key == "x2"
    assert set(conditional.parents) == {"x1", "l1"}
    assert len(rest) == 3
    assert set(rest[-1].keys) == {"x1", "l1"}


def test_eliminate(graph):
    bayes_net = graph.eliminate(SMALL_ORDERING)
    assert bayes_net.keys == SMALL_ORDERING
    conditional = bayes_net[0]
    s = 1 / np.sqrt(125.0)
    assert_allclose(conditional.d, [0.2, -0.14])
    assert_allclose(conditional.parent_block("l1"), -0.2 * np.eye(2))
    assert_allclose(conditional.parent_block("x1"), -0.8 * np.eye(2))
    assert_allclose(conditional.sigmas, [s, s])


def test_optimize(graph, correct_delta):
    assert graph.optimize(SMALL_ORDERING).equals(correct_delta, 1e-9)
    assert graph.optimize(["x1", "l1", "x2"]).equals(correct_delta, 1e-9)


def test_optimize_least_squares(random):
    spanning, constraints, ordering = create_planar_chain(random=random)
    full = LinearFactorGraph(list(spanning) + list(constraints))
    x = full.optimize(ordering)

    i, j, s = full.sparse(ordering)
    A = np.zeros((full.num_rows, 20))
    A[np.array(i) - 1, np.array(j) - 1] = s
    b = full.rhs().vector()
    expected = np.linalg.lstsq(A, b, rcond=None)[0]
    assert_allclose(x.vector(ordering), expected, atol=1e-8, rtol=1e-8)


def test_matrix(graph):
    A, b = graph.matrix(["x1", "x2", "l1"])
    assert A.shape == (8, 6)
    assert_allclose(A[:2], np.eye(2, 6))
    assert_allclose(b, [-0.1, -0.1, 0.2, -0.1, 0.0, 0.2, -0.2, 0.3])


def test_sparse(graph):
    i, j, s = graph.sparse(["x1", "x2", "l1"])
    assert len(i) == len(j) == len(s) == 14
    assert i[:2] == [1, 2]
    assert j[:2] == [1, 2]
    assert s[:2] == pytest.approx([10.0, 10.0])
    assert i[-2:] == [7, 8]
    assert j[-2:] == [5, 6]
    assert s[-2:] == pytest.approx([5.0, 5.0])
