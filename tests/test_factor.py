# mypy: ignore-errors

import jax.numpy as jnp
import numpy as np
import pytest

from tinyfg import GaussianConditional, LinearFactor, VectorConfig
from tinyfg.exceptions import DimensionMismatch, MissingKey, SingularPivot
from tinyfg.factor import weighted_eliminate
from tinyfg.test_utils import assert_allclose

EYE = np.eye(2)


def test_linear_factor(graph):
    expected = LinearFactor([("x1", -EYE), ("x2", EYE)], [0.2, -0.1], 0.1)
    assert graph[1].equals(expected)


def test_keys_and_dimensions(graph):
    assert graph[1].keys == ("x1", "x2")
    assert graph[1].dimensions() == {"x1": 2, "x2": 2}
    assert graph[0].get_dim("x1") == 2
    assert graph[1].involves("x2")
    assert not graph[1].involves("l1")
    with pytest.raises(MissingKey):
        graph[0].get_dim("x2")


def test_size(graph):
    assert graph[0].size == 1
    assert graph[1].size == 2
    assert graph[2].size == 2
    assert graph[1].num_rows == 2


def test_construction_errors():
    with pytest.raises(ValueError):
        LinearFactor([("x", EYE)])
    with pytest.raises(DimensionMismatch):
        LinearFactor([("x", EYE), ("y", np.ones((3, 2)))], np.zeros(2))
    with pytest.raises(DimensionMismatch):
        LinearFactor([("x", EYE)], np.zeros(2), [1.0, 1.0, 1.0])
    with pytest.raises(ValueError):
        LinearFactor([("x", EYE)], np.zeros(2), [1.0, 0.0])


def test_combine(graph):
    combined = LinearFactor.combine([graph[3], graph[1]])
    Ax2 = np.array([[-1.0, 0.0], [0.0, -1.0], [1.0, 0.0], [0.0, 1.0]])
    Al1 = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0], [0.0, 0.0]])
    Ax1 = np.array([[0.0, 0.0], [0.0, 0.0], [-1.0, 0.0], [0.0, -1.0]])
    expected = LinearFactor(
        [("x2", Ax2), ("l1", Al1), ("x1", Ax1)],
        [-0.2, 0.3, 0.2, -0.1],
        [0.2, 0.2, 0.1, 0.1],
    )
    assert combined.keys == ("x2", "l1", "x1")
    assert combined.equals(expected)


def test_combine_repeated_key():
    A = np.array([[1.0, 0.0], [0.0, -1.0]])
    b = np.array([2.0, -1.0])
    f1 = LinearFactor([("x1", EYE)], b * 0.0957, 0.0957)
    f2 = LinearFactor([("x1", A)], np.array([4.0, -5.0]) * 0.5, 0.5)
    f3 = LinearFactor([("x1", A)], np.array([3.0, -88.0]) * 0.25, 0.25)
    f4 = LinearFactor([("x1", np.diag([0.6, 0.7]))], np.array([0.5, -0.6]), 0.1)
    combined = LinearFactor.combine([f1, f2, f3, f4])

    expected = LinearFactor(
        [("x1", np.concatenate([EYE, A, A, np.diag([0.6, 0.7])]))],
        [
            2 * 0.0957,
            -1 * 0.0957,
            4 * 0.5,
            -5 * 0.5,
            3 * 0.25,
            -88 * 0.25,
            0.5,
            -0.6,
        ],
        [0.0957, 0.0957, 0.5, 0.5, 0.25, 0.25, 0.1, 0.1],
    )
    assert combined.equals(expected)


def test_combine_chain():
    def odometry(a, b, rhs):
        return LinearFactor([(a, -10 * EYE), (b, 10 * EYE)], rhs)

    combined = LinearFactor.combine(
        [
            LinearFactor([("x1", EYE)], [10.0, 5.0]),
            odometry("x1", "x2", [1.0, -2.0]),
            odometry("x2", "x3", [1.5, -1.5]),
            odometry("x3", "x4", [2.0, -1.0]),
        ]
    )
    assert combined.keys == ("x1", "x2", "x3", "x4")
    assert combined.num_rows == 8

    A, b = combined.matrix(["x1", "x2", "x3", "x4"])
    expected = np.zeros((8, 8))
    expected[:2, :2] = EYE
    for k in range(3):
        expected[2 + 2 * k : 4 + 2 * k, 2 * k : 2 * k + 2] = -10 * EYE
        expected[2 + 2 * k : 4 + 2 * k, 2 * k + 2 : 2 * k + 4] = 10 * EYE
    assert_allclose(A, expected)
    assert_allclose(b, [10.0, 5.0, 1.0, -2.0, 1.5, -1.5, 2.0, -1.0])
    assert_allclose(combined.sigmas, np.ones(8))


def test_combine_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        LinearFactor.combine(
            [
                LinearFactor([("x", EYE)], np.zeros(2)),
                LinearFactor([("x", np.ones((1, 3)))], np.zeros(1)),
            ]
        )


def test_combine_skips_empty(graph):
    combined = LinearFactor.combine([LinearFactor(), graph[0]])
    assert combined.equals(graph[0])
    assert LinearFactor.combine([LinearFactor(), LinearFactor()]).empty


def test_error(graph, zero_delta, correct_delta):
    assert_allclose(graph[0].error(zero_delta), 1.0)
    for f in graph:
        assert_allclose(f.error(correct_delta), 0.0)


def test_error_vector(graph, zero_delta):
    f = graph[1]
    assert_allclose(f.unwhitened_error(zero_delta), [-0.2, 0.1])
    assert_allclose(f.error_vector(zero_delta), [-2.0, 1.0])


def test_error_missing_key(graph):
    with pytest.raises(MissingKey):
        graph[1].error(VectorConfig({"x1": np.zeros(2)}))


def test_error_dimension_mismatch(graph):
    with pytest.raises(DimensionMismatch):
        graph[0].error(VectorConfig({"x1": np.zeros(3)}))


def test_multiply(graph, correct_delta):
    f = graph[1]
    assert_allclose(f.multiply(correct_delta), [2.0, -1.0])
    assert_allclose(f @ correct_delta, [2.0, -1.0])


def test_transpose_multiply(graph):
    f = graph[1]
    result = f.transpose_multiply(jnp.array([1.0, 2.0]))
    assert set(result.keys()) == {"x1", "x2"}
    assert_allclose(result["x1"], [-10.0, -20.0])
    assert_allclose(result["x2"], [10.0, 20.0])

    x = VectorConfig({"x1": [1.0, 1.0], "l1": [5.0, 5.0]})
    f.transpose_multiply_add(0.5, jnp.array([1.0, 2.0]), x)
    assert_allclose(x["x1"], [-4.0, -9.0])
    assert_allclose(x["x2"], [5.0, 10.0])
    assert_allclose(x["l1"], [5.0, 5.0])

    with pytest.raises(DimensionMismatch):
        f.transpose_multiply(jnp.ones(3))


def test_adjoint(graph, random):
    f = LinearFactor.combine(graph)
    x = VectorConfig((k, random.standard_normal(2)) for k in f.keys)
    e = random.standard_normal(f.num_rows)
    assert_allclose(jnp.dot(f.multiply(x), e), x.dot(f.transpose_multiply(e)))


def test_eliminate(graph):
    combined = LinearFactor.combine([graph[3], graph[1]])
    conditional, remainder = combined.eliminate("x2")

    s = 1 / np.sqrt(125.0)
    expected_conditional = GaussianConditional(
        "x2",
        [0.2, -0.14],
        EYE,
        [("l1", -0.2 * EYE), ("x1", -0.8 * EYE)],
        [s, s],
    )
    expected_remainder = LinearFactor(
        [("l1", EYE), ("x1", -EYE)], [0.0, 0.2], 0.2236
    )
    assert conditional.equals(expected_conditional, 1e-4)
    assert remainder.equals(expected_remainder, 1e-5)
    assert_allclose(remainder.sigmas, np.full(2, np.sqrt(0.05)))


def test_eliminate_multivariate_parent():
    Ax2 = np.array([[-1.0, 0.0], [0.0, -1.0], [1.0, 0.0], [0.0, 1.0]])
    Al1x1 = np.array(
        [
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, -1.0, 0.0],
            [0.0, 0.0, 0.0, -1.0],
        ]
    )
    combined = LinearFactor(
        [("x2", Ax2), ("l1x1", Al1x1)],
        [-0.2, 0.3, 0.2, -0.1],
        [0.2, 0.2, 0.1, 0.1],
    )
    conditional, remainder = combined.eliminate("x2")

    S = np.array([[-0.2, 0.0, -0.8, 0.0], [0.0, -0.2, 0.0, -0.8]])
    expected_conditional = GaussianConditional(
        "x2", [0.2, -0.14], EYE, [("l1x1", S)], [0.0894427, 0.0894427]
    )
    B = np.array([[1.0, 0.0, -1.0, 0.0], [0.0, 1.0, 0.0, -1.0]])
    sigma = 0.2236
    expected_remainder = LinearFactor(
        [("l1x1", B)], np.array([0.0, 0.894427]) * sigma, sigma
    )
    assert conditional.equals(expected_conditional, 1e-4)
    assert remainder.equals(expected_remainder, 1e-5)


def test_eliminate_exhausted_rank():
    f = LinearFactor([("x1", -EYE), ("x2", EYE)], [0.2, -0.1], 0.1)
    conditional, remainder = f.eliminate("x2")

    assert conditional.parents == ("x1",)
    assert_allclose(conditional.R, EYE)
    assert_allclose(conditional.parent_block("x1"), -EYE)
    assert_allclose(conditional.d, [0.2, -0.1])
    assert_allclose(conditional.sigmas, [0.1, 0.1])
    assert remainder.empty


def test_eliminate_singular():
    f = LinearFactor([("x1", np.array([[1.0, 0.0]])), ("x2", [[1.0]])], [1.0])
    with pytest.raises(SingularPivot):
        f.eliminate("x1")
    with pytest.raises(MissingKey):
        f.eliminate("x3")


def test_eliminate_preserves_error(graph, random):
    f = LinearFactor.combine([graph[3], graph[1]])
    conditional, remainder = f.eliminate("x2")
    recombined = LinearFactor.combine([conditional.to_factor(), remainder])
    for _ in range(5):
        x = VectorConfig((k, random.standard_normal(2)) for k in f.keys)
        assert_allclose(recombined.error(x), f.error(x), atol=1e-9, rtol=1e-9)


def test_weighted_eliminate_skips_empty_column():
    A = jnp.array([[0.0, 1.0], [0.0, 2.0]])
    rows = weighted_eliminate(A, jnp.array([1.0, 2.0]), jnp.ones(2))
    assert [row.pivot for row in rows] == [1]
    assert_allclose(rows[0].r, [0.0, 1.0])
    assert_allclose(rows[0].d, 1.0)
    assert_allclose(rows[0].sigma, 1 / np.sqrt(5.0))


def test_default_error():
    assert LinearFactor().error(VectorConfig()) == 0.0


def test_empty():
    f = LinearFactor()
    assert f.empty
    assert f.num_rows == 0
    assert f.multiply(VectorConfig()).shape == (0,)
    assert LinearFactor().equals(f)


def test_eliminate_empty():
    conditional, remainder = LinearFactor().eliminate("x2")
    assert conditional.equals(GaussianConditional("x2"))
    assert conditional.dim == 0
    assert conditional.parents == ()
    assert remainder.equals(LinearFactor())


def test_matrix(graph):
    A, b = graph[1].matrix(["x1", "x2"])
    assert_allclose(A, [[-1.0, 0.0, 1.0, 0.0], [0.0, -1.0, 0.0, 1.0]])
    assert_allclose(b, [0.2, -0.1])


def test_matrix_zero_padding(graph):
    A, _ = graph[0].matrix(["x2", "x1"], graph.dimensions())
    assert_allclose(A, [[0.0, 0.0, 1.0, 0.0], [0.0, 0.0, 0.0, 1.0]])
    with pytest.raises(MissingKey):
        graph[0].matrix(["x2", "x1"])


def test_matrix_augmented(graph):
    Ab = graph[1].matrix_augmented(["x1", "x2"])
    assert_allclose(
        Ab, [[-1.0, 0.0, 1.0, 0.0, 0.2], [0.0, -1.0, 0.0, 1.0, -0.1]]
    )


def test_sparse(graph):
    i, j, s = graph[1].sparse(["x1", "x2"], graph.dimensions())
    assert i == [1, 2, 1, 2]
    assert j == [1, 2, 3, 4]
    assert s == pytest.approx([-10.0, -10.0, 10.0, 10.0])


def test_sparse_with_offsets(graph):
    i, j, s = graph[1].sparse(["x2", "l1", "x1"], graph.dimensions())
    assert i == [1, 2, 1, 2]
    assert j == [1, 2, 5, 6]
    assert s == pytest.approx([10.0, 10.0, -10.0, -10.0])

    i, _, _ = graph[1].sparse(["x2", "l1", "x1"], graph.dimensions(), row_offset=4)
    assert i == [5, 6, 5, 6]


def test_from_conditional():
    S = np.array([[-0.200001, 0.0], [0.0, -0.200001]])
    d = [2.23607, -1.56525]
    conditional = GaussianConditional("x2", d, EYE, [("l1x1", S)], 0.29907)
    expected = LinearFactor([("x2", EYE), ("l1x1", S)], d, 0.29907)
    assert LinearFactor.from_conditional(conditional).equals(expected, 1e-5)
    assert conditional.to_factor().equals(expected, 1e-5)
    assert LinearFactor.from_conditional(GaussianConditional("x")).empty
