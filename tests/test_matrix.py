"""
test_matrix.py
~~~~~~~~~~~~~~

Unit tests for the matrix and math primitives.
"""

import math
import warnings

import numpy as np
import pytest

from digitnet import matrix
from digitnet.errors import ConfigurationError, DimensionMismatchError


@pytest.mark.unit
class TestLinearAlgebra:
    """dot, transpose and the element-wise operations."""

    def test_dot_shape_and_values(self):
        a = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
        b = np.array([[1.0], [0.0], [-1.0]])

        result = matrix.dot(a, b)

        assert result.shape == (2, 1)
        assert result.tolist() == [[-2.0], [-2.0]]

    def test_dot_rejects_mismatched_operands(self):
        with pytest.raises(DimensionMismatchError):
            matrix.dot(np.ones((2, 3)), np.ones((2, 3)))

    def test_dot_rejects_flat_vectors(self):
        with pytest.raises(DimensionMismatchError):
            matrix.dot(np.ones((2, 3)), np.ones(3))

    def test_transpose_returns_copy(self):
        a = np.array([[1.0, 2.0, 3.0]])

        t = matrix.transpose(a)
        t[0, 0] = 99.0

        assert t.shape == (3, 1)
        assert a[0, 0] == 1.0

    def test_transpose_entries(self):
        a = np.arange(6, dtype=float).reshape(2, 3)
        t = matrix.transpose(a)
        for i in range(3):
            for j in range(2):
                assert t[i, j] == a[j, i]

    @pytest.mark.parametrize("op, expected", [
        (matrix.add, [[4.0, 6.0]]),
        (matrix.subtract, [[-2.0, -2.0]]),
        (matrix.multiply, [[3.0, 8.0]]),
    ])
    def test_elementwise(self, op, expected):
        a = np.array([[1.0, 2.0]])
        b = np.array([[3.0, 4.0]])

        assert op(a, b).tolist() == expected
        # operands untouched
        assert a.tolist() == [[1.0, 2.0]]
        assert b.tolist() == [[3.0, 4.0]]

    @pytest.mark.parametrize("op", [matrix.add, matrix.subtract, matrix.multiply])
    def test_elementwise_rejects_shape_mismatch(self, op):
        with pytest.raises(DimensionMismatchError):
            op(np.ones((2, 1)), np.ones((1, 2)))

    def test_scale(self):
        a = np.array([[1.0, -2.0], [0.5, 0.0]])
        assert matrix.scale(2, a).tolist() == [[2.0, -4.0], [1.0, 0.0]]

    def test_column(self):
        col = matrix.column([1, 2, 3])
        assert col.shape == (3, 1)
        assert col.dtype == np.float64


@pytest.mark.unit
class TestApply:

    def test_apply_preserves_shape(self):
        a = np.array([[1.0, 4.0], [9.0, 16.0]])
        assert matrix.apply(np.sqrt, a).tolist() == [[1.0, 2.0], [3.0, 4.0]]

    def test_apply_with_vectorized_scalar_function(self):
        a = np.array([[0.0], [1.0]])
        result = matrix.apply(np.vectorize(lambda x: x + 1.0), a)
        assert result.tolist() == [[1.0], [2.0]]

    def test_apply_rejects_shape_change(self):
        with pytest.raises(DimensionMismatchError):
            matrix.apply(np.sum, np.ones((2, 2)))


@pytest.mark.unit
class TestSigmoid:

    def test_sigmoid_known_values(self):
        assert matrix.sigmoid(0.0) == pytest.approx(0.5)
        assert matrix.sigmoid(2.0) == pytest.approx(1.0 / (1.0 + math.exp(-2.0)))
        assert matrix.sigmoid(-2.0) == pytest.approx(1.0 / (1.0 + math.exp(2.0)))

    def test_sigmoid_large_inputs_do_not_overflow(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            values = matrix.sigmoid(np.array([-1000.0, 1000.0]))
        assert np.all(np.isfinite(values))
        assert 0.0 <= values[0] < 1e-300
        assert values[1] == 1.0

    def test_sigmoid_prime_uses_output(self):
        # y * (1 - y), evaluated at an activation value
        assert matrix.sigmoid_prime(0.5) == pytest.approx(0.25)
        assert matrix.sigmoid_prime(0.99) == pytest.approx(0.99 * 0.01)

    def test_sigmoid_prime_matches_numeric_derivative(self):
        x = 0.3
        h = 1e-6
        numeric = (matrix.sigmoid(x + h) - matrix.sigmoid(x - h)) / (2 * h)
        assert matrix.sigmoid_prime(matrix.sigmoid(x)) == pytest.approx(numeric, rel=1e-6)


@pytest.mark.unit
class TestRandomArray:

    def test_values_within_bounds(self):
        values = matrix.random_array(10000, 16, np.random.default_rng(1))
        assert values.shape == (10000,)
        assert np.all(values > -0.25)
        assert np.all(values < 0.25)

    def test_same_seed_same_values(self):
        a = matrix.random_array(5, 4, np.random.default_rng(3))
        b = matrix.random_array(5, 4, np.random.default_rng(3))
        assert np.array_equal(a, b)

    @pytest.mark.parametrize("n, scale_factor", [(0, 4), (-1, 4), (5, 0), (5, -2)])
    def test_rejects_invalid_arguments(self, n, scale_factor):
        with pytest.raises(ConfigurationError):
            matrix.random_array(n, scale_factor, np.random.default_rng(0))
