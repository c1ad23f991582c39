"""
matrix.py
~~~~~~~~~

Matrix and math primitives the network is built from.

Every function returns a new float64 array and leaves its operands
untouched. Incompatible operand shapes raise DimensionMismatchError.
"""

import math
from typing import Callable, Sequence, Union

import numpy as np

from digitnet.errors import ConfigurationError, DimensionMismatchError

Scalar = Union[int, float]


def _as_matrix(a, name: str) -> np.ndarray:
    """Return ``a`` as a 2-D float64 array, rejecting any other rank."""
    m = np.asarray(a, dtype=np.float64)
    if m.ndim != 2:
        raise DimensionMismatchError(
            f"{name} must be a 2-D matrix, got shape {m.shape}"
        )
    return m


def _require_same_shape(op: str, a: np.ndarray, b: np.ndarray) -> None:
    if a.shape != b.shape:
        raise DimensionMismatchError(
            f"{op}: operand shapes differ ({a.shape} vs {b.shape})"
        )


def column(values: Sequence[float]) -> np.ndarray:
    """Copy a flat sequence of numbers into an (n, 1) column vector."""
    return np.array(values, dtype=np.float64).reshape(-1, 1)


def dot(a, b) -> np.ndarray:
    """
    Matrix product of ``a`` (m x n) and ``b`` (n x p).

    Returns:
        np.ndarray: an (m x p) matrix

    Raises:
        DimensionMismatchError: if ``a`` has a different number of
            columns than ``b`` has rows
    """
    a = _as_matrix(a, 'dot: left operand')
    b = _as_matrix(b, 'dot: right operand')
    if a.shape[1] != b.shape[0]:
        raise DimensionMismatchError(
            f"dot: cannot multiply {a.shape} by {b.shape}"
        )
    return np.dot(a, b)


def transpose(a) -> np.ndarray:
    """Return a new matrix with rows and columns swapped."""
    return _as_matrix(a, 'transpose: operand').T.copy()


def add(a, b) -> np.ndarray:
    a = _as_matrix(a, 'add: left operand')
    b = _as_matrix(b, 'add: right operand')
    _require_same_shape('add', a, b)
    return a + b


def subtract(a, b) -> np.ndarray:
    a = _as_matrix(a, 'subtract: left operand')
    b = _as_matrix(b, 'subtract: right operand')
    _require_same_shape('subtract', a, b)
    return a - b


def multiply(a, b) -> np.ndarray:
    """Element-wise (Hadamard) product of two equally shaped matrices."""
    a = _as_matrix(a, 'multiply: left operand')
    b = _as_matrix(b, 'multiply: right operand')
    _require_same_shape('multiply', a, b)
    return a * b


def scale(k: Scalar, a) -> np.ndarray:
    return float(k) * _as_matrix(a, 'scale: operand')


def apply(func: Callable[[np.ndarray], np.ndarray], a) -> np.ndarray:
    """
    Apply an element-wise function to every entry of ``a``.

    ``func`` is called once with the whole array, so it must be written
    with numpy element-wise operations (wrap a pure scalar function in
    ``np.vectorize`` first).

    Raises:
        DimensionMismatchError: if ``func`` does not preserve the shape
    """
    a = _as_matrix(a, 'apply: operand')
    result = np.asarray(func(a), dtype=np.float64)
    if result.shape != a.shape:
        raise DimensionMismatchError(
            f"apply: {getattr(func, '__name__', func)!r} changed shape "
            f"{a.shape} to {result.shape}"
        )
    return result


def sigmoid(x):
    """
    Logistic function ``1 / (1 + e^-x)``.

    Computed as ``exp(-log(1 + e^-x))`` so very negative inputs do not
    overflow. Accepts scalars and arrays.
    """
    return np.exp(-np.logaddexp(0.0, -np.asarray(x, dtype=np.float64)))


def sigmoid_prime(y):
    """
    Derivative of the sigmoid in terms of its *output* ``y``.

    ``y`` must already be ``sigmoid(x)``; passing the pre-activation
    ``x`` gives a wrong gradient.
    """
    y = np.asarray(y, dtype=np.float64)
    return y * (1.0 - y)


def random_array(
    n: int,
    scale_factor: Scalar,
    rng: np.random.Generator
) -> np.ndarray:
    """
    Draw ``n`` values uniformly from
    ``(-1/sqrt(scale_factor), 1/sqrt(scale_factor))``.

    Args:
        n: Number of values
        scale_factor: Fan-in of the layer being initialised
        rng: Random source; nothing here touches global random state

    Returns:
        np.ndarray: flat array of length ``n``
    """
    if n <= 0:
        raise ConfigurationError(f"random_array needs n > 0, got {n}")
    if scale_factor <= 0:
        raise ConfigurationError(
            f"random_array needs scale_factor > 0, got {scale_factor}"
        )
    bound = 1.0 / math.sqrt(scale_factor)
    return rng.uniform(-bound, bound, size=n)
