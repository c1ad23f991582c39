"""
network.py
~~~~~~~~~~

A feed-forward network with exactly one hidden layer, trained one sample
at a time by gradient descent with backpropagation.

Both layers use the sigmoid activation and there are no bias terms. The
only state is the two weight matrices:

    hidden_weights  (hidden_size x input_size)
    output_weights  (output_size x hidden_size)

Entry (i, j) of a weight matrix is the weight from unit j of the lower
layer to unit i of the upper layer.
"""

import logging
import math
import numbers
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from digitnet import matrix
from digitnet.errors import (
    ConfigurationError,
    DimensionMismatchError,
    InputShapeError
)

logger = logging.getLogger(__name__)

RandomSource = Union[np.random.Generator, int, None]


def _check_size(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ConfigurationError(
            f"{name} must be a positive integer, got {value!r}"
        )
    if value <= 0:
        raise ConfigurationError(
            f"{name} must be a positive integer, got {value}"
        )
    return int(value)


def _check_rate(value) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ConfigurationError(
            f"learning_rate must be a positive number, got {value!r}"
        )
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(
            f"learning_rate must be a positive number, got {value}"
        )
    return float(value)


def _make_rng(rng: RandomSource) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    if rng is None:
        return np.random.default_rng()
    if isinstance(rng, numbers.Integral) and not isinstance(rng, bool):
        if rng < 0:
            raise ConfigurationError(f"rng seed must be non-negative, got {rng}")
        return np.random.default_rng(int(rng))
    raise ConfigurationError(
        f"rng must be a numpy Generator, an int seed or None, got {rng!r}"
    )


def _as_column(values, name: str, expected: int) -> np.ndarray:
    """
    Copy ``values`` into an (expected, 1) column vector.

    Flat sequences and (n, 1) columns are accepted; anything else, or a
    length other than ``expected``, raises InputShapeError.
    """
    try:
        arr = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InputShapeError(name, expected, f"non-numeric data ({e})")

    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise InputShapeError(name, expected, f"shape {arr.shape}")
    if arr.shape[0] != expected:
        raise InputShapeError(name, expected, arr.shape[0])
    return arr.reshape(-1, 1)


def predicted_class(outputs) -> int:
    """
    Index of the largest output activation.

    Ties resolve to the lowest index.

    Example:
        >>> predicted_class([0.7, 0.3])
        0
    """
    flat = np.asarray(outputs, dtype=np.float64).ravel()
    if flat.size == 0:
        raise ValueError("outputs must not be empty")
    return int(np.argmax(flat))


class Network:
    """
    Single-hidden-layer sigmoid network.

    Args:
        input_size: Number of input units (784 for MNIST)
        hidden_size: Number of hidden units
        output_size: Number of output units (10 for MNIST)
        learning_rate: Step size of every weight update
        rng: numpy Generator, int seed, or None for an unseeded generator

    Raises:
        ConfigurationError: if a size or the learning rate is not positive

    Not thread-safe: concurrent ``train`` calls on one instance race on
    the weight matrices.
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        output_size: int,
        learning_rate: float,
        rng: RandomSource = None
    ):
        input_size = _check_size('input_size', input_size)
        hidden_size = _check_size('hidden_size', hidden_size)
        output_size = _check_size('output_size', output_size)
        learning_rate = _check_rate(learning_rate)
        generator = _make_rng(rng)

        # Hidden weights are drawn first, then output weights
        hidden = matrix.random_array(
            hidden_size * input_size, input_size, generator
        ).reshape(hidden_size, input_size)
        output = matrix.random_array(
            output_size * hidden_size, hidden_size, generator
        ).reshape(output_size, hidden_size)

        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.learning_rate = learning_rate
        self.hidden_weights = hidden
        self.output_weights = output

        logger.debug(f"Created {self!r}")

    @classmethod
    def from_weights(
        cls,
        hidden_weights,
        output_weights,
        learning_rate: float
    ) -> 'Network':
        """
        Build a network around existing weight matrices.

        The layer sizes are read off the matrix shapes, which must chain:
        ``output_weights`` needs one column per row of ``hidden_weights``.

        Raises:
            ConfigurationError: on non-2-D or non-chaining matrices
        """
        hidden = np.array(hidden_weights, dtype=np.float64)
        output = np.array(output_weights, dtype=np.float64)
        if hidden.ndim != 2 or output.ndim != 2 or 0 in hidden.shape + output.shape:
            raise ConfigurationError(
                f"weights must be non-empty 2-D matrices, got "
                f"{hidden.shape} and {output.shape}"
            )
        if output.shape[1] != hidden.shape[0]:
            raise ConfigurationError(
                f"output weights {output.shape} do not follow hidden "
                f"weights {hidden.shape}"
            )

        net = cls.__new__(cls)
        net.input_size = hidden.shape[1]
        net.hidden_size = hidden.shape[0]
        net.output_size = output.shape[0]
        net.learning_rate = _check_rate(learning_rate)
        net.hidden_weights = hidden
        net.output_weights = output
        return net

    def __repr__(self) -> str:
        return (
            f"Network(input_size={self.input_size}, "
            f"hidden_size={self.hidden_size}, "
            f"output_size={self.output_size}, "
            f"learning_rate={self.learning_rate})"
        )

    @property
    def sizes(self) -> List[int]:
        """Layer sizes as ``[input, hidden, output]``."""
        return [self.input_size, self.hidden_size, self.output_size]

    # ------------------------------------------------------------------
    # Forward / backward passes
    # ------------------------------------------------------------------

    def _forward(self, inputs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(hidden_outputs, final_outputs)`` for a column input."""
        hidden_inputs = matrix.dot(self.hidden_weights, inputs)
        hidden_outputs = matrix.apply(matrix.sigmoid, hidden_inputs)
        final_inputs = matrix.dot(self.output_weights, hidden_outputs)
        final_outputs = matrix.apply(matrix.sigmoid, final_inputs)
        return hidden_outputs, final_outputs

    def predict(self, input_vector: Sequence[float]) -> np.ndarray:
        """
        Run the forward pass.

        Args:
            input_vector: ``input_size`` scaled input values

        Returns:
            np.ndarray: (output_size, 1) column of activations in (0, 1)

        Raises:
            InputShapeError: if the input has the wrong length
        """
        inputs = _as_column(input_vector, 'input vector', self.input_size)
        try:
            _, final_outputs = self._forward(inputs)
        except DimensionMismatchError:
            logger.error(f"Weight shapes broken during predict on {self!r}")
            raise
        return final_outputs

    def train(
        self,
        input_vector: Sequence[float],
        target_vector: Sequence[float]
    ) -> None:
        """
        Run one gradient-descent step on a single sample.

        Both weight matrices are updated in place, and only after both
        updates have been computed, so a failure leaves them untouched.

        Args:
            input_vector: ``input_size`` scaled input values
            target_vector: ``output_size`` target activations

        Raises:
            InputShapeError: if either vector has the wrong length
        """
        inputs = _as_column(input_vector, 'input vector', self.input_size)
        targets = _as_column(target_vector, 'target vector', self.output_size)

        try:
            hidden_outputs, final_outputs = self._forward(inputs)

            output_errors = matrix.subtract(targets, final_outputs)
            hidden_errors = matrix.dot(
                matrix.transpose(self.output_weights), output_errors
            )

            output_delta = matrix.scale(
                self.learning_rate,
                matrix.dot(
                    matrix.multiply(
                        output_errors, matrix.sigmoid_prime(final_outputs)
                    ),
                    matrix.transpose(hidden_outputs)
                )
            )
            hidden_delta = matrix.scale(
                self.learning_rate,
                matrix.dot(
                    matrix.multiply(
                        hidden_errors, matrix.sigmoid_prime(hidden_outputs)
                    ),
                    matrix.transpose(inputs)
                )
            )
            if (output_delta.shape != self.output_weights.shape
                    or hidden_delta.shape != self.hidden_weights.shape):
                raise DimensionMismatchError(
                    f"update shapes {hidden_delta.shape}/{output_delta.shape} "
                    f"do not match weights {self.hidden_weights.shape}/"
                    f"{self.output_weights.shape}"
                )
        except DimensionMismatchError:
            logger.error(f"Weight shapes broken during train on {self!r}")
            raise

        self.output_weights += output_delta
        self.hidden_weights += hidden_delta

    def squared_error(
        self,
        input_vector: Sequence[float],
        target_vector: Sequence[float]
    ) -> float:
        """Sum of squared differences between target and prediction."""
        targets = _as_column(target_vector, 'target vector', self.output_size)
        outputs = self.predict(input_vector)
        return float(np.sum((targets - outputs) ** 2))

    # ------------------------------------------------------------------
    # Weight access for persistence
    # ------------------------------------------------------------------

    def weights(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of ``(hidden_weights, output_weights)``."""
        return self.hidden_weights.copy(), self.output_weights.copy()

    def load_weights(self, hidden_weights, output_weights) -> None:
        """
        Replace both weight matrices with same-shaped values.

        Raises:
            ConfigurationError: if either shape differs; nothing is changed
        """
        hidden = np.array(hidden_weights, dtype=np.float64)
        output = np.array(output_weights, dtype=np.float64)
        if hidden.shape != self.hidden_weights.shape:
            raise ConfigurationError(
                f"hidden weights must have shape {self.hidden_weights.shape}, "
                f"got {hidden.shape}"
            )
        if output.shape != self.output_weights.shape:
            raise ConfigurationError(
                f"output weights must have shape {self.output_weights.shape}, "
                f"got {output.shape}"
            )
        self.hidden_weights[...] = hidden
        self.output_weights[...] = output
        logger.debug(f"Replaced weights of {self!r}")


def create_network(
    inputs: int,
    hiddens: int,
    outputs: int,
    learning_rate: float,
    rng: Optional[RandomSource] = None
) -> Network:
    """
    Create a network with randomly initialised weights.

    Example:
        >>> net = create_network(784, 200, 10, 0.1, rng=42)
        >>> net.hidden_weights.shape
        (200, 784)
    """
    return Network(inputs, hiddens, outputs, learning_rate, rng=rng)
