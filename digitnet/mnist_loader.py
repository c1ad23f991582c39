"""
mnist_loader.py
~~~~~~~~~~~~~~~

Read MNIST samples from the CSV distribution of the dataset.

Each row holds the digit label followed by the pixel values (0-255) of a
28x28 image in row-major order. Pixels are scaled into [0.01, 1.0] and
labels become one-hot targets of 0.01/0.99 so the sigmoid is never asked
for exactly 0 or 1.
"""

import csv
import logging
from typing import Iterator, List, NamedTuple, Sequence, Tuple

import numpy as np

from digitnet.errors import DatasetError

logger = logging.getLogger(__name__)

INPUT_SIZE = 784
OUTPUT_SIZE = 10

TARGET_OFF = 0.01
TARGET_ON = 0.99


class Sample(NamedTuple):
    """One labelled example, ready to feed to the network."""
    label: int
    inputs: np.ndarray
    targets: np.ndarray


def normalize_pixels(values: Sequence[float]) -> np.ndarray:
    """
    Scale raw 0-255 pixel values into [0.01, 1.0].

    Example:
        >>> normalize_pixels([0, 255]).tolist()
        [0.01, 1.0]
    """
    pixels = np.asarray(values, dtype=np.float64)
    return (pixels / 255.0 * 0.99) + 0.01


def check_pixels(values: Sequence[float]) -> np.ndarray:
    """
    Return raw pixel values as a float array, rejecting anything outside
    [0, 255].

    Raises:
        DatasetError: on NaN, infinite or out-of-range values
    """
    pixels = np.asarray(values, dtype=np.float64)
    # NaN fails both comparisons, so it is rejected here too
    if not np.all((pixels >= 0) & (pixels <= 255)):
        raise DatasetError("pixel values must lie in [0, 255]")
    return pixels


def one_hot(label: int, size: int = OUTPUT_SIZE) -> np.ndarray:
    """
    Target vector with 0.99 at ``label`` and 0.01 everywhere else.

    Raises:
        DatasetError: if ``label`` is outside ``[0, size)``
    """
    if not 0 <= label < size:
        raise DatasetError(f"Label {label} outside [0, {size})")
    targets = np.full(size, TARGET_OFF)
    targets[label] = TARGET_ON
    return targets


def _parse_row(
    row: List[str],
    input_size: int,
    output_size: int
) -> Sample:
    if len(row) != input_size + 1:
        raise ValueError(
            f"expected {input_size + 1} columns, got {len(row)}"
        )
    label = int(row[0])
    pixels = check_pixels([float(v) for v in row[1:]])
    return Sample(label, normalize_pixels(pixels), one_hot(label, output_size))


def iter_samples(
    path: str,
    input_size: int = INPUT_SIZE,
    output_size: int = OUTPUT_SIZE
) -> Iterator[Sample]:
    """
    Lazily yield the samples stored in a CSV file.

    Args:
        path: CSV file with ``label, p0, ..., p{input_size-1}`` rows
        input_size: Pixels per row
        output_size: Number of classes

    Yields:
        Sample: one per non-empty row

    Raises:
        DatasetError: if the file cannot be read or a row is malformed
    """
    try:
        f = open(path, newline='')
    except OSError as e:
        raise DatasetError(f"Cannot open dataset '{path}': {e}") from e

    with f:
        reader = csv.reader(f)
        for row in reader:
            if not row:
                continue
            try:
                sample = _parse_row(row, input_size, output_size)
            except ValueError as e:
                raise DatasetError(
                    f"{path}, line {reader.line_num}: {e}"
                ) from e
            yield sample


def load_samples(
    path: str,
    input_size: int = INPUT_SIZE,
    output_size: int = OUTPUT_SIZE
) -> List[Sample]:
    """Read every sample of a CSV file into memory."""
    samples = list(iter_samples(path, input_size, output_size))
    logger.info(f"Loaded {len(samples)} samples from {path}")
    return samples


def load_data_wrapper(
    train_path: str,
    test_path: str,
    input_size: int = INPUT_SIZE,
    output_size: int = OUTPUT_SIZE
) -> Tuple[List[Sample], List[Sample]]:
    """
    Load the training and test sets.

    Returns:
        tuple: ``(training_data, test_data)``, each a list of Sample
    """
    training_data = load_samples(train_path, input_size, output_size)
    test_data = load_samples(test_path, input_size, output_size)
    return training_data, test_data
