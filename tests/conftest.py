"""
conftest.py
~~~~~~~~~~~

Shared fixtures: small seeded networks, temporary model directories and
tiny MNIST-style CSV files.
"""

import numpy as np
import pytest

from digitnet.network import Network


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def simple_network():
    """A seeded 4-3-2 network."""
    return Network(4, 3, 2, 0.1, rng=42)


@pytest.fixture
def write_csv(tmp_path):
    """Write ``rows`` (label followed by pixels) to a CSV file."""
    def write(rows, name="data.csv"):
        path = tmp_path / name
        path.write_text(
            "\n".join(",".join(str(v) for v in row) for row in rows) + "\n"
        )
        return str(path)
    return write


@pytest.fixture
def tiny_rows():
    """Eight 4-pixel rows, labels 0/1 keyed on which half is bright."""
    rng = np.random.default_rng(0)
    rows = []
    for i in range(8):
        label = i % 2
        bright = rng.integers(200, 256, size=2).tolist()
        dark = rng.integers(0, 30, size=2).tolist()
        pixels = bright + dark if label == 0 else dark + bright
        rows.append([label] + pixels)
    return rows
