"""
digitnet package
~~~~~~~~~~~~~~~~

Single-hidden-layer neural network for MNIST digit recognition.
Contains the matrix primitives, the network model, CSV data loading,
weight persistence, the training driver, the CLI and the API server.
"""

from digitnet.errors import (
    DigitNetError,
    ConfigurationError,
    InputShapeError,
    DimensionMismatchError,
    DatasetError
)
from digitnet.network import Network, create_network, predicted_class

__version__ = "1.0.0"

__all__ = [
    'DigitNetError',
    'ConfigurationError',
    'InputShapeError',
    'DimensionMismatchError',
    'DatasetError',
    'Network',
    'create_network',
    'predicted_class',
]
