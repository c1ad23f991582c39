"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Persistence for network weights.

Two forms are supported:

- Weight files: ``hweights.model`` and ``oweights.model`` in a directory,
  used by the command line train/predict cycle.
- An SQLite model store, used by the API server, holding the weights
  together with metadata (architecture, learning rate, training status,
  accuracy, timestamps).

Matrices are stored in numpy's ``.npy`` binary format, which keeps the
exact shape and float64 values without pickling.
"""

import io
import os
import json
import sqlite3
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

import numpy as np

from digitnet.errors import ConfigurationError
from digitnet.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

HIDDEN_WEIGHTS_FILE = 'hweights.model'
OUTPUT_WEIGHTS_FILE = 'oweights.model'
DB_FILENAME = 'networks.db'


# ============================================================================
# MATRIX ENCODING
# ============================================================================

def serialize_matrix(m: np.ndarray) -> bytes:
    """Encode a matrix as ``.npy`` bytes (shape and float64 entries)."""
    buffer = io.BytesIO()
    np.save(buffer, np.asarray(m, dtype=np.float64), allow_pickle=False)
    return buffer.getvalue()


def deserialize_matrix(data: bytes) -> np.ndarray:
    """
    Decode bytes written by :func:`serialize_matrix`.

    Raises:
        ValueError: if the bytes are not a 2-D ``.npy`` array
    """
    try:
        m = np.load(io.BytesIO(data), allow_pickle=False)
    except EOFError as e:
        raise ValueError(f"Truncated matrix data: {e}") from e
    if not isinstance(m, np.ndarray) or m.ndim != 2:
        raise ValueError(
            f"Expected a 2-D matrix, got {getattr(m, 'shape', type(m))}"
        )
    return m.astype(np.float64, copy=False)


# ============================================================================
# WEIGHT FILES
# ============================================================================

def save_weights(network: Network, directory: str = 'data') -> bool:
    """
    Write the network's weight matrices to ``directory``.

    Args:
        network: Network whose weights are written
        directory: Target directory, created if missing

    Returns:
        bool: True if both files were written, False otherwise
    """
    hidden, output = network.weights()
    try:
        os.makedirs(directory, exist_ok=True)
        with open(os.path.join(directory, HIDDEN_WEIGHTS_FILE), 'wb') as f:
            f.write(serialize_matrix(hidden))
        with open(os.path.join(directory, OUTPUT_WEIGHTS_FILE), 'wb') as f:
            f.write(serialize_matrix(output))
    except OSError as e:
        logger.error(f"Could not write weights to '{directory}': {e}")
        return False

    logger.info(
        f"Saved weights {hidden.shape} and {output.shape} to '{directory}'"
    )
    return True


def load_weights(network: Network, directory: str = 'data') -> bool:
    """
    Replace the network's weights with the ones stored in ``directory``.

    The network is left unchanged unless both files load and match its
    layer sizes.

    Returns:
        bool: True if the weights were replaced, False otherwise
    """
    try:
        with open(os.path.join(directory, HIDDEN_WEIGHTS_FILE), 'rb') as f:
            hidden = deserialize_matrix(f.read())
        with open(os.path.join(directory, OUTPUT_WEIGHTS_FILE), 'rb') as f:
            output = deserialize_matrix(f.read())
        network.load_weights(hidden, output)
    except OSError as e:
        logger.error(f"Could not read weights from '{directory}': {e}")
        return False
    except ConfigurationError as e:
        logger.error(f"Stored weights in '{directory}' do not fit: {e}")
        return False
    except ValueError as e:
        logger.error(f"Malformed weight file in '{directory}': {e}")
        return False

    logger.info(f"Loaded weights from '{directory}'")
    return True


# ============================================================================
# SQLITE MODEL STORE
# ============================================================================

class ModelDatabase:
    """
    Manages the SQLite database of stored networks.

    The database stores:
    - Network metadata (architecture, learning rate, training status, accuracy)
    - Both weight matrices as ``.npy`` blobs
    """

    def __init__(self, db_path: str = f'models/{DB_FILENAME}'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back and re-raises on error.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    learning_rate REAL NOT NULL,
                    hidden_weights BLOB NOT NULL,
                    output_weights BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _row_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        return {
            'network_id': row['network_id'],
            'architecture': architecture,
            'hidden_weights_shape': [architecture[1], architecture[0]],
            'output_weights_shape': [architecture[2], architecture[1]],
            'learning_rate': row['learning_rate'],
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Save a network to the database, replacing any row with the same id.

        The original ``created_at`` is kept when a network is re-saved.

        Raises:
            ValueError: If accuracy is out of valid range
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        hidden, output = network.weights()

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, learning_rate, hidden_weights,
                 output_weights, trained, accuracy, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    learning_rate = excluded.learning_rate,
                    hidden_weights = excluded.hidden_weights,
                    output_weights = excluded.output_weights,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                json.dumps(network.sizes),
                network.learning_rate,
                serialize_matrix(hidden),
                serialize_matrix(output),
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Load a network from the database.

        Returns:
            Network or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT learning_rate, hidden_weights, output_weights
                FROM networks WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = Network.from_weights(
            deserialize_matrix(row['hidden_weights']),
            deserialize_matrix(row['output_weights']),
            row['learning_rate']
        )
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """List metadata of every stored network, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, learning_rate, trained,
                       accuracy, created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            networks = [self._row_metadata(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get network metadata without decoding the weights."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, learning_rate, trained,
                       accuracy, created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None
        return self._row_metadata(row)

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(
                f"Could not delete network '{network_id}': not found"
            )
        return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Returns:
            int: Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM networks
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted


# One database instance per directory
_databases: Dict[str, ModelDatabase] = {}


def _get_db(model_dir: str) -> ModelDatabase:
    """Get or create the database instance for ``model_dir``."""
    db_path = os.path.join(model_dir, DB_FILENAME)
    if db_path not in _databases:
        _databases[db_path] = ModelDatabase(db_path=db_path)
    return _databases[db_path]


def _valid_id(network_id) -> bool:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False
    return True


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = 'models',
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network to the model store.

    Args:
        network: The network to save
        network_id: A unique identifier for the network
        model_dir: Directory for the database file
        trained: Whether the network has been trained
        accuracy: Test-set accuracy of the network (0.0 to 1.0)

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = Network(784, 200, 10, 0.1)
        >>> save_network(net, "my_network", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(
            network, network_id, trained, accuracy
        )
    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False


def load_network(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Network]:
    """
    Load a network from the model store.

    Returns:
        The loaded network, or None if it is missing or unreadable
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except ConfigurationError as e:
        logger.error(f"Stored network '{network_id}' is inconsistent: {e}")
        return None
    except ValueError as e:
        logger.error(
            f"Deserialization error loading network '{network_id}': {e}"
        )
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
        return None


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Example:
        >>> for net in list_saved_networks():
        ...     print(f"{net['network_id']}: {net['architecture']}")
    """
    try:
        return _get_db(model_dir).list_networks_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []


def delete_network(network_id: str, model_dir: str = 'models') -> bool:
    """
    Delete a saved network.

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False


def get_network_metadata(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """Get metadata for a saved network without loading its weights."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{network_id}': {e}"
        )
        return None


def delete_old_networks(days: float = 2, model_dir: str = 'models') -> int:
    """
    Delete saved networks older than ``days`` days.

    Returns:
        int: Number of deleted networks, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
        return -1
