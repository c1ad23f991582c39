"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for network training.

This module provides endpoints for:
- Creating and managing single-hidden-layer networks
- Training networks with real-time progress updates via WebSockets
- Classifying digits and browsing (un)successful test examples
- Persisting networks to/from the SQLite model store

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training and cleanup tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet import mnist_loader
from digitnet.config import Settings, configure_logging
from digitnet.errors import ConfigurationError, DatasetError
from digitnet.mnist_loader import Sample
from digitnet.network import Network, create_network, predicted_class
from digitnet.trainer import evaluate, train_network
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

# A bad environment is reported by main(); importing still works with defaults
settings_error: Optional[ConfigurationError] = None
try:
    settings = Settings.from_env()
except ConfigurationError as e:
    settings_error = e
    settings = Settings()

configure_logging(settings)
logger = logging.getLogger(__name__)
if settings_error is not None:
    logger.error(f"Configuration error, using defaults: {settings_error}")

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not settings.production,
    engineio_logger=not settings.production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST samples, loaded by bootstrap()
training_data: Optional[List[Sample]] = None
test_data: Optional[List[Sample]] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST CSV files into global variables.

    A missing dataset is logged and leaves the server running; training
    and example endpoints answer 503 until data is available.
    """
    global training_data, test_data

    logger.info("Loading MNIST data...")
    try:
        training_data, test_data = mnist_loader.load_data_wrapper(
            settings.train_csv,
            settings.test_csv,
            settings.input_size,
            settings.output_size
        )
    except DatasetError as e:
        logger.error(f"MNIST data unavailable: {e}")
        return

    logger.info(
        f"Data loaded: {len(training_data)} training, "
        f"{len(test_data)} test"
    )


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the model store into memory.

    Keeps active_networks in sync with the database after a restart.
    """
    saved_networks = list_saved_networks(settings.model_dir)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, settings.model_dir)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'learning_rate': net_info['learning_rate'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy'],
            'training': False
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_once() -> None:
    """
    Delete stored networks older than the configured age and drop them
    from memory, then forget finished training jobs.
    """
    deleted_count = delete_old_networks(
        days=settings.cleanup_days, model_dir=settings.model_dir
    )

    if deleted_count > 0:
        saved_ids = {
            net['network_id'] for net in list_saved_networks(settings.model_dir)
        }
        stale = [
            nid for nid, info in active_networks.items()
            if nid not in saved_ids and info['trained'] and not info['training']
        ]
        for nid in stale:
            del active_networks[nid]
            logger.info(f"Removed network {nid} from memory (deleted from database)")
        logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
    elif deleted_count == 0:
        logger.info("Cleanup completed: no old networks found to delete")
    else:
        logger.error("Cleanup returned error code")

    cleanup_finished_training_jobs()


def cleanup_old_networks_task() -> None:
    """Run cleanup_once immediately, then every 24 hours."""
    while True:
        try:
            cleanup_once()
            gevent.sleep(86400)
        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            # Retry in an hour
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Idempotent - calling it multiple times has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


def bootstrap() -> None:
    """Load data, restore saved networks and start background cleanup."""
    load_mnist_data()
    reload_saved_networks()
    training_jobs.clear()
    start_cleanup_task()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def create_digit_image(inputs: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        inputs: 784 scaled pixel values of a 28x28 image
        predicted: The digit the network predicted
        actual: The correct digit

    Returns:
        Base64-encoded PNG image string
    """
    side = int(round(np.sqrt(inputs.size)))
    fig = plt.figure(figsize=(3, 3))
    try:
        plt.imshow(inputs.reshape(side, side), cmap='gray')
        plt.title(f"Predicted: {predicted} | Actual: {actual}")
        plt.axis('off')

        buffer = BytesIO()
        plt.savefig(buffer, format='png', bbox_inches='tight')
    finally:
        plt.close(fig)

    return base64.b64encode(buffer.getvalue()).decode('utf-8')


def network_summary(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'network_id': network_id,
        'architecture': info['architecture'],
        'learning_rate': info['learning_rate'],
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'training': info['training'],
        'status': 'in_memory'
    }


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of running training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network_endpoint():
    """
    Create a new network.

    Request body (all optional, defaults from settings):
        {'input_size': 784, 'hidden_size': 200, 'output_size': 10,
         'learning_rate': 0.1, 'seed': 42}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    input_size = data.get('input_size', settings.input_size)
    hidden_size = data.get('hidden_size', settings.hidden_size)
    output_size = data.get('output_size', settings.output_size)
    learning_rate = data.get('learning_rate', settings.learning_rate)
    seed = data.get('seed', settings.seed)

    try:
        net = create_network(
            input_size, hidden_size, output_size, learning_rate, rng=seed
        )
    except ConfigurationError as e:
        logger.warning(f"Invalid network requested: {e}")
        return jsonify({'error': str(e)}), 400

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'learning_rate': net.learning_rate,
        'trained': False,
        'accuracy': None,
        'training': False
    }

    logger.info(f"Created network {network_id}: {net!r}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'learning_rate': net.learning_rate,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network_endpoint(network_id: str):
    """
    Start training a network in the background.

    Request body (optional):
        {'epochs': 5}

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', settings.epochs)

    if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if active_networks[network_id]['training']:
        return jsonify({'error': 'Network is already training'}), 409
    if training_data is None or test_data is None:
        return jsonify({'error': 'Training data not available'}), 503

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    active_networks[network_id]['training'] = True

    logger.info(
        f"Created training job {job_id} for network {network_id}: epochs={epochs}"
    )

    socketio.start_background_task(
        train_network_task, network_id, job_id, epochs
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(network_id: str, job_id: str, epochs: int) -> None:
    """
    Background task that trains a network, evaluates it and stores it.

    Sends progress updates via WebSocket as training progresses.
    """
    info = active_networks[network_id]
    net: Network = info['network']

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'samples': data['samples'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")
        training_jobs[job_id]['status'] = 'training'

        train_network(
            net,
            training_data,
            epochs,
            callback=on_epoch_complete,
            yield_func=lambda: gevent.sleep(0)
        )
        accuracy = evaluate(net, test_data).accuracy

        info['trained'] = True
        info['accuracy'] = accuracy

        training_jobs[job_id].update({
            'status': 'completed',
            'accuracy': accuracy,
            'progress': 100
        })

        save_network(
            net, network_id, model_dir=settings.model_dir,
            trained=True, accuracy=accuracy
        )

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info['training'] = False


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        network_summary(nid, info) for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in list_saved_networks(settings.model_dir):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    info = active_networks.get(network_id)
    if info is not None and info['training']:
        return jsonify({'error': 'Network is training'}), 409

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, settings.model_dir)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all idle networks from both memory and disk."""
    saved_ids = [net['network_id'] for net in list_saved_networks(settings.model_dir)]
    all_network_ids = set(active_networks) | set(saved_ids)

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0
    skipped = []

    for network_id in sorted(all_network_ids):
        info = active_networks.get(network_id)
        if info is not None and info['training']:
            skipped.append(network_id)
            continue
        if info is not None:
            del active_networks[network_id]
            deleted_from_memory_count += 1
        if delete_network(network_id, settings.model_dir):
            deleted_from_disk_count += 1

    deleted_count = len(all_network_ids) - len(skipped)
    logger.info(
        f"Deleted all networks: {deleted_count} total, "
        f"{deleted_from_memory_count} from memory, "
        f"{deleted_from_disk_count} from disk, {len(skipped)} training"
    )

    return jsonify({
        'deleted_count': deleted_count,
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'skipped_training': skipped,
        'message': f'Successfully deleted {deleted_count} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Delete stored networks older than the given number of days.

    Request body (optional):
        {'days': 2}
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', settings.cleanup_days)

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=settings.model_dir)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_endpoint(network_id: str):
    """
    Classify one image.

    Request body, one of:
        {'pixels': [0, 255, ...]}   # raw values, scaled server-side
        {'inputs': [0.01, ...]}     # values already scaled to [0.01, 1.0]
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    net: Network = active_networks[network_id]['network']

    try:
        if 'pixels' in data:
            inputs = mnist_loader.normalize_pixels(
                mnist_loader.check_pixels(data['pixels'])
            )
        elif 'inputs' in data:
            inputs = data['inputs']
        else:
            return jsonify({'error': "Provide 'pixels' or 'inputs'"}), 400
        output = net.predict(inputs)
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'predicted_class': predicted_class(output),
        'outputs': array_to_float_list(output)
    }), 200


# ============================================================================
# EXAMPLE ENDPOINTS
# ============================================================================

def _find_example(network_id: str, want_correct: bool, max_attempts: int):
    """Look for a random test sample the network gets right (or wrong)."""
    if network_id not in active_networks:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if not test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    net: Network = active_networks[network_id]['network']
    data = test_data
    kind = 'successful' if want_correct else 'unsuccessful'

    for attempt in range(max_attempts):
        index = int(np.random.randint(0, len(data)))
        sample = data[index]

        output = net.predict(sample.inputs)
        predicted_digit = predicted_class(output)

        if (predicted_digit == sample.label) == want_correct:
            logger.debug(f"Found {kind} example on attempt {attempt + 1}")
            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': sample.label,
                'image_data': create_digit_image(
                    sample.inputs, predicted_digit, sample.label
                ),
                'output_weights': net.output_weights.tolist(),
                'network_output': array_to_float_list(output)
            }), 200

    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Return a random test example the network classifies correctly."""
    return _find_example(network_id, want_correct=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Return a random test example the network gets wrong."""
    return _find_example(network_id, want_correct=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> int:
    if settings_error is not None:
        print(f"Configuration error: {settings_error}", file=sys.stderr)
        return 1

    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
    port = settings.port

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    bootstrap()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            return 1
        raise
    return 0


if __name__ == '__main__':
    sys.exit(main())
