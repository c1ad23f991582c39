"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST endpoints, run through Flask's test client with
background tasks executed inline and SocketIO events captured.
"""

import base64

import numpy as np
import pytest

from digitnet import api_server
from digitnet.errors import ConfigurationError
from digitnet.mnist_loader import Sample, one_hot
from digitnet.model_persistence import get_network_metadata, load_network, save_network
from digitnet.network import Network


def _sample(label, inputs):
    return Sample(label, np.asarray(inputs, dtype=float), one_hot(label, 2))


@pytest.fixture
def samples():
    return [
        _sample(0, [0.99, 0.99, 0.01, 0.01]),
        _sample(1, [0.01, 0.01, 0.99, 0.99]),
        _sample(0, [0.9, 0.8, 0.1, 0.05]),
        _sample(1, [0.05, 0.1, 0.8, 0.9]),
    ]


@pytest.fixture
def emitted(monkeypatch):
    events = []
    monkeypatch.setattr(
        api_server.socketio, 'emit',
        lambda event, data=None, **kwargs: events.append((event, data))
    )
    return events


@pytest.fixture
def client(monkeypatch, temp_db_dir, samples, emitted):
    monkeypatch.setattr(api_server.settings, 'model_dir', temp_db_dir)
    monkeypatch.setattr(api_server.settings, 'input_size', 4)
    monkeypatch.setattr(api_server.settings, 'hidden_size', 3)
    monkeypatch.setattr(api_server.settings, 'output_size', 2)
    monkeypatch.setattr(api_server, 'training_data', samples)
    monkeypatch.setattr(api_server, 'test_data', samples)
    monkeypatch.setattr(
        api_server.socketio, 'start_background_task',
        lambda target, *args, **kwargs: target(*args, **kwargs)
    )
    api_server.active_networks.clear()
    api_server.training_jobs.clear()

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client

    api_server.active_networks.clear()
    api_server.training_jobs.clear()


def _create(client, **body):
    response = client.post('/api/networks', json=body)
    assert response.status_code == 201
    return response.get_json()['network_id']


def _force_class_zero(network_id):
    """Make the network answer class 0 for every input."""
    net = api_server.active_networks[network_id]['network']
    net.output_weights[0, :] = 5.0
    net.output_weights[1, :] = -5.0


@pytest.mark.unit
class TestNetworkEndpoints:

    def test_status(self, client):
        body = client.get('/api/status').get_json()
        assert body['status'] == 'online'
        assert body['active_networks'] == 0
        assert body['data_loaded'] is True

    def test_create_with_defaults(self, client):
        response = client.post('/api/networks', json={})
        body = response.get_json()

        assert response.status_code == 201
        assert body['architecture'] == [4, 3, 2]
        assert body['network_id'] in api_server.active_networks

    def test_create_with_seed_is_reproducible(self, client):
        a = _create(client, seed=5, learning_rate=0.2)
        b = _create(client, seed=5, learning_rate=0.2)

        net_a = api_server.active_networks[a]['network']
        net_b = api_server.active_networks[b]['network']
        assert np.array_equal(net_a.hidden_weights, net_b.hidden_weights)
        assert net_a.learning_rate == 0.2

    @pytest.mark.parametrize("body", [
        {'hidden_size': 0},
        {'learning_rate': -1},
        {'input_size': 'many'},
        {'seed': 'abc'},
        {'seed': -1},
    ])
    def test_create_rejects_bad_configuration(self, client, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_list_includes_saved_networks(self, client, temp_db_dir):
        network_id = _create(client)
        save_network(Network(4, 3, 2, 0.1, rng=0), 'stored', model_dir=temp_db_dir)

        networks = client.get('/api/networks').get_json()['networks']

        statuses = {net['network_id']: net['status'] for net in networks}
        assert statuses == {network_id: 'in_memory', 'stored': 'saved'}

    def test_delete_network(self, client):
        network_id = _create(client)

        response = client.delete(f'/api/networks/{network_id}')

        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert network_id not in api_server.active_networks

    def test_delete_unknown_network(self, client):
        assert client.delete('/api/networks/unknown').status_code == 404

    def test_delete_all_networks(self, client, temp_db_dir):
        _create(client)
        _create(client)
        save_network(Network(4, 3, 2, 0.1, rng=0), 'stored', model_dir=temp_db_dir)

        body = client.delete('/api/networks').get_json()

        assert body['deleted_count'] == 3
        assert body['deleted_from_memory'] == 2
        assert body['deleted_from_disk'] == 1
        assert api_server.active_networks == {}

    def test_cleanup_validates_days(self, client):
        assert client.post('/api/networks/cleanup', json={'days': -1}).status_code == 400
        response = client.post('/api/networks/cleanup', json={'days': 2})
        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 0


@pytest.mark.unit
class TestPredictEndpoint:

    def test_predict_from_pixels(self, client):
        network_id = _create(client)
        _force_class_zero(network_id)

        response = client.post(
            f'/api/networks/{network_id}/predict',
            json={'pixels': [255, 0, 128, 64]}
        )
        body = response.get_json()

        assert response.status_code == 200
        assert body['predicted_class'] == 0
        assert len(body['outputs']) == 2
        assert all(0.0 < v < 1.0 for v in body['outputs'])

    def test_predict_from_scaled_inputs(self, client):
        network_id = _create(client, seed=1)
        net = api_server.active_networks[network_id]['network']
        inputs = [0.1, 0.2, 0.3, 0.4]

        body = client.post(
            f'/api/networks/{network_id}/predict', json={'inputs': inputs}
        ).get_json()

        assert body['outputs'] == pytest.approx(net.predict(inputs).ravel().tolist())

    @pytest.mark.parametrize("body", [
        {'pixels': [1, 2, 3]},
        {'inputs': [0.1] * 10},
        {'pixels': ['a', 'b', 'c', 'd']},
        {'pixels': [1000, 0, 0, 0]},
        {'pixels': [-1, 0, 0, 0]},
        {},
    ])
    def test_predict_rejects_bad_input(self, client, body):
        network_id = _create(client)
        response = client.post(f'/api/networks/{network_id}/predict', json=body)
        assert response.status_code == 400

    def test_predict_unknown_network(self, client):
        response = client.post('/api/networks/nope/predict', json={'inputs': [0.1] * 4})
        assert response.status_code == 404


@pytest.mark.integration
class TestTraining:

    def test_train_runs_and_stores_network(self, client, emitted, temp_db_dir):
        network_id = _create(client, seed=3)
        before = api_server.active_networks[network_id]['network'].weights()

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 2})
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert 0.0 <= job['accuracy'] <= 1.0

        info = api_server.active_networks[network_id]
        assert info['trained'] is True
        assert info['training'] is False
        assert not np.array_equal(info['network'].hidden_weights, before[0])

        events = [name for name, _ in emitted]
        assert events == ['training_update', 'training_update', 'training_complete']

        stored = load_network(network_id, temp_db_dir)
        assert np.array_equal(stored.output_weights, info['network'].output_weights)
        assert get_network_metadata(network_id, temp_db_dir)['accuracy'] == job['accuracy']

    def test_train_failure_reported(self, client, emitted, monkeypatch):
        network_id = _create(client)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(api_server, 'train_network', explode)

        job_id = client.post(
            f'/api/networks/{network_id}/train', json={'epochs': 1}
        ).get_json()['job_id']

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'failed'
        assert job['error'] == 'boom'
        assert emitted[-1][0] == 'training_error'
        assert api_server.active_networks[network_id]['training'] is False

    @pytest.mark.parametrize("epochs", [0, -3, 'five', 2.5, True])
    def test_train_rejects_bad_epochs(self, client, epochs):
        network_id = _create(client)
        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': epochs})
        assert response.status_code == 400

    def test_train_unknown_network(self, client):
        assert client.post('/api/networks/nope/train', json={}).status_code == 404

    def test_train_while_training_conflicts(self, client):
        network_id = _create(client)
        api_server.active_networks[network_id]['training'] = True

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 1})
        assert response.status_code == 409

    def test_train_without_data(self, client, monkeypatch):
        network_id = _create(client)
        monkeypatch.setattr(api_server, 'training_data', None)

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 1})
        assert response.status_code == 503

    def test_unknown_job(self, client):
        assert client.get('/api/training/nope').status_code == 404

    def test_cleanup_forgets_finished_jobs(self, client):
        api_server.training_jobs['done'] = {'status': 'completed'}
        api_server.training_jobs['running'] = {'status': 'training'}

        api_server.cleanup_once()

        assert list(api_server.training_jobs) == ['running']


@pytest.mark.unit
class TestExampleEndpoints:

    def test_successful_example(self, client):
        network_id = _create(client)
        _force_class_zero(network_id)

        response = client.get(f'/api/networks/{network_id}/successful_example')
        body = response.get_json()

        assert response.status_code == 200
        assert body['predicted_digit'] == body['actual_digit'] == 0
        assert base64.b64decode(body['image_data']).startswith(b'\x89PNG')
        assert len(body['network_output']) == 2

    def test_unsuccessful_example(self, client):
        network_id = _create(client)
        _force_class_zero(network_id)

        body = client.get(f'/api/networks/{network_id}/unsuccessful_example').get_json()

        assert body['predicted_digit'] == 0
        assert body['actual_digit'] == 1

    def test_no_unsuccessful_example(self, client, monkeypatch, samples):
        network_id = _create(client)
        _force_class_zero(network_id)
        monkeypatch.setattr(
            api_server, 'test_data', [s for s in samples if s.label == 0]
        )

        response = client.get(f'/api/networks/{network_id}/unsuccessful_example')
        assert response.status_code == 404

    def test_examples_need_test_data(self, client, monkeypatch):
        network_id = _create(client)
        monkeypatch.setattr(api_server, 'test_data', None)

        response = client.get(f'/api/networks/{network_id}/successful_example')
        assert response.status_code == 503


@pytest.mark.unit
class TestServerStartup:

    def test_main_reports_bad_environment(self, monkeypatch, capsys):
        monkeypatch.setattr(
            api_server, 'settings_error',
            ConfigurationError("Invalid value for PORT: 'x'")
        )

        def fail():
            raise AssertionError("server must not start")

        monkeypatch.setattr(api_server, 'bootstrap', fail)

        assert api_server.main() == 1
        err = capsys.readouterr().err
        assert "Configuration error" in err
        assert "PORT" in err
