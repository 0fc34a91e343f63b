import base64
import io
import time

import cv2
import numpy as np
import pytest

import main
from artifact import save_artifact
from config import config
from layer_editor import LayerSlot
from model import build_head
from shapes import infer

from conftest import IMAGE_SIZE


def encode_frame(rng, size=IMAGE_SIZE):
    pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    ok, png = cv2.imencode('.png', pixels)
    assert ok
    return 'data:image/png;base64,' + base64.b64encode(png.tobytes()).decode('ascii')


@pytest.fixture
def client(session, monkeypatch, tmp_path):
    monkeypatch.setattr(main, 'session', session)
    monkeypatch.setattr(main, 'training_job', {'status': 'idle'})
    monkeypatch.setitem(config.MODEL, 'image_size', IMAGE_SIZE)
    monkeypatch.setitem(config.STORAGE, 'models_dir', str(tmp_path))
    main.app.config['TESTING'] = True
    with main.app.test_client() as client:
        yield client


def test_health(client):
    body = client.get('/health').get_json()
    assert body['status'] == 'online'
    assert body['model_ready'] is False


def test_templates(client):
    body = client.get('/api/layers/templates').get_json()
    assert body['user_kinds'] == ['fc', 'conv', 'maxpool', 'flat']


def test_initial_layers_need_flatten(client):
    body = client.get('/api/layers').get_json()
    assert body['slots'] == [{'kind': 'conv-0', 'params': {'kernel_size': 5, 'filters': 32, 'strides': 1}}]
    assert body['valid'] is False
    assert body['shape_error']['reason'] == 'NEEDS_FLATTEN'
    assert body['shape_error']['position'] == 2
    # the conv row is still computed even though the classifier cannot attach
    assert body['shape_trace'] == [[7, 7, 256], [3, 3, 32]]
    assert body['dimensions'] == ['7,7,256 --> 3,3,32']
    assert body['structural_error']['reason'] == 'DENSE_BEFORE_FLATTEN'


def test_edit_layers(client):
    body = client.post('/api/layers', json={'kind': 'flat'}).get_json()
    assert body['index'] == 1
    assert body['valid'] is True
    assert body['dimensions'] == ['7,7,256 --> 3,3,32', '3,3,32 --> 288', '288 --> Number of Labels']

    body = client.put('/api/layers/0', json={'name': 'kernel_size', 'value': 3}).get_json()
    assert body['shape_trace'][1] == [5, 5, 32]

    body = client.put('/api/layers/0', json={'params': {'strides': 2}}).get_json()
    assert body['shape_trace'][1] == [3, 3, 32]

    body = client.delete('/api/layers/0').get_json()
    assert [s['kind'] for s in body['slots']] == ['flat']


def test_bad_layer_edits(client):
    response = client.put('/api/layers/0', json={'name': 'filters', 'value': 500})
    assert response.status_code == 400
    assert response.get_json()['success'] is False

    assert client.put('/api/layers/9', json={'kind': 'fc'}).status_code == 404
    assert client.delete('/api/layers/9').status_code == 404
    assert client.post('/api/layers', json={'kind': 'fc-final'}).status_code == 400
    assert client.post('/api/layers', json={'kind': 'dropout'}).status_code == 400


def test_labels_and_examples(client, rng):
    assert client.post('/api/labels', json={'name': ' '}).status_code == 400

    body = client.post('/api/labels', json={'name': 'rock'}).get_json()
    label_id = body['id']
    response = client.post('/api/examples', json={'label_id': label_id, 'image': encode_frame(rng)})
    assert response.status_code == 200
    labels = response.get_json()['labels']
    assert labels[0]['training_examples'] == 1

    assert client.post('/api/examples', json={'label_id': 99, 'image': encode_frame(rng)}).status_code == 404
    assert client.post('/api/examples', json={'label_id': label_id, 'image': 'bm90IGFuIGltYWdl'}).status_code == 400

    assert client.delete(f'/api/labels/{label_id}').status_code == 200
    assert client.delete(f'/api/labels/{label_id}').status_code == 404


def test_train_rejections(client, rng):
    response = client.post('/api/train', json={})
    assert response.status_code == 400
    assert 'Add some examples' in response.get_json()['error']

    label_id = client.post('/api/labels', json={'name': 'rock'}).get_json()['id']
    client.post('/api/examples', json={'label_id': label_id, 'image': encode_frame(rng)})

    response = client.post('/api/train', json={})
    assert response.status_code == 400
    assert response.get_json()['reason'] == 'DENSE_BEFORE_FLATTEN'

    client.post('/api/layers', json={'kind': 'flat'})
    assert client.post('/api/train', json={'timeout': 'soon'}).status_code == 400

    main.training_job['status'] = 'training'
    assert client.post('/api/train', json={}).status_code == 409


def test_label_changes_rejected_while_training(client):
    label_id = client.post('/api/labels', json={'name': 'rock'}).get_json()['id']
    main.session._train_lock.acquire()
    try:
        response = client.post('/api/labels', json={'name': 'lizard'})
        assert response.status_code == 409
        assert response.get_json()['success'] is False
        assert client.delete(f'/api/labels/{label_id}').status_code == 409
    finally:
        main.session._train_lock.release()

    labels = client.get('/api/labels').get_json()['labels']
    assert [label['name'] for label in labels] == ['rock']


def test_cancel_without_job(client):
    assert client.post('/api/train/cancel').status_code == 404


def test_train_in_background(client, rng):
    for name in ('rock', 'paper'):
        label_id = client.post('/api/labels', json={'name': name}).get_json()['id']
        for _ in range(3):
            client.post('/api/examples', json={'label_id': label_id, 'image': encode_frame(rng)})
            client.post('/api/examples', json={'label_id': label_id, 'image': encode_frame(rng), 'dataset': 'testing'})
    client.put('/api/layers/0', json={'kind': 'flat'})

    response = client.post('/api/train', json={'hyperparams': {'epochs': 2, 'learning_rate': 0.01, 'batch_size_fraction': 0.5}})
    assert response.status_code == 200

    deadline = time.monotonic() + 120
    status = client.get('/api/train/status').get_json()
    while status['status'] == 'training' and time.monotonic() < deadline:
        time.sleep(0.1)
        status = client.get('/api/train/status').get_json()
    assert status['status'] == 'completed', status
    assert status['metrics']['epochs_trained'] == 2

    body = client.post('/api/predict', json={'dataset': 'testing'}).get_json()
    assert body['count'] == 6
    assert len(body['results'][0]['predictions']) == 2

    assert client.get('/api/model').get_json()['label_names'] == {'0': 'rock', '1': 'paper'}
    assert len(client.get('/models/list').get_json()['models']) == 1
    latest = client.get('/models/latest')
    assert latest.status_code == 200
    assert latest.data[:2] == b'PK'
    latest.close()

    saliency = client.post('/api/saliency', json={'image': encode_frame(rng)}).get_json()
    assert saliency['saliency'].startswith('data:image/png;base64,')

    download = client.get('/api/download-model')
    assert download.status_code == 200
    assert download.data[:2] == b'PK'


def test_model_routes_without_model(client):
    assert client.get('/api/model').status_code == 404
    assert client.get('/api/download-model').status_code == 404
    assert client.get('/models/latest').status_code == 404
    assert client.post('/api/predict', json={}).status_code == 409


def test_upload_model(client):
    slots = [LayerSlot('flat')]
    head = build_head(slots, infer(slots), 2)
    package = save_artifact(head, {'0': 'yes', '1': 'no'}, dict(main.session.extractor_info))

    response = client.post(
        '/api/upload-model',
        data={'model': (io.BytesIO(package), 'model.mdl')},
        content_type='multipart/form-data'
    )
    assert response.status_code == 200
    assert [label['name'] for label in response.get_json()['labels']] == ['yes', 'no']

    response = client.post(
        '/api/upload-model',
        data={'model': (io.BytesIO(b'junk'), 'model.mdl')},
        content_type='multipart/form-data'
    )
    assert response.status_code == 400
    assert client.post('/api/upload-model').status_code == 400


def test_select_extractor(client):
    assert client.put('/api/extractors', json={'key': '7'}).status_code == 400
    body = client.put('/api/extractors', json={'key': '0'}).get_json()
    assert body['current']['name'] == 'mobilenet'
