"""
Flask API Server for the transfer-learning layer builder
"""
import base64
import os
import threading
import traceback
from datetime import datetime
from io import BytesIO

import cv2
import numpy as np
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS

from config import config
from errors import (
    ArtifactError,
    EmptyDatasetError,
    ModelBuilderError,
    ParamRangeError,
    ShapeError,
    StructuralError,
    TrainingInProgressError,
)
from layer_registry import describe_templates
from model import describe_head
from shapes import format_trace, trace_to_list
from training import CancellationToken, TrainingSession
from utils import decode_frame, get_latest_model, list_trained_models

# Initialize Flask app
app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = config.API['max_upload_mb'] * 1024 * 1024

# Configure CORS - Allow all origins
CORS(app, resources={
    r"/*": {
        "origins": config.API['cors_origins'],
        "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"]
    }
})

# ===========================
# SESSION STATE
# ===========================
session = TrainingSession()

training_job = {'status': 'idle'}
training_job_lock = threading.Lock()
cancel_token = None


def error_response(e, status=400):
    body = {'success': False, 'error': str(e)}
    if isinstance(e, (ShapeError, StructuralError)):
        body['reason'] = e.reason.name
        body['index'] = e.index
    if isinstance(e, ShapeError):
        body['position'] = e.position
    return jsonify(body), status


def layer_state():
    """Slots plus a freshly derived shape trace and structural validity"""
    state = {
        'success': True,
        'slots': session.editor.to_dict(),
        'shape_trace': None,
        'dimensions': None,
        'shape_error': None,
        'structural_error': None,
    }
    try:
        trace = session.get_shape_trace()
        state['shape_trace'] = trace_to_list(trace)
        state['dimensions'] = format_trace(trace)
    except ShapeError as e:
        # Rows computed before the failure are still shown
        state['shape_trace'] = trace_to_list(e.trace)
        state['dimensions'] = format_trace(e.trace)
        state['shape_error'] = {
            'reason': e.reason.name,
            'index': e.index,
            'position': e.position,
            'message': str(e),
        }
    try:
        session.get_structural_validity()
    except StructuralError as e:
        state['structural_error'] = {'reason': e.reason.name, 'index': e.index, 'message': str(e)}
    state['valid'] = state['shape_error'] is None and state['structural_error'] is None
    return state


def label_state():
    return [
        {
            'id': label_id,
            'name': name,
            'training_examples': session.training_examples.count(label_id),
            'testing_examples': session.testing_examples.count(label_id),
        }
        for label_id, name in session.training_dataset.labels.items()
    ]


# ===========================
# BASIC API ENDPOINTS
# ===========================
@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({
        'status': 'online',
        'extractor': session.extractor_info['name'],
        'extractor_loaded': session.extractor is not None,
        'model_ready': session.head is not None,
        'training': session.is_training,
        'timestamp': datetime.now().isoformat()
    })


@app.route('/config', methods=['GET'])
def get_config():
    """Get backend configuration"""
    return jsonify({
        'model': {
            'image_size': config.MODEL['image_size'],
            'feature_shape': list(config.MODEL['feature_shape']),
            'extractors': config.MODEL['extractors'],
        },
        'training': {
            'optimizer': config.TRAINING['optimizer'],
            'optimizers': config.TRAINING['optimizers'],
            'learning_rate': config.TRAINING['learning_rate'],
            'batch_size_fraction': config.TRAINING['batch_size_fraction'],
            'epochs': config.TRAINING['epochs'],
        }
    })


# ===========================
# LAYER EDITOR ENDPOINTS
# ===========================
@app.route('/api/layers/templates', methods=['GET'])
def get_layer_templates():
    return jsonify({'success': True, **describe_templates()})


@app.route('/api/layers', methods=['GET'])
def get_layers():
    return jsonify(layer_state())


@app.route('/api/layers', methods=['POST'])
def add_layer():
    data = request.get_json(silent=True) or {}
    try:
        index = session.editor.append(data.get('kind', 'fc'))
    except ValueError as e:
        return error_response(e)
    return jsonify({**layer_state(), 'index': index})


@app.route('/api/layers/<int:index>', methods=['PUT'])
def update_layer(index):
    data = request.get_json(silent=True) or {}
    try:
        if 'kind' in data:
            session.editor.set_kind(index, data['kind'])
        if 'name' in data:
            session.editor.set_param(index, data['name'], data.get('value'))
        for name, value in (data.get('params') or {}).items():
            session.editor.set_param(index, name, value)
    except IndexError as e:
        return error_response(e, 404)
    except (ParamRangeError, ValueError) as e:
        return error_response(e)
    return jsonify(layer_state())


@app.route('/api/layers/<int:index>', methods=['DELETE'])
def remove_layer(index):
    try:
        session.editor.remove_at(index)
    except IndexError as e:
        return error_response(e, 404)
    return jsonify(layer_state())


# ===========================
# EXTRACTOR / LABEL / EXAMPLE ENDPOINTS
# ===========================
@app.route('/api/extractors', methods=['GET'])
def get_extractors():
    return jsonify({
        'success': True,
        'extractors': config.MODEL['extractors'],
        'current': session.extractor_info,
    })


@app.route('/api/extractors', methods=['PUT'])
def select_extractor():
    data = request.get_json(silent=True) or {}
    try:
        session.select_extractor(data.get('key'))
    except TrainingInProgressError as e:
        return error_response(e, 409)
    except ValueError as e:
        return error_response(e)
    return jsonify({'success': True, 'current': session.extractor_info})


@app.route('/api/labels', methods=['GET'])
def get_labels():
    return jsonify({'success': True, 'labels': label_state()})


@app.route('/api/labels', methods=['POST'])
def add_label():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        return error_response('Label name required')
    try:
        label_id = session.add_label(name)
    except TrainingInProgressError as e:
        return error_response(e, 409)
    return jsonify({'success': True, 'id': label_id, 'labels': label_state()})


@app.route('/api/labels/<int:label_id>', methods=['DELETE'])
def remove_label(label_id):
    try:
        session.remove_label(label_id)
    except TrainingInProgressError as e:
        return error_response(e, 409)
    except KeyError:
        return error_response(f'Label {label_id} not found', 404)
    return jsonify({'success': True, 'labels': label_state()})


@app.route('/api/examples', methods=['POST'])
def add_example():
    data = request.get_json(silent=True) or {}
    try:
        label_id = int(data.get('label_id'))
        image = decode_frame(data.get('image') or '')
        session.add_example(label_id, image, data.get('dataset', 'training'))
    except KeyError as e:
        return error_response(f'Label not found: {e}', 404)
    except (TypeError, ValueError) as e:
        return error_response(e)
    return jsonify({'success': True, 'labels': label_state()})


# ===========================
# TRAINING ENDPOINTS
# ===========================
def run_training_background(hyperparams, token, timeout):
    """Run one training job and publish its progress"""

    def on_batch_end(epoch, batch, loss):
        with training_job_lock:
            training_job.update({'epoch': epoch, 'batch': batch, 'loss': loss})

    try:
        session.build_and_train(hyperparams, on_batch_end=on_batch_end,
                                cancel_token=token, timeout=timeout)
        session.save_model()
        with training_job_lock:
            training_job.update({
                'status': 'completed',
                'metrics': session.last_metrics,
                'completed_at': datetime.now().isoformat(),
            })
    except ModelBuilderError as e:
        print(f"❌ Training job failed: {e}")
        with training_job_lock:
            training_job.update({
                'status': 'cancelled' if getattr(e, 'cancelled', False) else 'failed',
                'error': str(e),
                'completed_at': datetime.now().isoformat(),
            })
    except Exception as e:
        print(f"❌ Unexpected training error: {e}")
        traceback.print_exc()
        with training_job_lock:
            training_job.update({
                'status': 'failed',
                'error': str(e),
                'completed_at': datetime.now().isoformat(),
            })


@app.route('/api/train', methods=['POST'])
def train():
    """Validate admission synchronously, then train in the background"""
    global cancel_token

    data = request.get_json(silent=True) or {}
    hyperparams = data.get('hyperparams') or {}
    timeout = data.get('timeout')
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            return error_response(f'Invalid timeout: {timeout!r}')

    if session.training_examples.is_empty():
        return error_response(EmptyDatasetError())
    try:
        session.get_structural_validity()
        session.get_shape_trace()
    except (StructuralError, ShapeError) as e:
        return error_response(e)

    with training_job_lock:
        if training_job.get('status') == 'training' or session.is_training:
            return error_response(TrainingInProgressError(), 409)
        cancel_token = CancellationToken()
        training_job.clear()
        training_job.update({
            'status': 'training',
            'started_at': datetime.now().isoformat(),
            'epoch': None,
            'batch': None,
            'loss': None,
        })

    thread = threading.Thread(
        target=run_training_background,
        args=(hyperparams, cancel_token, timeout),
        daemon=True
    )
    thread.start()

    return jsonify({'success': True, 'message': 'Training started'})


@app.route('/api/train/status', methods=['GET'])
def training_status():
    with training_job_lock:
        return jsonify({'success': True, **training_job})


@app.route('/api/train/cancel', methods=['POST'])
def cancel_training():
    with training_job_lock:
        if training_job.get('status') != 'training' or cancel_token is None:
            return error_response('No training in progress', 404)
        cancel_token.cancel()
    return jsonify({'success': True, 'message': 'Cancellation requested'})


# ===========================
# INFERENCE ENDPOINTS
# ===========================
@app.route('/api/predict', methods=['POST'])
def predict():
    data = request.get_json(silent=True) or {}
    try:
        results = session.predict(
            data.get('dataset', 'training'),
            use_combined=bool(data.get('use_combined', False))
        )
    except EmptyDatasetError as e:
        return error_response(e)
    except ModelBuilderError as e:
        return error_response(e, 409)
    except ValueError as e:
        return error_response(e)
    return jsonify({'success': True, **results.to_dict()})


@app.route('/api/saliency', methods=['POST'])
def saliency():
    data = request.get_json(silent=True) or {}
    try:
        image = decode_frame(data.get('image') or '')
        heatmap = session.saliency(image)
    except ModelBuilderError as e:
        return error_response(e, 409)
    except ValueError as e:
        return error_response(e)

    ok, png = cv2.imencode('.png', (heatmap * 255).astype(np.uint8))
    if not ok:
        return error_response('Failed to encode saliency map', 500)
    return jsonify({
        'success': True,
        'saliency': 'data:image/png;base64,' + base64.b64encode(png.tobytes()).decode('ascii')
    })


# ===========================
# MODEL MANAGEMENT ENDPOINTS
# ===========================
@app.route('/api/model', methods=['GET'])
def get_model():
    if session.head is None:
        return error_response('No trained model', 404)
    return jsonify({
        'success': True,
        'model': describe_head(session.head),
        'label_names': session.label_names,
        'extractor': session.extractor_info,
        'metrics': session.last_metrics,
    })


@app.route('/api/download-model', methods=['GET'])
def download_model():
    """Download the trained head as a .mdl package"""
    try:
        package = session.save_artifact()
    except ModelBuilderError as e:
        return error_response(e, 404)

    return send_file(
        BytesIO(package),
        mimetype='application/zip',
        as_attachment=True,
        download_name=config.STORAGE['artifact_name']
    )


@app.route('/api/upload-model', methods=['POST'])
def upload_model():
    upload = request.files.get('model')
    if upload is None:
        return error_response('No model file provided')
    try:
        loaded = session.load_artifact(BytesIO(upload.read()))
    except TrainingInProgressError as e:
        return error_response(e, 409)
    except ArtifactError as e:
        return error_response(e)
    return jsonify({
        'success': True,
        'label_names': loaded.label_names,
        'extractor': session.extractor_info,
        'labels': label_state(),
    })


@app.route('/models/list', methods=['GET'])
def list_models():
    """List all saved model packages"""
    return jsonify({'success': True, 'models': list_trained_models()})


@app.route('/models/latest', methods=['GET'])
def download_latest_model():
    """Download the most recently saved .mdl package"""
    latest_model = get_latest_model()
    if not latest_model:
        return error_response('No saved model found', 404)

    return send_file(
        latest_model,
        mimetype='application/zip',
        as_attachment=True,
        download_name=os.path.basename(latest_model)
    )


# ===========================
# RUN SERVER
# ===========================
if __name__ == '__main__':
    print("\n" + "="*60)
    print("🚀 TRANSFER LEARNING LAYER BUILDER API")
    print("="*60)
    print(f"📦 Feature extractor: {session.extractor_info['name']} ({session.extractor_info['lastLayer']})")
    print(f"🌐 Server: http://{config.API['host']}:{config.API['port']}")
    print("="*60)
    print("\n📋 Available Endpoints:")
    print("   Layer editor:")
    print("     GET    /api/layers/templates - Layer catalog")
    print("     GET    /api/layers - Slots, dimensions and validity")
    print("     POST   /api/layers - Add layer")
    print("     PUT    /api/layers/<i> - Change kind / parameter")
    print("     DELETE /api/layers/<i> - Remove layer")
    print("\n   Data:")
    print("     GET/PUT /api/extractors - Feature extractor")
    print("     POST   /api/labels - Add label")
    print("     DELETE /api/labels/<id> - Remove label")
    print("     POST   /api/examples - Add webcam frame")
    print("\n   Training & inference:")
    print("     POST   /api/train - Start training")
    print("     GET    /api/train/status - Training progress")
    print("     POST   /api/train/cancel - Cancel training")
    print("     POST   /api/predict - Predict on training/testing set")
    print("     POST   /api/saliency - Saliency map for a frame")
    print("\n   Model Management:")
    print("     GET    /api/model - Current model")
    print("     GET    /api/download-model - Download .mdl package")
    print("     POST   /api/upload-model - Upload .mdl package")
    print("     GET    /models/list - List saved packages")
    print("     GET    /models/latest - Download newest saved package")
    print("\n   Utilities:")
    print("     GET    /health - Health check")
    print("     GET    /config - Get configuration")
    print("="*60 + "\n")

    app.run(
        host=config.API['host'],
        port=config.API['port'],
        debug=config.API['debug']
    )
