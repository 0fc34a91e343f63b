"""
Utility functions for frame decoding and model management
"""
import base64
import glob
import os
from typing import Dict, List, Optional

import cv2
import numpy as np

from config import config


def decode_frame(base64_str: str, size: int = None) -> np.ndarray:
    """
    Decode a base64 webcam frame into the extractor's input:
    RGB, center-cropped to a square, resized, scaled to [-1, 1].
    """
    if size is None:
        size = config.MODEL['image_size']

    # Remove data URI prefix if present
    if ',' in base64_str:
        base64_str = base64_str.split(',', 1)[1]

    try:
        img_bytes = base64.b64decode(base64_str)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Frame is not valid base64: {e}") from e

    if not img_bytes:
        raise ValueError("Frame is empty")

    nparr = np.frombuffer(img_bytes, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Frame could not be decoded as an image")
    img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    # Crop the center square, like the webcam element does
    h, w = img.shape[:2]
    side = min(h, w)
    top = (h - side) // 2
    left = (w - side) // 2
    img = img[top:top + side, left:left + side]

    if img.shape[:2] != (size, size):
        img = cv2.resize(img, (size, size))

    return (img.astype(np.float32) / 127.5) - 1.0


def get_latest_model(models_dir: str = None) -> Optional[str]:
    """Get path to the most recently saved model package"""
    if models_dir is None:
        models_dir = config.STORAGE['models_dir']
    if not os.path.exists(models_dir):
        return None

    model_files = glob.glob(os.path.join(models_dir, 'model_*.mdl'))
    if not model_files:
        return None

    # Sort by modification time
    model_files.sort(key=os.path.getmtime, reverse=True)
    return model_files[0]


def list_trained_models(models_dir: str = None) -> List[Dict]:
    """List all saved model packages"""
    if models_dir is None:
        models_dir = config.STORAGE['models_dir']
    if not os.path.exists(models_dir):
        return []

    model_files = glob.glob(os.path.join(models_dir, 'model_*.mdl'))
    models = []

    for model_path in sorted(model_files, key=os.path.getmtime, reverse=True):
        name = os.path.basename(model_path)
        models.append({
            'model_path': model_path,
            'created_at': name[len('model_'):-len('.mdl')],
            'size_mb': os.path.getsize(model_path) / (1024 * 1024)
        })

    return models


def format_training_summary(metrics: Dict) -> str:
    """Boxed summary of a finished training run"""
    loss = metrics.get('training_loss')
    accuracy = metrics.get('training_accuracy')
    loss_text = f"{loss:8.5f}" if loss is not None else "     n/a"
    acc_text = f"{accuracy * 100:7.2f}%" if accuracy is not None else "     n/a"

    summary = f"""
╔══════════════════════════════════════════════════════════╗
║                    TRAINING SUMMARY                      ║
╠══════════════════════════════════════════════════════════╣
║ 📉 Final Loss:            {loss_text}                       ║
║ 📊 Final Accuracy:        {acc_text}                       ║
║ ⏱️  Training Time:         {metrics.get('training_time', 0.0):7.1f}s                       ║
║ 🎯 Epochs Trained:        {metrics.get('epochs_trained', 0):5d}                          ║
║ 📦 Batch Size:            {metrics.get('batch_size', 0):5d}                          ║
║ 📚 Training Samples:      {metrics.get('total_samples', 0):5d}                          ║
║ 👥 Number of Classes:     {metrics.get('num_classes', 0):5d}                          ║
╚══════════════════════════════════════════════════════════╝
"""
    return summary
