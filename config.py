"""
Configuration
- Frozen feature extractor catalog (MobileNet v1 α=0.25 / SqueezeNet)
- Layer editor input shape (7x7x256)
- Training defaults, optimizers
- Saliency (SmoothGrad) settings
- API / storage settings
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

class Config:
    # Frozen feature extractor
    MODEL = {
        'image_size': 224,
        'feature_shape': (7, 7, 256),
        'default_extractor': '0',
        'extractor_weights': os.getenv('EXTRACTOR_WEIGHTS', 'imagenet'),
        'extractors': {
            '0': {
                'name': 'mobilenet',
                'lastLayer': 'conv_pw_13_relu',
                'url': 'https://storage.googleapis.com/tfjs-models/tfjs/mobilenet_v1_0.25_224/model.json',
            },
            '1': {
                'name': 'squeezenet',
                'lastLayer': 'max_pooling2d_1',
                'url': os.getenv('SQUEEZENET_MODEL_PATH', 'extractors/squeezenet.keras'),
            },
        },
    }

    # Training Hyperparameters
    TRAINING = {
        'optimizer': '0',
        'learning_rate': 0.0001,
        'batch_size_fraction': 0.4,
        'epochs': 20,
        'seed': None,
        'optimizers': {
            '0': 'adam',
            '1': 'adadelta',
            '2': 'adagrad',
            '3': 'sgd',
        },
        'top_k': 3,
    }

    # SmoothGrad
    SALIENCY = {
        'num_samples': 15,
        'noise_std': 0.1,
        'clip_percent': 0.99,
    }

    # API Settings
    API = {
        'cors_origins': '*',
        'host': os.getenv('API_HOST', '0.0.0.0'),
        'port': int(os.getenv('API_PORT', '5000')),
        'debug': os.getenv('API_DEBUG', 'false').lower() == 'true',
        'max_upload_mb': 100,
    }

    # Storage
    STORAGE = {
        'models_dir': os.getenv('MODELS_DIR', 'trained_models'),
        'artifact_name': 'model.mdl',
        'topology_file': 'model.json',
        'weights_file': 'model.weights.h5',
        'labels_file': 'model_labels.json',
        'extractor_file': 'transfer_model.json',
    }

config = Config()
