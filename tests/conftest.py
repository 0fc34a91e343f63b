import numpy as np
import pytest
from tensorflow import keras

from training import TrainingSession

IMAGE_SIZE = 8


def make_tiny_extractor(info=None):
    """Small stand-in for MobileNet whose last layer outputs 7x7x256"""
    inputs = keras.Input(shape=(IMAGE_SIZE, IMAGE_SIZE, 3))
    x = keras.layers.Conv2D(256, 2, activation='relu', name='conv_pw_13_relu')(inputs)
    extractor = keras.Model(inputs, x, name='tiny_features')
    extractor.trainable = False
    return extractor


@pytest.fixture
def tiny_extractor():
    keras.utils.set_random_seed(0)
    return make_tiny_extractor()


@pytest.fixture
def session():
    keras.utils.set_random_seed(0)
    extractor = make_tiny_extractor()
    return TrainingSession(extractor_loader=lambda info: extractor)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def random_image(rng):
    return rng.uniform(-1.0, 1.0, size=(IMAGE_SIZE, IMAGE_SIZE, 3)).astype(np.float32)


@pytest.fixture
def populated_session(session, rng):
    """Three labels, four training frames each, and a [flatten, fc 10] editor"""
    from layer_registry import LayerKind

    for name in ('rock', 'paper', 'scissors'):
        label_id = session.add_label(name)
        for _ in range(4):
            session.add_example(label_id, random_image(rng))
            session.add_example(label_id, random_image(rng), dataset='testing')

    session.editor.set_kind(0, LayerKind.FLATTEN)
    index = session.editor.append(LayerKind.FULLY_CONNECTED)
    session.editor.set_param(index, 'units', 10)
    return session
