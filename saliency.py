"""
SmoothGrad saliency over the combined (extractor + head) model.

Gradients of the top class score with respect to the input image, averaged
over noisy copies of the image, reduced over channels and clipped at a
percentile so a few hot pixels do not wash out the map.
"""
import numpy as np
import tensorflow as tf

from config import config


def smooth_grad(image, model, num_samples=None, noise_std=None, clip_percent=None, seed=None):
    """
    Args:
        image: (H, W, C) preprocessed image
        model: combined model taking images
        noise_std: noise level relative to the image's value range

    Returns:
        (H, W) float32 map scaled to [0, 1]
    """
    if num_samples is None:
        num_samples = config.SALIENCY['num_samples']
    if noise_std is None:
        noise_std = config.SALIENCY['noise_std']
    if clip_percent is None:
        clip_percent = config.SALIENCY['clip_percent']

    image = np.asarray(image, dtype=np.float32)
    batch = image[np.newaxis, ...]
    target = int(np.argmax(model(batch, training=False)[0]))

    sigma = noise_std * float(np.max(image) - np.min(image))
    rng = np.random.default_rng(seed)
    noisy = batch + rng.normal(0.0, sigma, size=(num_samples,) + image.shape).astype(np.float32)

    x = tf.convert_to_tensor(noisy)
    with tf.GradientTape() as tape:
        tape.watch(x)
        scores = model(x, training=False)[:, target]
    grads = tape.gradient(scores, x).numpy()

    saliency = np.max(np.abs(grads.mean(axis=0)), axis=-1)
    ceiling = np.quantile(saliency, clip_percent)
    floor = np.min(saliency)
    if ceiling <= floor:
        return np.zeros_like(saliency, dtype=np.float32)
    saliency = np.clip((saliency - floor) / (ceiling - floor), 0.0, 1.0)
    return saliency.astype(np.float32)
