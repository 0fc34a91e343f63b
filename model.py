"""
Model assembly
- Frozen feature extractor (MobileNet v1 α=0.25, truncated at conv_pw_13_relu)
- Trainable head built from the editor's layer slots
- Extractor + head stitched into one end-to-end model
"""
from typing import Dict, Mapping, Sequence

from tensorflow import keras

from config import config
from errors import AssemblyError, HyperparameterError
from layer_registry import LayerKind, template_for
from shapes import Shape, ShapeTrace, to_shape

OPTIMIZERS = {
    'adam': keras.optimizers.Adam,
    'adadelta': keras.optimizers.Adadelta,
    'adagrad': keras.optimizers.Adagrad,
    'sgd': keras.optimizers.SGD,
}


def load_feature_extractor(info: Mapping, weights=None) -> keras.Model:
    """
    Create the frozen feature extractor described by `info`
    ({"name", "lastLayer", "url"}), truncated at its last layer.
    """
    if weights is None:
        weights = config.MODEL['extractor_weights']
    size = config.MODEL['image_size']

    if info['name'] == 'mobilenet':
        # Keras counterpart of mobilenet_v1_0.25_224
        base = keras.applications.MobileNet(
            input_shape=(size, size, 3),
            alpha=0.25,
            include_top=False,
            weights=weights
        )
    else:
        base = keras.models.load_model(info['url'], compile=False)

    layer = base.get_layer(info['lastLayer'])
    extractor = keras.Model(
        inputs=base.inputs,
        outputs=layer.output,
        name=f"{info['name']}_features"
    )
    extractor.trainable = False

    print(f"✅ Feature extractor loaded: {info['name']}")
    print(f"   Last layer: {info['lastLayer']}")
    print(f"   Output shape: {tuple(extractor.outputs[0].shape)}")

    return extractor


def feature_shape(extractor: keras.Model) -> Shape:
    """Shape of the extractor's output, without the batch axis"""
    return to_shape(tuple(extractor.outputs[0].shape)[1:])


def build_head(slots: Sequence, trace: ShapeTrace, num_labels: int) -> keras.Sequential:
    """
    Instantiate the trainable head from the layer slots.

    Every layer is constructed fresh from the slot's integer parameters and
    a softmax classifier with `num_labels` units is appended. Any failure is
    raised as AssemblyError and no partial model escapes.
    """
    if num_labels < 1:
        raise AssemblyError("Need at least one label to build the classifier.")
    if len(trace) != len(slots) + 2:
        raise AssemblyError(
            f"Shape trace has {len(trace)} stages for {len(slots)} layers."
        )

    input_dims = tuple(trace[0].dims)
    try:
        built = [template_for(slot.kind).build(slot.params) for slot in slots]
        built.append(
            template_for(LayerKind.OUTPUT_CLASSIFIER).build({}, inferred_width=num_labels)
        )

        # Check every stage against the inferred trace before materialising
        shape = (None,) + input_dims
        for position, layer in enumerate(built[:-1], start=1):
            shape = tuple(layer.compute_output_shape(shape))
            expected = tuple(trace[position].dims)
            if tuple(shape[1:]) != expected:
                raise ValueError(
                    f"layer {position - 1} produces {tuple(shape[1:])}, expected {expected}"
                )

        head = keras.Sequential(
            [keras.Input(shape=input_dims)] + built,
            name='head'
        )
        output_shape = tuple(head.outputs[0].shape)
    except Exception as e:
        raise AssemblyError(
            f"Unknown model error encountered! Please edit model. ({e})"
        ) from e

    if output_shape[1:] != (num_labels,):
        raise AssemblyError(
            f"Head output {output_shape} does not match {num_labels} labels."
        )

    return head


def make_optimizer(optimizer='0', learning_rate: float = None):
    if learning_rate is None:
        learning_rate = config.TRAINING['learning_rate']
    name = config.TRAINING['optimizers'].get(str(optimizer), str(optimizer)).lower()
    if name not in OPTIMIZERS:
        raise HyperparameterError(f"Unknown optimizer: {optimizer!r}")
    try:
        learning_rate = float(learning_rate)
    except (TypeError, ValueError):
        raise HyperparameterError(f"Learning rate is not a number: {learning_rate!r}") from None
    if not learning_rate > 0:
        raise HyperparameterError("Learning rate must be positive.")
    return OPTIMIZERS[name](learning_rate=learning_rate)


def compile_head(head: keras.Model, optimizer='0', learning_rate: float = None) -> keras.Model:
    head.compile(
        optimizer=make_optimizer(optimizer, learning_rate),
        loss='categorical_crossentropy',
        metrics=['accuracy']
    )
    return head


def stitch(extractor: keras.Model, head: keras.Model) -> keras.Model:
    """
    Apply every head layer, in order, to the extractor's output tensor.
    The result takes images and returns class probabilities.
    """
    output = extractor.outputs[0]
    for layer in head.layers:
        output = layer(output)

    combined = keras.Model(
        inputs=extractor.inputs,
        outputs=output,
        name='combined'
    )
    print(f"✅ Combined model: {tuple(combined.inputs[0].shape)} -> {tuple(combined.outputs[0].shape)}")
    return combined


def describe_head(head: keras.Model) -> Dict:
    return {
        'input_shape': list(head.inputs[0].shape[1:]),
        'output_shape': list(head.outputs[0].shape[1:]),
        'num_params': int(head.count_params()),
        'layers': [
            {'name': layer.name, 'type': layer.__class__.__name__}
            for layer in head.layers
        ],
    }
