"""
Dimension Inference Engine

Folds the slot list over the extractor's output shape and returns the
shape after every stage. Dimensions are computed with true division and
validated afterwards: a pool/stride combination that does not divide
evenly is reported as a dimension error rather than silently floored.
"""
from typing import NamedTuple, Sequence, Tuple, Union

from errors import ShapeError, ShapeReason
from layer_registry import LayerKind


class Spatial(NamedTuple):
    height: float
    width: float
    channels: float

    @property
    def dims(self):
        return (self.height, self.width, self.channels)

    def __str__(self):
        return ','.join(_fmt(d) for d in self.dims)


class Flat(NamedTuple):
    width: float

    @property
    def dims(self):
        return (self.width,)

    def __str__(self):
        return _fmt(self.width)


class Unresolved(NamedTuple):
    """Classifier output: width is the number of labels, bound at train time"""

    @property
    def dims(self):
        return ()

    def __str__(self):
        return 'Number of Labels'


Shape = Union[Spatial, Flat, Unresolved]
ShapeTrace = Tuple[Shape, ...]

DEFAULT_INPUT_SHAPE = Spatial(7, 7, 256)


def _fmt(d):
    if isinstance(d, float) and d.is_integer():
        d = int(d)
    return str(d)


def _conv_output(shape: Spatial, kernel, strides, channels) -> Spatial:
    return Spatial(
        (shape.height - kernel) / strides + 1,
        (shape.width - kernel) / strides + 1,
        channels,
    )


def _step(shape: Shape, slot) -> Shape:
    kind = slot.kind
    params = slot.params

    if kind is LayerKind.FULLY_CONNECTED:
        if not isinstance(shape, Flat):
            raise ShapeError(ShapeReason.NEEDS_FLATTEN)
        return Flat(params['units'])

    if kind in (LayerKind.CONVOLUTION, LayerKind.INPUT_CONVOLUTION):
        if not isinstance(shape, Spatial):
            raise ShapeError(
                ShapeReason.NEEDS_SPATIAL,
                message="Invalid Model! Cannot have convolution after flatten."
            )
        return _conv_output(shape, params['kernel_size'], params['strides'], params['filters'])

    if kind is LayerKind.MAX_POOL:
        if not isinstance(shape, Spatial):
            raise ShapeError(
                ShapeReason.NEEDS_SPATIAL,
                message="Invalid Model! Cannot have max pool after flatten."
            )
        return _conv_output(shape, params['pool_size'], params['strides'], shape.channels)

    if kind is LayerKind.FLATTEN:
        if not isinstance(shape, Spatial):
            raise ShapeError(ShapeReason.ALREADY_FLAT)
        return Flat(shape.height * shape.width * shape.channels)

    if kind is LayerKind.OUTPUT_CLASSIFIER:
        if not isinstance(shape, Flat):
            raise ShapeError(ShapeReason.NEEDS_FLATTEN)
        return Unresolved()

    raise ValueError(f"Unsupported layer kind: {kind}")


def _normalise(shape: Shape) -> Shape:
    if isinstance(shape, Unresolved):
        return shape
    return type(shape)(*(int(d) for d in shape.dims))


def _check_dimensions(trace):
    for position, stage in enumerate(trace):
        index = position - 1 if position else None
        for d in stage.dims:
            if float(d) != int(d):
                raise ShapeError(
                    ShapeReason.NON_INTEGER_DIMENSION, index,
                    f"Invalid Dimensions! Fix layer parameters. ({stage} is not a whole number)",
                    position, trace
                )
            if d <= 0:
                raise ShapeError(
                    ShapeReason.NON_POSITIVE_DIMENSION, index,
                    f"Invalid Dimensions! Fix layer parameters. ({stage} has a dimension below 1)",
                    position, trace
                )


def infer(slots: Sequence, input_shape: Shape = DEFAULT_INPUT_SHAPE,
          with_classifier: bool = True) -> ShapeTrace:
    """
    Shape after every stage of the head.

    Returns (input, one shape per slot, Unresolved classifier output). With
    `with_classifier=False` the trace stops after the last slot. Ordering
    errors are raised first, then dimension errors, then the classifier's
    need for a flat input; a ShapeError carries the stages computed so far.
    """
    trace = [input_shape]
    shape = input_shape
    for index, slot in enumerate(slots):
        try:
            shape = _step(shape, slot)
        except ShapeError as e:
            e.index = index
            e.position = index + 1
            e.trace = tuple(trace)
            raise
        trace.append(shape)

    _check_dimensions(tuple(trace))
    trace = [_normalise(stage) for stage in trace]

    if with_classifier:
        # Implicit output classifier
        if not isinstance(trace[-1], Flat):
            raise ShapeError(
                ShapeReason.NEEDS_FLATTEN, len(slots),
                position=len(slots) + 1, trace=trace
            )
        trace.append(Unresolved())

    return tuple(trace)


def to_shape(dims) -> Shape:
    """Shape from a Keras-style tuple (batch axis already dropped)"""
    dims = tuple(int(d) for d in dims)
    if len(dims) == 3:
        return Spatial(*dims)
    if len(dims) == 1:
        return Flat(*dims)
    raise ValueError(f"Unsupported feature shape: {dims}")


def format_trace(trace: ShapeTrace):
    """Display rows "<in> --> <out>" for each stage"""
    return [f"{trace[i]} --> {trace[i + 1]}" for i in range(len(trace) - 1)]


def trace_to_list(trace: ShapeTrace):
    out = []
    for stage in trace:
        if isinstance(stage, Unresolved):
            out.append(None)
        else:
            out.append([int(d) if float(d).is_integer() else d for d in stage.dims])
    return out
