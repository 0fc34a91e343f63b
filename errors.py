"""
Error taxonomy for the layer builder.

Every error is recoverable: the caller rejects the edit / training attempt
and keeps whatever model, datasets and editor state it had before.
"""
from enum import Enum


class ModelBuilderError(Exception):
    """Base class for all layer-builder errors"""


class ParamRangeError(ModelBuilderError, ValueError):
    """A layer parameter is not an integer inside the template's bounds"""

    def __init__(self, name, value, minimum=None, maximum=None, message=None):
        self.name = name
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        if message is None:
            message = (
                f"Invalid value {value!r} for '{name}': "
                f"expected an integer between {minimum} and {maximum}."
            )
        super().__init__(message)


class ShapeReason(Enum):
    NEEDS_FLATTEN = 'needs_flatten'
    NEEDS_SPATIAL = 'needs_spatial'
    ALREADY_FLAT = 'already_flat'
    NON_INTEGER_DIMENSION = 'non_integer_dimension'
    NON_POSITIVE_DIMENSION = 'non_positive_dimension'

    @property
    def message(self) -> str:
        return _SHAPE_MESSAGES[self]


_SHAPE_MESSAGES = {
    ShapeReason.NEEDS_FLATTEN: "Invalid Model! Must have flatten before fully connected.",
    ShapeReason.NEEDS_SPATIAL: "Invalid Model! Cannot have convolution or max pool after flatten.",
    ShapeReason.ALREADY_FLAT: "Invalid Model! Cannot have multiple flatten layers.",
    ShapeReason.NON_INTEGER_DIMENSION: "Invalid Dimensions! Fix layer parameters.",
    ShapeReason.NON_POSITIVE_DIMENSION: "Invalid Dimensions! Fix layer parameters.",
}


class ShapeError(ModelBuilderError):
    """
    Dimension inference failed.

    `index` is the offending slot (`len(slots)` for the implicit classifier,
    None for the input shape) and `position` the matching trace stage.
    `trace` holds the stages computed before the failure, for display.
    """

    def __init__(self, reason: ShapeReason, index=None, message=None, position=None, trace=()):
        self.reason = reason
        self.index = index
        self.position = position
        self.trace = tuple(trace)
        super().__init__(message or reason.message)


class StructuralReason(Enum):
    MULTIPLE_FLATTEN = "Invalid Model! Cannot have multiple flatten layers."
    POOL_AFTER_FLATTEN = "Invalid Model! Cannot have max pool after flatten."
    CONV_AFTER_FLATTEN = "Invalid Model! Cannot have convolution after flatten."
    DENSE_BEFORE_FLATTEN = "Invalid Model! Must have flatten before fully connected."


class StructuralError(ModelBuilderError):
    """Slot ordering breaks a sequencing rule"""

    def __init__(self, reason: StructuralReason, index=None):
        self.reason = reason
        self.index = index
        super().__init__(reason.value)


class AssemblyError(ModelBuilderError):
    """Concrete layer instantiation failed; raised `from` the underlying error"""


class EmptyDatasetError(ModelBuilderError):
    """No examples were collected"""

    def __init__(self, message="Add some examples before training!"):
        super().__init__(message)


class HyperparameterError(ModelBuilderError, ValueError):
    """Training hyperparameters are unusable (e.g. batch size of 0)"""


class TrainingFailure(ModelBuilderError):
    """The fit call failed, was cancelled or timed out"""

    def __init__(self, message="Unknown model error encountered! Please edit model.", cancelled=False):
        self.cancelled = cancelled
        super().__init__(message)


class TrainingInProgressError(ModelBuilderError):
    """A second training run was requested while one is in flight"""

    def __init__(self, message="A training run is already in progress."):
        super().__init__(message)


class ArtifactError(ModelBuilderError):
    """A model package could not be written or read"""
