"""
Structural Validator

Train-time admission check on slot ordering. Independent of
the dimension engine: it only tracks whether a flatten has been seen.
"""
from typing import Sequence

from errors import StructuralError, StructuralReason
from layer_registry import LayerKind


def validate(slots: Sequence) -> None:
    """Raise StructuralError for the first slot that breaks the ordering rules"""
    flatten_seen = False
    for index, slot in enumerate(slots):
        kind = slot.kind
        if flatten_seen:
            if kind is LayerKind.FLATTEN:
                raise StructuralError(StructuralReason.MULTIPLE_FLATTEN, index)
            if kind is LayerKind.MAX_POOL:
                raise StructuralError(StructuralReason.POOL_AFTER_FLATTEN, index)
            if kind in (LayerKind.CONVOLUTION, LayerKind.INPUT_CONVOLUTION):
                raise StructuralError(StructuralReason.CONV_AFTER_FLATTEN, index)
        else:
            if kind is LayerKind.FLATTEN:
                flatten_seen = True
            elif kind in (LayerKind.FULLY_CONNECTED, LayerKind.OUTPUT_CLASSIFIER):
                raise StructuralError(StructuralReason.DENSE_BEFORE_FLATTEN, index)

    # The implicit softmax classifier is a dense layer too
    if not flatten_seen:
        raise StructuralError(StructuralReason.DENSE_BEFORE_FLATTEN, len(slots))


def is_valid(slots: Sequence) -> bool:
    try:
        validate(slots)
    except StructuralError:
        return False
    return True
