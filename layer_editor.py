"""
Layer Editor State

Ordered, mutable list of the layer slots the user configured in the
model-editing tab. It is the single source of truth for shape inference,
validation and assembly. Mutations never recompute anything: the caller
pulls a fresh shape trace / validity after each edit.
"""
from typing import Dict, List, Optional, Tuple

from errors import ParamRangeError
from layer_registry import LayerKind, template_for


class LayerSlot:
    """One user-configured layer: a kind plus its integer parameters"""

    def __init__(self, kind, params: Optional[Dict[str, int]] = None):
        self.kind = LayerKind.parse(kind)
        self.params = template_for(self.kind).defaults()
        if params:
            for name, value in params.items():
                self.params[name] = _checked_value(self.kind, name, value)

    def copy(self) -> 'LayerSlot':
        return LayerSlot(self.kind, dict(self.params))

    def to_dict(self) -> Dict:
        return {'kind': self.kind.value, 'params': dict(self.params)}

    def __eq__(self, other):
        if not isinstance(other, LayerSlot):
            return NotImplemented
        return self.kind is other.kind and self.params == other.params

    def __repr__(self):
        args = ', '.join(f"{k}={v}" for k, v in self.params.items())
        return f"LayerSlot({self.kind.value}{', ' if args else ''}{args})"


def _coerce_int(value):
    # Form inputs arrive as strings or floats; accept only integral values
    if isinstance(value, bool):
        raise TypeError("bool is not a layer parameter")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError("not integral")
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"unsupported type {type(value).__name__}")


def _checked_value(kind: LayerKind, name: str, value) -> int:
    spec = template_for(kind).spec(name)
    if spec is None:
        raise ParamRangeError(
            name, value,
            message=f"Layer '{kind.value}' has no parameter '{name}'."
        )
    try:
        number = _coerce_int(value)
    except (TypeError, ValueError):
        raise ParamRangeError(name, value, spec.min, spec.max) from None
    if number < spec.min or number > spec.max:
        raise ParamRangeError(name, value, spec.min, spec.max)
    return number


def _check_selectable(kind: LayerKind):
    if kind is LayerKind.OUTPUT_CLASSIFIER:
        raise ValueError("The output classifier is added automatically and cannot be placed")


class LayerEditor:
    def __init__(self, slots=None):
        if slots is None:
            slots = [LayerSlot(LayerKind.INPUT_CONVOLUTION)]
        self._slots: List[LayerSlot] = []
        for slot in slots:
            if not isinstance(slot, LayerSlot):
                slot = LayerSlot(slot)
            _check_selectable(slot.kind)
            self._slots.append(slot)

    @property
    def slots(self) -> Tuple[LayerSlot, ...]:
        return tuple(self._slots)

    def __len__(self):
        return len(self._slots)

    def __getitem__(self, index) -> LayerSlot:
        return self._slots[index]

    def append(self, kind) -> int:
        """Append a slot initialised from registry defaults; returns its index"""
        kind = LayerKind.parse(kind)
        _check_selectable(kind)
        self._slots.append(LayerSlot(kind))
        return len(self._slots) - 1

    def remove_at(self, index: int):
        self._check_index(index)
        del self._slots[index]

    def set_param(self, index: int, name: str, value):
        """Validate then mutate in place; the prior value survives a rejection"""
        self._check_index(index)
        slot = self._slots[index]
        slot.params[name] = _checked_value(slot.kind, name, value)

    def set_kind(self, index: int, kind):
        """Change the dropdown selection of a slot; params reset to defaults"""
        self._check_index(index)
        kind = LayerKind.parse(kind)
        _check_selectable(kind)
        self._slots[index] = LayerSlot(kind)

    def snapshot(self) -> List[LayerSlot]:
        """Independent copies of the slots (for a training run)"""
        return [slot.copy() for slot in self._slots]

    def to_dict(self) -> List[Dict]:
        return [slot.to_dict() for slot in self._slots]

    @classmethod
    def from_dict(cls, data: List[Dict]) -> 'LayerEditor':
        return cls([LayerSlot(item['kind'], item.get('params')) for item in data])

    def _check_index(self, index):
        # Negative indices are not slot positions
        if not isinstance(index, int) or index < 0 or index >= len(self._slots):
            raise IndexError(f"No layer at index {index} ({len(self._slots)} layers)")
