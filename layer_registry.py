"""
Layer Template Registry

Static catalog of the layers the editor can place in the head. Templates
are immutable values; `build` always constructs a fresh Keras layer from
primitive ints, so nothing built from a template can leak edits back into
the catalog or into another slot.
"""
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Tuple

from tensorflow.keras import layers


class LayerKind(str, Enum):
    FULLY_CONNECTED = 'fc'
    CONVOLUTION = 'conv'
    MAX_POOL = 'maxpool'
    FLATTEN = 'flat'
    INPUT_CONVOLUTION = 'conv-0'
    OUTPUT_CLASSIFIER = 'fc-final'

    @classmethod
    def parse(cls, value) -> 'LayerKind':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown layer kind: {value!r}") from None


class ParamSpec(NamedTuple):
    name: str
    label: str
    default: int
    min: int
    max: int
    step: int = 1


class LayerTemplate(NamedTuple):
    kind: LayerKind
    display_name: str
    params: Tuple[ParamSpec, ...]
    factory: Callable

    @property
    def param_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.params)

    def spec(self, name: str) -> Optional[ParamSpec]:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def defaults(self) -> Dict[str, int]:
        """New dict of default values (never shared with the template)"""
        return {p.name: p.default for p in self.params}

    def build(self, params: Mapping[str, int], inferred_width: Optional[int] = None):
        """Instantiate a fresh Keras layer"""
        values = {name: int(params[name]) for name in self.param_names}
        if self.kind is LayerKind.OUTPUT_CLASSIFIER:
            if inferred_width is None:
                raise ValueError("The output classifier needs the number of labels")
            return self.factory(int(inferred_width))
        return self.factory(**values)

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'name': self.display_name,
            'params': [p._asdict() for p in self.params],
        }


def _dense(units):
    return layers.Dense(
        units,
        activation='relu',
        kernel_initializer='variance_scaling',
        use_bias=True
    )


def _conv(kernel_size, filters, strides):
    return layers.Conv2D(
        filters,
        kernel_size=(kernel_size, kernel_size),
        strides=(strides, strides),
        padding='valid',
        activation='relu',
        kernel_initializer='variance_scaling'
    )


def _max_pool(pool_size, strides):
    return layers.MaxPooling2D(
        pool_size=(pool_size, pool_size),
        strides=(strides, strides),
        padding='valid'
    )


def _flatten():
    return layers.Flatten()


def _classifier(units):
    return layers.Dense(
        units,
        activation='softmax',
        kernel_initializer='variance_scaling',
        use_bias=False
    )


_CONV_PARAMS = (
    ParamSpec('kernel_size', 'Kernel size', 5, 1, 100),
    ParamSpec('filters', 'Filters', 32, 1, 100),
    ParamSpec('strides', 'Strides', 1, 1, 100),
)

TEMPLATES: Mapping[LayerKind, LayerTemplate] = MappingProxyType({
    LayerKind.FULLY_CONNECTED: LayerTemplate(
        LayerKind.FULLY_CONNECTED, 'Fully Connected',
        (ParamSpec('units', 'Units', 100, 1, 300),),
        _dense,
    ),
    LayerKind.CONVOLUTION: LayerTemplate(
        LayerKind.CONVOLUTION, 'Convolution', _CONV_PARAMS, _conv,
    ),
    LayerKind.MAX_POOL: LayerTemplate(
        LayerKind.MAX_POOL, 'Max Pool',
        (
            ParamSpec('pool_size', 'Pool size', 2, 1, 20),
            ParamSpec('strides', 'Strides', 2, 1, 20),
        ),
        _max_pool,
    ),
    LayerKind.FLATTEN: LayerTemplate(
        LayerKind.FLATTEN, 'Flatten', (), _flatten,
    ),
    LayerKind.INPUT_CONVOLUTION: LayerTemplate(
        LayerKind.INPUT_CONVOLUTION, 'Convolution', _CONV_PARAMS, _conv,
    ),
    LayerKind.OUTPUT_CLASSIFIER: LayerTemplate(
        LayerKind.OUTPUT_CLASSIFIER, 'Softmax Classifier', (), _classifier,
    ),
})

# Kinds offered by the "add layer" dropdown
USER_KINDS = (
    LayerKind.FULLY_CONNECTED,
    LayerKind.CONVOLUTION,
    LayerKind.MAX_POOL,
    LayerKind.FLATTEN,
)


def template_for(kind) -> LayerTemplate:
    return TEMPLATES[LayerKind.parse(kind)]


def user_kinds() -> Tuple[LayerKind, ...]:
    return USER_KINDS


def describe_templates() -> Dict:
    """Catalog as JSON-ready dicts for the layer form"""
    return {
        'templates': [t.to_dict() for t in TEMPLATES.values()],
        'user_kinds': [k.value for k in USER_KINDS],
    }
