"""
Datasets owned by the training session.

`ExampleStore` stages the raw webcam frames per label. `Dataset` holds the
examples actually fed to the model (image, extractor features, label) and is
rebuilt from its store before every training / prediction run. An array
passed to `Dataset.add_example` belongs to the dataset from then on; the
store always keeps its own copies.
"""
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from tensorflow import keras

from errors import EmptyDatasetError


class ExampleStore:
    """Captured frames per label id"""

    def __init__(self):
        self._images: Dict[int, List[np.ndarray]] = {}

    def add(self, label_id: int, image: np.ndarray):
        self._images.setdefault(label_id, []).append(np.array(image, copy=True))

    def remove_label(self, label_id: int):
        self._images.pop(label_id, None)

    def clear(self):
        self._images.clear()

    def items(self) -> Iterator[Tuple[int, np.ndarray]]:
        for label_id, images in self._images.items():
            for image in images:
                yield label_id, image

    def count(self, label_id: Optional[int] = None) -> int:
        if label_id is not None:
            return len(self._images.get(label_id, []))
        return sum(len(images) for images in self._images.values())

    def is_empty(self) -> bool:
        return self.count() == 0


class Dataset:
    def __init__(self):
        self._labels: Dict[int, str] = {}
        self._next_label_id = 0
        self._examples: List[Tuple[np.ndarray, np.ndarray, int]] = []

    # Labels

    def add_label(self, name: str, label_id: Optional[int] = None) -> int:
        if label_id is None:
            label_id = self._next_label_id
        if label_id in self._labels:
            raise ValueError(f"Label id {label_id} already exists")
        self._labels[label_id] = name
        self._next_label_id = max(self._next_label_id, label_id + 1)
        return label_id

    def remove_label(self, label_id: int):
        if label_id not in self._labels:
            raise KeyError(label_id)
        del self._labels[label_id]
        self._examples = [e for e in self._examples if e[2] != label_id]

    def has_label(self, label_id: int) -> bool:
        return label_id in self._labels

    @property
    def labels(self) -> Dict[int, str]:
        return dict(self._labels)

    def with_same_labels(self) -> 'Dataset':
        """Empty dataset sharing this one's label ids and names"""
        dataset = Dataset()
        for label_id, name in self._labels.items():
            dataset.add_label(name, label_id)
        dataset._next_label_id = self._next_label_id
        return dataset

    @property
    def label_ids(self) -> List[int]:
        return list(self._labels)

    @property
    def num_labels(self) -> int:
        return len(self._labels)

    def class_index(self, label_id: int) -> int:
        return self.label_ids.index(label_id)

    def label_names(self) -> Dict[str, str]:
        """Class index -> label name, as stored in model_labels.json"""
        return {str(i): name for i, name in enumerate(self._labels.values())}

    def set_label_names(self, mapping: Dict[str, str]):
        """Replace all labels with an uploaded index -> name mapping"""
        self._labels = {}
        self._next_label_id = 0
        self._examples = []
        for key in sorted(mapping, key=int):
            self.add_label(mapping[key], int(key))

    # Examples

    def add_example(self, image: np.ndarray, features: np.ndarray, label_id: int):
        if label_id not in self._labels:
            raise KeyError(f"Unknown label id {label_id}")
        self._examples.append((image, features, label_id))

    def remove_examples(self):
        """Drop every example, keep the labels"""
        self._examples = []

    @property
    def num_examples(self) -> int:
        return len(self._examples)

    def get_data(self, class_indices: Optional[Dict[int, int]] = None) -> Dict[str, np.ndarray]:
        """
        Stacked features, one-hot labels and the source images.

        With `class_indices` (label id -> class index of a trained model) the
        labels use that numbering and examples of unknown labels are left out.
        """
        if class_indices is None:
            class_indices = {label_id: i for i, label_id in enumerate(self._labels)}
        examples = [e for e in self._examples if e[2] in class_indices]
        if not examples:
            raise EmptyDatasetError()
        images = np.stack([e[0] for e in examples]).astype(np.float32)
        inputs = np.stack([e[1] for e in examples]).astype(np.float32)
        indices = np.array([class_indices[e[2]] for e in examples], dtype=np.int32)
        labels = keras.utils.to_categorical(indices, num_classes=max(class_indices.values()) + 1)
        return {'inputs': inputs, 'labels': labels, 'images': images}
