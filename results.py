"""
Prediction results: top-k classes per example plus a wrapping cursor for
stepping through them one image at a time.
"""
from typing import Dict, List, Mapping

import numpy as np

from config import config


class ResultsSet:
    def __init__(self, images, actual_indices, predicted_indices, predicted_values, label_names: Mapping[str, str]):
        self.images = images
        self.actual_indices = np.asarray(actual_indices, dtype=np.int32)
        self.predicted_indices = np.asarray(predicted_indices, dtype=np.int32)
        self.predicted_values = np.asarray(predicted_values, dtype=np.float32)
        self.label_names = dict(label_names)
        self._cursor = -1

    def __len__(self):
        return len(self.actual_indices)

    def _name(self, index) -> str:
        return self.label_names.get(str(int(index)), str(int(index)))

    def result(self, i: int) -> Dict:
        return {
            'index': i,
            'actual': int(self.actual_indices[i]),
            'actual_name': self._name(self.actual_indices[i]),
            'predictions': [
                {
                    'index': int(idx),
                    'name': self._name(idx),
                    'probability': float(p),
                }
                for idx, p in zip(self.predicted_indices[i], self.predicted_values[i])
            ],
            'correct': int(self.predicted_indices[i][0]) == int(self.actual_indices[i]),
        }

    def next_result(self) -> Dict:
        self._cursor = (self._cursor + 1) % len(self)
        return self.result(self._cursor)

    def previous_result(self) -> Dict:
        self._cursor = (self._cursor - 1) % len(self)
        return self.result(self._cursor)

    @property
    def accuracy(self) -> float:
        if len(self) == 0:
            return 0.0
        return float(np.mean(self.predicted_indices[:, 0] == self.actual_indices))

    def to_dict(self) -> Dict:
        return {
            'count': len(self),
            'accuracy': self.accuracy,
            'label_names': self.label_names,
            'results': [self.result(i) for i in range(len(self))],
        }


def predict_top_k(model, inputs, labels_one_hot, images, label_names: Mapping[str, str], k: int = None) -> ResultsSet:
    """Run `model` on `inputs` and keep the k most likely classes per example"""
    if k is None:
        k = config.TRAINING['top_k']
    num_predictions = min(k, len(label_names))

    probabilities = np.asarray(model.predict(inputs, verbose=0))
    order = np.argsort(-probabilities, axis=1, kind='stable')[:, :num_predictions]
    values = np.take_along_axis(probabilities, order, axis=1)
    actual = np.argmax(labels_one_hot, axis=1)

    return ResultsSet(images, actual, order, values, label_names)
