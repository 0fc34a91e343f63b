"""
Training / inference session

Owns the frozen feature extractor, the layer editor, the datasets and the
trained head. A training run either completes and swaps in the new head,
dataset and combined model together, or fails and leaves all of them as
they were.
"""
import math
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Optional

import numpy as np
from tensorflow import keras
from tqdm import tqdm

from artifact import load_artifact, save_artifact
from config import config
from dataset import Dataset, ExampleStore
from errors import (
    EmptyDatasetError,
    HyperparameterError,
    ModelBuilderError,
    TrainingFailure,
    TrainingInProgressError,
)
from layer_editor import LayerEditor
from model import build_head, compile_head, feature_shape, load_feature_extractor, stitch
from results import ResultsSet, predict_top_k
from saliency import smooth_grad
from shapes import Spatial, ShapeTrace, infer
from structure import validate
from utils import format_training_summary

DATASETS = ('training', 'testing')


class CancellationToken:
    """Set from any thread; checked by the fit loop at batch boundaries"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressCallback(keras.callbacks.Callback):
    """Reports (epoch, batch, loss) after every batch and stops on cancel/timeout"""

    def __init__(self, on_batch_end: Optional[Callable] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 timeout: Optional[float] = None):
        super().__init__()
        self._on_batch_end = on_batch_end
        self._cancel_token = cancel_token
        self._timeout = timeout
        self._started = None
        self.epoch = 0
        self.cancelled = False
        self.timed_out = False

    def on_train_begin(self, logs=None):
        self._started = time.monotonic()

    def on_epoch_begin(self, epoch, logs=None):
        self.epoch = epoch
        self._check_stop()

    def on_train_batch_end(self, batch, logs=None):
        loss = None
        if logs and 'loss' in logs:
            loss = float(logs['loss'])
        if self._on_batch_end is not None:
            self._on_batch_end(self.epoch, batch, loss)
        self._check_stop()

    def _check_stop(self):
        if self._cancel_token is not None and self._cancel_token.cancelled:
            self.cancelled = True
        elif self._timeout is not None and time.monotonic() - self._started > self._timeout:
            self.timed_out = True
        if self.cancelled or self.timed_out:
            self.model.stop_training = True


class TrainingSession:
    def __init__(self, extractor_key: str = None, extractor_loader: Callable = load_feature_extractor,
                 editor: LayerEditor = None):
        if extractor_key is None:
            extractor_key = config.MODEL['default_extractor']
        self.extractor_info = dict(config.MODEL['extractors'][extractor_key])
        self._extractor_loader = extractor_loader
        self.extractor = None

        self.editor = editor if editor is not None else LayerEditor()

        self.training_dataset = Dataset()
        self.testing_dataset = Dataset()
        self.training_examples = ExampleStore()
        self.testing_examples = ExampleStore()

        self.head = None
        self.combined = None
        self.label_names: Dict[str, str] = {}
        # label id -> class index the current head was trained with
        self.class_indices: Dict[int, int] = {}
        self.last_metrics = None

        self._train_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Feature extractor
    # ------------------------------------------------------------------
    def select_extractor(self, key: str):
        try:
            info = dict(config.MODEL['extractors'][str(key)])
        except KeyError:
            raise ValueError(f"Unknown feature extractor: {key!r}") from None
        with self._idle():
            if info != self.extractor_info:
                self.extractor_info = info
                self.extractor = None

    def get_extractor(self) -> keras.Model:
        if self.extractor is None:
            print(f"\n🔄 Loading feature extractor '{self.extractor_info['name']}'...")
            self.extractor = self._extractor_loader(self.extractor_info)
        return self.extractor

    def input_shape(self):
        if self.extractor is not None:
            return feature_shape(self.extractor)
        return Spatial(*config.MODEL['feature_shape'])

    # ------------------------------------------------------------------
    # Labels and examples
    # ------------------------------------------------------------------
    def add_label(self, name: str) -> int:
        with self._idle():
            label_id = self.training_dataset.add_label(name)
            self.testing_dataset.add_label(name, label_id)
        return label_id

    def remove_label(self, label_id: int):
        with self._idle():
            self.training_dataset.remove_label(label_id)
            self.testing_dataset.remove_label(label_id)
            self.training_examples.remove_label(label_id)
            self.testing_examples.remove_label(label_id)

    def add_example(self, label_id: int, image, dataset: str = 'training'):
        if dataset not in DATASETS:
            raise ValueError(f"Unknown dataset: {dataset!r}")
        if not self.training_dataset.has_label(label_id):
            raise KeyError(f"Unknown label id {label_id}")
        image = np.asarray(image, dtype=np.float32)
        if image.ndim != 3:
            raise ValueError(f"Expected an (H, W, C) image, got shape {image.shape}")
        self._store(dataset).add(label_id, image)

    def _store(self, dataset: str) -> ExampleStore:
        return self.training_examples if dataset == 'training' else self.testing_examples

    # ------------------------------------------------------------------
    # Editor feedback
    # ------------------------------------------------------------------
    def get_shape_trace(self) -> ShapeTrace:
        return infer(self.editor.slots, self.input_shape())

    def get_structural_validity(self) -> None:
        validate(self.editor.slots)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    @property
    def is_training(self) -> bool:
        return self._train_lock.locked()

    @contextmanager
    def _idle(self):
        """Hold the training lock for a label or model change, or refuse it"""
        if not self._train_lock.acquire(blocking=False):
            raise TrainingInProgressError()
        try:
            yield
        finally:
            self._train_lock.release()

    def _hyperparams(self, hyperparams: Optional[Dict]) -> Dict:
        params = {
            key: config.TRAINING[key]
            for key in ('optimizer', 'learning_rate', 'batch_size_fraction', 'epochs', 'seed')
        }
        params.update({k: v for k, v in (hyperparams or {}).items() if v is not None})
        try:
            params['epochs'] = int(params['epochs'])
            params['batch_size_fraction'] = float(params['batch_size_fraction'])
        except (TypeError, ValueError) as e:
            raise HyperparameterError(f"Invalid training settings: {e}") from None
        if params['epochs'] < 1:
            raise HyperparameterError("Epochs must be at least 1.")
        return params

    def _featurize(self, store: ExampleStore, labels_from: Dataset) -> Dataset:
        """New dataset with extractor features for every staged frame"""
        extractor = self.get_extractor()
        dataset = labels_from.with_same_labels()
        staged = [(label_id, image) for label_id, image in store.items() if dataset.has_label(label_id)]
        for label_id, image in tqdm(staged, desc="   Extracting features"):
            features = extractor.predict(image[np.newaxis, ...], verbose=0)[0]
            # The dataset owns this copy; the store keeps its own
            dataset.add_example(np.array(image, copy=True), features, label_id)
        return dataset

    def build_and_train(self, hyperparams: Optional[Dict] = None,
                        on_batch_end: Optional[Callable] = None,
                        cancel_token: Optional[CancellationToken] = None,
                        timeout: Optional[float] = None) -> keras.Model:
        """
        Build the head from the editor, train it on extractor features and
        return the combined (extractor + head) model.

        on_batch_end(epoch, batch, loss) is called after every batch, in order.
        """
        params = self._hyperparams(hyperparams)

        if self.training_examples.is_empty():
            raise EmptyDatasetError()

        slots = self.editor.snapshot()
        validate(slots)

        if not self._train_lock.acquire(blocking=False):
            raise TrainingInProgressError()
        try:
            extractor = self.get_extractor()
            trace = infer(slots, feature_shape(extractor))

            print("\n" + "="*60)
            print("🚀 STARTING TRAINING")
            print("="*60)
            start_time = datetime.now()

            if params['seed'] is not None:
                keras.utils.set_random_seed(int(params['seed']))

            print("\n🔄 Preparing training data...")
            dataset = self._featurize(self.training_examples, self.training_dataset)
            if dataset.num_examples == 0:
                raise EmptyDatasetError()
            data = dataset.get_data()

            print("\n🏗️ Building model...")
            head = build_head(slots, trace, dataset.num_labels)
            compile_head(head, params['optimizer'], params['learning_rate'])

            # Batch size is a fraction of however many examples were collected
            batch_size = math.floor(dataset.num_examples * params['batch_size_fraction'])
            if not batch_size > 0:
                raise HyperparameterError("Batch size is 0 or NaN. Please choose a non-zero fraction.")

            print(f"\n📋 Training Configuration:")
            print(f"   Layers: {', '.join(slot.kind.value for slot in slots)} + fc-final")
            print(f"   Examples: {dataset.num_examples}, Labels: {dataset.num_labels}")
            print(f"   Epochs: {params['epochs']}")
            print(f"   Batch size: {batch_size}")
            print(f"   Optimizer: {params['optimizer']} (lr={params['learning_rate']})")

            progress = ProgressCallback(on_batch_end, cancel_token, timeout)
            try:
                history = head.fit(
                    data['inputs'], data['labels'],
                    batch_size=batch_size,
                    epochs=params['epochs'],
                    shuffle=True,
                    verbose=0,
                    callbacks=[progress]
                )
            except Exception as e:
                print(f"❌ Training failed: {e}")
                raise TrainingFailure() from e

            if progress.cancelled:
                print("🛑 Training cancelled")
                raise TrainingFailure("Training was cancelled.", cancelled=True)
            if progress.timed_out:
                print("🛑 Training timed out")
                raise TrainingFailure("Training timed out.", cancelled=True)

            combined = stitch(extractor, head)

            training_time = (datetime.now() - start_time).total_seconds()
            losses = [float(x) for x in history.history.get('loss', [])]
            accuracies = [float(x) for x in history.history.get('accuracy', [])]
            metrics = {
                'training_loss': losses[-1] if losses else None,
                'training_accuracy': accuracies[-1] if accuracies else None,
                'training_time': training_time,
                'epochs_trained': len(losses),
                'batch_size': batch_size,
                'total_samples': dataset.num_examples,
                'num_classes': dataset.num_labels,
                'class_labels': list(dataset.label_names().values()),
                'history': {'loss': losses, 'accuracy': accuracies},
            }

            # Commit everything together
            self.training_dataset = dataset
            self.head = head
            self.combined = combined
            self.label_names = dataset.label_names()
            self.class_indices = {label_id: dataset.class_index(label_id) for label_id in dataset.label_ids}
            self.last_metrics = metrics

            print(format_training_summary(metrics))
            return combined
        finally:
            self._train_lock.release()

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------
    def get_combined(self) -> keras.Model:
        if self.head is None:
            raise ModelBuilderError("Train or upload a model first.")
        if self.combined is None:
            self.combined = stitch(self.get_extractor(), self.head)
        return self.combined

    def predict(self, dataset: str = 'training', use_combined: bool = False) -> ResultsSet:
        if dataset not in DATASETS:
            raise ValueError(f"Unknown dataset: {dataset!r}")
        if self.head is None:
            raise ModelBuilderError("Train or upload a model first.")

        if dataset == 'training':
            source = self.training_dataset
            if source.num_examples == 0:
                source = self._featurize(self.training_examples, self.training_dataset)
                self.training_dataset = source
        else:
            source = self._featurize(self.testing_examples, self.testing_dataset)
            self.testing_dataset = source

        # Examples of labels added since training are skipped
        data = source.get_data(self.class_indices)
        if use_combined:
            model, inputs = self.get_combined(), data['images']
        else:
            model, inputs = self.head, data['inputs']

        # Label names always come from the trained model
        return predict_top_k(model, inputs, data['labels'], data['images'], self.label_names)

    def saliency(self, image, seed=None) -> np.ndarray:
        return smooth_grad(image, self.get_combined(), seed=seed)

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------
    def save_artifact(self, target=None):
        if self.head is None:
            raise ModelBuilderError("No model to save. Train first.")
        return save_artifact(self.head, self.label_names, self.extractor_info, target)

    def save_model(self, save_dir: str = None) -> str:
        """Save the package under the models directory"""
        if save_dir is None:
            save_dir = config.STORAGE['models_dir']
        os.makedirs(save_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        model_path = os.path.join(save_dir, f"model_{timestamp}.mdl")
        with open(model_path, 'wb') as f:
            self.save_artifact(f)

        print(f"✅ Model saved: {model_path}")
        return model_path

    def load_artifact(self, source):
        """Replace the current head and labels with an uploaded package"""
        loaded = load_artifact(source)

        with self._idle():
            if loaded.extractor_info and dict(loaded.extractor_info) != self.extractor_info:
                self.extractor_info = dict(loaded.extractor_info)
                self.extractor = None

            self.head = loaded.model
            self.combined = None
            self.label_names = loaded.label_names
            self.class_indices = {int(key): int(key) for key in loaded.label_names}
            self.last_metrics = None

            # The UI labels now mirror the uploaded model
            self.training_dataset.set_label_names(loaded.label_names)
            self.testing_dataset.set_label_names(loaded.label_names)
            self.training_examples.clear()
            self.testing_examples.clear()

        return loaded
