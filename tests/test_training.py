import threading

import numpy as np
import pytest

from errors import (
    EmptyDatasetError,
    HyperparameterError,
    ModelBuilderError,
    ShapeError,
    StructuralError,
    TrainingFailure,
    TrainingInProgressError,
)
from layer_registry import LayerKind
from shapes import Spatial
from training import CancellationToken

from conftest import random_image

FAST = {'epochs': 2, 'learning_rate': 0.01, 'batch_size_fraction': 0.4, 'seed': 7}


def test_empty_staging(session):
    session.add_label('rock')
    with pytest.raises(EmptyDatasetError):
        session.build_and_train(FAST)


def test_structural_error_before_any_side_effect(populated_session):
    populated_session.editor.set_kind(0, LayerKind.FULLY_CONNECTED)
    with pytest.raises(StructuralError):
        populated_session.build_and_train(FAST)
    assert populated_session.extractor is None
    assert populated_session.head is None
    assert not populated_session.is_training


def test_shape_error_releases_the_lock(populated_session):
    editor = populated_session.editor
    editor.set_kind(0, LayerKind.CONVOLUTION)
    editor.set_param(0, 'kernel_size', 9)
    editor.set_kind(1, LayerKind.FLATTEN)
    with pytest.raises(ShapeError):
        populated_session.build_and_train(FAST)
    assert not populated_session.is_training
    assert populated_session.head is None


def test_zero_batch_size(populated_session):
    with pytest.raises(HyperparameterError) as exc:
        populated_session.build_and_train(dict(FAST, batch_size_fraction=0.01))
    assert 'Batch size is 0' in str(exc.value)
    assert populated_session.head is None


def test_bad_epochs(populated_session):
    with pytest.raises(HyperparameterError):
        populated_session.build_and_train(dict(FAST, epochs=0))


def test_successful_run_commits_everything(populated_session):
    calls = []
    combined = populated_session.build_and_train(
        FAST, on_batch_end=lambda epoch, batch, loss: calls.append((epoch, batch, loss))
    )

    # 12 examples, batch size floor(12 * 0.4) = 4, so three batches per epoch
    assert [(e, b) for e, b, _ in calls] == [(0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2)]
    assert all(loss is not None and np.isfinite(loss) for _, _, loss in calls)

    assert combined is populated_session.combined
    assert tuple(combined.outputs[0].shape) == (None, 3)
    assert populated_session.label_names == {'0': 'rock', '1': 'paper', '2': 'scissors'}
    assert populated_session.training_dataset.num_examples == 12
    assert populated_session.last_metrics['epochs_trained'] == 2
    assert populated_session.last_metrics['batch_size'] == 4
    assert not populated_session.is_training


def test_cancel_keeps_previous_model(populated_session):
    populated_session.build_and_train(FAST)
    previous = populated_session.head

    token = CancellationToken()
    calls = []

    def on_batch_end(epoch, batch, loss):
        calls.append((epoch, batch))
        token.cancel()

    with pytest.raises(TrainingFailure) as exc:
        populated_session.build_and_train(dict(FAST, epochs=5), on_batch_end, cancel_token=token)
    assert exc.value.cancelled
    assert len(calls) < 15
    assert populated_session.head is previous
    assert not populated_session.is_training


def test_timeout_stops_training(populated_session):
    with pytest.raises(TrainingFailure) as exc:
        populated_session.build_and_train(dict(FAST, epochs=50), timeout=0)
    assert exc.value.cancelled
    assert populated_session.head is None


def test_fit_failure_is_isolated(populated_session):
    def explode(epoch, batch, loss):
        raise RuntimeError("boom")

    with pytest.raises(TrainingFailure) as exc:
        populated_session.build_and_train(FAST, on_batch_end=explode)
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert populated_session.head is None
    assert populated_session.combined is None
    assert populated_session.training_dataset.num_examples == 0
    assert not populated_session.is_training


def test_second_run_is_rejected(populated_session):
    started = threading.Event()
    release = threading.Event()
    errors = []

    def on_batch_end(epoch, batch, loss):
        started.set()
        release.wait(timeout=30)

    def run():
        try:
            populated_session.build_and_train(dict(FAST, epochs=1), on_batch_end)
        except Exception as e:
            errors.append(e)

    worker = threading.Thread(target=run)
    worker.start()
    try:
        assert started.wait(timeout=60)
        assert populated_session.is_training
        with pytest.raises(TrainingInProgressError):
            populated_session.build_and_train(FAST)
        with pytest.raises(TrainingInProgressError):
            populated_session.select_extractor('1')
        with pytest.raises(TrainingInProgressError):
            populated_session.add_label('lizard')
        with pytest.raises(TrainingInProgressError):
            populated_session.remove_label(0)
    finally:
        release.set()
        worker.join(timeout=60)

    assert errors == []
    assert populated_session.head is not None

    # Neither label set moved while the run was in flight
    expected = {0: 'rock', 1: 'paper', 2: 'scissors'}
    assert populated_session.training_dataset.labels == expected
    assert populated_session.testing_dataset.labels == expected
    label_id = populated_session.add_label('lizard')
    populated_session.add_example(label_id, random_image(np.random.default_rng(0)))
    assert populated_session.training_dataset.has_label(label_id)


def test_predict_top_k(populated_session):
    populated_session.build_and_train(FAST)
    results = populated_session.predict('testing')

    assert len(results) == 12
    first = results.result(0)
    assert len(first['predictions']) == 3
    probabilities = [p['probability'] for p in first['predictions']]
    assert probabilities == sorted(probabilities, reverse=True)
    assert first['actual_name'] in ('rock', 'paper', 'scissors')


def test_predict_through_combined_matches_head(populated_session):
    populated_session.build_and_train(FAST)
    via_head = populated_session.predict('training')
    via_combined = populated_session.predict('training', use_combined=True)
    np.testing.assert_allclose(via_head.predicted_values, via_combined.predicted_values, rtol=1e-4, atol=1e-5)


def test_predict_after_removing_a_label_keeps_trained_classes(populated_session):
    populated_session.build_and_train(FAST)
    populated_session.remove_label(0)

    results = populated_session.predict('training')
    names = [results.result(i)['actual_name'] for i in range(len(results))]
    assert names == ['paper'] * 4 + ['scissors'] * 4
    assert list(results.actual_indices) == [1] * 4 + [2] * 4


def test_predict_skips_labels_the_model_never_saw(populated_session, rng):
    populated_session.build_and_train(FAST)
    label_id = populated_session.add_label('lizard')
    populated_session.add_example(label_id, random_image(rng), dataset='testing')

    results = populated_session.predict('testing')
    assert len(results) == 12
    assert 'lizard' not in {results.result(i)['actual_name'] for i in range(len(results))}
    assert populated_session.class_indices == {0: 0, 1: 1, 2: 2}


def test_predict_needs_a_model(populated_session):
    with pytest.raises(ModelBuilderError):
        populated_session.predict()


def test_add_example_validation(session, rng):
    label_id = session.add_label('rock')
    with pytest.raises(ValueError):
        session.add_example(label_id, random_image(rng), dataset='validation')
    with pytest.raises(KeyError):
        session.add_example(label_id + 1, random_image(rng))
    with pytest.raises(ValueError):
        session.add_example(label_id, np.zeros((8, 8)))


def test_remove_label_drops_staged_frames(populated_session):
    populated_session.remove_label(0)
    assert populated_session.training_examples.count() == 8
    assert populated_session.testing_examples.count() == 8
    assert populated_session.training_dataset.labels == {1: 'paper', 2: 'scissors'}


def test_shape_trace_uses_loaded_extractor(populated_session):
    assert populated_session.input_shape() == Spatial(7, 7, 256)
    populated_session.get_extractor()
    trace = populated_session.get_shape_trace()
    assert trace[0] == Spatial(7, 7, 256)
    populated_session.get_structural_validity()


def test_select_unknown_extractor(session):
    with pytest.raises(ValueError):
        session.select_extractor('42')


def test_saliency_map(populated_session, rng):
    populated_session.build_and_train(FAST)
    saliency = populated_session.saliency(random_image(rng), seed=3)
    assert saliency.shape == (8, 8)
    assert saliency.dtype == np.float32
    assert saliency.min() >= 0.0 and saliency.max() <= 1.0


def test_save_model_writes_package(populated_session, tmp_path):
    populated_session.build_and_train(FAST)
    path = populated_session.save_model(str(tmp_path))
    assert path.endswith('.mdl')
    assert (tmp_path / path.split('/')[-1]).exists()
