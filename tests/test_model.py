"""
Tests for Model orchestration and the training loop
"""
import logging

import numpy as np
import pytest

from wgpu_fnn.errors import NotInitializedError, ShapeMismatchError
from wgpu_fnn.layers import Dense, SoftMax, TanH
from wgpu_fnn.loss_functions import CategoricalCrossEntropy, MeanSquared
from wgpu_fnn.model import (
    History,
    MinAccuracyReached,
    MinLossReached,
    Model,
    TrainingOptions,
    TrainingVerbosity,
    _accuracy,
)
from wgpu_fnn.optimizers import AdagradOptimizer, NesterovMomentumOptimizer

XOR_INPUTS = [[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]]
XOR_OUTPUTS = [[0.0], [1.0], [1.0], [0.0]]


class RecordingDense(Dense):
    """Dense layer that records its back_propagate calls"""

    def __init__(self, name, calls, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.name = name
        self.calls = calls

    def back_propagate(self, need_input_derivative, output_error_derivative,
                       learning_rate, optimizer=None):
        self.calls.append((self.name, need_input_derivative))
        return super().back_propagate(
            need_input_derivative, output_error_derivative, learning_rate, optimizer
        )


def _xor_model(context):
    model = Model([Dense(2, 3), TanH(3), Dense(3, 1), TanH(1)])
    model.init(context)
    return model


# ---- No device needed ----

class TestTrainingOptions:

    def test_defaults(self):
        options = TrainingOptions(loss_fn=MeanSquared())
        assert options.learning_rate == 0.01
        assert options.epochs == 1
        assert options.compute_loss
        assert not options.compute_accuracy
        assert options.skip_first_input_derivative
        assert options.verbosity == TrainingVerbosity()

    @pytest.mark.parametrize("field", ["epochs", "batch_size"])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValueError):
            TrainingOptions(loss_fn=MeanSquared(), **{field: 0})


class TestHaltingConditions:

    def test_min_loss(self):
        condition = MinLossReached(0.1)
        assert condition(0.05, None)
        assert condition(0.1, None)
        assert not condition(0.2, 1.0)
        assert not condition(None, None)

    def test_min_accuracy(self):
        condition = MinAccuracyReached(0.9)
        assert condition(None, 0.95)
        assert not condition(0.0, 0.5)
        assert not condition(0.0, None)


def test_history():
    history = History()
    history.append_epoch(0, {"loss": 0.5})
    history.append_epoch(1, {"loss": 0.25, "accuracy": 1})
    assert history.epoch == [0, 1]
    assert history.history["loss"] == [0.5, 0.25]
    assert history.last() == {"loss": 0.25, "accuracy": 1.0}


def test_accuracy_counts():
    outputs = np.array([[0.1, 0.9], [0.8, 0.2], [0.3, 0.7]])
    expected = np.array([[0.0, 1.0], [0.0, 1.0], [0.0, 1.0]])
    assert _accuracy(outputs, expected) == 2
    assert _accuracy(np.array([[0.4], [0.6]]), np.array([[0.0], [0.0]])) == 1


def test_layer_widths_match():
    assert Model([Dense(2, 3), TanH(3), Dense(3, 1)]).layer_widths_match()
    assert not Model([Dense(2, 3), TanH(4)]).layer_widths_match()


def test_empty_model_rejected():
    with pytest.raises(ValueError):
        Model([])


def test_fit_before_init():
    model = Model([Dense(2, 1)])
    options = TrainingOptions(loss_fn=MeanSquared())
    with pytest.raises(NotInitializedError):
        model.fit(XOR_INPUTS, XOR_OUTPUTS, options)
    with pytest.raises(NotInitializedError):
        model.predict(XOR_INPUTS)


# ---- On device ----

class TestFit:

    def test_shape_mismatches(self, context):
        model = _xor_model(context)
        options = TrainingOptions(loss_fn=MeanSquared())
        try:
            with pytest.raises(ShapeMismatchError):
                model.fit(XOR_INPUTS, XOR_OUTPUTS[:3], options)
            with pytest.raises(ShapeMismatchError):
                model.fit([[0.0, 0.0, 0.0]], [[0.0]], options)
            with pytest.raises(ShapeMismatchError):
                model.fit([[0.0, 0.0]], [[0.0, 1.0]], options)
        finally:
            model.release_device_state()

    def test_backward_runs_in_reverse_and_skips_first_input_derivative(self, context):
        calls = []
        model = Model([
            RecordingDense("first", calls, 2, 3),
            TanH(3),
            RecordingDense("last", calls, 3, 1),
        ])
        model.init(context)
        try:
            model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
                loss_fn=MeanSquared(), batch_size=2,
            ))
        finally:
            model.release_device_state()

        # two batches, each walking the chain from the last layer
        assert calls == [("last", True), ("first", False)] * 2

    def test_first_input_derivative_can_be_requested(self, context):
        calls = []
        model = Model([RecordingDense("only", calls, 2, 1)])
        model.init(context)
        try:
            model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
                loss_fn=MeanSquared(), batch_size=4, skip_first_input_derivative=False,
            ))
        finally:
            model.release_device_state()
        assert calls == [("only", True)]

    def test_history_and_return_value(self, context):
        model = _xor_model(context)
        try:
            loss = model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
                loss_fn=MeanSquared(), epochs=3, batch_size=3, compute_accuracy=True,
            ))
        finally:
            model.release_device_state()

        assert model.history.epoch == [0, 1, 2]
        assert loss == pytest.approx(model.history.history["loss"][-1])
        assert all(0.0 <= a <= 1.0 for a in model.history.history["accuracy"])

    def test_loss_not_computed(self, context):
        model = _xor_model(context)
        try:
            loss = model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
                loss_fn=MeanSquared(), epochs=2, compute_loss=False,
            ))
        finally:
            model.release_device_state()
        assert loss is None
        assert "loss" not in model.history.history

    def test_halting_condition_stops_training(self, context, caplog):
        model = _xor_model(context)
        options = TrainingOptions(
            loss_fn=MeanSquared(),
            epochs=50,
            halting_condition=MinLossReached(float("inf")),
            verbosity=TrainingVerbosity(halting_condition_warning=True, print_loss=True),
        )
        try:
            with caplog.at_level(logging.INFO, logger="wgpu_fnn"):
                model.fit(XOR_INPUTS, XOR_OUTPUTS, options)
        finally:
            model.release_device_state()

        assert model.history.epoch == [0]
        assert any("Halting after epoch 1" in r.message for r in caplog.records)
        assert any("loss" in r.message for r in caplog.records)

    @pytest.mark.parametrize("optimizer", [NesterovMomentumOptimizer(0.5), AdagradOptimizer()])
    def test_stateful_optimizers(self, context, optimizer):
        model = _xor_model(context)
        try:
            model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
                loss_fn=MeanSquared(), optimizer=optimizer, epochs=2, learning_rate=0.1,
            ))
            # weights and biases of both Dense layers
            assert len(optimizer.state) == 4
        finally:
            model.release_device_state()
        assert len(optimizer.state) == 0

    def test_softmax_classifier(self, context):
        np.random.seed(1)
        rng = np.random.default_rng(1)
        inputs = rng.normal(size=(64, 4)).astype(np.float32)
        labels = (inputs[:, 0] > 0).astype(int)
        expected = np.eye(2, dtype=np.float32)[labels]

        model = Model([Dense(4, 2), SoftMax(2)])
        model.init(context)
        try:
            model.fit(inputs, expected, TrainingOptions(
                loss_fn=CategoricalCrossEntropy(),
                learning_rate=0.5,
                epochs=30,
                batch_size=16,
                compute_accuracy=True,
            ))
            predictions = model.predict(inputs)
        finally:
            model.release_device_state()

        assert predictions.shape == (64, 2)
        np.testing.assert_allclose(predictions.sum(axis=1), np.ones(64), rtol=1e-4)
        history = model.history.history
        assert history["loss"][-1] < history["loss"][0]
        assert history["accuracy"][-1] >= 0.8

    def test_sync_parameters_to_host(self, context):
        model = Model([Dense(2, 1, weights=[[0.5], [0.5]], biases=[0.0])])
        model.init(context)
        try:
            model.fit([[1.0, 1.0]], [[0.0]], TrainingOptions(
                loss_fn=MeanSquared(), learning_rate=0.1,
            ))
            model.sync_parameters_to_host()
        finally:
            model.release_device_state()

        # output 1.0, dL/dy = 2.0, every weight sees input 1.0
        layer = model.layers[0]
        np.testing.assert_allclose(layer.weights, [[0.3], [0.3]], rtol=1e-3)
        np.testing.assert_allclose(layer.biases, [-0.2], rtol=1e-3)


@pytest.mark.slow
def test_xor_converges(context):
    np.random.seed(0)
    model = _xor_model(context)
    try:
        loss = model.fit(XOR_INPUTS, XOR_OUTPUTS, TrainingOptions(
            loss_fn=MeanSquared(),
            learning_rate=0.1,
            epochs=10000,
            batch_size=4,
            halting_condition=MinLossReached(0.01),
        ))
        predictions = model.predict(XOR_INPUTS)
    finally:
        model.release_device_state()

    assert loss <= 0.1
    assert predictions.shape == (4, 1)
