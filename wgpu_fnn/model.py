"""
Model: an ordered chain of layers trained with mini-batch gradient descent.

fit() uploads the training data once, then for every batch runs the forward
chain, the loss and its derivative, and the backward chain in reverse layer
order. Per-epoch metrics are collected in Model.history.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from wgpu_fnn.errors import NotInitializedError, ShapeMismatchError
from wgpu_fnn.layers.base import Layer
from wgpu_fnn.loss_functions import LossFunction
from wgpu_fnn.optimizers import BasicOptimizer, Optimizer
from wgpu_fnn.wgpu_buffer import ComputeBuffer, flatten_samples
from wgpu_fnn.wgpu_context import get_default_context

logger = logging.getLogger(__name__)


# ============================================================================
# Training Options
# ============================================================================

class MinLossReached:
    """Stop once the epoch loss drops to `value` or below."""

    def __init__(self, value: float):
        self.value = value

    def __call__(self, loss: Optional[float], accuracy: Optional[float]) -> bool:
        return loss is not None and loss <= self.value

    def __repr__(self):
        return f"MinLossReached({self.value})"


class MinAccuracyReached:
    """Stop once the epoch accuracy reaches `value` or above."""

    def __init__(self, value: float):
        self.value = value

    def __call__(self, loss: Optional[float], accuracy: Optional[float]) -> bool:
        return accuracy is not None and accuracy >= self.value

    def __repr__(self):
        return f"MinAccuracyReached({self.value})"


HaltingCondition = Callable[[Optional[float], Optional[float]], bool]


@dataclass
class TrainingVerbosity:
    """What fit() reports while it runs."""

    show_current_epoch: bool = False
    show_epoch_progress: bool = False
    show_epoch_elapsed: bool = False
    print_loss: bool = False
    print_accuracy: bool = False
    halting_condition_warning: bool = False


@dataclass
class TrainingOptions:
    """
    Args:
        loss_fn: loss function minimized by fit()
        optimizer: turns gradients into parameter updates
        learning_rate: step size handed to the optimizer
        epochs: maximum amount of passes over the training data
        batch_size: samples per gradient step; the last batch may be smaller
        compute_loss: evaluate the loss of every batch
        compute_accuracy: evaluate the accuracy of every batch
        verbosity: reporting switches
        halting_condition: MinLossReached, MinAccuracyReached or any
            callable (loss, accuracy) -> bool checked after every epoch
        skip_first_input_derivative: do not compute dL/dInput for the first
            layer, nothing consumes it
    """

    loss_fn: LossFunction
    optimizer: Optimizer = field(default_factory=BasicOptimizer)
    learning_rate: float = 0.01
    epochs: int = 1
    batch_size: int = 32
    compute_loss: bool = True
    compute_accuracy: bool = False
    verbosity: TrainingVerbosity = field(default_factory=TrainingVerbosity)
    halting_condition: Optional[HaltingCondition] = None
    skip_first_input_derivative: bool = True

    def __post_init__(self):
        if self.epochs < 1:
            raise ValueError(f"epochs must be at least 1, got {self.epochs}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")


# ============================================================================
# History
# ============================================================================

Number = Union[int, float]


@dataclass
class History:
    """Per-epoch metrics recorded by fit(), keyed by metric name."""

    history: Dict[str, List[float]] = field(default_factory=dict)
    epoch: List[int] = field(default_factory=list)

    def append_epoch(self, epoch_idx: int, logs: Mapping[str, Number]) -> None:
        self.epoch.append(int(epoch_idx))
        for k, v in logs.items():
            self.history.setdefault(k, []).append(float(v))

    def last(self) -> Dict[str, float]:
        """Metrics of the most recent epoch."""
        return {k: float(vs[-1]) for k, vs in self.history.items() if vs}


# ============================================================================
# Model
# ============================================================================

def _accuracy(outputs: np.ndarray, expected: np.ndarray) -> int:
    """Amount of correctly predicted samples in a batch."""
    if outputs.shape[1] == 1:
        return int(np.sum(np.abs(outputs[:, 0] - expected[:, 0]) < 0.5))
    return int(np.sum(np.argmax(outputs, axis=1) == np.argmax(expected, axis=1)))


class Model:
    """Ordered chain of layers sharing one compute context."""

    def __init__(self, layers: Sequence[Layer]):
        if not layers:
            raise ValueError("a model needs at least one layer")
        self.layers = list(layers)
        self.context = None
        self.history = History()
        self._optimizers: List[Optimizer] = []

    @property
    def inputs_amount(self) -> int:
        return self.layers[0].inputs_amount

    @property
    def outputs_amount(self) -> int:
        return self.layers[-1].outputs_amount

    def init(self, context=None):
        """Bind every layer to `context` (the default context if omitted)."""
        if context is None:
            context = get_default_context()
        for index, layer in enumerate(self.layers):
            layer.layer_index = index
            layer.init(context)
        self.context = context
        logger.debug(f"Initialized model with {len(self.layers)} layers on {context}")

    def layer_widths_match(self) -> bool:
        """True when every layer's outputs feed the next layer's inputs."""
        return all(
            current.outputs_amount == following.inputs_amount
            for current, following in zip(self.layers, self.layers[1:])
        )

    # ---- Forward / Backward ----
    def _propagate(self, inputs: ComputeBuffer) -> ComputeBuffer:
        """Run the forward chain; the result is owned by the last layer."""
        current = inputs
        for layer in self.layers:
            current = layer.propagate(current)
        return current

    def _back_propagate(self, derivative: ComputeBuffer, options: TrainingOptions):
        """Run the backward chain, consuming `derivative`."""
        current = derivative
        try:
            for index in reversed(range(len(self.layers))):
                need_input_derivative = index > 0 or not options.skip_first_input_derivative
                next_derivative = self.layers[index].back_propagate(
                    need_input_derivative,
                    current,
                    options.learning_rate,
                    options.optimizer,
                )
                current.release()
                current = next_derivative
                if current is None:
                    break
        finally:
            if current is not None:
                current.release()

    # ---- Training ----
    def _check_training_data(self, inputs: np.ndarray, expected: np.ndarray):
        if inputs.shape[0] != expected.shape[0]:
            raise ShapeMismatchError(
                f"{inputs.shape[0]} input samples but {expected.shape[0]} expected outputs"
            )
        if inputs.shape[1] != self.inputs_amount:
            raise ShapeMismatchError(
                f"samples have {inputs.shape[1]} values, the first layer takes "
                f"{self.inputs_amount}"
            )
        if expected.shape[1] != self.outputs_amount:
            raise ShapeMismatchError(
                f"expected outputs have {expected.shape[1]} values, the last layer "
                f"produces {self.outputs_amount}"
            )

    def fit(self, inputs, expected_outputs, options: TrainingOptions) -> Optional[float]:
        """Train the model and return the loss of the last epoch.

        Args:
            inputs: (samples, inputs_amount) array-like
            expected_outputs: (samples, outputs_amount) array-like
            options: TrainingOptions

        Returns:
            Loss of the last completed epoch, None if compute_loss is off.
        """
        if self.context is None:
            raise NotInitializedError("Model.fit called before init()")

        inputs, samples_amount, _ = flatten_samples(inputs)
        expected, _, _ = flatten_samples(expected_outputs)
        self._check_training_data(inputs, expected)

        context = self.context
        options.loss_fn.init(context)
        options.optimizer.init(context)
        if options.optimizer not in self._optimizers:
            self._optimizers.append(options.optimizer)

        verbosity = options.verbosity
        batches = []
        last_loss = None
        try:
            for start in range(0, samples_amount, options.batch_size):
                stop = min(start + options.batch_size, samples_amount)
                batches.append((
                    ComputeBuffer.from_numpy(context, inputs[start:stop]),
                    ComputeBuffer.from_numpy(context, expected[start:stop]),
                    start,
                    stop,
                ))

            for epoch in range(options.epochs):
                if verbosity.show_current_epoch:
                    logger.info(f"Epoch {epoch + 1}/{options.epochs}")
                started = time.perf_counter()

                loss_sum = 0.0
                correct = 0
                progress = tqdm(
                    batches,
                    desc=f"Epoch {epoch + 1}",
                    disable=not verbosity.show_epoch_progress,
                )
                for input_buffer, expected_buffer, start, stop in progress:
                    batch_samples = stop - start
                    outputs = self._propagate(input_buffer)

                    if options.compute_loss:
                        batch_loss = options.loss_fn.compute_loss(
                            outputs, expected_buffer, batch_samples
                        )
                        loss_sum += batch_loss * batch_samples
                        progress.set_postfix(loss=f"{batch_loss:.4f}")
                    if options.compute_accuracy:
                        predicted = outputs.numpy().reshape(batch_samples, self.outputs_amount)
                        correct += _accuracy(predicted, expected[start:stop])

                    derivative = options.loss_fn.compute_loss_derivative_with_respect_to_outputs(
                        outputs, expected_buffer, batch_samples
                    )
                    self._back_propagate(derivative, options)

                epoch_loss = loss_sum / samples_amount if options.compute_loss else None
                epoch_accuracy = correct / samples_amount if options.compute_accuracy else None
                last_loss = epoch_loss

                logs = {}
                if epoch_loss is not None:
                    logs["loss"] = epoch_loss
                if epoch_accuracy is not None:
                    logs["accuracy"] = epoch_accuracy
                self.history.append_epoch(epoch, logs)

                if verbosity.show_epoch_elapsed:
                    logger.info(f"Epoch {epoch + 1} took {time.perf_counter() - started:.3f}s")
                if verbosity.print_loss and epoch_loss is not None:
                    logger.info(f"Epoch {epoch + 1} loss: {epoch_loss:.6f}")
                if verbosity.print_accuracy and epoch_accuracy is not None:
                    logger.info(f"Epoch {epoch + 1} accuracy: {epoch_accuracy:.4f}")

                if options.halting_condition is not None and options.halting_condition(
                    epoch_loss, epoch_accuracy
                ):
                    if verbosity.halting_condition_warning:
                        logger.warning(
                            f"Halting after epoch {epoch + 1}: {options.halting_condition!r} met"
                        )
                    break
        finally:
            for input_buffer, expected_buffer, _, _ in batches:
                input_buffer.release()
                expected_buffer.release()

        return last_loss

    def predict(self, inputs) -> np.ndarray:
        """Forward pass only; returns a (samples, outputs_amount) array."""
        if self.context is None:
            raise NotInitializedError("Model.predict called before init()")
        inputs, samples_amount, width = flatten_samples(inputs)
        if width != self.inputs_amount:
            raise ShapeMismatchError(
                f"samples have {width} values, the first layer takes {self.inputs_amount}"
            )

        input_buffer = ComputeBuffer.from_numpy(self.context, inputs)
        try:
            outputs = self._propagate(input_buffer)
            return outputs.numpy().reshape(samples_amount, self.outputs_amount)
        finally:
            input_buffer.release()

    # ---- Host Sync / Cleanup ----
    def sync_parameters_to_host(self):
        for layer in self.layers:
            layer.sync_parameters_to_host()

    def release_device_state(self):
        """Release the buffers of every layer and optimizer. Idempotent."""
        for layer in self.layers:
            layer.release_device_state()
        for optimizer in self._optimizers:
            optimizer.release_device_state()

    def __repr__(self):
        layers = ", ".join(repr(layer) for layer in self.layers)
        return f"Model([{layers}])"
