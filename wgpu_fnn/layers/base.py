"""
Base class shared by every layer variant.

A layer is bound to a ComputeContext by init(), after which propagate()
computes its outputs for a batch and caches copies of the inputs/outputs that
back_propagate() later consumes. All device buffers a layer owns live in one
BufferCache so release_device_state() can free them in one call.
"""

import logging
from typing import Hashable, Mapping, Optional, Tuple

from wgpu_fnn.errors import TrainingDataDoesNotHaveExpectedSamplesAmountError
from wgpu_fnn.wgpu_buffer import BufferCache, ComputeBuffer

logger = logging.getLogger(__name__)

LAST_INPUTS = "last_inputs"
LAST_OUTPUTS = "last_outputs"


class Layer:
    """Base class for all layers."""

    def __init__(self, inputs_amount: int, outputs_amount: int):
        if inputs_amount <= 0 or outputs_amount <= 0:
            raise ValueError(
                f"layer widths must be positive, got {inputs_amount} -> {outputs_amount}"
            )
        self.inputs_amount = int(inputs_amount)
        self.outputs_amount = int(outputs_amount)
        self.layer_index: Optional[int] = None
        self.context = None
        self._buffers = BufferCache()

    # ---- Cached Buffers ----
    @property
    def last_inputs_buffer(self) -> Optional[ComputeBuffer]:
        """Copy of the inputs of the last forward pass."""
        return self._buffers.get(LAST_INPUTS)

    @property
    def last_outputs_buffer(self) -> Optional[ComputeBuffer]:
        """Outputs of the last forward pass."""
        return self._buffers.get(LAST_OUTPUTS)

    @property
    def initialized(self) -> bool:
        return self.context is not None

    def parameter_key(self, role: str) -> Tuple[Hashable, str]:
        """Stable identity of one of this layer's parameters."""
        owner = self.layer_index if self.layer_index is not None else id(self)
        return owner, role

    # ---- Lifecycle ----
    def init(self, context):
        """Bind the layer to `context`, compile its kernels and upload parameters."""
        self.compile(context)
        self.context = context

    def compile(self, context):
        """Register the WGSL programs this layer dispatches."""
        raise NotImplementedError

    def sync_parameters_to_host(self):
        """Copy device-resident parameters back to the host attributes."""

    def release_device_state(self):
        """Release every device buffer owned by the layer. Idempotent."""
        self._buffers.release_all()

    # ---- Propagation ----
    def propagate(self, inputs: ComputeBuffer) -> ComputeBuffer:
        """Compute the outputs of a batch; override in subclasses."""
        raise NotImplementedError

    def back_propagate(
        self,
        need_input_derivative: bool,
        output_error_derivative: ComputeBuffer,
        learning_rate: float,
        optimizer=None,
    ) -> Optional[ComputeBuffer]:
        """Apply parameter updates and optionally return dL/dInput."""
        raise NotImplementedError

    def __call__(self, inputs: ComputeBuffer) -> ComputeBuffer:
        """Forward pass via __call__."""
        return self.propagate(inputs)

    # ---- Helpers ----
    def _assert_initialized(self, operation: str):
        assert self.context is not None, (
            f"{type(self).__name__}.{operation} called before init()"
        )

    def _parameter_buffers(self, operation: str, *roles: str):
        buffers = [self._buffers.get(role) for role in roles]
        assert all(buffer is not None for buffer in buffers), (
            f"{type(self).__name__}.{operation} called after release_device_state()"
        )
        return buffers

    def _samples_amount(self, buffer: ComputeBuffer, width: int) -> int:
        if buffer.count % width != 0:
            raise TrainingDataDoesNotHaveExpectedSamplesAmountError(
                f"{type(self).__name__}: {buffer.count} values do not split into "
                f"samples of width {width}"
            )
        return buffer.count // width

    def _update_parameters(self, optimizer, learning_rate: float, gradients: Mapping[str, ComputeBuffer]):
        """Step every parameter role in `gradients`; all updates apply or none do."""
        staged = []
        try:
            for role, gradient in gradients.items():
                new_parameters, new_state = optimizer.compute_update(
                    self._buffers.get(role), gradient, learning_rate, self.parameter_key(role)
                )
                staged.append((role, new_parameters, new_state))
        except Exception:
            for _, new_parameters, new_state in staged:
                new_parameters.release()
                if new_state is not None:
                    new_state.release()
            raise

        for role, new_parameters, new_state in staged:
            optimizer.commit_state(self.parameter_key(role), new_state)
            self._buffers.replace(role, new_parameters)

    def _cache_forward_pass(self, inputs: ComputeBuffer, outputs: ComputeBuffer):
        self._buffers.replace(LAST_INPUTS, inputs.copy())
        self._buffers.replace(LAST_OUTPUTS, outputs)

    def __repr__(self):
        return f"{type(self).__name__}({self.inputs_amount} -> {self.outputs_amount})"
