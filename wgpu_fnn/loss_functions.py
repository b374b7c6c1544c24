"""
Loss functions evaluated on the compute device.

A loss function computes one partial loss per sample on the device, reduces
those with ComputeBuffer.sum() and normalizes the total on the host. The
derivative with respect to the model outputs is returned as a fresh buffer
with the same layout as the outputs.
"""

import logging
import struct

from wgpu_fnn.errors import (
    NoCommandQueueError,
    NotInitializedError,
    OutputsAndExpectedOutputsDoNotMatchError,
    TrainingDataDoesNotHaveExpectedSamplesAmountError,
)
from wgpu_fnn.wgpu_buffer import ComputeBuffer
from wgpu_fnn.wgpu_context import KernelSpec

logger = logging.getLogger(__name__)


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

_LOSS_BINDINGS = """
struct Params {
    samples: u32,
    outputs_amount: u32,
    padding0: u32,
    padding1: u32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> outputs: array<f32>;
@group(0) @binding(2)
var<storage, read> expected_outputs: array<f32>;
@group(0) @binding(3)
var<storage, read_write> sample_losses: array<f32>;
@group(0) @binding(4)
var<storage, read_write> derivatives_out: array<f32>;
"""

MEAN_SQUARED_PROGRAM = "MEAN_SQUARED"

WGSL_MEAN_SQUARED = _LOSS_BINDINGS + """
@compute @workgroup_size(256)
fn compute_loss(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let sample_idx = gid.x + gid.y * nwg.x * 256u;
    if (sample_idx >= params.samples) { return; }

    let row = sample_idx * params.outputs_amount;
    var total = 0.0;
    for (var j = 0u; j < params.outputs_amount; j = j + 1u) {
        let diff = outputs[row + j] - expected_outputs[row + j];
        total = total + diff * diff;
    }
    sample_losses[sample_idx] = total;
}

@compute @workgroup_size(16, 16)
fn compute_loss_to_output_derivatives(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let j = gid.y;
    if (sample_idx >= params.samples || j >= params.outputs_amount) { return; }

    let idx = sample_idx * params.outputs_amount + j;
    derivatives_out[idx] =
        2.0 / f32(params.outputs_amount) * (outputs[idx] - expected_outputs[idx]);
}
"""

CATEGORICAL_CROSS_ENTROPY_PROGRAM = "CATEGORICAL_CROSS_ENTROPY"

WGSL_CATEGORICAL_CROSS_ENTROPY = _LOSS_BINDINGS + """
const MIN_PROBABILITY: f32 = 1e-7;

@compute @workgroup_size(256)
fn compute_loss(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let sample_idx = gid.x + gid.y * nwg.x * 256u;
    if (sample_idx >= params.samples) { return; }

    let row = sample_idx * params.outputs_amount;
    var total = 0.0;
    for (var j = 0u; j < params.outputs_amount; j = j + 1u) {
        let probability = max(outputs[row + j], MIN_PROBABILITY);
        total = total - expected_outputs[row + j] * log(probability);
    }
    sample_losses[sample_idx] = total;
}

@compute @workgroup_size(16, 16)
fn compute_loss_to_output_derivatives(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let j = gid.y;
    if (sample_idx >= params.samples || j >= params.outputs_amount) { return; }

    let idx = sample_idx * params.outputs_amount + j;
    derivatives_out[idx] = -expected_outputs[idx] / max(outputs[idx], MIN_PROBABILITY);
}
"""

LOSS_KERNELS = {
    "compute_loss": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read"), (3, "read_write")),
        workgroup_size=(256,),
    ),
    "compute_loss_to_output_derivatives": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read"), (4, "read_write")),
        workgroup_size=(16, 16),
    ),
}


# ============================================================================
# Loss Functions
# ============================================================================

class LossFunction:
    """Base class of the loss functions."""

    program_name = None
    program_source = None

    def __init__(self):
        self.context = None

    def init(self, context):
        """Compile the loss kernels on `context`."""
        context.ensure_program(self.program_name, self.program_source, LOSS_KERNELS)
        self.context = context

    def _validate(self, outputs: ComputeBuffer, expected_outputs: ComputeBuffer, samples_amount: int) -> int:
        """Check the arguments and return the amount of outputs per sample."""
        if self.context is None:
            raise NotInitializedError(f"{type(self).__name__} used before init()")
        if not self.context.queues:
            raise NoCommandQueueError("compute context has no command queue")
        if outputs.count != expected_outputs.count:
            raise OutputsAndExpectedOutputsDoNotMatchError(
                f"{outputs.count} outputs but {expected_outputs.count} expected outputs"
            )
        if samples_amount <= 0 or outputs.count % samples_amount != 0:
            raise TrainingDataDoesNotHaveExpectedSamplesAmountError(
                f"{outputs.count} outputs do not split into {samples_amount} samples"
            )
        return outputs.count // samples_amount

    def _params(self, samples_amount: int, outputs_amount: int) -> bytes:
        return struct.pack("4I", samples_amount, outputs_amount, 0, 0)

    def _normalize(self, total: float, samples_amount: int, outputs_amount: int) -> float:
        raise NotImplementedError

    def compute_loss(
        self,
        outputs: ComputeBuffer,
        expected_outputs: ComputeBuffer,
        samples_amount: int,
    ) -> float:
        """Mean loss of a batch."""
        outputs_amount = self._validate(outputs, expected_outputs, samples_amount)

        sample_losses = ComputeBuffer.empty(self.context, samples_amount)
        try:
            self.context.get_kernel(self.program_name, "compute_loss")(
                self._params(samples_amount, outputs_amount),
                outputs,
                expected_outputs,
                sample_losses,
                global_size=(samples_amount,),
            )
            total = sample_losses.sum()
        finally:
            sample_losses.release()

        return self._normalize(total, samples_amount, outputs_amount)

    def compute_loss_derivative_with_respect_to_outputs(
        self,
        outputs: ComputeBuffer,
        expected_outputs: ComputeBuffer,
        samples_amount: int,
    ) -> ComputeBuffer:
        """dL/dOutput for every output of every sample, as a fresh buffer."""
        outputs_amount = self._validate(outputs, expected_outputs, samples_amount)

        derivatives = ComputeBuffer.empty(self.context, outputs.count)
        self.context.get_kernel(self.program_name, "compute_loss_to_output_derivatives")(
            self._params(samples_amount, outputs_amount),
            outputs,
            expected_outputs,
            derivatives,
            global_size=(samples_amount, outputs_amount),
        )
        return derivatives

    def __repr__(self):
        return f"{type(self).__name__}()"


class MeanSquared(LossFunction):
    """Mean of the squared differences between outputs and expected outputs.

    Suited to regression problems; unlike CategoricalCrossEntropy it puts no
    constraint on the range of the outputs.
    """

    program_name = MEAN_SQUARED_PROGRAM
    program_source = WGSL_MEAN_SQUARED

    def _normalize(self, total, samples_amount, outputs_amount):
        return total / outputs_amount / samples_amount


class CategoricalCrossEntropy(LossFunction):
    """Cross entropy between expected one-hot rows and predicted probabilities.

    Outputs are expected in (0, 1], typically the outputs of a SoftMax layer.
    Probabilities are clamped to 1e-7 before taking the logarithm.
    """

    program_name = CATEGORICAL_CROSS_ENTROPY_PROGRAM
    program_source = WGSL_CATEGORICAL_CROSS_ENTROPY

    def _normalize(self, total, samples_amount, outputs_amount):
        return total / samples_amount
