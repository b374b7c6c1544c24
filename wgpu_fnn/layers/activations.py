"""
Parameterless activation layers.

Every activation maps a batch of width `inputs_amount` to a batch of the same
width. Element-wise activations dispatch one invocation per value; SoftMax
works on whole rows and dispatches over (samples, width).
"""

import logging
import struct
from typing import Optional

from wgpu_fnn.errors import TrainingDataDoesNotHaveExpectedSamplesAmountError
from wgpu_fnn.layers.base import Layer
from wgpu_fnn.wgpu_buffer import ComputeBuffer
from wgpu_fnn.wgpu_context import KernelSpec

logger = logging.getLogger(__name__)


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

ACTIVATIONS_PROGRAM = "ACTIVATIONS"

WGSL_ACTIVATIONS = """
struct Params {
    count: u32,
    samples: u32,
    width: u32,
    padding: u32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> inputs: array<f32>;
@group(0) @binding(2)
var<storage, read_write> outputs: array<f32>;
@group(0) @binding(3)
var<storage, read> last_values: array<f32>;
@group(0) @binding(4)
var<storage, read> output_derivatives: array<f32>;
@group(0) @binding(5)
var<storage, read_write> input_derivatives_out: array<f32>;

// ---- ReLU ----

@compute @workgroup_size(256)
fn relu_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    outputs[idx] = max(inputs[idx], 0.0);
}

// last_values = last inputs
@compute @workgroup_size(256)
fn relu_back_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    var slope = 0.0;
    if (last_values[idx] > 0.0) {
        slope = 1.0;
    }
    input_derivatives_out[idx] = output_derivatives[idx] * slope;
}

// ---- TanH ----

@compute @workgroup_size(256)
fn tanh_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    // clamped to keep tanh finite on every backend
    outputs[idx] = tanh(clamp(inputs[idx], -15.0, 15.0));
}

// last_values = last outputs
@compute @workgroup_size(256)
fn tanh_back_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    let y = last_values[idx];
    input_derivatives_out[idx] = output_derivatives[idx] * (1.0 - y * y);
}

// ---- Sigmoid ----

@compute @workgroup_size(256)
fn sigmoid_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    outputs[idx] = 1.0 / (1.0 + exp(-clamp(inputs[idx], -80.0, 80.0)));
}

// last_values = last outputs
@compute @workgroup_size(256)
fn sigmoid_back_propagate(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    let y = last_values[idx];
    input_derivatives_out[idx] = output_derivatives[idx] * y * (1.0 - y);
}

// ---- SoftMax ----

@compute @workgroup_size(16, 16)
fn softmax_propagate(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let j = gid.y;
    if (sample_idx >= params.samples || j >= params.width) { return; }

    let row = sample_idx * params.width;
    var max_val = inputs[row];
    for (var k = 1u; k < params.width; k = k + 1u) {
        max_val = max(max_val, inputs[row + k]);
    }
    var exp_sum = 0.0;
    for (var k = 0u; k < params.width; k = k + 1u) {
        exp_sum = exp_sum + exp(inputs[row + k] - max_val);
    }
    outputs[row + j] = exp(inputs[row + j] - max_val) / exp_sum;
}

// last_values = last outputs
@compute @workgroup_size(16, 16)
fn softmax_back_propagate(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let j = gid.y;
    if (sample_idx >= params.samples || j >= params.width) { return; }

    let row = sample_idx * params.width;
    var weighted = 0.0;
    for (var k = 0u; k < params.width; k = k + 1u) {
        weighted = weighted + output_derivatives[row + k] * last_values[row + k];
    }
    input_derivatives_out[row + j] =
        last_values[row + j] * (output_derivatives[row + j] - weighted);
}
"""

_PROPAGATE_1D = KernelSpec(
    bindings=((0, "uniform"), (1, "read"), (2, "read_write")),
    workgroup_size=(256,),
)
_BACK_PROPAGATE_1D = KernelSpec(
    bindings=((0, "uniform"), (3, "read"), (4, "read"), (5, "read_write")),
    workgroup_size=(256,),
)

ACTIVATION_KERNELS = {
    "relu_propagate": _PROPAGATE_1D,
    "relu_back_propagate": _BACK_PROPAGATE_1D,
    "tanh_propagate": _PROPAGATE_1D,
    "tanh_back_propagate": _BACK_PROPAGATE_1D,
    "sigmoid_propagate": _PROPAGATE_1D,
    "sigmoid_back_propagate": _BACK_PROPAGATE_1D,
    "softmax_propagate": _PROPAGATE_1D._replace(workgroup_size=(16, 16)),
    "softmax_back_propagate": _BACK_PROPAGATE_1D._replace(workgroup_size=(16, 16)),
}


# ============================================================================
# Activation Layers
# ============================================================================

class ActivationLayer(Layer):
    """Base class of the activation functions.

    Subclasses name their kernels and say whether the derivative is computed
    from the last inputs or the last outputs.
    """

    kernel_prefix = None
    derivative_from_outputs = True
    row_wise = False

    def __init__(self, inputs_amount: int):
        super().__init__(inputs_amount, inputs_amount)

    def compile(self, context):
        context.ensure_program(ACTIVATIONS_PROGRAM, WGSL_ACTIVATIONS, ACTIVATION_KERNELS)

    def _params(self, samples: int) -> bytes:
        return struct.pack(
            "4I", samples * self.inputs_amount, samples, self.inputs_amount, 0
        )

    def _global_size(self, samples: int):
        if self.row_wise:
            return (samples, self.inputs_amount)
        return (samples * self.inputs_amount,)

    def propagate(self, inputs: ComputeBuffer) -> ComputeBuffer:
        self._assert_initialized("propagate")
        samples = self._samples_amount(inputs, self.inputs_amount)

        outputs = ComputeBuffer.empty(self.context, inputs.count)
        kernel = self.context.get_kernel(
            ACTIVATIONS_PROGRAM, f"{self.kernel_prefix}_propagate"
        )
        kernel(
            self._params(samples),
            inputs,
            outputs,
            global_size=self._global_size(samples),
        )

        self._cache_forward_pass(inputs, outputs)
        return outputs

    def back_propagate(
        self,
        need_input_derivative: bool,
        output_error_derivative: ComputeBuffer,
        learning_rate: float,
        optimizer=None,
    ) -> Optional[ComputeBuffer]:
        """Return dL/dInput, or None when it is not needed (nothing to learn)."""
        self._assert_initialized("back_propagate")
        if not need_input_derivative:
            return None

        if self.derivative_from_outputs:
            last_values = self.last_outputs_buffer
        else:
            last_values = self.last_inputs_buffer
        assert last_values is not None, (
            f"{type(self).__name__}.back_propagate called before propagate"
        )

        samples = self._samples_amount(output_error_derivative, self.inputs_amount)
        if output_error_derivative.count != last_values.count:
            raise TrainingDataDoesNotHaveExpectedSamplesAmountError(
                f"derivative covers {samples} samples but the last forward pass "
                f"had {last_values.count // self.inputs_amount}"
            )

        input_derivatives = ComputeBuffer.empty(self.context, output_error_derivative.count)
        kernel = self.context.get_kernel(
            ACTIVATIONS_PROGRAM, f"{self.kernel_prefix}_back_propagate"
        )
        kernel(
            self._params(samples),
            last_values,
            output_error_derivative,
            input_derivatives,
            global_size=self._global_size(samples),
        )
        return input_derivatives

    def __repr__(self):
        return f"{type(self).__name__}({self.inputs_amount})"


class ReLU(ActivationLayer):
    """Rectified linear unit: f(x) = max(0, x)."""

    kernel_prefix = "relu"
    derivative_from_outputs = False


class TanH(ActivationLayer):
    """Hyperbolic tangent, squashing inputs into (-1, 1)."""

    kernel_prefix = "tanh"


class Sigmoid(ActivationLayer):
    """Logistic function, squashing inputs into (0, 1)."""

    kernel_prefix = "sigmoid"


class SoftMax(ActivationLayer):
    """Row-wise normalized exponential; each output row sums to 1."""

    kernel_prefix = "softmax"
    row_wise = True
