"""
Fully connected layer: outputs = inputs @ W + b.

Weights are stored row-major with shape (inputs_amount, outputs_amount) so the
weight connecting input i to output o lives at i * outputs_amount + o.
"""

import logging
import math
import struct
from typing import Optional

import numpy as np

from wgpu_fnn.errors import (
    ShapeMismatchError,
    TrainingDataDoesNotHaveExpectedSamplesAmountError,
)
from wgpu_fnn.layers.base import Layer
from wgpu_fnn.optimizers import BasicOptimizer
from wgpu_fnn.wgpu_buffer import ComputeBuffer
from wgpu_fnn.wgpu_context import KernelSpec

logger = logging.getLogger(__name__)

WEIGHTS = "weights"
BIASES = "biases"


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

DENSE_PROPAGATION_PROGRAM = "DENSE_PROPAGATION"

WGSL_DENSE_PROPAGATION = """
struct Params {
    samples: u32,
    inputs: u32,
    outputs: u32,
    padding: u32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> inputs: array<f32>;
@group(0) @binding(2)
var<storage, read> weights: array<f32>;
@group(0) @binding(3)
var<storage, read> biases: array<f32>;
@group(0) @binding(4)
var<storage, read_write> outputs: array<f32>;

@compute @workgroup_size(16, 16)
fn dense_propagate(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let output_idx = gid.y;
    if (sample_idx >= params.samples || output_idx >= params.outputs) { return; }

    var total = biases[output_idx];
    let row = sample_idx * params.inputs;
    for (var i = 0u; i < params.inputs; i = i + 1u) {
        total = total + inputs[row + i] * weights[i * params.outputs + output_idx];
    }
    outputs[sample_idx * params.outputs + output_idx] = total;
}
"""

DENSE_PROPAGATION_KERNELS = {
    "dense_propagate": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read"), (3, "read"), (4, "read_write")),
        workgroup_size=(16, 16),
    ),
}

DENSE_BACKPROPAGATION_PROGRAM = "DENSE_BACKPROPAGATION"

WGSL_DENSE_BACKPROPAGATION = """
struct Params {
    samples: u32,
    inputs: u32,
    outputs: u32,
    padding: u32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> output_derivatives: array<f32>;
@group(0) @binding(2)
var<storage, read> last_inputs: array<f32>;
@group(0) @binding(3)
var<storage, read> weights: array<f32>;
@group(0) @binding(4)
var<storage, read_write> weights_gradient_out: array<f32>;
@group(0) @binding(5)
var<storage, read_write> biases_gradient_out: array<f32>;
@group(0) @binding(6)
var<storage, read_write> input_derivatives_out: array<f32>;

// dL/dW[i][o] averaged over the batch
@compute @workgroup_size(16, 16)
fn weights_gradient(@builtin(global_invocation_id) gid: vec3<u32>) {
    let input_idx = gid.x;
    let output_idx = gid.y;
    if (input_idx >= params.inputs || output_idx >= params.outputs) { return; }

    var total = 0.0;
    for (var s = 0u; s < params.samples; s = s + 1u) {
        total = total
            + output_derivatives[s * params.outputs + output_idx]
            * last_inputs[s * params.inputs + input_idx];
    }
    weights_gradient_out[input_idx * params.outputs + output_idx] = total / f32(params.samples);
}

@compute @workgroup_size(256)
fn bias_gradient(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let output_idx = gid.x + gid.y * nwg.x * 256u;
    if (output_idx >= params.outputs) { return; }

    var total = 0.0;
    for (var s = 0u; s < params.samples; s = s + 1u) {
        total = total + output_derivatives[s * params.outputs + output_idx];
    }
    biases_gradient_out[output_idx] = total / f32(params.samples);
}

@compute @workgroup_size(16, 16)
fn input_derivatives(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let input_idx = gid.y;
    if (sample_idx >= params.samples || input_idx >= params.inputs) { return; }

    var total = 0.0;
    let row = sample_idx * params.outputs;
    for (var o = 0u; o < params.outputs; o = o + 1u) {
        total = total + output_derivatives[row + o] * weights[input_idx * params.outputs + o];
    }
    input_derivatives_out[sample_idx * params.inputs + input_idx] = total;
}
"""

DENSE_BACKPROPAGATION_KERNELS = {
    "weights_gradient": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read"), (4, "read_write")),
        workgroup_size=(16, 16),
    ),
    "bias_gradient": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (5, "read_write")),
        workgroup_size=(256,),
    ),
    "input_derivatives": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (3, "read"), (6, "read_write")),
        workgroup_size=(16, 16),
    ),
}


# ============================================================================
# Dense Layer
# ============================================================================

class Dense(Layer):
    """Fully connected layer trained by batch-averaged gradient descent."""

    def __init__(
        self,
        inputs_amount: int,
        outputs_amount: int,
        weights: Optional[np.ndarray] = None,
        biases: Optional[np.ndarray] = None,
    ):
        super().__init__(inputs_amount, outputs_amount)

        if weights is None:
            # Xavier uniform initialization
            limit = math.sqrt(6.0 / (inputs_amount + outputs_amount))
            weights = np.random.uniform(
                -limit, limit, size=(inputs_amount, outputs_amount)
            )
        weights = np.asarray(weights, dtype=np.float32)
        if weights.size != inputs_amount * outputs_amount:
            raise ShapeMismatchError(
                f"weights of shape {weights.shape} do not fit a "
                f"{inputs_amount} -> {outputs_amount} layer"
            )
        self.weights = weights.reshape(inputs_amount, outputs_amount)

        if biases is None:
            biases = np.zeros(outputs_amount, dtype=np.float32)
        biases = np.asarray(biases, dtype=np.float32).ravel()
        if biases.size != outputs_amount:
            raise ShapeMismatchError(
                f"expected {outputs_amount} biases, got {biases.size}"
            )
        self.biases = biases

        self._default_optimizer = BasicOptimizer()

    # ---- Lifecycle ----
    def compile(self, context):
        context.ensure_program(
            DENSE_PROPAGATION_PROGRAM, WGSL_DENSE_PROPAGATION, DENSE_PROPAGATION_KERNELS
        )
        context.ensure_program(
            DENSE_BACKPROPAGATION_PROGRAM,
            WGSL_DENSE_BACKPROPAGATION,
            DENSE_BACKPROPAGATION_KERNELS,
        )
        self._default_optimizer.init(context)
        self._buffers.replace(WEIGHTS, ComputeBuffer.from_numpy(context, self.weights))
        self._buffers.replace(BIASES, ComputeBuffer.from_numpy(context, self.biases))

    def sync_parameters_to_host(self):
        self._assert_initialized("sync_parameters_to_host")
        weights, biases = self._parameter_buffers("sync_parameters_to_host", WEIGHTS, BIASES)
        self.weights = weights.numpy().reshape(self.inputs_amount, self.outputs_amount)
        self.biases = biases.numpy()

    def release_device_state(self):
        super().release_device_state()
        self._default_optimizer.release_device_state()

    # ---- Propagation ----
    def _params(self, samples: int) -> bytes:
        return struct.pack("4I", samples, self.inputs_amount, self.outputs_amount, 0)

    def propagate(self, inputs: ComputeBuffer) -> ComputeBuffer:
        """
        Args:
            inputs: (samples, inputs_amount) flattened
        Returns:
            (samples, outputs_amount) flattened; owned by the layer until the
            next forward pass
        """
        self._assert_initialized("propagate")
        samples = self._samples_amount(inputs, self.inputs_amount)
        weights, biases = self._parameter_buffers("propagate", WEIGHTS, BIASES)

        outputs = ComputeBuffer.empty(self.context, samples * self.outputs_amount)
        kernel = self.context.get_kernel(DENSE_PROPAGATION_PROGRAM, "dense_propagate")
        kernel(
            self._params(samples),
            inputs,
            weights,
            biases,
            outputs,
            global_size=(samples, self.outputs_amount),
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
        self._assert_initialized("back_propagate")
        last_inputs = self.last_inputs_buffer
        assert last_inputs is not None, "Dense.back_propagate called before propagate"

        samples = self._samples_amount(output_error_derivative, self.outputs_amount)
        if last_inputs.count != samples * self.inputs_amount:
            raise TrainingDataDoesNotHaveExpectedSamplesAmountError(
                f"derivative covers {samples} samples but the last forward pass "
                f"had {last_inputs.count // self.inputs_amount}"
            )

        context = self.context
        params = self._params(samples)
        weights, biases = self._parameter_buffers("back_propagate", WEIGHTS, BIASES)

        input_derivatives = None
        weights_gradient = None
        biases_gradient = None
        try:
            # Must read the weights before they are updated
            if need_input_derivative:
                input_derivatives = ComputeBuffer.empty(context, samples * self.inputs_amount)
                context.get_kernel(DENSE_BACKPROPAGATION_PROGRAM, "input_derivatives")(
                    params,
                    output_error_derivative,
                    weights,
                    input_derivatives,
                    global_size=(samples, self.inputs_amount),
                )

            weights_gradient = ComputeBuffer.empty(context, weights.count)
            biases_gradient = ComputeBuffer.empty(context, biases.count)
            context.get_kernel(DENSE_BACKPROPAGATION_PROGRAM, "weights_gradient")(
                params,
                output_error_derivative,
                last_inputs,
                weights_gradient,
                global_size=(self.inputs_amount, self.outputs_amount),
            )
            context.get_kernel(DENSE_BACKPROPAGATION_PROGRAM, "bias_gradient")(
                params,
                output_error_derivative,
                biases_gradient,
                global_size=(self.outputs_amount,),
            )

            self._update_parameters(
                optimizer or self._default_optimizer,
                learning_rate,
                {WEIGHTS: weights_gradient, BIASES: biases_gradient},
            )
        except Exception:
            if input_derivatives is not None:
                input_derivatives.release()
            raise
        finally:
            for gradient in (weights_gradient, biases_gradient):
                if gradient is not None:
                    gradient.release()

        return input_derivatives
