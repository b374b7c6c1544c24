"""
Single-channel 2D convolution (valid padding, stride 1).

Samples are flattened row by row: pixel (x, y) of a (width, height) image
lives at y * width + x. The filter and the output map use the same layout.
The layer learns one filter plus one bias per output position.
"""

import logging
import struct
from typing import Optional, Tuple

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

FILTER_WEIGHTS = "filter_weights"
BIASES = "biases"


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

CONV2D_PROGRAM = "CONV2D"

WGSL_CONV2D = """
struct Params {
    samples: u32,
    input_width: u32,
    input_height: u32,
    filter_width: u32,
    filter_height: u32,
    output_width: u32,
    output_height: u32,
    padding: u32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> inputs: array<f32>;
@group(0) @binding(2)
var<storage, read> filter_weights: array<f32>;
@group(0) @binding(3)
var<storage, read> biases: array<f32>;
@group(0) @binding(4)
var<storage, read_write> outputs: array<f32>;
@group(0) @binding(5)
var<storage, read> output_derivatives: array<f32>;
@group(0) @binding(6)
var<storage, read_write> filter_gradient_out: array<f32>;
@group(0) @binding(7)
var<storage, read_write> biases_gradient_out: array<f32>;
@group(0) @binding(8)
var<storage, read_write> input_derivatives_out: array<f32>;

@compute @workgroup_size(16, 16)
fn conv_propagate(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let out_idx = gid.y;
    let outputs_amount = params.output_width * params.output_height;
    if (sample_idx >= params.samples || out_idx >= outputs_amount) { return; }

    let ox = out_idx % params.output_width;
    let oy = out_idx / params.output_width;
    let image = sample_idx * params.input_width * params.input_height;

    var total = biases[out_idx];
    for (var fy = 0u; fy < params.filter_height; fy = fy + 1u) {
        for (var fx = 0u; fx < params.filter_width; fx = fx + 1u) {
            let pixel = image + (oy + fy) * params.input_width + ox + fx;
            total = total + inputs[pixel] * filter_weights[fy * params.filter_width + fx];
        }
    }
    outputs[sample_idx * outputs_amount + out_idx] = total;
}

// inputs holds the cached inputs of the last forward pass
@compute @workgroup_size(256)
fn filter_gradient(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let weight_idx = gid.x + gid.y * nwg.x * 256u;
    if (weight_idx >= params.filter_width * params.filter_height) { return; }

    let fx = weight_idx % params.filter_width;
    let fy = weight_idx / params.filter_width;
    let outputs_amount = params.output_width * params.output_height;
    let inputs_amount = params.input_width * params.input_height;

    var total = 0.0;
    for (var s = 0u; s < params.samples; s = s + 1u) {
        for (var p = 0u; p < outputs_amount; p = p + 1u) {
            let ox = p % params.output_width;
            let oy = p / params.output_width;
            let pixel = s * inputs_amount + (oy + fy) * params.input_width + ox + fx;
            total = total + output_derivatives[s * outputs_amount + p] * inputs[pixel];
        }
    }
    filter_gradient_out[weight_idx] = total / f32(params.samples);
}

@compute @workgroup_size(256)
fn conv_bias_gradient(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let out_idx = gid.x + gid.y * nwg.x * 256u;
    let outputs_amount = params.output_width * params.output_height;
    if (out_idx >= outputs_amount) { return; }

    var total = 0.0;
    for (var s = 0u; s < params.samples; s = s + 1u) {
        total = total + output_derivatives[s * outputs_amount + out_idx];
    }
    biases_gradient_out[out_idx] = total / f32(params.samples);
}

@compute @workgroup_size(16, 16)
fn conv_input_derivatives(@builtin(global_invocation_id) gid: vec3<u32>) {
    let sample_idx = gid.x;
    let pixel = gid.y;
    let inputs_amount = params.input_width * params.input_height;
    if (sample_idx >= params.samples || pixel >= inputs_amount) { return; }

    let x = pixel % params.input_width;
    let y = pixel / params.input_width;
    let outputs_amount = params.output_width * params.output_height;

    var total = 0.0;
    for (var fy = 0u; fy < params.filter_height; fy = fy + 1u) {
        for (var fx = 0u; fx < params.filter_width; fx = fx + 1u) {
            if (x < fx || y < fy) { continue; }
            let ox = x - fx;
            let oy = y - fy;
            if (ox >= params.output_width || oy >= params.output_height) { continue; }
            total = total
                + output_derivatives[sample_idx * outputs_amount + oy * params.output_width + ox]
                * filter_weights[fy * params.filter_width + fx];
        }
    }
    input_derivatives_out[sample_idx * inputs_amount + pixel] = total;
}
"""

CONV2D_KERNELS = {
    "conv_propagate": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read"), (3, "read"), (4, "read_write")),
        workgroup_size=(16, 16),
    ),
    "filter_gradient": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (5, "read"), (6, "read_write")),
        workgroup_size=(256,),
    ),
    "conv_bias_gradient": KernelSpec(
        bindings=((0, "uniform"), (5, "read"), (7, "read_write")),
        workgroup_size=(256,),
    ),
    "conv_input_derivatives": KernelSpec(
        bindings=((0, "uniform"), (2, "read"), (5, "read"), (8, "read_write")),
        workgroup_size=(16, 16),
    ),
}


# ============================================================================
# Conv2D Layer
# ============================================================================

class Conv2D(Layer):
    """Learnable single-filter 2D convolution.

    Args:
        input_shape: (width, height) of each input image
        filter_shape: (width, height) of the filter
        filter_weights: optional initial filter, any shape holding
            width * height values laid out row by row
        biases: optional initial biases, one per output position
    """

    def __init__(
        self,
        input_shape: Tuple[int, int],
        filter_shape: Tuple[int, int],
        filter_weights: Optional[np.ndarray] = None,
        biases: Optional[np.ndarray] = None,
    ):
        input_width, input_height = (int(v) for v in input_shape)
        filter_width, filter_height = (int(v) for v in filter_shape)
        if filter_width <= 0 or filter_height <= 0:
            raise ValueError(f"filter shape must be positive, got {filter_shape}")
        if filter_width > input_width or filter_height > input_height:
            raise ValueError(
                f"filter {filter_shape} does not fit inside input {input_shape}"
            )

        self.input_shape = (input_width, input_height)
        self.filter_shape = (filter_width, filter_height)
        self.output_shape = (
            input_width - filter_width + 1,
            input_height - filter_height + 1,
        )
        super().__init__(
            input_width * input_height,
            self.output_shape[0] * self.output_shape[1],
        )

        filter_size = filter_width * filter_height
        if filter_weights is None:
            limit = 1.0 / np.sqrt(filter_size)
            filter_weights = np.random.uniform(-limit, limit, size=filter_size)
        filter_weights = np.asarray(filter_weights, dtype=np.float32).ravel()
        if filter_weights.size != filter_size:
            raise ShapeMismatchError(
                f"expected {filter_size} filter weights, got {filter_weights.size}"
            )
        self.filter_weights = filter_weights

        if biases is None:
            biases = np.zeros(self.outputs_amount, dtype=np.float32)
        biases = np.asarray(biases, dtype=np.float32).ravel()
        if biases.size != self.outputs_amount:
            raise ShapeMismatchError(
                f"expected {self.outputs_amount} biases, got {biases.size}"
            )
        self.biases = biases

        self._default_optimizer = BasicOptimizer()

    def compile(self, context):
        context.ensure_program(CONV2D_PROGRAM, WGSL_CONV2D, CONV2D_KERNELS)
        self._default_optimizer.init(context)
        self._buffers.replace(
            FILTER_WEIGHTS, ComputeBuffer.from_numpy(context, self.filter_weights)
        )
        self._buffers.replace(BIASES, ComputeBuffer.from_numpy(context, self.biases))

    def sync_parameters_to_host(self):
        self._assert_initialized("sync_parameters_to_host")
        filter_weights, biases = self._parameter_buffers(
            "sync_parameters_to_host", FILTER_WEIGHTS, BIASES
        )
        self.filter_weights = filter_weights.numpy()
        self.biases = biases.numpy()

    def release_device_state(self):
        super().release_device_state()
        self._default_optimizer.release_device_state()

    def _params(self, samples: int) -> bytes:
        return struct.pack(
            "8I",
            samples,
            *self.input_shape,
            *self.filter_shape,
            *self.output_shape,
            0,
        )

    def propagate(self, inputs: ComputeBuffer) -> ComputeBuffer:
        self._assert_initialized("propagate")
        samples = self._samples_amount(inputs, self.inputs_amount)
        filter_weights, biases = self._parameter_buffers("propagate", FILTER_WEIGHTS, BIASES)

        outputs = ComputeBuffer.empty(self.context, samples * self.outputs_amount)
        self.context.get_kernel(CONV2D_PROGRAM, "conv_propagate")(
            self._params(samples),
            inputs,
            filter_weights,
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
        assert last_inputs is not None, "Conv2D.back_propagate called before propagate"

        samples = self._samples_amount(output_error_derivative, self.outputs_amount)
        if last_inputs.count != samples * self.inputs_amount:
            raise TrainingDataDoesNotHaveExpectedSamplesAmountError(
                f"derivative covers {samples} samples but the last forward pass "
                f"had {last_inputs.count // self.inputs_amount}"
            )

        context = self.context
        params = self._params(samples)
        filter_weights, biases = self._parameter_buffers(
            "back_propagate", FILTER_WEIGHTS, BIASES
        )

        input_derivatives = None
        filter_gradient = None
        biases_gradient = None
        try:
            if need_input_derivative:
                input_derivatives = ComputeBuffer.empty(context, samples * self.inputs_amount)
                context.get_kernel(CONV2D_PROGRAM, "conv_input_derivatives")(
                    params,
                    filter_weights,
                    output_error_derivative,
                    input_derivatives,
                    global_size=(samples, self.inputs_amount),
                )

            filter_gradient = ComputeBuffer.empty(context, filter_weights.count)
            biases_gradient = ComputeBuffer.empty(context, biases.count)
            context.get_kernel(CONV2D_PROGRAM, "filter_gradient")(
                params,
                last_inputs,
                output_error_derivative,
                filter_gradient,
                global_size=(filter_weights.count,),
            )
            context.get_kernel(CONV2D_PROGRAM, "conv_bias_gradient")(
                params,
                output_error_derivative,
                biases_gradient,
                global_size=(biases.count,),
            )

            self._update_parameters(
                optimizer or self._default_optimizer,
                learning_rate,
                {FILTER_WEIGHTS: filter_gradient, BIASES: biases_gradient},
            )
        except Exception:
            if input_derivatives is not None:
                input_derivatives.release()
            raise
        finally:
            for gradient in (filter_gradient, biases_gradient):
                if gradient is not None:
                    gradient.release()

        return input_derivatives

    def __repr__(self):
        return (
            f"Conv2D(input_shape={self.input_shape}, filter_shape={self.filter_shape})"
        )
