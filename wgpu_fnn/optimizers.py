"""
Optimizers turning a raw parameter gradient into updated parameters.

Every optimizer dispatches one WGSL kernel per parameter buffer and returns a
fresh buffer with the updated values; the caller owns it and releases the
superseded one. Optimizers with running state (velocity, squared-gradient
sums) keep it on the device in a BufferCache keyed by parameter identity,
e.g. (layer_index, "weights"). compute_update() leaves that state alone so a
layer can commit the state of all its parameters at once, or none of it.
"""

import logging
import struct
from typing import Hashable, Optional, Tuple

from wgpu_fnn.errors import NotInitializedError, ShapeMismatchError
from wgpu_fnn.wgpu_buffer import BufferCache, ComputeBuffer
from wgpu_fnn.wgpu_context import KernelSpec

logger = logging.getLogger(__name__)


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

OPTIMIZERS_PROGRAM = "OPTIMIZERS"

WGSL_OPTIMIZERS = """
struct Params {
    count: u32,
    learning_rate: f32,
    coefficient: f32,
    padding: f32,
}

@group(0) @binding(0)
var<uniform> params: Params;
@group(0) @binding(1)
var<storage, read> parameters: array<f32>;
@group(0) @binding(2)
var<storage, read> gradients: array<f32>;
@group(0) @binding(3)
var<storage, read> accumulator: array<f32>;
@group(0) @binding(4)
var<storage, read_write> new_parameters: array<f32>;
@group(0) @binding(5)
var<storage, read_write> new_accumulator: array<f32>;

@compute @workgroup_size(256)
fn basic_update(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    new_parameters[idx] = parameters[idx] - params.learning_rate * gradients[idx];
}

// coefficient = momentum
@compute @workgroup_size(256)
fn nesterov_update(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    let scaled_gradient = params.learning_rate * gradients[idx];
    let velocity = params.coefficient * accumulator[idx] + scaled_gradient;
    new_accumulator[idx] = velocity;
    new_parameters[idx] = parameters[idx] - (params.coefficient * velocity + scaled_gradient);
}

// coefficient = epsilon
@compute @workgroup_size(256)
fn adagrad_update(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.x + gid.y * nwg.x * 256u;
    if (idx >= params.count) { return; }
    let gradient = gradients[idx];
    let squared_sum = accumulator[idx] + gradient * gradient;
    new_accumulator[idx] = squared_sum;
    new_parameters[idx] = parameters[idx]
        - params.learning_rate * gradient / sqrt(squared_sum + params.coefficient);
}
"""

_STATELESS = ((0, "uniform"), (1, "read"), (2, "read"), (4, "read_write"))
_STATEFUL = (
    (0, "uniform"), (1, "read"), (2, "read"), (3, "read"),
    (4, "read_write"), (5, "read_write"),
)

OPTIMIZER_KERNELS = {
    "basic_update": KernelSpec(bindings=_STATELESS, workgroup_size=(256,)),
    "nesterov_update": KernelSpec(bindings=_STATEFUL, workgroup_size=(256,)),
    "adagrad_update": KernelSpec(bindings=_STATEFUL, workgroup_size=(256,)),
}


# ============================================================================
# Optimizers
# ============================================================================

class Optimizer:
    """Base class for all optimizers."""

    kernel_name = None

    def __init__(self):
        self.context = None
        self.state = BufferCache()

    def init(self, context):
        """Compile the optimizer kernels on `context`."""
        context.ensure_program(OPTIMIZERS_PROGRAM, WGSL_OPTIMIZERS, OPTIMIZER_KERNELS)
        self.context = context

    def compute_update(
        self,
        parameters: ComputeBuffer,
        gradients: ComputeBuffer,
        learning_rate: float,
        parameter_key: Hashable,
    ) -> Tuple[ComputeBuffer, Optional[ComputeBuffer]]:
        """Compute one step without touching the running state.

        Returns:
            (new parameters, new running state or None); the caller owns both
            until the state is handed to commit_state()
        """
        if self.context is None:
            raise NotInitializedError(f"{type(self).__name__} used before init()")
        if parameters.count != gradients.count:
            raise ShapeMismatchError(
                f"{parameters.count} parameters but {gradients.count} gradients"
            )
        kernel = self.context.get_kernel(OPTIMIZERS_PROGRAM, self.kernel_name)
        new_parameters = ComputeBuffer.empty(self.context, parameters.count)
        try:
            new_state = self._dispatch(
                kernel, parameters, gradients, new_parameters, learning_rate, parameter_key
            )
        except Exception:
            new_parameters.release()
            raise
        return new_parameters, new_state

    def commit_state(self, parameter_key: Hashable, new_state: Optional[ComputeBuffer]):
        """Install the running state produced by compute_update()."""
        if new_state is not None:
            self.state.replace(parameter_key, new_state)

    def optimize_parameters(
        self,
        parameters: ComputeBuffer,
        gradients: ComputeBuffer,
        learning_rate: float,
        parameter_key: Hashable,
    ) -> ComputeBuffer:
        """Return a fresh buffer holding the updated parameters.

        Args:
            parameters: current parameter values (left untouched)
            gradients: batch-averaged dL/dParameter, same length
            learning_rate: step size
            parameter_key: stable identity of the parameter, used to look up
                running state
        """
        new_parameters, new_state = self.compute_update(
            parameters, gradients, learning_rate, parameter_key
        )
        self.commit_state(parameter_key, new_state)
        return new_parameters

    def _dispatch(self, kernel, parameters, gradients, new_parameters, learning_rate, parameter_key):
        raise NotImplementedError

    def _accumulator(self, parameter_key: Hashable, count: int) -> ComputeBuffer:
        accumulator = self.state.get(parameter_key)
        if accumulator is None or accumulator.count != count:
            logger.debug(f"New accumulator for {parameter_key} ({count} values)")
            accumulator = self.state.replace(
                parameter_key, ComputeBuffer.zeros(self.context, count)
            )
        return accumulator

    def release_device_state(self):
        """Drop all running state. Idempotent."""
        self.state.release_all()


class BasicOptimizer(Optimizer):
    """Plain gradient descent: p <- p - lr * g."""

    kernel_name = "basic_update"

    def _dispatch(self, kernel, parameters, gradients, new_parameters, learning_rate, parameter_key):
        kernel(
            struct.pack("<Ifff", parameters.count, learning_rate, 0.0, 0.0),
            parameters,
            gradients,
            new_parameters,
            global_size=(parameters.count,),
        )
        return None


class _StatefulOptimizer(Optimizer):
    """Optimizer with one accumulator buffer per parameter."""

    def _coefficient(self) -> float:
        raise NotImplementedError

    def _dispatch(self, kernel, parameters, gradients, new_parameters, learning_rate, parameter_key):
        accumulator = self._accumulator(parameter_key, parameters.count)
        new_accumulator = ComputeBuffer.empty(self.context, parameters.count)
        try:
            kernel(
                struct.pack("<Ifff", parameters.count, learning_rate, self._coefficient(), 0.0),
                parameters,
                gradients,
                accumulator,
                new_parameters,
                new_accumulator,
                global_size=(parameters.count,),
            )
        except Exception:
            new_accumulator.release()
            raise
        return new_accumulator


class NesterovMomentumOptimizer(_StatefulOptimizer):
    """Nesterov accelerated momentum.

    v <- momentum * v + lr * g
    p <- p - (momentum * v + lr * g)
    """

    kernel_name = "nesterov_update"

    def __init__(self, momentum: float = 0.9):
        super().__init__()
        if not 0.0 <= momentum < 1.0:
            raise ValueError(f"momentum must be in [0, 1), got {momentum}")
        self.momentum = momentum

    def _coefficient(self) -> float:
        return self.momentum


class AdagradOptimizer(_StatefulOptimizer):
    """Adagrad: steps scaled by the running sum of squared gradients.

    G <- G + g^2
    p <- p - lr * g / sqrt(G + eps)
    """

    kernel_name = "adagrad_update"

    def __init__(self, epsilon: float = 1e-8):
        super().__init__()
        if epsilon <= 0.0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")
        self.epsilon = epsilon

    def _coefficient(self) -> float:
        return self.epsilon
