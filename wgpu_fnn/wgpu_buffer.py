"""Device-resident float32 buffers and their ownership helpers.

ComputeBuffer is the unit of data interchange between layers, loss functions
and optimizers. Buffers are released explicitly: BufferCache holds the
buffers a component owns by role and releases the old handle whenever a new
one replaces it.
"""

import logging
import struct
from typing import Dict, Hashable, Iterator, Optional, Tuple

import numpy as np
import wgpu

from wgpu_fnn.errors import ShapeMismatchError, device_errors
from wgpu_fnn.wgpu_context import KernelSpec

logger = logging.getLogger(__name__)

FLOAT_BYTES = 4

_STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC
)


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

BUFFER_OPERATIONS_PROGRAM = "BUFFER_OPERATIONS"

WGSL_SUM_REDUCE = """
@group(0) @binding(0)
var<uniform> params: vec4<u32>;
@group(0) @binding(1)
var<storage, read> data: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;

// params.x = values to reduce, params.y = partial sums to write
var<workgroup> partial_sums: array<f32, 256>;

@compute @workgroup_size(256)
fn sum_reduce(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let numel = params.x;
    let groups = params.y;
    let group_idx = wid.x + wid.y * nwg.x;
    let idx = gid.x + gid.y * nwg.x * 256u;
    let lid_x = lid.x;

    var sum_val = 0.0;
    if (idx < numel) {
        sum_val = data[idx];
    }
    partial_sums[lid_x] = sum_val;
    workgroupBarrier();

    var stride_val = 128u;
    loop {
        if (stride_val == 0u) { break; }
        if (lid_x < stride_val) {
            partial_sums[lid_x] = partial_sums[lid_x] + partial_sums[lid_x + stride_val];
        }
        workgroupBarrier();
        stride_val = stride_val >> 1u;
    }

    if (lid_x == 0u && group_idx < groups) {
        out[group_idx] = partial_sums[0];
    }
}
"""

BUFFER_OPERATIONS_KERNELS = {
    "sum_reduce": KernelSpec(
        bindings=((0, "uniform"), (1, "read"), (2, "read_write")),
        workgroup_size=(256,),
    ),
}


# ============================================================================
# ComputeBuffer
# ============================================================================

class ComputeBuffer:
    """Handle to a flat array of float32 values on the compute device."""

    def __init__(self, context, buffer, count: int):
        """
        Args:
            context: ComputeContext that owns the device
            buffer: wgpu.GPUBuffer storage buffer
            count: number of float32 elements
        """
        self.context = context
        self.buffer = buffer
        self.count = int(count)
        self.released = False

    # ---- Properties ----
    @property
    def size(self) -> int:
        """Size in bytes."""
        return self.count * FLOAT_BYTES

    # ---- Factory Methods ----
    @classmethod
    def empty(cls, context, count: int) -> "ComputeBuffer":
        """Allocate an uninitialized buffer of `count` floats."""
        if count <= 0:
            raise ValueError(f"cannot allocate a buffer of {count} elements")
        with device_errors(f"allocating {count} floats"):
            buffer = context.device.create_buffer(
                size=count * FLOAT_BYTES,
                usage=_STORAGE_USAGE,
            )
        return cls(context, buffer, count)

    @classmethod
    def zeros(cls, context, count: int) -> "ComputeBuffer":
        """Allocate a buffer filled with zeros."""
        if count <= 0:
            raise ValueError(f"cannot allocate a buffer of {count} elements")
        with device_errors(f"allocating {count} floats"):
            buffer = context.device.create_buffer(
                size=count * FLOAT_BYTES,
                usage=_STORAGE_USAGE,
                mapped_at_creation=True,
            )
            buffer.unmap()
        return cls(context, buffer, count)

    @classmethod
    def from_numpy(cls, context, arr) -> "ComputeBuffer":
        """Upload a host array (any shape) as a flat float32 buffer."""
        arr_c = np.ascontiguousarray(arr, dtype=np.float32).ravel()
        if arr_c.size == 0:
            raise ValueError("cannot upload an empty array")
        with device_errors(f"uploading {arr_c.size} floats"):
            buffer = context.device.create_buffer_with_data(
                data=arr_c.tobytes(),
                usage=_STORAGE_USAGE,
            )
        return cls(context, buffer, arr_c.size)

    # ---- Data Transfer ----
    def numpy(self) -> np.ndarray:
        """Read the buffer back to the host as a flat float32 array."""
        assert not self.released, "cannot read a released buffer"
        with device_errors("reading a buffer back"):
            data = self.context.queue.read_buffer(self.buffer)
        return np.frombuffer(data, dtype=np.float32).copy()

    def copy(self) -> "ComputeBuffer":
        """Device-side copy into a freshly allocated buffer."""
        assert not self.released, "cannot copy a released buffer"
        out = ComputeBuffer.empty(self.context, self.count)
        with device_errors("copying a buffer"):
            command_encoder = self.context.device.create_command_encoder()
            command_encoder.copy_buffer_to_buffer(self.buffer, 0, out.buffer, 0, self.size)
            self.context.queue.submit([command_encoder.finish()])
        return out

    def sum(self) -> float:
        """Sum of all elements, reduced on the device 256 values at a time."""
        assert not self.released, "cannot reduce a released buffer"
        context = self.context
        context.ensure_program(
            BUFFER_OPERATIONS_PROGRAM, WGSL_SUM_REDUCE, BUFFER_OPERATIONS_KERNELS
        )
        kernel = context.get_kernel(BUFFER_OPERATIONS_PROGRAM, "sum_reduce")

        current = self
        while current.count > 1:
            groups = (current.count + 255) // 256
            partial = ComputeBuffer.empty(context, groups)
            kernel(
                struct.pack("4I", current.count, groups, 0, 0),
                current,
                partial,
                global_size=(current.count,),
            )
            if current is not self:
                current.release()
            current = partial

        total = float(current.numpy()[0])
        if current is not self:
            current.release()
        return total

    # ---- Lifecycle ----
    def release(self):
        """Free the device allocation. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        self.buffer.destroy()
        self.buffer = None

    def __repr__(self):
        state = "released" if self.released else "live"
        return f"ComputeBuffer(count={self.count}, {state})"


# ============================================================================
# BufferCache
# ============================================================================

class BufferCache:
    """Buffers owned by one component, keyed by role.

    replace() releases the buffer currently held under a role before the new
    one is installed, so a component never holds more than one buffer per
    role no matter how many forward passes run through it.
    """

    def __init__(self):
        self._buffers: Dict[Hashable, ComputeBuffer] = {}

    def get(self, role: Hashable) -> Optional[ComputeBuffer]:
        return self._buffers.get(role)

    def replace(self, role: Hashable, buffer: ComputeBuffer) -> ComputeBuffer:
        old = self._buffers.pop(role, None)
        if old is not None and old is not buffer:
            old.release()
        self._buffers[role] = buffer
        return buffer

    def release(self, role: Hashable):
        old = self._buffers.pop(role, None)
        if old is not None:
            old.release()

    def release_all(self):
        for role in list(self._buffers):
            self.release(role)
        logger.debug("Released all cached buffers")

    def __contains__(self, role: Hashable) -> bool:
        return role in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._buffers))


# ============================================================================
# Host-side Helpers
# ============================================================================

def flatten_samples(samples) -> Tuple[np.ndarray, int, int]:
    """Flatten a collection of equally sized float vectors.

    Returns:
        (contiguous float32 array of shape (samples, width), samples, width)
    """
    arr = np.asarray(samples, dtype=np.float32)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    elif arr.ndim != 2:
        arr = arr.reshape(arr.shape[0], -1)
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ShapeMismatchError(f"expected a non-empty set of samples, got shape {arr.shape}")
    return np.ascontiguousarray(arr), arr.shape[0], arr.shape[1]
