"""
Tests for the compute context, program registry and kernel dispatch
"""
import struct

import numpy as np
import pytest
import wgpu

from wgpu_fnn.errors import (
    DeviceError,
    KernelNotFoundError,
    MissingProgramOrKernelError,
    NoCommandQueueError,
    ProgramNotFoundError,
)
from wgpu_fnn.wgpu_buffer import (
    BUFFER_OPERATIONS_KERNELS,
    BUFFER_OPERATIONS_PROGRAM,
    WGSL_SUM_REDUCE,
    ComputeBuffer,
)
from wgpu_fnn.wgpu_context import ComputeContext, Kernel, KernelSpec, Program


class _UniformBuffer:

    def __init__(self, data):
        self.size = len(data)
        self.destroyed = False

    def destroy(self):
        self.destroyed = True


class _Recorder:
    """Accepts any call made while recording a dispatch"""

    def __getattr__(self, name):
        return lambda *args, **kwargs: self


class _FailingDevice(_Recorder):

    def __init__(self):
        self.uniform_buffers = []

    def create_buffer_with_data(self, data, usage):
        buffer = _UniformBuffer(data)
        self.uniform_buffers.append(buffer)
        return buffer


class _FailingQueue:

    def submit(self, command_buffers):
        raise wgpu.GPUError("device lost")


class TestRegistryWithoutDevice:

    def test_no_command_queue(self):
        ctx = ComputeContext(device=None, queues=[])
        with pytest.raises(NoCommandQueueError):
            ctx.queue

    def test_program_not_found(self):
        ctx = ComputeContext(device=None, queues=[])
        with pytest.raises(ProgramNotFoundError):
            ctx.get_program("DENSE_PROPAGATION")
        with pytest.raises(MissingProgramOrKernelError):
            ctx.get_kernel("DENSE_PROPAGATION", "dense_propagate")

    def test_kernel_not_found(self):
        program = Program("ACTIVATIONS", shader_module=None, kernels={})
        with pytest.raises(KernelNotFoundError):
            program.get_kernel("relu_propagate")

    def test_workgroup_counts(self):
        spec = KernelSpec(bindings=((0, "uniform"),), workgroup_size=(16, 16))
        kernel = Kernel(None, "P", "k", spec, pipeline=None, bind_group_layout=None)
        assert kernel._workgroups((30, 16)) == [2, 1, 1]
        assert kernel._workgroups((1, 33)) == [1, 3, 1]
        with pytest.raises(ValueError):
            kernel._workgroups((30,))

    def test_large_1d_dispatch_folds_into_two_dimensions(self):
        spec = KernelSpec(bindings=((0, "uniform"),), workgroup_size=(256,))
        kernel = Kernel(None, "P", "k", spec, pipeline=None, bind_group_layout=None)
        assert kernel._workgroups((65535 * 256,)) == [65535, 1, 1]
        assert kernel._workgroups((20000 * 1000,)) == [65535, 2, 1]
        x, y, _ = kernel._workgroups((65535 * 256 * 3 + 1,))
        assert x * y * 256 >= 65535 * 256 * 3 + 1

    def test_oversized_2d_dispatch_rejected(self):
        spec = KernelSpec(bindings=((0, "uniform"),), workgroup_size=(16, 16))
        kernel = Kernel(None, "P", "k", spec, pipeline=None, bind_group_layout=None)
        with pytest.raises(ValueError):
            kernel._workgroups((65536 * 16, 1))

    def test_argument_count_checked(self):
        spec = KernelSpec(bindings=((0, "uniform"), (1, "read")), workgroup_size=(256,))
        kernel = Kernel(None, "P", "k", spec, pipeline=None, bind_group_layout=None)
        with pytest.raises(TypeError):
            kernel(b"\x00" * 16, global_size=(1,))

    def test_uniform_buffers_destroyed_when_dispatch_fails(self):
        device = _FailingDevice()
        ctx = ComputeContext(device=device, queues=[_FailingQueue()])
        spec = KernelSpec(bindings=((0, "uniform"),), workgroup_size=(256,))
        kernel = Kernel(ctx, "P", "k", spec, pipeline=None, bind_group_layout=None)

        with pytest.raises(DeviceError):
            kernel(b"\x00" * 16, global_size=(1,))
        assert len(device.uniform_buffers) == 1
        assert device.uniform_buffers[0].destroyed


class TestRegistryOnDevice:

    def test_ensure_program_is_idempotent(self, context):
        first = context.ensure_program(
            BUFFER_OPERATIONS_PROGRAM, WGSL_SUM_REDUCE, BUFFER_OPERATIONS_KERNELS
        )
        second = context.ensure_program(
            BUFFER_OPERATIONS_PROGRAM, WGSL_SUM_REDUCE, BUFFER_OPERATIONS_KERNELS
        )
        assert first is second
        assert context.get_kernel(BUFFER_OPERATIONS_PROGRAM, "sum_reduce") is \
            first.kernels["sum_reduce"]

    def test_dispatch(self, context):
        context.ensure_program(
            BUFFER_OPERATIONS_PROGRAM, WGSL_SUM_REDUCE, BUFFER_OPERATIONS_KERNELS
        )
        kernel = context.get_kernel(BUFFER_OPERATIONS_PROGRAM, "sum_reduce")
        data = ComputeBuffer.from_numpy(context, np.ones(512, dtype=np.float32))
        out = ComputeBuffer.empty(context, 2)
        try:
            kernel(struct.pack("4I", 512, 2, 0, 0), data, out, global_size=(512,))
            np.testing.assert_array_equal(out.numpy(), [256.0, 256.0])
        finally:
            data.release()
            out.release()
