"""Compute context, program registry and kernel dispatch on top of wgpu-py.

A ComputeContext bundles the wgpu device, its queue and a registry of
compiled WGSL programs. Every layer, loss function and optimizer receives the
same context at init() and looks its kernels up by (program, entry point), so
a program shared by several layer instances is only compiled once.
"""

import enum
import logging
from collections import namedtuple
from typing import Dict, List, Mapping, Optional, Sequence

import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from wgpu_fnn.errors import (
    DeviceError,
    KernelNotFoundError,
    NoCommandQueueError,
    ProgramNotFoundError,
    device_errors,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Device Selection
# ============================================================================

class DeviceType(enum.Enum):
    """Class of adapter requested from wgpu."""

    GPU = "gpu"
    CPU = "cpu"
    DEFAULT = "default"


_GPU_ADAPTER_TYPES = ("DiscreteGPU", "IntegratedGPU")

_default_context = None


def list_adapters():
    """List all available wgpu adapters."""
    adapters = wgpu.gpu.enumerate_adapters_sync()
    for i, adapter in enumerate(adapters):
        info = adapter.info
        logger.debug(
            f"  [{i}] {info['device']} ({info['adapter_type']}, {info['backend_type']})"
        )
    return adapters


def _pick_adapter(adapters, device_type: DeviceType):
    by_type = {}
    for adapter in adapters:
        by_type.setdefault(adapter.info["adapter_type"], adapter)

    if device_type is DeviceType.GPU:
        preference = _GPU_ADAPTER_TYPES
    elif device_type is DeviceType.CPU:
        preference = ("CPU",)
    else:
        preference = _GPU_ADAPTER_TYPES + ("CPU",)

    for adapter_type in preference:
        if adapter_type in by_type:
            return by_type[adapter_type]
    if device_type is DeviceType.DEFAULT and adapters:
        return adapters[0]
    return None


def setup_context(device_type: DeviceType = DeviceType.DEFAULT) -> "ComputeContext":
    """Select an adapter of the requested class and create a context on it."""
    with device_errors("enumerating adapters"):
        adapters = list_adapters()

    adapter = _pick_adapter(adapters, device_type)
    if adapter is None:
        raise DeviceError(f"no wgpu adapter available for device type {device_type.value}")

    with device_errors("requesting a device"):
        device = adapter.request_device_sync()

    info = adapter.info
    logger.info(f"Using {info['device']} ({info['adapter_type']}, {info['backend_type']})")
    return ComputeContext(device, [device.queue], adapter_info=dict(info))


def get_default_context() -> "ComputeContext":
    """Get or create the process-wide default context."""
    global _default_context
    if _default_context is None or _default_context.released:
        _default_context = setup_context()
    return _default_context


# ============================================================================
# Programs & Kernels
# ============================================================================

KernelSpec = namedtuple("KernelSpec", ["bindings", "workgroup_size"])
KernelSpec.__doc__ = """Declared contract of one WGSL entry point.

bindings: ordered (binding, access) pairs; access is "read", "read_write"
    or "uniform". Positional kernel arguments follow this order.
workgroup_size: the @workgroup_size declared in the WGSL source.
"""

_BINDING_TYPES = {
    "read": "read-only-storage",
    "read_write": "storage",
    "uniform": "uniform",
}

MAX_WORKGROUPS_PER_DIMENSION = 65535


class Kernel:
    """A dispatchable compute pipeline for one entry point."""

    def __init__(self, context, program_name, name, spec, pipeline, bind_group_layout):
        self.context = context
        self.program_name = program_name
        self.name = name
        self.bindings = tuple(spec.bindings)
        self.workgroup_size = tuple(spec.workgroup_size)
        self.pipeline = pipeline
        self.bind_group_layout = bind_group_layout

    def _workgroups(self, global_size):
        if len(global_size) != len(self.workgroup_size):
            raise ValueError(
                f"{self.name} expects a {len(self.workgroup_size)}D global size, "
                f"got {global_size}"
            )
        counts = [
            (int(size) + group - 1) // group
            for size, group in zip(global_size, self.workgroup_size)
        ]
        if len(counts) == 1 and counts[0] > MAX_WORKGROUPS_PER_DIMENSION:
            # 1-D kernels index with gid.x + gid.y * num_workgroups.x * workgroup_size
            total = counts[0]
            counts = [
                MAX_WORKGROUPS_PER_DIMENSION,
                (total + MAX_WORKGROUPS_PER_DIMENSION - 1) // MAX_WORKGROUPS_PER_DIMENSION,
            ]
        if any(count > MAX_WORKGROUPS_PER_DIMENSION for count in counts):
            raise ValueError(
                f"{self.name}: global size {tuple(global_size)} needs {counts} "
                f"workgroups, at most {MAX_WORKGROUPS_PER_DIMENSION} per dimension"
            )
        while len(counts) < 3:
            counts.append(1)
        return counts

    def __call__(self, *args, global_size: Sequence[int]):
        """Execute the kernel and wait for the queue to drain.

        Args:
            *args: one argument per declared binding; ComputeBuffer for
                storage bindings, packed bytes for uniform bindings
            global_size: work items per dimension, e.g. (samples, outputs)
        """
        if len(args) != len(self.bindings):
            raise TypeError(
                f"{self.program_name}.{self.name} takes {len(self.bindings)} "
                f"arguments, got {len(args)}"
            )

        device = self.context.device
        queue = self.context.queue
        workgroups = self._workgroups(global_size)

        transient = []
        try:
            with device_errors(f"dispatching {self.program_name}.{self.name}"):
                resources = []
                for (binding, access), arg in zip(self.bindings, args):
                    if access == "uniform":
                        buffer = device.create_buffer_with_data(
                            data=arg,
                            usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
                        )
                        transient.append(buffer)
                    else:
                        assert not arg.released, f"{self.name}: binding {binding} was released"
                        buffer = arg.buffer
                    resources.append({
                        "binding": binding,
                        "resource": {"buffer": buffer, "offset": 0, "size": buffer.size},
                    })

                bind_group = device.create_bind_group(
                    layout=self.bind_group_layout,
                    entries=resources,
                )

                command_encoder = device.create_command_encoder()
                compute_pass = command_encoder.begin_compute_pass()
                compute_pass.set_pipeline(self.pipeline)
                compute_pass.set_bind_group(0, bind_group)
                compute_pass.dispatch_workgroups(*workgroups)
                compute_pass.end()
                queue.submit([command_encoder.finish()])
                queue.on_submitted_work_done_sync()
        finally:
            for buffer in transient:
                buffer.destroy()

    def __repr__(self):
        return f"Kernel({self.program_name}.{self.name})"


class Program:
    """A compiled WGSL module and the kernels built from its entry points."""

    def __init__(self, name: str, shader_module, kernels: Dict[str, Kernel]):
        self.name = name
        self.shader_module = shader_module
        self.kernels = kernels

    def get_kernel(self, name: str) -> Kernel:
        try:
            return self.kernels[name]
        except KeyError:
            raise KernelNotFoundError(
                f"kernel {name!r} not found in program {self.name!r}"
            ) from None


# ============================================================================
# Compute Context
# ============================================================================

class ComputeContext:
    """Device, command queues and program registry shared by all components."""

    def __init__(self, device, queues: List, adapter_info: Optional[Mapping] = None):
        self.device = device
        self.queues = list(queues)
        self.adapter_info = dict(adapter_info or {})
        self.programs: Dict[str, Program] = {}
        self.released = False

    @property
    def queue(self):
        """The queue every dispatch of this context goes to."""
        if not self.queues:
            raise NoCommandQueueError("compute context has no command queue")
        return self.queues[0]

    def ensure_program(
        self,
        name: str,
        source: str,
        kernels: Mapping[str, KernelSpec],
    ) -> Program:
        """Compile `source` under `name` unless it already is registered."""
        program = self.programs.get(name)
        if program is not None:
            missing = [k for k in kernels if k not in program.kernels]
            if not missing:
                return program
        else:
            logger.debug(f"Compiling program {name} ({len(kernels)} kernels)")
            with device_errors(f"compiling program {name}"):
                shader_module = self.device.create_shader_module(code=source)
            program = Program(name, shader_module, {})
            missing = list(kernels)

        for kernel_name in missing:
            program.kernels[kernel_name] = self._build_kernel(
                program, kernel_name, kernels[kernel_name]
            )

        self.programs[name] = program
        return program

    def _build_kernel(self, program: Program, kernel_name: str, spec: KernelSpec) -> Kernel:
        entries = []
        for binding, access in spec.bindings:
            entries.append({
                "binding": binding,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {
                    "type": _BINDING_TYPES[access],
                    "has_dynamic_offset": False,
                },
            })

        with device_errors(f"building kernel {program.name}.{kernel_name}"):
            bind_group_layout = self.device.create_bind_group_layout(entries=entries)
            pipeline_layout = self.device.create_pipeline_layout(
                bind_group_layouts=[bind_group_layout]
            )
            pipeline = self.device.create_compute_pipeline(
                layout=pipeline_layout,
                compute={"module": program.shader_module, "entry_point": kernel_name},
            )

        return Kernel(self, program.name, kernel_name, spec, pipeline, bind_group_layout)

    def get_program(self, name: str) -> Program:
        try:
            return self.programs[name]
        except KeyError:
            raise ProgramNotFoundError(f"program {name!r} was never compiled") from None

    def get_kernel(self, program_name: str, kernel_name: str) -> Kernel:
        return self.get_program(program_name).get_kernel(kernel_name)

    def release(self):
        """Destroy the device. Safe to call more than once."""
        if self.released:
            return
        self.programs.clear()
        try:
            self.device.destroy()
        except wgpu.GPUError as exc:
            logger.warning(f"Device destroy failed: {exc}")
        self.released = True

    def __repr__(self):
        device_name = self.adapter_info.get("device", "unknown device")
        return f"ComputeContext({device_name}, programs={sorted(self.programs)})"
