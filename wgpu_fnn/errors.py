"""
Error taxonomy for wgpu_fnn.

Every failure raised by the training engine derives from WgpuFnnError.
Backend failures coming out of wgpu are wrapped into DeviceError (or
AllocationError) by the device_errors() context manager so callers only
need to know this module.
"""

from contextlib import contextmanager
import logging

import wgpu

logger = logging.getLogger(__name__)


class WgpuFnnError(Exception):
    """Base class for all wgpu_fnn errors."""


class NotInitializedError(WgpuFnnError):
    """An operation was invoked before init() bound a compute context."""


class DeviceError(WgpuFnnError):
    """The compute backend failed (kernel build, dispatch, read-back...)."""


class AllocationError(DeviceError):
    """A device buffer could not be created."""


class ShapeMismatchError(WgpuFnnError, ValueError):
    """Data handed to the engine does not have the expected shape."""


class OutputsAndExpectedOutputsDoNotMatchError(ShapeMismatchError):
    """Actual outputs and expected outputs differ in element count."""


class TrainingDataDoesNotHaveExpectedSamplesAmountError(ShapeMismatchError):
    """Element count is not evenly divisible by the amount of samples."""


class MissingProgramOrKernelError(WgpuFnnError, LookupError):
    """A program or kernel was not found in the context registry."""


class ProgramNotFoundError(MissingProgramOrKernelError):
    pass


class KernelNotFoundError(MissingProgramOrKernelError):
    pass


class NoCommandQueueError(WgpuFnnError):
    """The compute context has no command queue to submit work to."""


@contextmanager
def device_errors(action: str):
    """Translate wgpu exceptions raised while doing `action`."""
    try:
        yield
    except wgpu.GPUOutOfMemoryError as exc:
        logger.error(f"Out of device memory while {action}: {exc}")
        raise AllocationError(f"out of device memory while {action}") from exc
    except wgpu.GPUError as exc:
        raise DeviceError(f"device failure while {action}: {exc}") from exc
