"""
Pytest configuration and fixtures for wgpu_fnn tests
"""
import numpy as np
import pytest

from wgpu_fnn.errors import DeviceError
from wgpu_fnn.wgpu_context import setup_context


@pytest.fixture(scope="session")
def context():
    """Compute context shared by the GPU tests (skips if no adapter)"""
    try:
        ctx = setup_context()
    except DeviceError as e:
        pytest.skip(f"wgpu adapter not available: {e}")
    yield ctx
    ctx.release()


@pytest.fixture
def rng():
    """Seeded random generator"""
    return np.random.default_rng(42)



class FakeBuffer:
    """Stand-in for ComputeBuffer in tests that never reach the device"""

    def __init__(self, count):
        self.count = count
        self.released = False
        self.release_calls = 0

    def release(self):
        self.release_calls += 1
        self.released = True


@pytest.fixture
def fake_buffer():
    return FakeBuffer
