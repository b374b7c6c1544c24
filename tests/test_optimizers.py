"""
Tests for the optimizers
"""
import numpy as np
import pytest

from wgpu_fnn.errors import NotInitializedError, ShapeMismatchError
from wgpu_fnn.optimizers import (
    AdagradOptimizer,
    BasicOptimizer,
    NesterovMomentumOptimizer,
)
from wgpu_fnn.wgpu_buffer import ComputeBuffer

KEY = (0, "weights")


def _steps(context, optimizer, parameters, gradients_per_step, learning_rate):
    """Apply one optimizer step per gradient array; returns the final parameters."""
    optimizer.init(context)
    current = ComputeBuffer.from_numpy(context, parameters)
    try:
        for gradients in gradients_per_step:
            gradient_buffer = ComputeBuffer.from_numpy(context, gradients)
            try:
                updated = optimizer.optimize_parameters(
                    current, gradient_buffer, learning_rate, KEY
                )
            finally:
                gradient_buffer.release()
            assert updated is not current
            current.release()
            current = updated
        return current.numpy()
    finally:
        current.release()
        optimizer.release_device_state()


@pytest.fixture
def problem(rng):
    parameters = rng.uniform(-1.0, 1.0, size=300).astype(np.float32)
    gradients = [rng.uniform(-1.0, 1.0, size=300).astype(np.float32) for _ in range(3)]
    return parameters, gradients


def test_basic(context, problem):
    parameters, gradients = problem
    expected = parameters.copy()
    for g in gradients:
        expected = expected - 0.1 * g

    actual = _steps(context, BasicOptimizer(), parameters, gradients, 0.1)
    np.testing.assert_allclose(actual, expected, rtol=1e-4, atol=1e-6)


def test_nesterov_momentum(context, problem):
    parameters, gradients = problem
    momentum, lr = 0.9, 0.05
    expected = parameters.copy()
    velocity = np.zeros_like(parameters)
    for g in gradients:
        velocity = momentum * velocity + lr * g
        expected = expected - (momentum * velocity + lr * g)

    actual = _steps(context, NesterovMomentumOptimizer(momentum), parameters, gradients, lr)
    np.testing.assert_allclose(actual, expected, rtol=1e-4, atol=1e-5)


def test_adagrad(context, problem):
    parameters, gradients = problem
    epsilon, lr = 1e-8, 0.1
    expected = parameters.copy()
    squared_sum = np.zeros_like(parameters)
    for g in gradients:
        squared_sum = squared_sum + g * g
        expected = expected - lr * g / np.sqrt(squared_sum + epsilon)

    actual = _steps(context, AdagradOptimizer(epsilon), parameters, gradients, lr)
    np.testing.assert_allclose(actual, expected, rtol=1e-3, atol=1e-5)


def test_state_is_kept_per_parameter(context):
    optimizer = NesterovMomentumOptimizer()
    optimizer.init(context)
    params = ComputeBuffer.zeros(context, 4)
    grads = ComputeBuffer.from_numpy(context, np.ones(4))
    try:
        for key in [(0, "weights"), (0, "biases"), (1, "weights")]:
            optimizer.optimize_parameters(params, grads, 0.1, key).release()
        assert len(optimizer.state) == 3
    finally:
        params.release()
        grads.release()
        optimizer.release_device_state()
    assert len(optimizer.state) == 0


def test_compute_update_leaves_state_until_committed(context):
    optimizer = NesterovMomentumOptimizer(momentum=0.5)
    optimizer.init(context)
    params = ComputeBuffer.zeros(context, 4)
    grads = ComputeBuffer.from_numpy(context, np.ones(4))
    try:
        new_parameters, new_state = optimizer.compute_update(params, grads, 0.1, KEY)
        new_parameters.release()
        assert not optimizer.state.get(KEY).numpy().any()

        optimizer.commit_state(KEY, new_state)
        assert optimizer.state.get(KEY) is new_state
        np.testing.assert_allclose(new_state.numpy(), np.full(4, 0.1), rtol=1e-5)
    finally:
        params.release()
        grads.release()
        optimizer.release_device_state()


def test_not_initialized(fake_buffer):
    with pytest.raises(NotInitializedError):
        BasicOptimizer().optimize_parameters(fake_buffer(3), fake_buffer(3), 0.1, KEY)


def test_count_mismatch(fake_buffer):
    optimizer = AdagradOptimizer()
    optimizer.context = object()
    with pytest.raises(ShapeMismatchError):
        optimizer.optimize_parameters(fake_buffer(3), fake_buffer(4), 0.1, KEY)


@pytest.mark.parametrize("momentum", [-0.1, 1.0])
def test_invalid_momentum(momentum):
    with pytest.raises(ValueError):
        NesterovMomentumOptimizer(momentum)


def test_invalid_epsilon():
    with pytest.raises(ValueError):
        AdagradOptimizer(epsilon=0.0)
