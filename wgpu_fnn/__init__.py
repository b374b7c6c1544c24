"""
wgpu_fnn: feed-forward neural network training on the GPU via wgpu-py.

Layers, loss functions and optimizers each run as WGSL compute shaders on a
shared compute context; a Model chains layers and trains them with
mini-batch gradient descent.

Modules:
    wgpu_context   - Adapter selection, program registry and kernel dispatch
    wgpu_buffer    - Device-resident float32 buffers and their ownership
    layers         - Dense, Conv2D and activation layers
    loss_functions - MeanSquared and CategoricalCrossEntropy
    optimizers     - Basic, NesterovMomentum and Adagrad updates
    model          - Model, TrainingOptions and the training loop
"""

from wgpu_fnn.errors import (
    WgpuFnnError, NotInitializedError,
    DeviceError, AllocationError,
    ShapeMismatchError, OutputsAndExpectedOutputsDoNotMatchError,
    TrainingDataDoesNotHaveExpectedSamplesAmountError,
    MissingProgramOrKernelError, ProgramNotFoundError, KernelNotFoundError,
    NoCommandQueueError,
)

from wgpu_fnn.wgpu_context import (
    DeviceType, ComputeContext, KernelSpec,
    setup_context, get_default_context, list_adapters,
)

from wgpu_fnn.wgpu_buffer import ComputeBuffer, BufferCache, flatten_samples

from wgpu_fnn.layers import (
    Layer, Dense, Conv2D,
    ActivationLayer, ReLU, TanH, Sigmoid, SoftMax,
)

from wgpu_fnn.loss_functions import LossFunction, MeanSquared, CategoricalCrossEntropy

from wgpu_fnn.optimizers import (
    Optimizer, BasicOptimizer, NesterovMomentumOptimizer, AdagradOptimizer,
)

from wgpu_fnn.model import (
    Model, TrainingOptions, TrainingVerbosity, History,
    MinLossReached, MinAccuracyReached,
)

__all__ = [
    # Errors
    "WgpuFnnError", "NotInitializedError",
    "DeviceError", "AllocationError",
    "ShapeMismatchError", "OutputsAndExpectedOutputsDoNotMatchError",
    "TrainingDataDoesNotHaveExpectedSamplesAmountError",
    "MissingProgramOrKernelError", "ProgramNotFoundError", "KernelNotFoundError",
    "NoCommandQueueError",
    # Context & buffers
    "DeviceType", "ComputeContext", "KernelSpec",
    "setup_context", "get_default_context", "list_adapters",
    "ComputeBuffer", "BufferCache", "flatten_samples",
    # Layers
    "Layer", "Dense", "Conv2D",
    "ActivationLayer", "ReLU", "TanH", "Sigmoid", "SoftMax",
    # Losses & optimizers
    "LossFunction", "MeanSquared", "CategoricalCrossEntropy",
    "Optimizer", "BasicOptimizer", "NesterovMomentumOptimizer", "AdagradOptimizer",
    # Model
    "Model", "TrainingOptions", "TrainingVerbosity", "History",
    "MinLossReached", "MinAccuracyReached",
]
