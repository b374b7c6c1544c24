"""Layer variants: Dense, Conv2D and the activation functions."""

from wgpu_fnn.layers.base import Layer
from wgpu_fnn.layers.dense import Dense
from wgpu_fnn.layers.conv2d import Conv2D
from wgpu_fnn.layers.activations import ActivationLayer, ReLU, TanH, Sigmoid, SoftMax

__all__ = [
    "Layer",
    "Dense",
    "Conv2D",
    "ActivationLayer",
    "ReLU",
    "TanH",
    "Sigmoid",
    "SoftMax",
]
