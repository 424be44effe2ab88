"""
Weights Provider
================

Shape-aware initialization of the trainable parameters of every layer.

Weight schemes (fan_in / fan_out are the inputs / outputs of one neuron):
- lecun_uniform:  U(-a, a), a = sqrt(3 / fan_in)
- glorot_uniform: U(-a, a), a = sqrt(6 / (fan_in + fan_out))
- glorot_normal:  N(0, 2 / (fan_in + fan_out))
- he_uniform:     U(-a, a), a = sqrt(6 / fan_in)
- he_normal:      N(0, 2 / fan_in), good default for ReLU networks

Biases start at zero. Batch normalization starts as the identity
transform: gamma = 1, beta = 0.
"""

import logging

import numpy as np

from .settings import NormalizationMode
from .tensor import AllocationMode, Shape, Tensor

logger = logging.getLogger(__name__)


def _lecun_uniform(size, fan_in, fan_out):
    scale = np.sqrt(3.0 / fan_in)
    return np.random.uniform(-scale, scale, size)


def _glorot_uniform(size, fan_in, fan_out):
    scale = np.sqrt(6.0 / (fan_in + fan_out))
    return np.random.uniform(-scale, scale, size)


def _glorot_normal(size, fan_in, fan_out):
    return np.random.randn(size) * np.sqrt(2.0 / (fan_in + fan_out))


def _he_uniform(size, fan_in, fan_out):
    scale = np.sqrt(6.0 / fan_in)
    return np.random.uniform(-scale, scale, size)


def _he_normal(size, fan_in, fan_out):
    return np.random.randn(size) * np.sqrt(2.0 / fan_in)


WEIGHT_INITIALIZERS = {
    'lecun_uniform': _lecun_uniform,
    'glorot_uniform': _glorot_uniform,
    'xavier': _glorot_uniform,
    'glorot_normal': _glorot_normal,
    'he_uniform': _he_uniform,
    'he_normal': _he_normal,
    'he': _he_normal,
}


def new_weights(shape, fan_in, fan_out, mode='he_normal'):
    """
    Allocate a randomly initialized weights tensor.

    Args:
        shape: Shape of the tensor
        fan_in: Number of inputs of each neuron
        fan_out: Number of outputs of each neuron
        mode: Initialization scheme name

    Returns:
        Tensor
    """
    mode_lower = str(mode).lower()
    if mode_lower not in WEIGHT_INITIALIZERS:
        available = ', '.join(WEIGHT_INITIALIZERS.keys())
        raise ValueError(f"Unknown weights initialization '{mode}'. Available: {available}")

    if not isinstance(shape, Shape):
        shape = Shape(*shape)
    values = WEIGHT_INITIALIZERS[mode_lower](shape.size, fan_in, fan_out)
    logger.debug("Initialized %s weights with %s (fan_in=%d, fan_out=%d).",
                 shape, mode_lower, fan_in, fan_out)
    return Tensor.from_array(values.reshape(tuple(shape)))


def new_biases(shape):
    """Zero-filled biases tensor."""
    if not isinstance(shape, Shape):
        shape = Shape(*shape)
    return Tensor.new(shape, AllocationMode.CLEAN)


def _normalization_shape(channels, spatial_size, mode):
    mode = NormalizationMode.parse(mode)
    if mode is NormalizationMode.SPATIAL:
        return Shape(1, channels, 1, 1)
    return Shape(1, channels, spatial_size, 1)


def new_gamma_parameters(channels, spatial_size, mode):
    """
    Batch normalization scale: one per channel (spatial) or per activation.

    Args:
        channels: Number of input channels
        spatial_size: Height * width of the input
        mode: NormalizationMode

    Returns:
        Tensor of ones
    """
    gamma = Tensor.new(_normalization_shape(channels, spatial_size, mode))
    gamma.fill(1)
    return gamma


def new_beta_parameters(channels, spatial_size, mode):
    """Batch normalization shift, shaped like gamma, filled with zeros."""
    return Tensor.new(_normalization_shape(channels, spatial_size, mode), AllocationMode.CLEAN)
