"""
neuralnet
=========

Neural network training toolkit on NumPy, with an optional CuPy GPU backend.

- Tensors with fixed shapes and explicit ownership
- Compute backends (CPU / GPU) behind every layer
- Layers: convolution, pooling, fully connected, softmax, activation,
  batch normalization, all sharing one forward / backward / gradient protocol
- Sequential networks, optimizers and a supervised training loop
"""

import logging

from .errors import NeuralNetworkError, ShapeMismatchError, InvalidModeError, BackendFailureError
from .settings import settings, set_processing_mode, NormalizationMode
from .tensor import Shape, Tensor, AllocationMode
from .backends import ComputeBackend, CpuBackend, GpuBackend, get_backend
from .layers import (Layer, WeightedLayer, ConvolutionalLayer, PoolingLayer,
                     FullyConnectedLayer, SoftmaxLayer, ActivationLayer,
                     BatchNormalizationLayer)
from .losses import LogLikelihoodLoss, CrossEntropyLoss, MSELoss, get_loss
from .optimizers import SGD, Adam, AdaGrad, RMSProp, get_optimizer
from .network import NeuralNetwork
from .training import train_network, TrainingSessionResult, TrainingReport, StopReason

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"
__all__ = [
    # Errors
    'NeuralNetworkError', 'ShapeMismatchError', 'InvalidModeError', 'BackendFailureError',
    # Configuration
    'settings', 'set_processing_mode', 'NormalizationMode',
    # Tensors and backends
    'Shape', 'Tensor', 'AllocationMode',
    'ComputeBackend', 'CpuBackend', 'GpuBackend', 'get_backend',
    # Layers
    'Layer', 'WeightedLayer', 'ConvolutionalLayer', 'PoolingLayer',
    'FullyConnectedLayer', 'SoftmaxLayer', 'ActivationLayer', 'BatchNormalizationLayer',
    # Training
    'LogLikelihoodLoss', 'CrossEntropyLoss', 'MSELoss', 'get_loss',
    'SGD', 'Adam', 'AdaGrad', 'RMSProp', 'get_optimizer',
    'NeuralNetwork', 'train_network', 'TrainingSessionResult', 'TrainingReport', 'StopReason',
]
