"""
Network Layers
==============

Every layer implements the same protocol:

- forward(x, training=True) -> y
- backward(x, y, dy) -> dx        (dy: gradient w.r.t. the layer output)
- gradient(x, dy) -> (dJdw, dJdb) (weighted layers only)
- equals(other) / ==              structural equality
- clone()                         deep copy, no shared storage
- hash                            SHA-256 of all parameter/state tensors

Layers keep no per-call cache: backward and gradient receive the tensors of
the matching forward call. None of these methods mutate their arguments,
and every result is a freshly allocated Tensor. The only state a call may
change is the running statistics of BatchNormalizationLayer, and only in
training mode.

Layers implemented:
- ConvolutionalLayer: 2D convolution
- PoolingLayer: max or average pooling
- FullyConnectedLayer: dense layer
- SoftmaxLayer: dense layer + softmax output, paired with log-likelihood cost
- ActivationLayer: element-wise non-linearity
- BatchNormalizationLayer: batch normalization with cumulative moving averages
"""

import logging

import numpy as np

from . import initializers
from .activations import Softmax, get_activation
from .backends import get_backend
from .errors import ShapeMismatchError
from .settings import NormalizationMode
from .tensor import Shape, Tensor
from .utils import content_hash

logger = logging.getLogger(__name__)


def _sample_shape(shape):
    """Normalize an int, (c, h, w) tuple or Shape to a per-sample Shape."""
    if isinstance(shape, Shape):
        return shape.with_n(1)
    if isinstance(shape, (int, np.integer)):
        return Shape(1, shape)
    return Shape(1, *shape)


def _pair(value):
    return tuple(value) if isinstance(value, (tuple, list)) else (value, value)


class Layer:
    """
    Base class for all layers.

    Args:
        input_shape: Per-sample input shape
        output_shape: Per-sample output shape
    """

    def __init__(self, input_shape, output_shape):
        self.input_shape = _sample_shape(input_shape)
        self.output_shape = _sample_shape(output_shape)

    @property
    def backend(self):
        """The compute backend of the current processing mode."""
        return get_backend()

    def forward(self, x, training=True):
        """Forward pass."""
        raise NotImplementedError

    def backward(self, x, y, dy):
        """Gradient w.r.t. the input."""
        raise NotImplementedError

    def __call__(self, x, training=True):
        return self.forward(x, training)

    def clone(self):
        """Deep copy."""
        raise NotImplementedError

    # ============================================================
    # Shape checks
    # ============================================================

    def _check(self, tensor, shape, name):
        if not isinstance(tensor, Tensor):
            raise TypeError(f"{name} must be a Tensor, got {type(tensor).__name__}")
        if tensor.shape.sample != shape.sample:
            raise ShapeMismatchError(
                f"{self!r}: {name} has sample shape {tensor.shape.sample}, "
                f"expected {shape.sample}",
                expected=shape, actual=tensor.shape)

    def _check_input(self, x):
        self._check(x, self.input_shape, 'x')

    def _check_backward(self, x, y, dy):
        self._check(x, self.input_shape, 'x')
        self._check(y, self.output_shape, 'y')
        self._check(dy, self.output_shape, 'dy')
        if not x.shape.n == y.shape.n == dy.shape.n:
            raise ShapeMismatchError(
                f"{self!r}: batch sizes differ (x={x.shape.n}, y={y.shape.n}, dy={dy.shape.n})")

    # ============================================================
    # Equality and fingerprinting
    # ============================================================

    def _hyperparameters(self):
        """Configuration compared by equals, besides the shapes."""
        return ()

    def _state_tensors(self):
        """Every parameter/state tensor, in hashing order."""
        return ()

    def equals(self, other):
        """Same layer type, shapes, configuration and parameter content."""
        return (type(other) is type(self) and
                self.input_shape == other.input_shape and
                self.output_shape == other.output_shape and
                self._hyperparameters() == other._hyperparameters())

    def __eq__(self, other):
        if not isinstance(other, Layer):
            return NotImplemented
        return self.equals(other)

    __hash__ = None

    @property
    def hash(self):
        """Hex SHA-256 digest of all parameter and state tensors."""
        return content_hash(*self._state_tensors())

    @property
    def parameters(self):
        """Number of trainable parameters."""
        return 0


class WeightedLayer(Layer):
    """
    Base class for layers with trainable weights and biases.

    The layer owns both tensors exclusively.
    """

    def __init__(self, input_shape, output_shape, weights, biases):
        super().__init__(input_shape, output_shape)
        for name, tensor in (('weights', weights), ('biases', biases)):
            if not isinstance(tensor, Tensor):
                raise TypeError(f"{name} must be a Tensor, got {type(tensor).__name__}")
        self.weights = weights
        self.biases = biases

    def gradient(self, x, dy):
        """Gradients w.r.t. weights and biases."""
        raise NotImplementedError

    @staticmethod
    def _check_parameter(tensor, size, name):
        if tensor.size != size:
            raise ShapeMismatchError(
                f"{name} has {tensor.size} elements, expected {size}",
                expected=size, actual=tensor.size)

    def _check_gradient(self, x, dy):
        self._check(x, self.input_shape, 'x')
        self._check(dy, self.output_shape, 'dy')
        if x.shape.n != dy.shape.n:
            raise ShapeMismatchError(
                f"{self!r}: batch sizes differ (x={x.shape.n}, dy={dy.shape.n})")

    def equals(self, other):
        return (super().equals(other) and
                self.weights.equals(other.weights) and
                self.biases.equals(other.biases))

    def _state_tensors(self):
        return (self.weights, self.biases)

    @property
    def parameters(self):
        return self.weights.size + self.biases.size


class ConvolutionalLayer(WeightedLayer):
    """
    2D Convolutional Layer.

    Args:
        input_shape: (channels, height, width)
        kernel_shape: (kernel_height, kernel_width) or int
        kernels: Number of output channels
        stride: Stride of convolution (int or tuple)
        padding: 'valid', 'same' (stride 1 keeps the size) or int / tuple
        weight_init: Weights initialization scheme
        weights, biases: Existing parameters, adopted as they are

    Weights shape: (kernels, channels, kernel_height, kernel_width)

    Output size:
        out_height = (height + 2*pad - kernel_height) // stride + 1
    """

    def __init__(self, input_shape, kernel_shape=(3, 3), kernels=8, stride=1,
                 padding='valid', weight_init='he_normal', weights=None, biases=None):
        input_shape = _sample_shape(input_shape)
        kh, kw = _pair(kernel_shape)
        self.kernel_shape = (kh, kw)
        self.kernels = kernels
        self.stride = _pair(stride)
        self.padding_mode = padding

        if padding == 'same':
            self.padding = (kh // 2, kw // 2)
        elif padding == 'valid':
            self.padding = (0, 0)
        elif isinstance(padding, (int, tuple, list)):
            self.padding = _pair(padding)
        else:
            raise ValueError(f"Unknown padding '{padding}'")

        h_out = (input_shape.h + 2 * self.padding[0] - kh) // self.stride[0] + 1
        w_out = (input_shape.w + 2 * self.padding[1] - kw) // self.stride[1] + 1
        if h_out <= 0 or w_out <= 0:
            raise ShapeMismatchError(
                f"Kernel {self.kernel_shape} does not fit input {input_shape.sample}")

        fan_in = input_shape.c * kh * kw
        if weights is None:
            weights = initializers.new_weights(
                Shape(kernels, input_shape.c, kh, kw), fan_in, kernels * kh * kw, weight_init)
        if biases is None:
            biases = initializers.new_biases(Shape(1, kernels))
        self._check_parameter(weights, kernels * fan_in, 'weights')
        self._check_parameter(biases, kernels, 'biases')

        super().__init__(input_shape, Shape(1, kernels, h_out, w_out), weights, biases)

    def forward(self, x, training=True):
        self._check_input(x)
        y = Tensor.new(self.output_shape.with_n(x.shape.n))
        self.backend.convolution_forward(x, self.weights, self.biases, y,
                                         self.stride, self.padding)
        return y

    def backward(self, x, y, dy):
        self._check_backward(x, y, dy)
        dx = Tensor.like(x)
        self.backend.convolution_backward_data(self.weights, dy, dx, self.stride, self.padding)
        return dx

    def gradient(self, x, dy):
        self._check_gradient(x, dy)
        dJdw = Tensor.like(self.weights)
        self.backend.convolution_backward_filter(x, dy, dJdw, self.stride, self.padding)
        dJdb = Tensor.like(self.biases)
        self.backend.convolution_backward_bias(dy, dJdb)
        return dJdw, dJdb

    def _hyperparameters(self):
        return (self.kernel_shape, self.kernels, self.stride, self.padding)

    def clone(self):
        return ConvolutionalLayer(self.input_shape, self.kernel_shape, self.kernels,
                                  self.stride, self.padding_mode,
                                  weights=self.weights.clone(), biases=self.biases.clone())

    def __repr__(self):
        return (f"ConvolutionalLayer({self.input_shape.sample}, kernel_shape={self.kernel_shape}, "
                f"kernels={self.kernels}, stride={self.stride}, padding={self.padding_mode})")


class PoolingLayer(Layer):
    """
    Pooling Layer.

    Downsamples every channel by taking the maximum (or the average) of
    each window. No trainable parameters.

    Args:
        input_shape: (channels, height, width)
        pool_size: Size of pooling window (int or tuple)
        stride: Stride (default: same as pool_size)
        mode: 'max' or 'average'
    """

    MODES = ('max', 'average')

    def __init__(self, input_shape, pool_size=2, stride=None, mode='max'):
        input_shape = _sample_shape(input_shape)
        if mode not in self.MODES:
            raise ValueError(f"Unknown pooling mode '{mode}'. Available: {', '.join(self.MODES)}")

        self.pool_size = _pair(pool_size)
        self.stride = _pair(stride) if stride is not None else self.pool_size
        self.mode = mode

        h_out = (input_shape.h - self.pool_size[0]) // self.stride[0] + 1
        w_out = (input_shape.w - self.pool_size[1]) // self.stride[1] + 1
        if h_out <= 0 or w_out <= 0:
            raise ShapeMismatchError(
                f"Pooling window {self.pool_size} does not fit input {input_shape.sample}")

        super().__init__(input_shape, Shape(1, input_shape.c, h_out, w_out))

    def forward(self, x, training=True):
        self._check_input(x)
        y = Tensor.new(self.output_shape.with_n(x.shape.n))
        self.backend.pooling_forward(self.mode, x, y, self.pool_size, self.stride)
        return y

    def backward(self, x, y, dy):
        self._check_backward(x, y, dy)
        dx = Tensor.like(x)
        self.backend.pooling_backward(self.mode, x, dy, dx, self.pool_size, self.stride)
        return dx

    def _hyperparameters(self):
        return (self.pool_size, self.stride, self.mode)

    def clone(self):
        return PoolingLayer(self.input_shape, self.pool_size, self.stride, self.mode)

    def __repr__(self):
        return (f"PoolingLayer({self.input_shape.sample}, pool_size={self.pool_size}, "
                f"stride={self.stride}, mode={self.mode!r})")


class FullyConnectedLayer(WeightedLayer):
    """
    Fully Connected (Dense) Layer.

    Inputs with any (c, h, w) sample shape are flattened to c * h * w
    features. Output sample shape is (outputs, 1, 1).

    Args:
        input_shape: Number of inputs or (channels, height, width)
        outputs: Number of output features
        weight_init: Weights initialization scheme
        weights, biases: Existing parameters, adopted as they are

    Forward: y = x @ W + b, W of shape (inputs, outputs)
    """

    def __init__(self, input_shape, outputs, weight_init='he_normal', weights=None, biases=None):
        input_shape = _sample_shape(input_shape)
        inputs = input_shape.chw

        if weights is None:
            weights = initializers.new_weights(Shape(inputs, outputs), inputs, outputs, weight_init)
        if biases is None:
            biases = initializers.new_biases(Shape(1, outputs))
        self._check_parameter(weights, inputs * outputs, 'weights')
        self._check_parameter(biases, outputs, 'biases')

        self.inputs = inputs
        self.outputs = outputs
        super().__init__(input_shape, Shape(1, outputs), weights, biases)

    def forward(self, x, training=True):
        self._check_input(x)
        y = Tensor.new(self.output_shape.with_n(x.shape.n))
        self.backend.fully_connected_forward(x, self.weights, self.biases, y)
        return y

    def backward(self, x, y, dy):
        self._check_backward(x, y, dy)
        dx = Tensor.like(x)
        self.backend.fully_connected_backward_data(self.weights, dy, dx)
        return dx

    def gradient(self, x, dy):
        self._check_gradient(x, dy)
        dJdw = Tensor.like(self.weights)
        self.backend.fully_connected_backward_filter(x, dy, dJdw)
        dJdb = Tensor.like(self.biases)
        self.backend.fully_connected_backward_bias(dy, dJdb)
        return dJdw, dJdb

    def clone(self):
        return type(self)(self.input_shape, self.outputs,
                          weights=self.weights.clone(), biases=self.biases.clone())

    def __repr__(self):
        return f"{type(self).__name__}({self.inputs}, {self.outputs})"


class SoftmaxLayer(FullyConnectedLayer):
    """
    Output layer: fully connected followed by softmax.

    Meant to be trained with the log-likelihood (cross-entropy) cost, whose
    gradient w.r.t. the pre-softmax activations simplifies to
        dL/dz = y - t
    backward and gradient therefore expect dy to be that combined gradient.
    """

    def forward(self, x, training=True):
        z = super().forward(x, training)
        y = Tensor.like(z)
        self.backend.softmax_forward(z, y)
        return y


class ActivationLayer(Layer):
    """
    Activation layer: applies a non-linearity element-wise.

    Args:
        shape: Per-sample shape (input and output are the same)
        activation: Name or Activation instance (softmax belongs to SoftmaxLayer)
    """

    def __init__(self, shape, activation='relu'):
        self.activation = get_activation(activation)
        if isinstance(self.activation, Softmax):
            raise ValueError("Use SoftmaxLayer for softmax outputs")
        super().__init__(shape, shape)

    def forward(self, x, training=True):
        self._check_input(x)
        y = Tensor.like(x)
        self.backend.activation_forward(self.activation, x, y)
        return y

    def backward(self, x, y, dy):
        self._check_backward(x, y, dy)
        dx = Tensor.like(x)
        self.backend.activation_backward(self.activation, y, dy, dx)
        return dx

    def _hyperparameters(self):
        return (self.activation,)

    def clone(self):
        return ActivationLayer(self.input_shape, self.activation)

    def __repr__(self):
        return f"ActivationLayer({self.input_shape.sample}, {self.activation!r})"


class BatchNormalizationLayer(WeightedLayer):
    """
    Batch Normalization Layer.

    Normalizes every activation with running statistics mu / sigma2, then
    scales by gamma (weights) and shifts by beta (biases):

        y = gamma * (x - mu) / sqrt(sigma2 + eps) + beta

    The running statistics are a Cumulative Moving Average: the k-th
    training forward pass blends the batch statistics in with factor
    1 / (1 + iteration), so every batch seen so far weighs the same.

    forward(x, training=True) updates mu, sigma2 and iteration;
    forward(x, training=False) normalizes with the frozen statistics and
    leaves the layer untouched. Not safe to call concurrently.

    Args:
        shape: Per-sample shape (input and output are the same)
        mode: NormalizationMode or 'spatial' / 'per_activation'
        weights, biases, mu, sigma2, iteration: Persisted state. Pass all
            four tensors to restore a layer; they are adopted as they are.

    State shapes:
        spatial: gamma, beta, mu, sigma2 hold one value per channel
        per_activation: one value per (channel, y, x) position
    """

    def __init__(self, shape, mode=NormalizationMode.SPATIAL, weights=None, biases=None,
                 mu=None, sigma2=None, iteration=0):
        shape = _sample_shape(shape)
        mode = NormalizationMode.parse(mode)
        state = (weights, biases, mu, sigma2)

        if all(t is None for t in state):
            weights = initializers.new_gamma_parameters(shape.c, shape.hw, mode)
            biases = initializers.new_beta_parameters(shape.c, shape.hw, mode)
            if mode is NormalizationMode.SPATIAL:
                mu = Tensor.new(Shape(1, shape.c))
            else:
                mu = Tensor.new(shape)
            mu.fill(0)
            sigma2 = Tensor.like(mu)
            sigma2.fill(1)
            iteration = 0
        elif any(t is None for t in state):
            raise ValueError("Restoring a layer needs weights, biases, mu and sigma2")

        if int(iteration) < 0:
            raise ValueError(f"Iteration must be non-negative, got {iteration}")

        size = shape.c if mode is NormalizationMode.SPATIAL else shape.chw
        self._check_parameter(weights, size, 'weights')
        self._check_parameter(biases, size, 'biases')

        super().__init__(shape, shape, weights, biases)
        self.mode = mode
        self._mu = mu
        self._sigma2 = sigma2
        self._iteration = int(iteration)

    @property
    def mu(self):
        """Running mean."""
        return self._mu

    @property
    def sigma2(self):
        """Running variance."""
        return self._sigma2

    @property
    def iteration(self):
        """Number of training forward passes so far."""
        return self._iteration

    @property
    def cumulative_moving_average_factor(self):
        """Weight of the next batch in the running statistics."""
        return 1.0 / (1 + self._iteration)

    def forward(self, x, training=True):
        """
        Normalize x.

        In training mode the kernel works on scratch copies of mu / sigma2;
        they replace the layer state (and iteration advances) only once the
        kernel has completed.
        """
        self._check_input(x)
        y = Tensor.like(x)
        factor = self.cumulative_moving_average_factor

        if not training:
            self.backend.batch_normalization_forward(
                self.mode, factor, x, self.weights, self.biases, self._mu, self._sigma2, y,
                training=False)
            return y

        mu = self._mu.clone()
        sigma2 = self._sigma2.clone()
        self.backend.batch_normalization_forward(
            self.mode, factor, x, self.weights, self.biases, mu, sigma2, y, training=True)

        self._mu.copy_from(mu)
        self._sigma2.copy_from(sigma2)
        self._iteration += 1
        logger.debug("%r: iteration %d, CMA factor %.4f.", self, self._iteration, factor)
        return y

    def backward(self, x, y, dy):
        self._check_backward(x, y, dy)
        dx = Tensor.like(x)
        self.backend.batch_normalization_backward_data(
            self.mode, x, self.weights, self._mu, self._sigma2, dy, dx)
        return dx

    def gradient(self, x, dy):
        self._check_gradient(x, dy)
        dJdw = Tensor.like(self.weights)
        self.backend.batch_normalization_backward_gamma(
            self.mode, x, self._mu, self._sigma2, dy, dJdw)
        dJdb = Tensor.like(self.biases)
        self.backend.batch_normalization_backward_beta(self.mode, dy, dJdb)
        return dJdw, dJdb

    def _hyperparameters(self):
        return (self.mode,)

    def _state_tensors(self):
        return (self.weights, self.biases, self._mu, self._sigma2)

    def equals(self, other):
        return (super().equals(other) and
                self._iteration == other.iteration and
                self._mu.equals(other.mu) and
                self._sigma2.equals(other.sigma2))

    def clone(self):
        return BatchNormalizationLayer(
            self.input_shape, self.mode,
            weights=self.weights.clone(), biases=self.biases.clone(),
            mu=self._mu.clone(), sigma2=self._sigma2.clone(), iteration=self._iteration)

    # ============================================================
    # Persisted state
    # ============================================================

    def to_record(self):
        """
        Copy of the layer state as plain Python/NumPy values.

        Returns:
            Dictionary with 'shape', 'mode', 'iteration', 'weights',
            'biases', 'mu' and 'sigma2'
        """
        return {
            'shape': tuple(self.input_shape.sample),
            'mode': self.mode.value,
            'iteration': self._iteration,
            'weights': self.weights.to_array(),
            'biases': self.biases.to_array(),
            'mu': self._mu.to_array(),
            'sigma2': self._sigma2.to_array(),
        }

    @classmethod
    def from_record(cls, record):
        """Rebuild a layer from a dictionary produced by to_record."""
        return cls(record['shape'], record['mode'],
                   weights=Tensor.from_array(record['weights']),
                   biases=Tensor.from_array(record['biases']),
                   mu=Tensor.from_array(record['mu']),
                   sigma2=Tensor.from_array(record['sigma2']),
                   iteration=record['iteration'])

    def __repr__(self):
        return f"BatchNormalizationLayer({self.input_shape.sample}, mode={self.mode.value!r})"
