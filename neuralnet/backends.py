"""
Compute Backends
================

Numeric kernels behind every layer. Layers never touch raw buffers: they
allocate output tensors and hand them to a backend kernel to fill.

Backends:
- CpuBackend: NumPy
- GpuBackend: CuPy, operands are copied to the device and results back

Both share one implementation (ArrayBackend) written against an array
module `xp`, so the CPU and GPU results agree up to floating point.

Kernel families:
- fully connected:  forward, backward data / filter / bias
- convolution:      forward (im2col), backward data (col2im) / filter / bias
- pooling:          max and average, forward / backward
- softmax, activations
- batch normalization: forward, backward data / gamma / beta
"""

import functools
import logging

import numpy as np

from .activations import get_activation
from .errors import BackendFailureError, InvalidModeError
from .settings import NormalizationMode, PROCESSING_MODES, settings

logger = logging.getLogger(__name__)


def _kernel(method):
    """Report any numeric failure inside a kernel as BackendFailureError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (BackendFailureError, InvalidModeError):
            raise
        except (ValueError, TypeError, IndexError, MemoryError, RuntimeError) as e:
            raise BackendFailureError(f"{self.name}.{method.__name__} failed: {e}") from e

    return wrapper


class ComputeBackend:
    """
    Base class for compute backends.

    Every kernel fills pre-allocated output tensors in place and returns
    None. Output tensors with the wrong number of elements raise
    BackendFailureError; their dimensions are free, so an (n, k, 1, 1) tensor
    can receive an (n, k) result.
    """

    name = None

    # Fully connected
    def fully_connected_forward(self, x, w, b, y):
        raise NotImplementedError

    def fully_connected_backward_data(self, w, dy, dx):
        raise NotImplementedError

    def fully_connected_backward_filter(self, x, dy, dw):
        raise NotImplementedError

    def fully_connected_backward_bias(self, dy, db):
        raise NotImplementedError

    # Convolution
    def convolution_forward(self, x, w, b, y, stride=(1, 1), padding=(0, 0)):
        raise NotImplementedError

    def convolution_backward_data(self, w, dy, dx, stride=(1, 1), padding=(0, 0)):
        raise NotImplementedError

    def convolution_backward_filter(self, x, dy, dw, stride=(1, 1), padding=(0, 0)):
        raise NotImplementedError

    def convolution_backward_bias(self, dy, db):
        raise NotImplementedError

    # Pooling
    def pooling_forward(self, mode, x, y, pool_size=(2, 2), stride=(2, 2)):
        raise NotImplementedError

    def pooling_backward(self, mode, x, dy, dx, pool_size=(2, 2), stride=(2, 2)):
        raise NotImplementedError

    # Softmax and activations
    def softmax_forward(self, x, y):
        raise NotImplementedError

    def activation_forward(self, activation, x, y):
        raise NotImplementedError

    def activation_backward(self, activation, y, dy, dx):
        raise NotImplementedError

    # Batch normalization
    def batch_normalization_forward(self, mode, factor, x, gamma, beta, mu, sigma2, y,
                                    training=True):
        raise NotImplementedError

    def batch_normalization_backward_data(self, mode, x, gamma, mu, sigma2, dy, dx):
        raise NotImplementedError

    def batch_normalization_backward_gamma(self, mode, x, mu, sigma2, dy, dgamma):
        raise NotImplementedError

    def batch_normalization_backward_beta(self, mode, dy, dbeta):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"


class ArrayBackend(ComputeBackend):
    """Kernels written once against the array module `xp`."""

    xp = np

    # ============================================================
    # Transfers
    # ============================================================

    def _load(self, tensor):
        """Tensor content as an array of this backend."""
        return tensor.data

    def _store(self, out, array):
        """Write a backend array into an output tensor."""
        self._expect(out, array.size)
        out.data[...] = array.reshape(out.data.shape)

    def _expect(self, out, size, shape=None):
        if shape is not None and tuple(out.shape) != tuple(shape):
            raise BackendFailureError(
                f"Output tensor has shape {tuple(out.shape)}, expected {tuple(shape)}")
        if out.size != size:
            raise BackendFailureError(
                f"Output tensor has {out.size} elements, expected {size}")

    # ============================================================
    # Fully connected
    # ============================================================

    @_kernel
    def fully_connected_forward(self, x, w, b, y):
        """y = x @ W + b, with x flattened to (batch, inputs)."""
        xv = self._load(x).reshape(x.shape.n, -1)
        wv = self._load(w).reshape(w.shape.n, -1)
        bv = self._load(b).reshape(1, -1)
        self._store(y, xv @ wv + bv)

    @_kernel
    def fully_connected_backward_data(self, w, dy, dx):
        """dx = dy @ W.T"""
        wv = self._load(w).reshape(w.shape.n, -1)
        dyv = self._load(dy).reshape(dy.shape.n, -1)
        self._store(dx, dyv @ wv.T)

    @_kernel
    def fully_connected_backward_filter(self, x, dy, dw):
        """dW = x.T @ dy"""
        xv = self._load(x).reshape(x.shape.n, -1)
        dyv = self._load(dy).reshape(dy.shape.n, -1)
        self._store(dw, xv.T @ dyv)

    @_kernel
    def fully_connected_backward_bias(self, dy, db):
        """db = sum of dy over the batch"""
        dyv = self._load(dy).reshape(dy.shape.n, -1)
        self._store(db, self.xp.sum(dyv, axis=0))

    # ============================================================
    # Convolution
    # ============================================================

    def _pad(self, x, padding):
        ph, pw = padding
        if (ph, pw) == (0, 0):
            return self.xp.ascontiguousarray(x)
        return self.xp.pad(x, ((0, 0), (0, 0), (ph, ph), (pw, pw)), mode='constant')

    def _im2col(self, x_padded, kh, kw, sh, sw, h_out, w_out):
        """
        Convert image patches to columns.

        Uses stride tricks to view every patch without copying, then
        reshapes for a single matrix multiply.

        Returns:
            col: Shape (batch * h_out * w_out, channels * kh * kw)
        """
        batch_size = x_padded.shape[0]
        channels = x_padded.shape[1]
        s = x_padded.strides
        patches = self.xp.lib.stride_tricks.as_strided(
            x_padded,
            shape=(batch_size, channels, kh, kw, h_out, w_out),
            strides=(s[0], s[1], s[2], s[3], s[2] * sh, s[3] * sw))

        return patches.transpose(0, 4, 5, 1, 2, 3).reshape(batch_size * h_out * w_out, -1)

    def _col2im(self, col, x_padded_shape, kh, kw, sh, sw, h_out, w_out):
        """Inverse of im2col: overlapping patches are summed."""
        batch_size, channels = x_padded_shape[:2]
        col = col.reshape(batch_size, h_out, w_out, channels, kh, kw)
        x_padded = self.xp.zeros(x_padded_shape, dtype=col.dtype)

        # One strided slice per kernel offset
        for i in range(kh):
            for j in range(kw):
                x_padded[:, :, i:i + sh * h_out:sh, j:j + sw * w_out:sw] += \
                    col[:, :, :, :, i, j].transpose(0, 3, 1, 2)

        return x_padded

    @staticmethod
    def _conv_output_size(h, w, kh, kw, stride, padding):
        h_out = (h + 2 * padding[0] - kh) // stride[0] + 1
        w_out = (w + 2 * padding[1] - kw) // stride[1] + 1
        if h_out <= 0 or w_out <= 0:
            raise BackendFailureError(
                f"Kernel {(kh, kw)} does not fit the padded input {(h, w)}")
        return h_out, w_out

    @_kernel
    def convolution_forward(self, x, w, b, y, stride=(1, 1), padding=(0, 0)):
        """
        Convolution through im2col and one matrix multiplication.

        x: (batch, channels, h, w)
        w: (kernels, channels, kh, kw)
        b: kernels elements
        y: (batch, kernels, h_out, w_out)
        """
        kernels, channels, kh, kw = w.shape
        if x.shape.c != channels:
            raise BackendFailureError(
                f"Input has {x.shape.c} channels, kernels expect {channels}")
        h_out, w_out = self._conv_output_size(x.shape.h, x.shape.w, kh, kw, stride, padding)
        self._expect(y, x.shape.n * kernels * h_out * w_out,
                     (x.shape.n, kernels, h_out, w_out))

        x_padded = self._pad(self._load(x), padding)
        col = self._im2col(x_padded, kh, kw, stride[0], stride[1], h_out, w_out)
        w_col = self._load(w).reshape(kernels, -1)

        output = (col @ w_col.T).reshape(x.shape.n, h_out, w_out, kernels).transpose(0, 3, 1, 2)
        output = output + self._load(b).reshape(1, -1, 1, 1)
        self._store(y, self.xp.ascontiguousarray(output))

    @_kernel
    def convolution_backward_data(self, w, dy, dx, stride=(1, 1), padding=(0, 0)):
        """Gradient w.r.t. the input: dy @ W, scattered back with col2im."""
        kernels, channels, kh, kw = w.shape
        ph, pw = padding
        _, _, h_out, w_out = dy.shape
        n, _, h, width = dx.shape

        dy_cols = self._load(dy).transpose(0, 2, 3, 1).reshape(-1, kernels)
        dcol = dy_cols @ self._load(w).reshape(kernels, -1)
        dx_padded = self._col2im(dcol, (n, channels, h + 2 * ph, width + 2 * pw),
                                 kh, kw, stride[0], stride[1], h_out, w_out)

        self._store(dx, dx_padded[:, :, ph:ph + h, pw:pw + width])

    @_kernel
    def convolution_backward_filter(self, x, dy, dw, stride=(1, 1), padding=(0, 0)):
        """Gradient w.r.t. the kernels: col.T @ dy"""
        kernels, channels, kh, kw = dw.shape
        _, _, h_out, w_out = dy.shape

        col = self._im2col(self._pad(self._load(x), padding),
                           kh, kw, stride[0], stride[1], h_out, w_out)
        dy_cols = self._load(dy).transpose(0, 2, 3, 1).reshape(-1, kernels)
        self._store(dw, (col.T @ dy_cols).T)

    @_kernel
    def convolution_backward_bias(self, dy, db):
        """db = sum of dy over batch and spatial positions"""
        self._store(db, self.xp.sum(self._load(dy), axis=(0, 2, 3)))

    # ============================================================
    # Pooling
    # ============================================================

    def _windows(self, x, pool_size, stride):
        """View of every pooling window: (batch, channels, h_out, w_out, ph, pw)."""
        ph, pw = pool_size
        sh, sw = stride
        batch_size, channels, h_in, w_in = x.shape
        h_out = (h_in - ph) // sh + 1
        w_out = (w_in - pw) // sw + 1
        if h_out <= 0 or w_out <= 0:
            raise BackendFailureError(
                f"Pooling window {pool_size} does not fit the input {(h_in, w_in)}")

        x = self.xp.ascontiguousarray(x)
        s = x.strides
        return self.xp.lib.stride_tricks.as_strided(
            x,
            shape=(batch_size, channels, h_out, w_out, ph, pw),
            strides=(s[0], s[1], s[2] * sh, s[3] * sw, s[2], s[3]))

    @_kernel
    def pooling_forward(self, mode, x, y, pool_size=(2, 2), stride=(2, 2)):
        """Max or average over each window."""
        windows = self._windows(self._load(x), pool_size, stride)
        if mode == 'max':
            output = self.xp.max(windows, axis=(4, 5))
        elif mode == 'average':
            output = self.xp.mean(windows, axis=(4, 5))
        else:
            raise BackendFailureError(f"Unknown pooling mode '{mode}'")
        self._expect(y, output.size, output.shape)
        self._store(y, output)

    @_kernel
    def pooling_backward(self, mode, x, dy, dx, pool_size=(2, 2), stride=(2, 2)):
        """
        Max: the gradient flows only to the max element of each window.
        Average: the gradient is spread evenly over the window.
        """
        ph, pw = pool_size
        sh, sw = stride
        windows = self._windows(self._load(x), pool_size, stride)
        batch_size, channels, h_out, w_out = windows.shape[:4]
        dyv = self._load(dy).reshape(batch_size, channels, h_out, w_out)
        grad_input = self.xp.zeros(tuple(x.shape), dtype=dyv.dtype)

        if mode == 'max':
            max_indices = self.xp.argmax(windows.reshape(batch_size, channels, h_out, w_out, -1),
                                         axis=-1)
        elif mode != 'average':
            raise BackendFailureError(f"Unknown pooling mode '{mode}'")

        for i in range(ph):
            for j in range(pw):
                if mode == 'max':
                    contribution = dyv * (max_indices == i * pw + j)
                else:
                    contribution = dyv / (ph * pw)
                grad_input[:, :, i:i + sh * h_out:sh, j:j + sw * w_out:sw] += contribution

        self._store(dx, grad_input)

    # ============================================================
    # Softmax and activations
    # ============================================================

    @_kernel
    def softmax_forward(self, x, y):
        xv = self._load(x).reshape(x.shape.n, -1)
        self._store(y, get_activation('softmax').forward(xv, self.xp))

    @_kernel
    def activation_forward(self, activation, x, y):
        self._store(y, get_activation(activation).forward(self._load(x), self.xp))

    @_kernel
    def activation_backward(self, activation, y, dy, dx):
        """dx = dy * f'(x), the derivative being read from the output y."""
        yv = self._load(y)
        derivative = get_activation(activation).backward(yv, self.xp)
        self._store(dx, self._load(dy).reshape(yv.shape) * derivative)

    # ============================================================
    # Batch normalization
    # ============================================================

    def _bn_layout(self, mode, shape):
        """
        Reduction axes, parameter view shape and sample count per statistic.

        Inputs are viewed as (batch, channels, h * w).
        """
        mode = NormalizationMode.parse(mode)
        n, c, h, w = shape
        if mode is NormalizationMode.SPATIAL:
            return (0, 2), (1, c, 1), n * h * w
        return (0,), (1, c, h * w), n

    def _bn_view(self, tensor, view_shape, name):
        array = self._load(tensor)
        if array.size != int(np.prod(view_shape)):
            raise BackendFailureError(
                f"{name} has {array.size} elements, expected {int(np.prod(view_shape))}")
        return array.reshape(view_shape)

    @_kernel
    def batch_normalization_forward(self, mode, factor, x, gamma, beta, mu, sigma2, y,
                                    training=True):
        """
        y = gamma * (x - mu) / sqrt(sigma2 + eps) + beta

        In training mode the batch mean and (biased) variance are blended
        into mu and sigma2 first, new = factor * batch + (1 - factor) * old,
        and the blended statistics normalize the batch. mu and sigma2 are
        written in place. In inference mode mu and sigma2 are only read.
        """
        axes, param_shape, _ = self._bn_layout(mode, x.shape)
        n, c, h, w = x.shape
        xv = self._load(x).reshape(n, c, h * w)
        gv = self._bn_view(gamma, param_shape, 'gamma')
        bv = self._bn_view(beta, param_shape, 'beta')
        mv = self._bn_view(mu, param_shape, 'mu')
        sv = self._bn_view(sigma2, param_shape, 'sigma2')
        self._expect(y, x.size)

        if training:
            batch_mean = self.xp.mean(xv, axis=axes, keepdims=True)
            batch_var = self.xp.var(xv, axis=axes, keepdims=True)
            mv = factor * batch_mean + (1 - factor) * mv
            sv = factor * batch_var + (1 - factor) * sv

        output = gv * (xv - mv) / self.xp.sqrt(sv + settings.epsilon) + bv
        self._store(y, output)

        if training:
            self._store(mu, mv)
            self._store(sigma2, sv)

    @_kernel
    def batch_normalization_backward_data(self, mode, x, gamma, mu, sigma2, dy, dx):
        """
        Gradient w.r.t. the input.

        The normalization couples every sample sharing a statistic, so the
        gradient flows through the mean and the variance as well:

            dx = dx_hat / std + dvar * 2 (x - mu) / N + dmean / N
        """
        axes, param_shape, count = self._bn_layout(mode, x.shape)
        n, c, h, w = x.shape
        xv = self._load(x).reshape(n, c, h * w)
        dyv = self._load(dy).reshape(n, c, h * w)
        gv = self._bn_view(gamma, param_shape, 'gamma')
        mv = self._bn_view(mu, param_shape, 'mu')
        sv = self._bn_view(sigma2, param_shape, 'sigma2')

        std_inv = 1.0 / self.xp.sqrt(sv + settings.epsilon)
        x_centered = xv - mv
        dx_norm = dyv * gv

        dvar = self.xp.sum(dx_norm * x_centered, axis=axes, keepdims=True) * -0.5 * std_inv ** 3
        dmean = self.xp.sum(-dx_norm * std_inv, axis=axes, keepdims=True)
        dmean = dmean + dvar * self.xp.mean(-2 * x_centered, axis=axes, keepdims=True)

        grad_input = dx_norm * std_inv + dvar * 2 * x_centered / count + dmean / count
        self._store(dx, grad_input)

    @_kernel
    def batch_normalization_backward_gamma(self, mode, x, mu, sigma2, dy, dgamma):
        """dgamma = sum(dy * x_norm)"""
        axes, param_shape, _ = self._bn_layout(mode, x.shape)
        n, c, h, w = x.shape
        xv = self._load(x).reshape(n, c, h * w)
        dyv = self._load(dy).reshape(n, c, h * w)
        mv = self._bn_view(mu, param_shape, 'mu')
        sv = self._bn_view(sigma2, param_shape, 'sigma2')

        x_norm = (xv - mv) / self.xp.sqrt(sv + settings.epsilon)
        self._store(dgamma, self.xp.sum(dyv * x_norm, axis=axes))

    @_kernel
    def batch_normalization_backward_beta(self, mode, dy, dbeta):
        """dbeta = sum(dy)"""
        axes, _, _ = self._bn_layout(mode, dy.shape)
        n, c, h, w = dy.shape
        dyv = self._load(dy).reshape(n, c, h * w)
        self._store(dbeta, self.xp.sum(dyv, axis=axes))


class CpuBackend(ArrayBackend):
    """NumPy kernels running on the calling thread."""

    name = 'cpu'
    xp = np


class GpuBackend(ArrayBackend):
    """
    CuPy kernels.

    Tensors live in host memory; every kernel copies its operands to the
    current CUDA device and its results back.

    Raises:
        BackendFailureError: if CuPy is not installed or no device is visible
    """

    name = 'gpu'

    def __init__(self):
        try:
            import cupy
        except ImportError as e:
            raise BackendFailureError(
                "The GPU backend requires CuPy (pip install neuralnet[gpu])") from e

        try:
            devices = cupy.cuda.runtime.getDeviceCount()
        except cupy.cuda.runtime.CUDARuntimeError as e:
            raise BackendFailureError(f"CUDA runtime unavailable: {e}") from e
        if devices == 0:
            raise BackendFailureError("No CUDA device available")

        self.xp = cupy
        logger.info("GPU backend ready on %d CUDA device(s).", devices)

    def _load(self, tensor):
        return self.xp.asarray(tensor.data)

    def _store(self, out, array):
        self._expect(out, array.size)
        out.data[...] = self.xp.asnumpy(array).reshape(out.data.shape)


BACKENDS = {
    'cpu': CpuBackend,
    'gpu': GpuBackend,
}

_instances = {}


def get_backend(name=None):
    """
    Get the compute backend for a processing mode.

    Args:
        name: 'cpu', 'gpu', a ComputeBackend instance, or None for
            the configured settings.processing_mode

    Returns:
        ComputeBackend instance (cached per name)
    """
    if isinstance(name, ComputeBackend):
        return name

    if name is None:
        name = settings.processing_mode

    name_lower = str(name).lower()
    if name_lower not in BACKENDS:
        raise InvalidModeError(
            f"Unknown backend '{name}'. Available: {', '.join(PROCESSING_MODES)}")

    if name_lower not in _instances:
        _instances[name_lower] = BACKENDS[name_lower]()
        logger.info("Created %s compute backend.", name_lower)

    return _instances[name_lower]
