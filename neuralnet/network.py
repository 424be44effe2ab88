"""
Neural Network
==============

An ordered sequence of layers composing one differentiable function:
- Forward pass through every layer
- Backpropagation: cost gradient through every layer in reverse order,
  parameter gradients for the weighted ones, optimizer step
- Evaluation and prediction
- Structural equality, deep cloning and content fingerprints

Example:
    >>> network = NeuralNetwork(
    ...     ConvolutionalLayer((1, 28, 28), (5, 5), 10),
    ...     ActivationLayer((10, 24, 24), 'relu'),
    ...     PoolingLayer((10, 24, 24)),
    ...     FullyConnectedLayer((10, 12, 12), 100),
    ...     ActivationLayer(100, 'sigmoid'),
    ...     SoftmaxLayer(100, 10))
    >>> probabilities = network.predict(images)
"""

import logging

import numpy as np

from .errors import ShapeMismatchError
from .layers import Layer, SoftmaxLayer, WeightedLayer
from .losses import LogLikelihoodLoss, get_loss
from .tensor import Tensor
from .utils import accuracy_score, content_hash

logger = logging.getLogger(__name__)


class NeuralNetwork:
    """
    Sequential neural network.

    Args:
        *layers: Layers, each output shape matching the next input shape
        loss: Cost function name or instance. Defaults to log-likelihood
            for a SoftmaxLayer output and to the quadratic cost otherwise.
    """

    def __init__(self, *layers, loss=None):
        if len(layers) == 1 and isinstance(layers[0], (list, tuple)):
            layers = tuple(layers[0])
        if not layers:
            raise ValueError("A network needs at least one layer")
        for layer in layers:
            if not isinstance(layer, Layer):
                raise TypeError(f"Not a layer: {layer!r}")

        for previous, layer in zip(layers, layers[1:]):
            if previous.output_shape.sample != layer.input_shape.sample:
                raise ShapeMismatchError(
                    f"{previous!r} outputs {previous.output_shape.sample}, "
                    f"{layer!r} expects {layer.input_shape.sample}",
                    expected=layer.input_shape, actual=previous.output_shape)

        softmax_output = isinstance(layers[-1], SoftmaxLayer)
        if loss is None:
            loss = 'log_likelihood' if softmax_output else 'mse'
        self.loss_fn = get_loss(loss)
        if softmax_output and not isinstance(self.loss_fn, LogLikelihoodLoss):
            raise ValueError("A SoftmaxLayer output must be trained with the log-likelihood cost")

        self.layers = tuple(layers)
        logger.info("Created network with %d layers, %d parameters.",
                    len(self.layers), self.parameters)

    @property
    def input_shape(self):
        return self.layers[0].input_shape

    @property
    def output_shape(self):
        return self.layers[-1].output_shape

    @property
    def parameters(self):
        """Number of trainable parameters."""
        return sum(layer.parameters for layer in self.layers)

    # ============================================================
    # Forward / backward
    # ============================================================

    def _to_tensor(self, x):
        if isinstance(x, Tensor):
            return x
        x = np.asarray(x)
        return Tensor.from_array(x.reshape(len(x), *self.input_shape.sample))

    def forward(self, x, training=False):
        """
        Forward pass through the network.

        Args:
            x: Input Tensor or array of shape (batch, c, h, w)
            training: Whether batch normalization layers update their statistics

        Returns:
            Output Tensor
        """
        x = self._to_tensor(x)
        for layer in self.layers:
            x = layer.forward(x, training=training)
        return x

    def backpropagate(self, x, y, optimizer):
        """
        One training step on a batch.

        Args:
            x: Inputs, shape (batch, c, h, w)
            y: Targets, shape (batch, outputs)
            optimizer: Optimizer applied to the gradients

        Returns:
            Tuple of (cost, accuracy) on the batch, before the update
        """
        activations = [self._to_tensor(x)]
        for layer in self.layers:
            activations.append(layer.forward(activations[-1], training=True))

        predictions = activations[-1].data.reshape(len(y), -1)
        targets = np.asarray(y, dtype=predictions.dtype).reshape(predictions.shape)
        cost = self.loss_fn(predictions, targets)

        dy = Tensor.from_array(self.loss_fn.backward(predictions, targets),
                               activations[-1].shape)
        gradients = {}
        for i in reversed(range(len(self.layers))):
            layer = self.layers[i]
            if isinstance(layer, WeightedLayer):
                gradients[i] = layer.gradient(activations[i], dy)
            if i > 0:
                dy = layer.backward(activations[i], activations[i + 1], dy)

        optimizer.step(self.layers, gradients)
        return cost, accuracy_score(targets, predictions)

    # ============================================================
    # Inference
    # ============================================================

    def predict(self, x):
        """
        Network outputs as an array of shape (batch, outputs).

        Runs in inference mode: no layer state changes.
        """
        output = self.forward(x, training=False)
        return output.data.reshape(output.shape.n, -1).copy()

    def predict_classes(self, x):
        """Predicted class indices, shape (batch,)."""
        return np.argmax(self.predict(x), axis=1)

    def evaluate(self, x, y):
        """
        Evaluate the network on a dataset.

        Args:
            x: Inputs
            y: One-hot targets

        Returns:
            Tuple of (cost, accuracy)
        """
        predictions = self.predict(x)
        targets = np.asarray(y, dtype=predictions.dtype).reshape(predictions.shape)
        return self.loss_fn(predictions, targets), accuracy_score(targets, predictions)

    # ============================================================
    # Equality, cloning, fingerprint
    # ============================================================

    def equals(self, other):
        """Same cost and pairwise equal layers."""
        return (isinstance(other, NeuralNetwork) and
                type(self.loss_fn) is type(other.loss_fn) and
                len(self.layers) == len(other.layers) and
                all(a.equals(b) for a, b in zip(self.layers, other.layers)))

    def __eq__(self, other):
        if not isinstance(other, NeuralNetwork):
            return NotImplemented
        return self.equals(other)

    __hash__ = None

    def clone(self):
        """Deep copy of every layer."""
        return NeuralNetwork(*(layer.clone() for layer in self.layers), loss=self.loss_fn)

    @property
    def hash(self):
        """SHA-256 over the hashes of all layers."""
        return content_hash(*(layer.hash.encode() for layer in self.layers))

    def summary(self):
        """Model summary as a string."""
        lines = ["=" * 70, f"{'Layer':<45} {'Output':<12} {'Params':<10}", "=" * 70]
        for layer in self.layers:
            lines.append(f"{str(layer):<45} {str(layer.output_shape.sample):<12} "
                         f"{layer.parameters:,}")
        lines.append("=" * 70)
        lines.append(f"Total trainable parameters: {self.parameters:,}")
        lines.append("=" * 70)
        return '\n'.join(lines)

    def __repr__(self):
        return f"NeuralNetwork({len(self.layers)} layers, loss={self.loss_fn!r})"
