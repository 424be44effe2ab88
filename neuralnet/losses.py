"""
Cost Functions
==============

Each cost implements:
- forward(predictions, targets): mean cost over the batch
- backward(predictions, targets): gradient w.r.t. the predictions

Costs:
- LogLikelihoodLoss: pairs with SoftmaxLayer; its backward is the combined
  softmax + log-likelihood gradient (predictions - targets) / batch
- CrossEntropyLoss: element-wise binary cross-entropy, for sigmoid outputs
- MSELoss: quadratic cost
"""

import numpy as np


class Loss:
    """Base class for cost functions."""

    name = None

    def forward(self, predictions, targets):
        """Compute loss value."""
        raise NotImplementedError

    def backward(self, predictions, targets):
        """Compute gradient of loss w.r.t. predictions."""
        raise NotImplementedError

    def __call__(self, predictions, targets):
        return self.forward(predictions, targets)

    def __repr__(self):
        return f"{type(self).__name__}()"


class LogLikelihoodLoss(Loss):
    """
    Negative log-likelihood of softmax outputs.

    Formula: L = -sum(t * log(p)), averaged over the batch

    The gradient w.r.t. the pre-softmax activations simplifies to p - t,
    which is what backward returns: SoftmaxLayer skips the softmax
    derivative and consumes it directly.

    Args:
        epsilon: Small constant to prevent log(0)
    """

    name = 'log_likelihood'

    def __init__(self, epsilon=1e-15):
        self.epsilon = epsilon

    def forward(self, predictions, targets):
        predictions_clipped = np.clip(predictions, self.epsilon, 1 - self.epsilon)
        loss = -np.sum(targets * np.log(predictions_clipped), axis=-1)
        return float(np.mean(loss))

    def backward(self, predictions, targets):
        return (predictions - targets) / predictions.shape[0]


class CrossEntropyLoss(Loss):
    """
    Binary cross-entropy over every output.

    Formula: L = -sum(t*log(p) + (1-t)*log(1-p)), averaged over the batch

    Use with sigmoid outputs: combined with the sigmoid derivative p(1-p)
    the gradient reduces to (p - t) / batch.
    """

    name = 'cross_entropy'

    def __init__(self, epsilon=1e-15):
        self.epsilon = epsilon

    def forward(self, predictions, targets):
        p = np.clip(predictions, self.epsilon, 1 - self.epsilon)
        loss = -np.sum(targets * np.log(p) + (1 - targets) * np.log(1 - p), axis=-1)
        return float(np.mean(loss))

    def backward(self, predictions, targets):
        p = np.clip(predictions, self.epsilon, 1 - self.epsilon)
        return (p - targets) / (p * (1 - p)) / predictions.shape[0]


class MSELoss(Loss):
    """
    Quadratic cost.

    Formula: L = 0.5 * sum((p - t)^2), averaged over the batch

    Gradient: dL/dp = (p - t) / batch
    """

    name = 'mse'

    def forward(self, predictions, targets):
        return float(0.5 * np.sum((predictions - targets) ** 2) / predictions.shape[0])

    def backward(self, predictions, targets):
        return (predictions - targets) / predictions.shape[0]


# ============================================================================
# Loss Registry
# ============================================================================

LOSSES = {
    'log_likelihood': LogLikelihoodLoss,
    'loglikelihood': LogLikelihoodLoss,
    'cross_entropy': CrossEntropyLoss,
    'crossentropy': CrossEntropyLoss,
    'bce': CrossEntropyLoss,
    'mse': MSELoss,
    'quadratic': MSELoss,
}


def get_loss(name):
    """
    Get loss function by name.

    Args:
        name: String name or Loss instance

    Returns:
        Loss instance
    """
    if isinstance(name, Loss):
        return name

    name_lower = name.lower().replace('-', '_').replace(' ', '_')
    if name_lower not in LOSSES:
        available = ', '.join(sorted(LOSSES.keys()))
        raise ValueError(f"Unknown loss '{name}'. Available: {available}")

    return LOSSES[name_lower]()
