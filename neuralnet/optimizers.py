"""
Optimizers
==========

Optimizers update the weights and biases of every weighted layer from the
gradients computed during backpropagation.

This module implements:
- SGD: plain, with momentum or Nesterov momentum
- Adam: adaptive moments, works well out of the box
- AdaGrad: per-parameter rates shrinking with the accumulated squared gradients
- RMSProp: AdaGrad with a decaying average instead of a sum

All of them support L2 weight decay (not applied to biases), gradient
norm clipping and a learning rate schedule.
"""

import numpy as np


class Optimizer:
    """
    Base class for optimizers.

    Args:
        learning_rate: Step size
        weight_decay: L2 regularization strength (default: 0)
        clip_grad: Max gradient norm for clipping (default: None)
    """

    def __init__(self, learning_rate, weight_decay=0.0, clip_grad=None):
        self.learning_rate = learning_rate
        self.initial_lr = learning_rate
        self.weight_decay = weight_decay
        self.clip_grad = clip_grad

        self.t = 0
        self.lr_scheduler = None
        self._state = {}

    def set_lr_scheduler(self, scheduler):
        """Attach a learning rate scheduler."""
        self.lr_scheduler = scheduler

    def get_lr(self):
        """Get current learning rate."""
        return self.learning_rate

    def step(self, layers, gradients):
        """
        Update weights for all layers in place.

        Args:
            layers: Sequence of layers
            gradients: Dictionary layer index -> (dJdw, dJdb) tensors
        """
        self.t += 1

        if self.lr_scheduler is not None:
            self.learning_rate = self.lr_scheduler(self.t, self.initial_lr)

        for i, (dJdw, dJdb) in gradients.items():
            layer = layers[i]
            for name, param, grad in (('weights', layer.weights, dJdw),
                                      ('biases', layer.biases, dJdb)):
                g = grad.data.copy()

                if self.clip_grad is not None:
                    grad_norm = np.linalg.norm(g)
                    if grad_norm > self.clip_grad:
                        g = g * (self.clip_grad / (grad_norm + 1e-8))

                if self.weight_decay > 0 and name == 'weights':
                    g = g + self.weight_decay * param.data

                param.data[...] = self._update((i, name), param.data, g)

    def _update(self, key, param, grad):
        """New value of one parameter array."""
        raise NotImplementedError

    def reset(self):
        """Reset optimizer state."""
        self.t = 0
        self._state = {}

    def __repr__(self):
        return f"{type(self).__name__}(learning_rate={self.learning_rate})"


class SGD(Optimizer):
    """
    Stochastic Gradient Descent with optional momentum.

    Args:
        learning_rate: Step size (default: 0.01)
        momentum: Momentum factor (default: 0, plain SGD)
        nesterov: Use Nesterov momentum (default: False)
        weight_decay, clip_grad: see Optimizer
    """

    def __init__(self, learning_rate=0.01, momentum=0.0, nesterov=False,
                 weight_decay=0.0, clip_grad=None):
        super().__init__(learning_rate, weight_decay, clip_grad)
        self.momentum = momentum
        self.nesterov = nesterov

    def _update(self, key, param, grad):
        if self.momentum == 0:
            return param - self.learning_rate * grad

        v = self.momentum * self._state.get(key, 0.0) + grad
        self._state[key] = v

        if self.nesterov:
            # Look ahead along the updated velocity
            return param - self.learning_rate * (self.momentum * v + grad)
        return param - self.learning_rate * v


class Adam(Optimizer):
    """
    Adam (Adaptive Moment Estimation) optimizer.

    Keeps running averages of the gradients (first moment) and of their
    squares (second moment), both bias-corrected.

    Args:
        learning_rate: Step size (default: 0.001)
        beta1: Decay rate for first moment (default: 0.9)
        beta2: Decay rate for second moment (default: 0.999)
        epsilon: Small constant for numerical stability (default: 1e-8)
        weight_decay, clip_grad: see Optimizer
    """

    def __init__(self, learning_rate=0.001, beta1=0.9, beta2=0.999, epsilon=1e-8,
                 weight_decay=0.0, clip_grad=None):
        super().__init__(learning_rate, weight_decay, clip_grad)
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon

    def _update(self, key, param, grad):
        m, v = self._state.get(key, (0.0, 0.0))
        m = self.beta1 * m + (1 - self.beta1) * grad
        v = self.beta2 * v + (1 - self.beta2) * grad ** 2
        self._state[key] = (m, v)

        m_hat = m / (1 - self.beta1 ** self.t)
        v_hat = v / (1 - self.beta2 ** self.t)
        return param - self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)


class AdaGrad(Optimizer):
    """
    AdaGrad: divides each step by the root of the accumulated squared gradients.

    Args:
        learning_rate: Step size (default: 0.01)
        epsilon: Small constant for numerical stability (default: 1e-8)
    """

    def __init__(self, learning_rate=0.01, epsilon=1e-8, weight_decay=0.0, clip_grad=None):
        super().__init__(learning_rate, weight_decay, clip_grad)
        self.epsilon = epsilon

    def _update(self, key, param, grad):
        g2 = self._state.get(key, 0.0) + grad ** 2
        self._state[key] = g2
        return param - self.learning_rate * grad / (np.sqrt(g2) + self.epsilon)


class RMSProp(Optimizer):
    """
    RMSProp: like AdaGrad with an exponentially decaying average of squared gradients.

    Args:
        learning_rate: Step size (default: 0.001)
        rho: Decay rate (default: 0.9)
        epsilon: Small constant for numerical stability (default: 1e-8)
    """

    def __init__(self, learning_rate=0.001, rho=0.9, epsilon=1e-8,
                 weight_decay=0.0, clip_grad=None):
        super().__init__(learning_rate, weight_decay, clip_grad)
        self.rho = rho
        self.epsilon = epsilon

    def _update(self, key, param, grad):
        g2 = self.rho * self._state.get(key, 0.0) + (1 - self.rho) * grad ** 2
        self._state[key] = g2
        return param - self.learning_rate * grad / (np.sqrt(g2) + self.epsilon)


# ============================================================================
# Learning Rate Schedulers
# ============================================================================

def step_decay(drop_rate=0.5, drop_every=10):
    """
    Step decay: LR = initial_lr * drop_rate^(step // drop_every)
    """
    def scheduler(step, initial_lr):
        return initial_lr * (drop_rate ** (step // drop_every))
    return scheduler


def exponential_decay(decay_rate=0.95):
    """
    Exponential decay: LR = initial_lr * decay_rate^step
    """
    def scheduler(step, initial_lr):
        return initial_lr * (decay_rate ** step)
    return scheduler


def cosine_annealing(total_steps, min_lr=0.0):
    """
    Cosine annealing from initial_lr down to min_lr over total_steps.
    """
    def scheduler(step, initial_lr):
        progress = min(step / total_steps, 1.0)
        return min_lr + 0.5 * (initial_lr - min_lr) * (1 + np.cos(np.pi * progress))
    return scheduler


# Optimizer registry
OPTIMIZERS = {
    'sgd': SGD,
    'adam': Adam,
    'adagrad': AdaGrad,
    'rmsprop': RMSProp,
}


def get_optimizer(name, **kwargs):
    """
    Get optimizer by name.

    Args:
        name: 'sgd', 'adam', 'adagrad', 'rmsprop' or an Optimizer instance
        **kwargs: Arguments to pass to optimizer

    Returns:
        Optimizer instance
    """
    if isinstance(name, Optimizer):
        return name

    name_lower = name.lower()
    if name_lower not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer '{name}'. Available: {list(OPTIMIZERS.keys())}")

    return OPTIMIZERS[name_lower](**kwargs)
