"""
Activation Functions
====================

Element-wise non-linearities used by ActivationLayer and SoftmaxLayer.

Each activation implements:
- forward(x): f(x)
- backward(y): f'(x) expressed through the output y = f(x)

Computing the derivative from the output means a layer never has to keep
or recompute its pre-activation input during backpropagation.

Every method takes the array module (numpy or cupy) as `xp`, so the same
code runs on both compute backends.
"""

import numpy as np


class Activation:
    """Base class for all activation functions."""

    name = None

    def forward(self, x, xp=np):
        """Apply activation function."""
        raise NotImplementedError

    def backward(self, y, xp=np):
        """Derivative of the activation, given its output."""
        raise NotImplementedError

    def __call__(self, x, xp=np):
        return self.forward(x, xp)

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self):
        return hash((type(self), tuple(sorted(vars(self).items()))))

    def __repr__(self):
        return f"{type(self).__name__}()"


class Identity(Activation):
    """f(x) = x"""

    name = 'identity'

    def forward(self, x, xp=np):
        return x.copy()

    def backward(self, y, xp=np):
        return xp.ones_like(y)


class ReLU(Activation):
    """
    Rectified Linear Unit: f(x) = max(0, x)

    Derivative:
        f'(x) = 1 if y > 0 else 0
    """

    name = 'relu'

    def forward(self, x, xp=np):
        return xp.maximum(0, x)

    def backward(self, y, xp=np):
        return (y > 0).astype(y.dtype)


class LeakyReLU(Activation):
    """
    Leaky ReLU: f(x) = x if x > 0 else alpha * x

    Since alpha > 0 the sign of the output equals the sign of the input,
    so the derivative is 1 where y > 0 and alpha elsewhere.
    """

    name = 'leaky_relu'

    def __init__(self, alpha=0.01):
        self.alpha = alpha

    def forward(self, x, xp=np):
        return xp.where(x > 0, x, self.alpha * x)

    def backward(self, y, xp=np):
        return xp.where(y > 0, 1.0, self.alpha).astype(y.dtype)

    def __repr__(self):
        return f"LeakyReLU(alpha={self.alpha})"


class ELU(Activation):
    """
    Exponential Linear Unit: f(x) = x if x > 0 else alpha * (exp(x) - 1)

    Derivative for x <= 0 is alpha * exp(x) = y + alpha.
    """

    name = 'elu'

    def __init__(self, alpha=1.0):
        self.alpha = alpha

    def forward(self, x, xp=np):
        return xp.where(x > 0, x, self.alpha * (xp.exp(xp.minimum(x, 0)) - 1))

    def backward(self, y, xp=np):
        return xp.where(y > 0, 1.0, y + self.alpha).astype(y.dtype)

    def __repr__(self):
        return f"ELU(alpha={self.alpha})"


class Sigmoid(Activation):
    """
    Sigmoid: f(x) = 1 / (1 + exp(-x))

    Derivative:
        f'(x) = y * (1 - y)
    """

    name = 'sigmoid'

    def forward(self, x, xp=np):
        # Clip for numerical stability
        return 1.0 / (1.0 + xp.exp(-xp.clip(x, -500, 500)))

    def backward(self, y, xp=np):
        return y * (1 - y)


class Tanh(Activation):
    """
    Hyperbolic Tangent: f(x) = tanh(x)

    Derivative:
        f'(x) = 1 - y^2
    """

    name = 'tanh'

    def forward(self, x, xp=np):
        return xp.tanh(x)

    def backward(self, y, xp=np):
        return 1 - y ** 2


class Softplus(Activation):
    """
    Softplus: f(x) = log(1 + exp(x))

    Derivative is sigmoid(x) = 1 - exp(-y).
    """

    name = 'softplus'

    def forward(self, x, xp=np):
        return xp.logaddexp(0, x)

    def backward(self, y, xp=np):
        return 1 - xp.exp(-y)


class Softmax(Activation):
    """
    Softmax over the features of each sample: f(x_i) = exp(x_i) / sum(exp(x_j))

    Input is (batch, features). The max is subtracted before exp to
    prevent overflow. Only used by the output layer, where the derivative is
    folded into the log-likelihood cost (dL/dz = y - t), so backward is
    not defined.
    """

    name = 'softmax'

    def forward(self, x, xp=np):
        x_shifted = x - xp.max(x, axis=1, keepdims=True)
        exp_x = xp.exp(x_shifted)
        return exp_x / xp.sum(exp_x, axis=1, keepdims=True)

    def backward(self, y, xp=np):
        raise NotImplementedError("Softmax is only differentiated together with its cost")


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    'identity': Identity,
    'linear': Identity,
    'none': Identity,
    'relu': ReLU,
    'leaky_relu': LeakyReLU,
    'leakyrelu': LeakyReLU,
    'elu': ELU,
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'softplus': Softplus,
    'softmax': Softmax,
}


def get_activation(name):
    """
    Get activation function by name.

    Args:
        name: String name ('relu', 'sigmoid', etc.), Activation instance or None

    Returns:
        Activation instance

    Example:
        >>> act = get_activation('relu')
        >>> act(np.array([-1.0, 0.0, 1.0]))
        array([0., 0., 1.])
    """
    if isinstance(name, Activation):
        return name

    if name is None:
        return Identity()

    name_lower = name.lower().replace('-', '_')
    if name_lower not in ACTIVATIONS:
        available = ', '.join(ACTIVATIONS.keys())
        raise ValueError(f"Unknown activation '{name}'. Available: {available}")

    return ACTIVATIONS[name_lower]()
