"""
Tests for Helpers
=================

Activations, costs, weights initialization and utility functions.
"""

import hashlib

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet.activations import LeakyReLU, Softmax, get_activation
from neuralnet.initializers import (new_beta_parameters, new_biases, new_gamma_parameters,
                                    new_weights)
from neuralnet.losses import CrossEntropyLoss, LogLikelihoodLoss, MSELoss, get_loss
from neuralnet.settings import NormalizationMode
from neuralnet.tensor import Shape, Tensor
from neuralnet.utils import (accuracy_score, confusion_matrix, content_hash, create_batches,
                             one_hot_encode)


class TestActivations:
    """Tests for the activation functions."""

    def test_softmax_rows_sum_to_one(self):
        x = np.array([[1000.0, 1000.0], [0.0, np.log(3.0)]])
        np.testing.assert_allclose(Softmax().forward(x), [[0.5, 0.5], [0.25, 0.75]])

    def test_softmax_has_no_standalone_derivative(self):
        with pytest.raises(NotImplementedError):
            Softmax().backward(np.ones((1, 2)))

    def test_leaky_relu_derivative(self):
        act = LeakyReLU(alpha=0.1)
        y = act.forward(np.array([-2.0, 3.0]))
        np.testing.assert_allclose(act.backward(y), [0.1, 1.0])

    def test_registry(self):
        assert get_activation('Leaky-ReLU') == LeakyReLU()
        assert get_activation(None).name == 'identity'
        with pytest.raises(ValueError):
            get_activation('gelu')


class TestLosses:
    """Tests for the cost functions."""

    def test_log_likelihood(self):
        p = np.array([[0.25, 0.75], [0.5, 0.5]])
        t = np.array([[0.0, 1.0], [1.0, 0.0]])
        loss = LogLikelihoodLoss()

        assert loss(p, t) == pytest.approx(-(np.log(0.75) + np.log(0.5)) / 2)
        np.testing.assert_allclose(loss.backward(p, t), (p - t) / 2)

    def test_mse(self):
        p = np.array([[1.0, 2.0]])
        t = np.array([[0.0, 0.0]])
        assert MSELoss()(p, t) == pytest.approx(2.5)

    def test_cross_entropy_gradient(self):
        p = np.array([[0.2, 0.9]])
        t = np.array([[0.0, 1.0]])
        expected = (p - t) / (p * (1 - p))
        np.testing.assert_allclose(CrossEntropyLoss().backward(p, t), expected)

    def test_registry(self):
        assert isinstance(get_loss('quadratic'), MSELoss)
        with pytest.raises(ValueError):
            get_loss('hinge')


class TestInitializers:
    """Tests for weights initialization."""

    @pytest.mark.parametrize("mode", ['lecun_uniform', 'glorot_uniform', 'glorot_normal',
                                      'he_uniform', 'he_normal'])
    def test_schemes(self, mode):
        np.random.seed(42)
        weights = new_weights(Shape(64, 32), 64, 32, mode)

        assert weights.shape == Shape(64, 32)
        assert abs(weights.data.mean()) < 0.05
        assert weights.data.std() > 0

    def test_he_normal_scale(self):
        np.random.seed(42)
        weights = new_weights(Shape(200, 100), 200, 100, 'he_normal')
        assert weights.data.std() == pytest.approx(np.sqrt(2.0 / 200), rel=0.05)

    def test_unknown_scheme(self):
        with pytest.raises(ValueError):
            new_weights(Shape(4, 4), 4, 4, 'orthogonal')

    def test_biases_are_zero(self):
        assert np.all(new_biases(Shape(1, 8)).data == 0)

    def test_normalization_parameters(self):
        gamma = new_gamma_parameters(3, 16, NormalizationMode.PER_ACTIVATION)
        beta = new_beta_parameters(3, 16, 'spatial')

        assert gamma.shape == Shape(1, 3, 16, 1)
        assert np.all(gamma.data == 1)
        assert beta.shape == Shape(1, 3, 1, 1)
        assert np.all(beta.data == 0)


class TestUtils:
    """Tests for utility functions."""

    def test_one_hot_encode(self):
        np.testing.assert_array_equal(one_hot_encode([2, 0], 3), [[0, 0, 1], [1, 0, 0]])

    def test_create_batches(self):
        X = np.arange(10)
        batches = list(create_batches(X, X, 4, shuffle=False))

        assert [len(xb) for xb, _ in batches] == [4, 4, 2]

    def test_create_batches_shuffles_pairs(self):
        np.random.seed(42)
        X = np.arange(10)
        for xb, yb in create_batches(X, X * 10, 3):
            np.testing.assert_array_equal(yb, xb * 10)

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            list(create_batches(np.arange(4), np.arange(4), 0))

    def test_accuracy_score(self):
        y_true = one_hot_encode([0, 1, 1, 2], 3)
        y_pred = np.array([[0.9, 0.1, 0.0], [0.2, 0.7, 0.1], [0.6, 0.3, 0.1], [0.1, 0.1, 0.8]])
        assert accuracy_score(y_true, y_pred) == 0.75

    def test_confusion_matrix(self):
        cm = confusion_matrix([0, 1, 1, 2], [0, 1, 0, 2], num_classes=3)
        np.testing.assert_array_equal(cm, [[1, 0, 0], [1, 1, 0], [0, 0, 1]])

    def test_content_hash(self):
        a = Tensor.from_array(np.arange(4.0))
        b = Tensor.from_array(np.ones(2))
        expected = hashlib.sha256(a.data.tobytes() + b.data.tobytes()).hexdigest()

        assert content_hash(a, b) == expected
        assert content_hash(b, a) != expected


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
