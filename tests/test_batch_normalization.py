"""
Batch Normalization Tests
=========================

State initialization, cumulative moving averages, training vs inference,
restore / clone ownership, purity, content hashes and a golden-value
regression for BatchNormalizationLayer.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet import backends
from neuralnet.errors import BackendFailureError, InvalidModeError, ShapeMismatchError
from neuralnet.layers import BatchNormalizationLayer
from neuralnet.settings import NormalizationMode
from neuralnet.tensor import Shape, Tensor

MODES = [NormalizationMode.SPATIAL, NormalizationMode.PER_ACTIVATION]
SHAPES = [(1, 1, 1), (3, 1, 1), (2, 4, 4), (5, 3, 7)]


def golden_input():
    """(1, C=2, H=2, W=2): channel 0 = 1..4, channel 1 constant."""
    return Tensor.from_array(np.array([[[[1.0, 2.0], [3.0, 4.0]],
                                        [[2.0, 2.0], [2.0, 2.0]]]]))


def constant_input(value, shape=(4, 1, 2, 2)):
    return Tensor.from_array(np.full(shape, value))


class TestConstruction:
    """Fresh and restored layers."""

    @pytest.mark.parametrize("mode", MODES)
    @pytest.mark.parametrize("shape", SHAPES)
    def test_fresh_state(self, shape, mode):
        bn = BatchNormalizationLayer(shape, mode)

        assert np.all(bn.sigma2.data == 1.0)
        assert np.all(bn.mu.data == 0.0)
        assert bn.iteration == 0
        assert bn.mu.shape == bn.sigma2.shape
        assert np.all(bn.weights.data == 1.0)
        assert np.all(bn.biases.data == 0.0)

    def test_spatial_state_shape(self):
        bn = BatchNormalizationLayer((3, 4, 5), 'spatial')
        assert bn.mu.shape == Shape(1, 3, 1, 1)
        assert bn.weights.size == 3

    def test_per_activation_state_shape(self):
        bn = BatchNormalizationLayer((3, 4, 5), 'per_activation')
        assert bn.mu.shape == Shape(1, 3, 4, 5)
        assert bn.weights.size == 60

    @pytest.mark.parametrize("mode", ['batch', 3, None, 'SPATIALLY'])
    def test_invalid_mode(self, mode):
        with pytest.raises(InvalidModeError):
            BatchNormalizationLayer((2, 3, 3), mode)

    def test_mode_strings(self):
        assert BatchNormalizationLayer(4, 'Per-Activation').mode is NormalizationMode.PER_ACTIVATION
        assert BatchNormalizationLayer(4, 'SPATIAL').mode is NormalizationMode.SPATIAL

    def test_partial_restore(self):
        with pytest.raises(ValueError):
            BatchNormalizationLayer((2, 3, 3), weights=Tensor.new(Shape(1, 2)))

    def test_restore_checks_parameter_size(self):
        with pytest.raises(ShapeMismatchError):
            BatchNormalizationLayer(
                (2, 3, 3), 'spatial',
                weights=Tensor.new(Shape(1, 3)), biases=Tensor.new(Shape(1, 2)),
                mu=Tensor.new(Shape(1, 2)), sigma2=Tensor.new(Shape(1, 2)))

    def test_restore_adopts_state(self):
        np.random.seed(42)
        state = [Tensor.from_array(np.random.rand(1, 3, 1, 1)) for _ in range(4)]
        bn = BatchNormalizationLayer((3, 2, 2), 'spatial', *state, iteration=7)

        assert bn.weights is state[0]
        assert bn.mu is state[2]
        assert bn.iteration == 7

    def test_restore_rejects_negative_iteration(self):
        state = [Tensor.new(Shape(1, 2)) for _ in range(4)]
        with pytest.raises(ValueError):
            BatchNormalizationLayer((2, 1, 1), 'spatial', *state, iteration=-1)

    def test_restore_then_clone(self):
        np.random.seed(42)
        state = [Tensor.from_array(np.random.rand(1, 2, 3, 3)) for _ in range(4)]
        restored = BatchNormalizationLayer((2, 3, 3), NormalizationMode.PER_ACTIVATION,
                                           *state, iteration=11)
        clone = restored.clone()

        assert clone.equals(restored)
        for a, b in zip(clone._state_tensors(), restored._state_tensors()):
            assert a is not b
            assert not np.shares_memory(a.data, b.data)


class TestForward:
    """Training and inference passes."""

    def test_golden_values(self):
        bn = BatchNormalizationLayer((2, 2, 2), NormalizationMode.SPATIAL)
        y = bn.forward(golden_input())

        np.testing.assert_allclose(
            y.data[0, 0].ravel(), [-1.3416354, -0.4472118, 0.4472118, 1.3416354], atol=1e-6)
        np.testing.assert_allclose(y.data[0, 1].ravel(), np.zeros(4), atol=1e-12)
        np.testing.assert_allclose(bn.mu.data.ravel(), [2.5, 2.0])
        np.testing.assert_allclose(bn.sigma2.data.ravel(), [1.25, 0.0])
        assert bn.iteration == 1

    def test_deterministic_given_state(self):
        first = BatchNormalizationLayer((2, 2, 2))
        second = first.clone()

        assert first.forward(golden_input()).equals(second.forward(golden_input()))

    def test_iteration_counts_training_passes(self):
        bn = BatchNormalizationLayer((1, 2, 2))
        for n in range(1, 6):
            bn.forward(constant_input(float(n)))
            assert bn.iteration == n

    def test_cumulative_moving_average(self):
        """Factors 1, 1/2, 1/3 make mu the plain mean of the batch means."""
        bn = BatchNormalizationLayer((1, 2, 2))
        factors = []
        for value, expected_mu in ((1.0, 1.0), (3.0, 2.0), (6.0, 10.0 / 3)):
            factors.append(bn.cumulative_moving_average_factor)
            bn.forward(constant_input(value))
            np.testing.assert_allclose(bn.mu.data.ravel(), [expected_mu])

        np.testing.assert_allclose(factors, [1.0, 0.5, 1.0 / 3])

    def test_per_activation_statistics(self):
        np.random.seed(0)
        x = np.random.randn(16, 2, 3, 3)
        bn = BatchNormalizationLayer((2, 3, 3), 'per_activation')
        y = bn.forward(Tensor.from_array(x))

        np.testing.assert_allclose(bn.mu.data[0], x.mean(axis=0))
        np.testing.assert_allclose(bn.sigma2.data[0], x.var(axis=0))
        np.testing.assert_allclose(y.data.mean(axis=0), np.zeros((2, 3, 3)), atol=1e-10)

    def test_inference_leaves_state_untouched(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        bn.forward(golden_input())
        before = bn.clone()

        bn.forward(Tensor.from_array(np.random.randn(3, 2, 2, 2)), training=False)

        assert bn.equals(before)
        assert bn.iteration == 1

    def test_inference_uses_frozen_statistics(self):
        mu = Tensor.from_array(np.array([[1.0, -1.0]]))
        sigma2 = Tensor.from_array(np.array([[4.0, 0.25]]))
        gamma = Tensor.from_array(np.array([[2.0, 1.0]]))
        beta = Tensor.from_array(np.array([[0.0, 3.0]]))
        bn = BatchNormalizationLayer((2, 1, 1), 'spatial', gamma, beta, mu, sigma2, iteration=5)

        y = bn.forward(Tensor.from_array(np.array([[3.0, 0.0]])), training=False)

        eps = 1e-5
        expected = [2.0 * 2.0 / np.sqrt(4.0 + eps), 1.0 / np.sqrt(0.25 + eps) + 3.0]
        np.testing.assert_allclose(y.data.ravel(), expected)

    def test_input_is_not_mutated(self):
        x = golden_input()
        snapshot = x.clone()
        BatchNormalizationLayer((2, 2, 2)).forward(x)
        assert x.equals(snapshot)

    def test_shape_mismatch(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        with pytest.raises(ShapeMismatchError):
            bn.forward(Tensor.new(Shape(1, 3, 2, 2)))
        assert bn.iteration == 0

    def test_kernel_failure_leaves_state_untouched(self, monkeypatch):
        bn = BatchNormalizationLayer((2, 2, 2))
        bn.forward(golden_input())
        before = bn.clone()

        def failing_sqrt(*args, **kwargs):
            raise ValueError("sqrt failed")

        cpu = backends.get_backend('cpu')
        monkeypatch.setattr(cpu, 'xp', type('FailingNumpy', (), {
            **{name: getattr(np, name) for name in ('mean', 'var', 'sum')},
            'sqrt': staticmethod(failing_sqrt)}))

        with pytest.raises(BackendFailureError):
            bn.forward(golden_input())

        assert bn.equals(before)


class TestBackward:
    """Backward, gradient and purity."""

    @pytest.mark.parametrize("mode", MODES)
    def test_shapes(self, mode):
        bn = BatchNormalizationLayer((3, 4, 4), mode)
        x = Tensor.from_array(np.random.randn(5, 3, 4, 4))
        y = bn.forward(x)
        dy = Tensor.from_array(np.random.randn(5, 3, 4, 4))

        assert bn.backward(x, y, dy).shape == x.shape
        dJdw, dJdb = bn.gradient(x, dy)
        assert dJdw.shape == bn.weights.shape
        assert dJdb.shape == bn.biases.shape

    @pytest.mark.parametrize("mode", MODES)
    def test_backward_then_gradient_is_pure(self, mode):
        bn = BatchNormalizationLayer((2, 3, 3), mode)
        x = Tensor.from_array(np.random.randn(4, 2, 3, 3))
        y = bn.forward(x)
        dy = Tensor.from_array(np.random.randn(4, 2, 3, 3))
        snapshots = [t.clone() for t in (x, y, dy)]
        state = bn.clone()

        bn.backward(x, y, dy)
        bn.gradient(x, dy)

        for tensor, snapshot in zip((x, y, dy), snapshots):
            assert tensor.equals(snapshot)
        assert bn.equals(state)

    def test_beta_gradient_sums_dy(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        x = golden_input()
        dy = Tensor.from_array(np.arange(8.0).reshape(1, 2, 2, 2))
        _, dJdb = bn.gradient(x, dy)

        np.testing.assert_allclose(dJdb.data.ravel(), [6.0, 22.0])


class TestEqualityAndHash:
    """equals, clone and hash."""

    def test_clone_independence(self):
        bn = BatchNormalizationLayer((2, 3, 3))
        clone = bn.clone()
        assert clone.equals(bn)

        clone.weights.data[...] += 0.5

        assert not clone.equals(bn)
        assert np.all(bn.weights.data == 1.0)

    def test_iteration_is_compared(self):
        bn = BatchNormalizationLayer((1, 2, 2))
        state = [t.clone() for t in bn._state_tensors()]
        other = BatchNormalizationLayer((1, 2, 2), 'spatial', *state, iteration=3)
        assert not bn.equals(other)

    def test_mode_is_compared(self):
        spatial = BatchNormalizationLayer((2, 1, 1), 'spatial')
        per_activation = BatchNormalizationLayer((2, 1, 1), 'per_activation')
        assert spatial.weights.size == per_activation.weights.size
        assert not spatial.equals(per_activation)

    def test_hash_stable_without_mutation(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        assert bn.hash == bn.hash

    def test_hash_changes_after_forward(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        before = bn.hash
        bn.forward(golden_input())
        assert bn.hash != before

    def test_clone_after_nan_input(self):
        bn = BatchNormalizationLayer((1, 2, 2))
        bn.forward(constant_input(np.nan))

        assert np.isnan(bn.mu.data).all()
        clone = bn.clone()
        assert clone.equals(bn)
        assert clone.hash == bn.hash

    def test_hash_unchanged_by_inference(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        bn.forward(golden_input())
        before = bn.hash
        bn.forward(golden_input(), training=False)
        assert bn.hash == before


class TestRecord:
    """Persisted state."""

    def test_round_trip(self):
        bn = BatchNormalizationLayer((2, 3, 3), 'per_activation')
        bn.forward(Tensor.from_array(np.random.randn(4, 2, 3, 3)))
        record = bn.to_record()

        assert record['mode'] == 'per_activation'
        assert record['iteration'] == 1
        restored = BatchNormalizationLayer.from_record(record)
        assert restored.equals(bn)
        assert restored.hash == bn.hash

    def test_record_is_a_copy(self):
        bn = BatchNormalizationLayer((2, 2, 2))
        record = bn.to_record()
        record['mu'][...] = 9.0
        assert np.all(bn.mu.data == 0.0)

    def test_invalid_mode_on_restore(self):
        record = BatchNormalizationLayer((2, 2, 2)).to_record()
        record['mode'] = 'global'
        with pytest.raises(InvalidModeError):
            BatchNormalizationLayer.from_record(record)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
