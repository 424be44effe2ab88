"""
Utility Functions
=================

Helper functions for:
- Batching and label encoding
- Metrics
- Content fingerprints of tensors
- Reproducibility
"""

import hashlib
import logging

import numpy as np

logger = logging.getLogger(__name__)


def content_hash(*tensors):
    """
    SHA-256 digest of the concatenated raw content of some tensors.

    Args:
        *tensors: Tensors, NumPy arrays or bytes, hashed in the given order

    Returns:
        Hex digest string
    """
    digest = hashlib.sha256()
    for tensor in tensors:
        digest.update(tensor if isinstance(tensor, bytes) else tensor.tobytes())
    return digest.hexdigest()


def one_hot_encode(labels, num_classes=None):
    """
    Convert integer labels to one-hot encoded vectors.

    Args:
        labels: Integer labels, shape (N,)
        num_classes: Number of classes (inferred if None)

    Returns:
        One-hot matrix, shape (N, num_classes)
    """
    labels = np.asarray(labels).astype(int)

    if num_classes is None:
        num_classes = labels.max() + 1

    one_hot = np.zeros((len(labels), num_classes), dtype=np.float64)
    one_hot[np.arange(len(labels)), labels] = 1.0

    return one_hot


def create_batches(X, y, batch_size, shuffle=True):
    """
    Create mini-batches for training.

    Args:
        X: Features, shape (N, ...)
        y: Labels, shape (N,) or (N, C)
        batch_size: Batch size
        shuffle: Whether to shuffle

    Yields:
        (X_batch, y_batch) tuples
    """
    if batch_size <= 0:
        raise ValueError(f"Batch size must be positive, got {batch_size}")

    n_samples = len(X)

    if shuffle:
        indices = np.random.permutation(n_samples)
        X = X[indices]
        y = y[indices]

    for start_idx in range(0, n_samples, batch_size):
        end_idx = min(start_idx + batch_size, n_samples)
        yield X[start_idx:end_idx], y[start_idx:end_idx]


def accuracy_score(y_true, y_pred):
    """
    Compute classification accuracy.

    Args:
        y_true: True labels (integers or one-hot)
        y_pred: Predictions (probabilities or one-hot)

    Returns:
        Accuracy as float
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.ndim > 1:
        y_true = np.argmax(y_true.reshape(len(y_true), -1), axis=1)
    if y_pred.ndim > 1:
        y_pred = np.argmax(y_pred.reshape(len(y_pred), -1), axis=1)

    return float(np.mean(y_true == y_pred))


def confusion_matrix(y_true, y_pred, num_classes=None):
    """
    Compute confusion matrix.

    Args:
        y_true: True labels
        y_pred: Predicted labels
        num_classes: Number of classes

    Returns:
        Confusion matrix, shape (num_classes, num_classes)
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.ndim > 1:
        y_true = np.argmax(y_true, axis=1)
    if y_pred.ndim > 1:
        y_pred = np.argmax(y_pred, axis=1)

    if num_classes is None:
        num_classes = max(y_true.max(), y_pred.max()) + 1

    cm = np.zeros((num_classes, num_classes), dtype=int)
    np.add.at(cm, (y_true, y_pred), 1)

    return cm


def set_random_seed(seed):
    """Set random seed for reproducibility."""
    np.random.seed(seed)
    logger.info("Random seed set to %d.", seed)
