"""
Training
========

Supervised training loop:
- Mini-batch backpropagation for a number of epochs
- tqdm progress bars and per-epoch logging
- Test set reports after every epoch, pushed to a progress callback
- Early stopping on the validation cost
- Cooperative cancellation through a threading.Event
- Stops on a non-finite cost

Example:
    >>> result = train_network(network, (X_train, y_train), epochs=20, batch_size=64,
    ...                        optimizer=SGD(learning_rate=0.1),
    ...                        test=(X_test, y_test),
    ...                        progress=lambda r: print(r))
    >>> result.stop_reason
    'epochs_completed'
"""

import collections
import logging
import time

import numpy as np
from tqdm import tqdm

from .optimizers import get_optimizer
from .utils import create_batches, one_hot_encode

logger = logging.getLogger(__name__)


class StopReason:
    """Why a training session ended."""

    EPOCHS_COMPLETED = 'epochs_completed'
    EARLY_STOPPING = 'early_stopping'
    TRAINING_CANCELED = 'training_canceled'
    NUMERIC_OVERFLOW = 'numeric_overflow'


TrainingReport = collections.namedtuple('TrainingReport', ['epoch', 'cost', 'accuracy'])


class TrainingSessionResult:
    """
    Outcome of train_network.

    Attributes:
        stop_reason: One of the StopReason values
        training_time: Wall clock duration in seconds
        history: Dictionary with per-epoch 'loss', 'accuracy', 'val_loss',
            'val_accuracy' and 'lr' lists
        test_reports: TrainingReport list, one per completed epoch with a test set
    """

    def __init__(self, stop_reason, training_time, history, test_reports):
        self.stop_reason = stop_reason
        self.training_time = training_time
        self.history = history
        self.test_reports = test_reports

    @property
    def epochs(self):
        """Number of completed epochs."""
        return len(self.history['loss'])

    def __repr__(self):
        return (f"TrainingSessionResult(stop_reason={self.stop_reason!r}, "
                f"epochs={self.epochs}, training_time={self.training_time:.2f}s)")


def _prepare(network, dataset):
    X, y = dataset
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y)
    if y.ndim == 1:
        y = one_hot_encode(y, network.output_shape.chw)
    if len(X) != len(y):
        raise ValueError(f"Got {len(X)} samples and {len(y)} targets")
    return X, y


def train_network(network, dataset, epochs, batch_size=32, optimizer='adam',
                  validation=None, test=None, progress=None, cancel_event=None,
                  early_stopping_patience=None, lr_scheduler=None, verbose=True):
    """
    Train a network with mini-batch backpropagation.

    Args:
        network: NeuralNetwork to train in place
        dataset: Tuple (X, y), y as integer labels or one-hot targets
        epochs: Number of training epochs
        batch_size: Mini-batch size
        optimizer: Optimizer instance or name
        validation: Tuple (X_val, y_val) used for early stopping
        test: Tuple (X_test, y_test) evaluated after every epoch
        progress: Callable receiving a TrainingReport after every epoch
            (test set metrics when a test set is given, training metrics otherwise)
        cancel_event: threading.Event, checked before every batch
        early_stopping_patience: Stop if the validation cost does not
            improve for this many epochs
        lr_scheduler: Learning rate scheduler function
        verbose: Show progress bars

    Returns:
        TrainingSessionResult
    """
    if epochs <= 0:
        raise ValueError(f"Number of epochs must be positive, got {epochs}")

    X, y = _prepare(network, dataset)
    if validation is not None:
        X_val, y_val = _prepare(network, validation)
    if test is not None:
        X_test, y_test = _prepare(network, test)

    optimizer = get_optimizer(optimizer)
    if lr_scheduler is not None:
        optimizer.set_lr_scheduler(lr_scheduler)

    history = {'loss': [], 'accuracy': [], 'val_loss': [], 'val_accuracy': [], 'lr': []}
    test_reports = []
    best_val_loss = float('inf')
    patience_counter = 0
    stop_reason = None

    n_batches = (len(X) + batch_size - 1) // batch_size
    logger.info("Training %r on %d samples: %d epochs, batch size %d, %r.",
                network, len(X), epochs, batch_size, optimizer)
    start = time.perf_counter()

    for epoch in range(epochs):
        epoch_loss = 0.0
        epoch_correct = 0.0
        n_samples = 0

        with tqdm(create_batches(X, y, batch_size, shuffle=True), total=n_batches,
                  desc=f"Epoch {epoch + 1}/{epochs}", disable=not verbose, leave=False) as pbar:
            for X_batch, y_batch in pbar:
                if cancel_event is not None and cancel_event.is_set():
                    stop_reason = StopReason.TRAINING_CANCELED
                    break

                cost, accuracy = network.backpropagate(X_batch, y_batch, optimizer)
                if not np.isfinite(cost):
                    stop_reason = StopReason.NUMERIC_OVERFLOW
                    break

                epoch_loss += cost * len(X_batch)
                epoch_correct += accuracy * len(X_batch)
                n_samples += len(X_batch)
                pbar.set_postfix({
                    'loss': f'{epoch_loss / n_samples:.4f}',
                    'acc': f'{epoch_correct / n_samples:.4f}'
                })

        if stop_reason is not None:
            logger.warning("Training stopped during epoch %d: %s.", epoch + 1, stop_reason)
            break

        history['loss'].append(epoch_loss / n_samples)
        history['accuracy'].append(epoch_correct / n_samples)
        history['lr'].append(optimizer.get_lr())
        report = TrainingReport(epoch + 1, history['loss'][-1], history['accuracy'][-1])

        msg = (f"Epoch {epoch + 1}/{epochs} - Loss: {history['loss'][-1]:.4f} - "
               f"Acc: {history['accuracy'][-1]:.4f}")

        if test is not None:
            test_cost, test_accuracy = network.evaluate(X_test, y_test)
            report = TrainingReport(epoch + 1, test_cost, test_accuracy)
            test_reports.append(report)
            msg += f" - Test Loss: {test_cost:.4f} - Test Acc: {test_accuracy:.4f}"

        if validation is not None:
            val_loss, val_accuracy = network.evaluate(X_val, y_val)
            history['val_loss'].append(val_loss)
            history['val_accuracy'].append(val_accuracy)
            msg += f" - Val Loss: {val_loss:.4f} - Val Acc: {val_accuracy:.4f}"

        logger.info(msg)
        if progress is not None:
            progress(report)

        if validation is not None and early_stopping_patience is not None:
            if val_loss < best_val_loss:
                best_val_loss = val_loss
                patience_counter = 0
            else:
                patience_counter += 1
                if patience_counter >= early_stopping_patience:
                    stop_reason = StopReason.EARLY_STOPPING
                    logger.warning("Early stopping at epoch %d.", epoch + 1)
                    break

    if stop_reason is None:
        stop_reason = StopReason.EPOCHS_COMPLETED

    return TrainingSessionResult(stop_reason, time.perf_counter() - start, history, test_reports)
