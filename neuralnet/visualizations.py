"""
Visualizations
==============

matplotlib charts of training sessions and trained layers:
- Training history (cost and accuracy curves)
- Test reports of a training session, cost or accuracy per epoch
- Convolutional kernels
"""

import logging

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)

REPORT_TYPES = ('cost', 'accuracy')


def _finish(fig, save_path, show, what):
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info("%s saved to %s.", what, save_path)
    if show:
        plt.show()
    return fig


def plot_training_history(history, figsize=(14, 5), save_path=None, show=True):
    """
    Plot training history (loss and accuracy curves).

    Args:
        history: Dictionary with 'loss', 'accuracy', 'val_loss', 'val_accuracy'
        figsize: Figure size
        save_path: Path to save figure
        show: Display the figure

    Returns:
        matplotlib Figure
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize)
    epochs = range(1, len(history['loss']) + 1)

    for ax, key, title in ((axes[0], 'loss', 'Loss'), (axes[1], 'accuracy', 'Accuracy')):
        ax.plot(epochs, history[key], 'b-', label=f'Training {title}', linewidth=2)
        if history.get(f'val_{key}'):
            ax.plot(epochs[:len(history[f'val_{key}'])], history[f'val_{key}'], 'r-',
                    label=f'Validation {title}', linewidth=2)
        ax.set_xlabel('Epoch', fontsize=12)
        ax.set_ylabel(title, fontsize=12)
        ax.set_title(f'Training and Validation {title}', fontsize=14)
        ax.legend(fontsize=10)
        ax.grid(True, alpha=0.3)

    return _finish(fig, save_path, show, "Training history plot")


def plot_test_reports(reports, report_type='cost', figsize=(8, 5), save_path=None, show=True):
    """
    Plot the test reports of a training session.

    Args:
        reports: TrainingReport sequence (TrainingSessionResult.test_reports)
        report_type: 'cost' or 'accuracy'
        figsize: Figure size
        save_path: Path to save figure
        show: Display the figure

    Returns:
        matplotlib Figure
    """
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Unknown report type '{report_type}'. Available: {', '.join(REPORT_TYPES)}")

    fig, ax = plt.subplots(figsize=figsize)
    epochs = [report.epoch for report in reports]
    values = [getattr(report, report_type) for report in reports]

    ax.plot(epochs, values, 'o-', linewidth=2)
    ax.set_xlabel('Epoch', fontsize=12)
    ax.set_ylabel(report_type.capitalize(), fontsize=12)
    ax.set_title(f'Test {report_type}', fontsize=14)
    ax.grid(True, alpha=0.3)

    return _finish(fig, save_path, show, f"Test {report_type} chart")


def visualize_kernels(layer, max_kernels=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize the kernels of a ConvolutionalLayer.

    Multi-channel kernels are averaged across their input channels.

    Args:
        layer: ConvolutionalLayer
        max_kernels: Maximum number of kernels to display
        figsize: Figure size
        save_path: Path to save figure
        show: Display the figure

    Returns:
        matplotlib Figure
    """
    kernels = layer.weights.to_array()
    n_kernels = min(kernels.shape[0], max_kernels)
    n_cols = int(np.ceil(np.sqrt(n_kernels)))
    n_rows = int(np.ceil(n_kernels / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for i in range(n_kernels):
        image = np.mean(kernels[i], axis=0)
        image = (image - image.min()) / (image.max() - image.min() + 1e-8)
        axes[i].imshow(image, cmap='gray')
        axes[i].set_title(f'Kernel {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_kernels, len(axes)):
        axes[i].axis('off')

    fig.suptitle('Convolutional Kernels', fontsize=14)
    return _finish(fig, save_path, show, "Kernels visualization")
