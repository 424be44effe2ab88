"""
Settings
========

Process-wide configuration.

    >>> from neuralnet.settings import settings, set_processing_mode
    >>> set_processing_mode('gpu')   # kernels now run through CuPy
    >>> settings.epsilon
    1e-05
"""

import enum
import logging

import numpy as np

from .errors import InvalidModeError

logger = logging.getLogger(__name__)

PROCESSING_MODES = ('cpu', 'gpu')


class NormalizationMode(enum.Enum):
    """
    How batch normalization statistics are shared.

    SPATIAL: one mean/variance per channel, over samples and spatial positions
    PER_ACTIVATION: one mean/variance per activation, over samples only
    """

    SPATIAL = 'spatial'
    PER_ACTIVATION = 'per_activation'

    @classmethod
    def parse(cls, mode):
        """Accept a member or its string value."""
        if isinstance(mode, cls):
            return mode
        if isinstance(mode, str):
            value = mode.lower().replace('-', '_')
            for member in cls:
                if member.value == value:
                    return member
        available = ', '.join(m.value for m in cls)
        raise InvalidModeError(
            f"Invalid batch normalization mode {mode!r}. Available: {available}")


class Settings:
    """
    Mutable container for library-wide defaults.

    Args:
        processing_mode: 'cpu' (NumPy) or 'gpu' (CuPy)
        dtype: Floating point type of every tensor buffer
        epsilon: Added to the variance before the square root in batch normalization
    """

    def __init__(self, processing_mode='cpu', dtype=np.float64, epsilon=1e-5):
        self.processing_mode = processing_mode
        self.dtype = np.dtype(dtype)
        self.epsilon = epsilon

    def __repr__(self):
        return (f"Settings(processing_mode={self.processing_mode!r}, "
                f"dtype={self.dtype}, epsilon={self.epsilon})")


settings = Settings()


def set_processing_mode(mode):
    """Select the compute backend used by every layer from now on."""
    mode = str(mode).lower()
    if mode not in PROCESSING_MODES:
        raise InvalidModeError(
            f"Unknown processing mode '{mode}'. Available: {', '.join(PROCESSING_MODES)}")

    settings.processing_mode = mode
    logger.info("Processing mode set to %s.", mode)
