"""
Tensors
=======

Fixed-shape numeric buffers used by every layer and kernel.

- Shape: immutable (n, c, h, w) tuple, n being the number of samples
- Tensor: an exclusively owned NumPy buffer plus its Shape

Layers declare per-sample shapes with n == 1; the batch size of the
tensors flowing through them is free.
"""

import numpy as np

from .errors import ShapeMismatchError
from .settings import settings


class Shape(tuple):
    """
    Immutable (n, c, h, w) shape.

    Args:
        n: Number of samples (or rows, for parameter tensors)
        c: Channels
        h: Height
        w: Width

    Example:
        >>> Shape(32, 3, 28, 28).chw
        2352
    """

    def __new__(cls, n, c=1, h=1, w=1):
        dims = tuple(int(d) for d in (n, c, h, w))
        if any(d <= 0 for d in dims):
            raise ShapeMismatchError(f"Shape dimensions must be positive, got {dims}")
        return super().__new__(cls, dims)

    def __getnewargs__(self):
        return tuple(self)

    @property
    def n(self):
        return self[0]

    @property
    def c(self):
        return self[1]

    @property
    def h(self):
        return self[2]

    @property
    def w(self):
        return self[3]

    @property
    def hw(self):
        return self[2] * self[3]

    @property
    def chw(self):
        return self[1] * self[2] * self[3]

    @property
    def size(self):
        """Total number of elements."""
        return self[0] * self.chw

    @property
    def sample(self):
        """The (c, h, w) part, compared by layer shape checks."""
        return self[1:]

    def with_n(self, n):
        """Same sample shape with a different number of samples."""
        return Shape(n, self[1], self[2], self[3])

    def __repr__(self):
        return f"Shape({self[0]}, {self[1]}, {self[2]}, {self[3]})"


class AllocationMode:
    """How a new buffer is initialized."""

    DEFAULT = 'default'  # uninitialized content
    CLEAN = 'clean'      # zero-filled


class Tensor:
    """
    Exclusively owned numeric buffer with an immutable Shape.

    Content is mutable in place, the shape never changes. Tensors are never
    shared between layers: use clone() to get an independent copy.

    Create tensors with the factory methods rather than the constructor:

        >>> t = Tensor.new(Shape(2, 3), AllocationMode.CLEAN)
        >>> u = Tensor.from_array(np.ones((4, 3, 8, 8)))
        >>> v = u.clone()
    """

    __slots__ = ('_shape', '_data')

    def __init__(self, shape, data):
        if data.size != shape.size:
            raise ShapeMismatchError(
                f"Buffer of {data.size} elements does not match {shape}",
                expected=shape.size, actual=data.size)
        self._shape = shape
        self._data = data.reshape(tuple(shape))

    @classmethod
    def new(cls, shape, mode=AllocationMode.DEFAULT):
        """Allocate a tensor, optionally zero-filled."""
        if not isinstance(shape, Shape):
            shape = Shape(*shape)
        if mode == AllocationMode.CLEAN:
            data = np.zeros(tuple(shape), dtype=settings.dtype)
        elif mode == AllocationMode.DEFAULT:
            data = np.empty(tuple(shape), dtype=settings.dtype)
        else:
            raise ValueError(f"Unknown allocation mode '{mode}'")
        return cls(shape, data)

    @classmethod
    def like(cls, other, mode=AllocationMode.DEFAULT):
        """Allocate a tensor with the same shape as other."""
        return cls.new(other.shape, mode)

    @classmethod
    def from_array(cls, array, shape=None):
        """
        Copy an array into a new tensor.

        Arrays with fewer than four dimensions get trailing ones,
        e.g. (n, features) -> (n, features, 1, 1).
        """
        array = np.array(array, dtype=settings.dtype, copy=True)
        if shape is None:
            if array.ndim == 0 or array.ndim > 4:
                raise ShapeMismatchError(
                    f"Cannot build a tensor from a {array.ndim}D array")
            shape = Shape(*array.shape)
        elif not isinstance(shape, Shape):
            shape = Shape(*shape)
        return cls(shape, array)

    @property
    def shape(self):
        return self._shape

    @property
    def data(self):
        """The underlying (n, c, h, w) array. Write to it, never reassign it."""
        return self._data

    @property
    def size(self):
        return self._shape.size

    def to_array(self):
        """Copy of the content as a NumPy array."""
        return self._data.copy()

    def fill(self, value):
        self._data.fill(value)

    def copy_from(self, other):
        """Overwrite the content with the content of another tensor of equal size."""
        if other.size != self.size:
            raise ShapeMismatchError(
                f"Cannot copy {other.shape} into {self.shape}",
                expected=self.shape, actual=other.shape)
        self._data[...] = other.data.reshape(self._data.shape)

    def clone(self):
        """Deep copy with new ownership."""
        return Tensor(self._shape, self._data.copy())

    def equals(self, other):
        """Same shape and bit-equal content."""
        if not isinstance(other, Tensor) or other.shape != self.shape:
            return False
        return (self._data.dtype == other.data.dtype
                and self._data.tobytes() == other.data.tobytes())

    def __eq__(self, other):
        return self.equals(other)

    __hash__ = None

    def tobytes(self):
        return self._data.tobytes()

    def __repr__(self):
        return f"Tensor({self._shape!r}, dtype={self._data.dtype})"
