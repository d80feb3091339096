class DagradError(Exception):
    """Base class for every error raised by dagrad."""


class StructuralError(DagradError, RuntimeError):
    """A node or operation was used with the wrong number of inputs."""


class ShapeError(DagradError, ValueError):
    """Operand, seed, or gradient shapes are incompatible."""


class UnsupportedOperationError(DagradError, NotImplementedError):
    """Differentiation reached an operation without a backward rule."""


class UsageError(DagradError, RuntimeError):
    """The API was called where it has no meaningful target.

    Raised for ``backward()`` on a tensor that does not require gradients,
    for backpropagation requested while inference is active, and for an
    unbalanced autodiff frame stack.
    """
