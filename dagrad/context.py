import contextlib
import enum
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from dagrad.errors import UsageError
from dagrad.tensor import Tensor

logger = logging.getLogger(__name__)

class AutodiffMode(enum.Enum):
    TRAINING = "training"
    INFERENCE = "inference"

class AutodiffContext:
    """
    One frame of the autodiff mode stack.

    The current frame decides what the tensor factory returns: under
    TRAINING, :meth:`tensor` builds leaf
    :class:`~dagrad.autograd.AutogradTensor` objects and every operation on
    them records provenance; under INFERENCE it builds plain
    :class:`~dagrad.tensor.Tensor` values and nothing is recorded.

    Frames are pushed and popped with :meth:`with_context` (or the
    :meth:`training` / :meth:`inference` shortcuts). Each thread has its own
    stack; the bottom of every stack is a TRAINING frame with
    ``default_requires_grad=False``.

    Examples
    --------
    >>> with AutodiffContext.training() as ctx:
    ...     x = ctx.tensor((2, 2), [1, 2, 3, 4], requires_grad=True)
    ...     with AutodiffContext.inference():
    ...         y = AutodiffContext.current().tensor((2, 2), [1, 1, 1, 1])  # plain Tensor
    ...     z = AutodiffContext.current().tensor((2, 2), 0.0)           # tracked again
    """
    def __init__(
        self,
        mode: Union[AutodiffMode, str] = AutodiffMode.TRAINING,
        default_requires_grad: bool = False,
    ) -> None:
        self.mode = AutodiffMode(mode)
        self.default_requires_grad = bool(default_requires_grad)

    @property
    def is_training(self) -> bool:
        return self.mode is AutodiffMode.TRAINING

    def tensor(
        self,
        shape: Sequence[int],
        data: Any,
        requires_grad: Optional[bool] = None,
        device: Optional[str] = None,
    ) -> Any:
        """
        Create a tensor according to this frame's mode.

        Parameters
        ----------
        shape : sequence of int
            Tensor shape (positive dimensions).
        data : sequence of float or float
            Flat row-major values, or one scalar filling the shape.
        requires_grad : bool, optional
            Only used under TRAINING. Defaults to ``default_requires_grad``.
        device : str, optional
            ``"cpu"`` or ``"cuda"``.

        Returns
        -------
        Tensor or AutogradTensor
            A plain ``Tensor`` under INFERENCE, a leaf ``AutogradTensor`` under
            TRAINING.
        """
        return self.leaf(Tensor(data, shape=shape, device=device), requires_grad)

    def leaf(self, value: Any, requires_grad: Optional[bool] = None) -> Any:
        """
        Wrap an existing value as a leaf according to this frame's mode.

        ``value`` can be a ``Tensor``, an array-like, or any object exposing
        ``shape`` and multi-index access (see :meth:`Tensor.from_provider`).
        An ``AutogradTensor`` is unwrapped to its value first.
        """
        from dagrad.autograd import AutogradTensor

        if isinstance(value, AutogradTensor):
            value = value.value
        value = Tensor.from_provider(value)
        if not self.is_training:
            return value
        if requires_grad is None:
            requires_grad = self.default_requires_grad
        return AutogradTensor(value, requires_grad=requires_grad)

    def leaves(self, named: Dict[str, Any], requires_grad: Optional[bool] = None) -> Dict[str, Any]:
        """Wrap a mapping of named weights (e.g. from a model file reader) as leaves."""
        return {name: self.leaf(value, requires_grad) for name, value in named.items()}

    def backprop(self, root: Any, gradient: Optional[Any] = None) -> Dict[Any, Tensor]:
        """
        Run ``root.backward(gradient)`` and collect the gradients of its leaves.

        Returns
        -------
        dict
            ``{leaf: leaf.grad}`` for every leaf requiring gradients that the
            pass reached.

        Raises
        ------
        UsageError
            If this frame is INFERENCE or ``root`` is not an ``AutogradTensor``.
        """
        from dagrad.autograd import AutogradTensor, iter_graph

        if not self.is_training:
            raise UsageError("backprop() is not available while inference is active")
        if not isinstance(root, AutogradTensor):
            raise UsageError(f"backprop() needs an AutogradTensor, got {type(root).__name__}")
        root.backward(gradient)
        return {
            t: t.grad
            for t in iter_graph(root)
            if t.is_leaf and t.requires_grad and t.grad is not None
        }

    def __repr__(self) -> str:
        return f"AutodiffContext(mode={self.mode.name}, default_requires_grad={self.default_requires_grad})"

    @staticmethod
    def current() -> "AutodiffContext":
        """The innermost frame of the calling thread."""
        frames = _frames()
        return frames[-1] if frames else _BASE_FRAME

    @staticmethod
    @contextlib.contextmanager
    def with_context(
        mode: Union[AutodiffMode, str],
        default_requires_grad: bool = False,
    ) -> Iterator["AutodiffContext"]:
        """
        Push a frame for the duration of a ``with`` block (or decorated call).

        The frame is popped on every exit path, including exceptions, and
        the enclosing frame becomes current again.
        """
        frame = AutodiffContext(mode, default_requires_grad)
        _push(frame)
        try:
            yield frame
        finally:
            _pop(frame)

    @staticmethod
    def training(default_requires_grad: bool = False) -> Any:
        """Shortcut for ``with_context(AutodiffMode.TRAINING, default_requires_grad)``."""
        return AutodiffContext.with_context(AutodiffMode.TRAINING, default_requires_grad)

    @staticmethod
    def inference() -> Any:
        """Shortcut for ``with_context(AutodiffMode.INFERENCE)``."""
        return AutodiffContext.with_context(AutodiffMode.INFERENCE)

_BASE_FRAME = AutodiffContext(AutodiffMode.TRAINING, default_requires_grad=False)

_state = threading.local()
"""threading.local: Per-thread autodiff frame stack (``_state.frames``)."""

def _frames() -> List[AutodiffContext]:
    frames = getattr(_state, "frames", None)
    if frames is None:
        frames = _state.frames = []
    return frames

def _push(frame: AutodiffContext) -> None:
    frames = _frames()
    frames.append(frame)
    logger.debug("push %r (depth %d)", frame, len(frames))

def _pop(frame: AutodiffContext) -> None:
    frames = _frames()
    if not frames or frames[-1] is not frame:
        raise UsageError("Autodiff frames must be exited in reverse order of entry")
    frames.pop()
    logger.debug("pop %r (depth %d)", frame, len(frames))

class no_grad:
    """
    Context manager that temporarily disables gradient tracking.

    Equivalent to ``AutodiffContext.inference()``: operations inside the
    block return plain tensors and record no graph.

    Examples
    --------
    >>> with no_grad():
    ...     y = model(x)   # no gradients tracked
    >>> # Outside the context, gradients are tracked again.

    Notes
    -----
    It is safe to nest ``no_grad`` contexts, including re-entering the same
    instance; the previous frame is restored upon exit.
    """
    def __init__(self) -> None:
        self._pushed: List[AutodiffContext] = []

    def __enter__(self) -> AutodiffContext:
        frame = AutodiffContext(AutodiffMode.INFERENCE)
        _push(frame)
        self._pushed.append(frame)
        return frame

    def __exit__(self, *args: Any) -> None:
        _pop(self._pushed[-1])
        self._pushed.pop()

def is_training() -> bool:
    """Whether the calling thread's current frame is TRAINING."""
    return AutodiffContext.current().is_training

def with_autodiff(value: Any, requires_grad: bool = True) -> Any:
    """Wrap ``value`` as a leaf under TRAINING; return the plain value under INFERENCE."""
    return AutodiffContext.current().leaf(value, requires_grad)

def require_gradient(value: Any) -> Any:
    """Shortcut for ``with_autodiff(value, requires_grad=True)``."""
    return with_autodiff(value, requires_grad=True)
