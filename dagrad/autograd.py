import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from dagrad import ops
from dagrad.context import AutodiffContext
from dagrad.errors import ShapeError, UsageError
from dagrad.ops import Operation
from dagrad.tensor import Tensor

logger = logging.getLogger(__name__)

Operand = Union["AutogradTensor", Tensor, Any]

class AutogradTensor:
    """
    A tensor value with provenance, used while training.

    An ``AutogradTensor`` is either a *leaf* (no producing operation) or
    *derived* (produced by ``operation`` from ``parents``). Which one it is
    never changes after construction; the only mutable state is ``grad``,
    written by :meth:`backward` and :meth:`zero_grad`.

    Notes
    -----
    - Operators (``+``, ``*``, ``@``) and activations go through
      :func:`apply`, which records provenance only while the current
      :class:`~dagrad.context.AutodiffContext` frame is TRAINING.
    - ``requires_grad`` of a derived tensor is True iff at least one parent
      requires gradients.
    - Equality and hashing are by identity, so tensors can key dictionaries.
    """
    # NumPy defers to the reflected operators instead of building object arrays.
    __array_ufunc__ = None

    def __init__(
        self,
        value: Any,
        requires_grad: bool = False,
        operation: Optional[Operation] = None,
        parents: Tuple["AutogradTensor", ...] = (),
    ) -> None:
        """
        Parameters
        ----------
        value : Tensor or array-like
            The forward value.
        requires_grad : bool, default False
            Whether ``backward`` should populate ``grad`` for this tensor.
        operation : Operation, optional
            Internal: the operation that produced this tensor.
        parents : tuple of AutogradTensor, optional
            Internal: the operation's inputs, in order.
        """
        if not isinstance(value, Tensor):
            value = Tensor(value)
        self._value = value
        self._requires_grad = bool(requires_grad)
        self._operation = operation
        self._parents = tuple(parents)
        self._grad: Optional[Tensor] = None

    @property
    def value(self) -> Tensor:
        """Tensor: The forward value."""
        return self._value

    @property
    def requires_grad(self) -> bool:
        return self._requires_grad

    @property
    def operation(self) -> Optional[Operation]:
        """Operation or None: The producing operation (None for leaves)."""
        return self._operation

    @property
    def parents(self) -> Tuple["AutogradTensor", ...]:
        """tuple of AutogradTensor: The producing operation's inputs, in order."""
        return self._parents

    @property
    def is_leaf(self) -> bool:
        return self._operation is None

    @property
    def grad(self) -> Optional[Tensor]:
        """Tensor or None: Gradient from the last :meth:`backward` that reached this tensor."""
        return self._grad

    @property
    def data(self) -> Any:
        return self._value.data

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._value.shape

    @property
    def ndim(self) -> int:
        return self._value.ndim

    @property
    def size(self) -> int:
        return self._value.size

    @property
    def device(self) -> str:
        return self._value.device

    def item(self) -> float:
        return self._value.item()

    def __getitem__(self, idx: Union[int, Tuple[int, ...]]) -> float:
        """Read one element of the value by its multi-index (not tracked)."""
        return self._value[idx]

    def apply(self, operation: Operation, *others: Operand) -> Union["AutogradTensor", Tensor]:
        """Apply ``operation`` to ``(self, *others)`` (see :func:`apply`)."""
        return apply(operation, self, *others)

    def __add__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        """
        Elementwise addition.

        Notes
        -----
        Gradients: ``dL/dself = out.grad`` and ``dL/dother = out.grad``.
        Shapes must match exactly.
        """
        return apply(ops.ADD, self, other)

    def __radd__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        return apply(ops.ADD, other, self)

    def __mul__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        """
        Elementwise multiplication.

        Notes
        -----
        Gradients: ``dL/dself = other * out.grad``,
        ``dL/dother = self * out.grad``.
        """
        return apply(ops.MULTIPLY, self, other)

    def __rmul__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        return apply(ops.MULTIPLY, other, self)

    def __matmul__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        """
        Matrix multiply over the last two axes (batch dimensions must match).

        Notes
        -----
        Gradients:
            - ``dL/dself = out.grad @ swapaxes(other, -1, -2)``
            - ``dL/dother = swapaxes(self, -1, -2) @ out.grad``
        """
        return apply(ops.MATMUL, self, other)

    def __rmatmul__(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        return apply(ops.MATMUL, other, self)

    def matmul(self, other: Operand) -> Union["AutogradTensor", Tensor]:
        return self @ other

    def relu(self) -> Union["AutogradTensor", Tensor]:
        """Element-wise ReLU; ``d(ReLU(x))/dx = 1`` if ``x > 0`` else ``0``."""
        return apply(ops.RELU, self)

    def sigmoid(self) -> Union["AutogradTensor", Tensor]:
        """Element-wise logistic sigmoid; ``d/dx = sigmoid(x) * (1 - sigmoid(x))``."""
        return apply(ops.SIGMOID, self)

    def tanh(self) -> Union["AutogradTensor", Tensor]:
        """Element-wise hyperbolic tangent; ``d/dx = 1 - tanh(x)^2``."""
        return apply(ops.TANH, self)

    def backward(
        self,
        gradient: Optional[Any] = None,
        accumulate: bool = False,
    ) -> None:
        """
        Backpropagate from this tensor through the recorded graph.

        Parameters
        ----------
        gradient : Tensor or array-like, optional
            Seed gradient of the final result with respect to this tensor.
            Defaults to ones of this tensor's shape (which allows calling
            ``backward()`` on non-scalar tensors).
        accumulate : bool, default False
            If False, each tensor reached by this pass gets the gradient of
            this pass only. If True, it is added to any existing ``grad``.

        Raises
        ------
        UsageError
            If this tensor does not require gradients, or the current
            frame is INFERENCE.
        ShapeError
            If ``gradient`` does not match this tensor's shape.

        Examples
        --------
        >>> x = AutogradTensor(3.0, requires_grad=True)
        >>> y = x + x * x
        >>> y.backward()
        >>> x.grad.item()
        7.0
        """
        backward(self, gradient, accumulate=accumulate)

    def zero_grad(self) -> None:
        """Resets the gradient of this tensor to zero (only if it requires gradients)."""
        if self._requires_grad:
            prims = self._value.primitives
            self._grad = Tensor._wrap(prims.zeros_like(self.data), prims)

    def detach(self) -> "AutogradTensor":
        """Return a new leaf over the same value that does not require gradients."""
        return AutogradTensor(self._value)

    def __repr__(self) -> str:
        """
        Examples
        --------
        >>> AutogradTensor([1.0, 2.0], requires_grad=True)
        tensor([1., 2.], dtype=float32, device='cpu', requires_grad=True)
        """
        base = repr(self._value)[:-1]
        details = f"requires_grad={self._requires_grad}"
        if self._operation is not None:
            details += f", op={self._operation.name}"
        return f"{base}, {details})"

def _as_value(x: Operand, device: Optional[str]) -> Tensor:
    if isinstance(x, AutogradTensor):
        return x.value
    if isinstance(x, Tensor):
        return x
    return Tensor(x, device=device)

def apply(operation: Operation, *operands: Operand) -> Union[AutogradTensor, Tensor]:
    """
    Run ``operation`` on ``operands`` and record provenance when training.

    Operands may be :class:`AutogradTensor`, plain :class:`Tensor` values, or
    array-likes. The result is:

    - a plain ``Tensor`` if the current frame is INFERENCE or no operand is
      an ``AutogradTensor``;
    - otherwise a derived ``AutogradTensor`` whose parents are the operands
      (plain values are wrapped as leaves that do not require gradients) and
      whose ``requires_grad`` is True iff some parent requires gradients.

    Raises
    ------
    StructuralError
        If the number of operands differs from the operation's arity.
    ShapeError
        If operand shapes are incompatible.
    """
    device = next(
        (x.device for x in operands if isinstance(x, (AutogradTensor, Tensor))),
        None,
    )
    values = [_as_value(x, device) for x in operands]
    out = operation(*values)

    if not AutodiffContext.current().is_training:
        return out
    if not any(isinstance(x, AutogradTensor) for x in operands):
        return out

    parents = tuple(
        x if isinstance(x, AutogradTensor) else AutogradTensor(v)
        for x, v in zip(operands, values)
    )
    requires_grad = any(p.requires_grad for p in parents)
    return AutogradTensor(out, requires_grad=requires_grad, operation=operation, parents=parents)

def _seed(root: AutogradTensor, gradient: Optional[Any]) -> Tensor:
    if gradient is None:
        return Tensor._wrap(root.value.primitives.ones_like(root.data), root.value.primitives)
    if isinstance(gradient, AutogradTensor):
        gradient = gradient.value
    seed = gradient.to(root.device) if isinstance(gradient, Tensor) else Tensor(gradient, device=root.device)
    if seed.shape != root.shape:
        raise ShapeError(f"Seed gradient shape {seed.shape} does not match tensor shape {root.shape}")
    return seed

def _topological(
    root: AutogradTensor,
    follow: Callable[[AutogradTensor], bool],
) -> List[AutogradTensor]:
    """
    Post-order over parent edges: every tensor after all of its ancestors.

    Iterative, so deep graphs do not hit the recursion limit. Only parents
    for which ``follow`` is True are visited.
    """
    order: List[AutogradTensor] = []
    visited = set()
    stack: List[Tuple[AutogradTensor, bool]] = [(root, False)]
    while stack:
        t, expanded = stack.pop()
        if expanded:
            order.append(t)
            continue
        if id(t) in visited:
            continue
        visited.add(id(t))
        stack.append((t, True))
        for parent in reversed(t.parents):
            if id(parent) not in visited and follow(parent):
                stack.append((parent, False))
    return order

def backward(
    root: AutogradTensor,
    gradient: Optional[Any] = None,
    accumulate: bool = False,
) -> None:
    """
    Reverse-mode traversal from ``root``; see :meth:`AutogradTensor.backward`.

    Notes
    -----
    - Tensors are processed root first, each one only after every consumer
      inside this traversal has contributed to its gradient, so each
      backward rule runs once with the fully accumulated gradient.
    - Contributions reaching the same tensor through different consumers
      are summed.
    - Parents that do not require gradients are pruned: by construction
      nothing above them requires gradients either.
    """
    if not AutodiffContext.current().is_training:
        raise UsageError("backward() is not available while inference is active")
    if not isinstance(root, AutogradTensor):
        raise UsageError("backward() needs an AutogradTensor; plain values record no graph")
    if not root.requires_grad:
        raise UsageError("Tensor does not require gradient")
    seed = _seed(root, gradient)

    order = _topological(root, lambda t: t.requires_grad)
    order.reverse()
    logger.debug("backward: %d tensor(s) in traversal from %r", len(order), root.operation or "leaf")

    grads: Dict[int, Any] = {id(root): seed.data}
    pruned = 0
    for t in order:
        g = grads.get(id(t))
        if g is None or t.operation is None:
            continue
        contributions = t.operation.vjp(g, [p.data for p in t.parents], t.data)
        prims = t.value.primitives
        for parent, contribution in zip(t.parents, contributions):
            if not parent.requires_grad:
                pruned += 1
                continue
            if tuple(contribution.shape) != parent.shape:
                raise ShapeError(
                    f"{t.operation.name} backward produced gradient of shape "
                    f"{tuple(contribution.shape)} for input of shape {parent.shape}"
                )
            key = id(parent)
            if key in grads:
                grads[key] = prims.add(grads[key], contribution)
            else:
                grads[key] = contribution
    logger.debug("backward: pruned %d input(s) that do not require gradients", pruned)

    for t in order:
        g = grads.get(id(t))
        if g is None:
            continue
        new_grad = Tensor._wrap(g, t.value.primitives)
        if accumulate and t._grad is not None:
            new_grad = t._grad + new_grad
        t._grad = new_grad

def iter_graph(root: AutogradTensor) -> Iterator[AutogradTensor]:
    """
    Yield every tensor reachable from ``root``, parents before consumers.

    Read-only: walking the graph neither changes provenance nor gradients.
    """
    yield from _topological(root, lambda t: True)

def describe(t: AutogradTensor) -> str:
    """Operation name of a derived tensor, or ``"Leaf"``."""
    return "Leaf" if t.operation is None else t.operation.name
