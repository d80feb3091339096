import enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

from dagrad.backend import primitives_for_array
from dagrad.errors import ShapeError, StructuralError, UnsupportedOperationError
from dagrad.graph import ComputeNode
from dagrad.tensor import Tensor

ForwardFn = Callable[..., Any]
BackwardFn = Callable[[Any, Sequence[Any], Any], Sequence[Any]]
CheckFn = Callable[..., None]

class OpKind(enum.Enum):
    """The closed set of operation kinds the engine knows how to differentiate."""
    ADD = "add"
    MULTIPLY = "multiply"
    MATMUL = "matmul"
    ACTIVATION = "activation"
    CUSTOM = "custom"

class Operation:
    """
    An operation kind bundled with its forward function and backward rule.

    Forward and backward work on raw backend arrays (NumPy or CuPy). The
    backward rule receives the upstream gradient, the input arrays and the
    forward output, and returns exactly one gradient per input, in input
    order.

    Parameters
    ----------
    kind : OpKind
        Operation kind tag.
    name : str
        Human-readable name (``"Add"``, ``"ReLU"``, ...).
    arity : int
        Number of inputs.
    forward : callable
        ``forward(*arrays) -> array``.
    backward : callable, optional
        ``backward(grad, inputs, output) -> sequence of arrays``. Operations
        without one can be evaluated but not differentiated.
    check : callable, optional
        ``check(*shapes)``; raises :class:`ShapeError` for incompatible inputs.
    """
    def __init__(
        self,
        kind: OpKind,
        name: str,
        arity: int,
        forward: ForwardFn,
        backward: Optional[BackwardFn] = None,
        check: Optional[CheckFn] = None,
    ) -> None:
        self.kind = kind
        self.name = name
        self.arity = arity
        self.forward = forward
        self.backward = backward
        self.check = check

    @property
    def differentiable(self) -> bool:
        return self.backward is not None

    def __call__(self, *values: Tensor) -> Tensor:
        """
        Apply the operation to plain tensor values.

        Raises
        ------
        StructuralError
            If the number of values differs from ``arity``.
        ShapeError
            If the shapes are incompatible for this kind.
        """
        self._check_arity(len(values))
        if self.check is not None:
            self.check(*(v.shape for v in values))
        prims = values[0].primitives
        return Tensor._wrap(self.forward(*(v.data for v in values)), prims)

    def vjp(self, grad: Any, inputs: Sequence[Any], output: Any) -> Tuple[Any, ...]:
        """
        Run the backward rule on raw arrays.

        Raises
        ------
        UnsupportedOperationError
            If the operation has no backward rule.
        StructuralError
            If the rule does not return one gradient per input.
        """
        if self.backward is None:
            raise UnsupportedOperationError(
                f"Operation {self.name!r} has no backward rule; supply one to differentiate through it"
            )
        grads = tuple(self.backward(grad, inputs, output))
        if len(grads) != len(inputs):
            raise StructuralError(
                f"Backward rule of {self.name!r} returned {len(grads)} gradient(s) for {len(inputs)} input(s)"
            )
        return grads

    def gradients(self, grad: Tensor, inputs: Sequence[Tensor], output: Tensor) -> List[Tensor]:
        """Tensor-level :meth:`vjp`."""
        prims = grad.primitives
        raw = self.vjp(grad.data, [t.data for t in inputs], output.data)
        return [Tensor._wrap(g, prims) for g in raw]

    def _check_arity(self, n: int) -> None:
        if n != self.arity:
            raise StructuralError(f"{self.name} expects {self.arity} input(s), got {n}")

    def __repr__(self) -> str:
        return f"Operation({self.kind.name}, {self.name!r})"

def _same_shape(name: str) -> CheckFn:
    def check(a: Tuple[int, ...], b: Tuple[int, ...]) -> None:
        if a != b:
            raise ShapeError(f"{name}: shapes {a} and {b} differ (no implicit broadcasting)")
    return check

def _check_matmul(a: Tuple[int, ...], b: Tuple[int, ...]) -> None:
    if len(a) < 2 or len(b) < 2:
        raise ShapeError(f"Matmul: operands must have at least 2 dimensions, got {a} and {b}")
    if a[:-2] != b[:-2]:
        raise ShapeError(f"Matmul: batch dimensions {a[:-2]} and {b[:-2]} differ")
    if a[-1] != b[-2]:
        raise ShapeError(f"Matmul: inner dimensions do not match for {a} @ {b}")

def _add_forward(a: Any, b: Any) -> Any:
    return primitives_for_array(a).add(a, b)

def _add_backward(grad: Any, inputs: Sequence[Any], output: Any) -> Tuple[Any, Any]:
    # d(a + b)/da = d(a + b)/db = 1
    return grad, grad

def _multiply_forward(a: Any, b: Any) -> Any:
    return primitives_for_array(a).multiply(a, b)

def _multiply_backward(grad: Any, inputs: Sequence[Any], output: Any) -> Tuple[Any, Any]:
    a, b = inputs
    prims = primitives_for_array(grad)
    return prims.multiply(grad, b), prims.multiply(grad, a)

def _matmul_forward(a: Any, b: Any) -> Any:
    return primitives_for_array(a).matmul(a, b)

def _matmul_backward(grad: Any, inputs: Sequence[Any], output: Any) -> Tuple[Any, Any]:
    a, b = inputs
    prims = primitives_for_array(grad)
    return prims.matmul(grad, prims.transpose(b)), prims.matmul(prims.transpose(a), grad)

ADD = Operation(OpKind.ADD, "Add", 2, _add_forward, _add_backward, _same_shape("Add"))
MULTIPLY = Operation(OpKind.MULTIPLY, "Multiply", 2, _multiply_forward, _multiply_backward, _same_shape("Multiply"))
MATMUL = Operation(OpKind.MATMUL, "Matmul", 2, _matmul_forward, _matmul_backward, _check_matmul)

def activation(
    fn: Callable[[Any], Any],
    derivative: Callable[[Any], Any],
    name: str = "Activation",
) -> Operation:
    """
    Build an elementwise activation operation from ``f`` and ``f'``.

    There is no automatic differentiation of arbitrary functions: the
    derivative must be supplied alongside the function.

    Parameters
    ----------
    fn : callable
        ``fn(x) -> f(x)`` on a backend array.
    derivative : callable
        ``derivative(x) -> f'(x)`` on the same input array.
    name : str
        Name used in graph dumps and error messages.

    Notes
    -----
    Backward: ``dL/dx = g * f'(x)``.
    """
    def backward(grad: Any, inputs: Sequence[Any], output: Any) -> Tuple[Any]:
        (x,) = inputs
        return (primitives_for_array(grad).multiply(grad, derivative(x)),)

    return Operation(OpKind.ACTIVATION, name, 1, fn, backward)

def custom(
    name: str,
    forward: ForwardFn,
    backward: Optional[BackwardFn] = None,
    arity: int = 1,
    check: Optional[CheckFn] = None,
) -> Operation:
    """
    Build an operation outside the built-in kinds.

    Without ``backward`` the operation still evaluates, but differentiating
    through it raises :class:`UnsupportedOperationError` the first time a
    backward pass reaches it.

    Raises
    ------
    StructuralError
        If ``arity`` is less than one.
    """
    if arity < 1:
        raise StructuralError(f"{name} must take at least one input, got arity {arity}")
    return Operation(OpKind.CUSTOM, name, arity, forward, backward, check)

def _relu(x: Any) -> Any:
    return primitives_for_array(x).maximum(x, 0)

def _relu_grad(x: Any) -> Any:
    return (x > 0).astype(x.dtype)

def _sigmoid(x: Any) -> Any:
    return 1 / (1 + primitives_for_array(x).exp(-x))

def _sigmoid_grad(x: Any) -> Any:
    s = _sigmoid(x)
    return s - s**2

def _tanh(x: Any) -> Any:
    return primitives_for_array(x).tanh(x)

def _tanh_grad(x: Any) -> Any:
    return 1 - _tanh(x)**2

RELU = activation(_relu, _relu_grad, "ReLU")
SIGMOID = activation(_sigmoid, _sigmoid_grad, "Sigmoid")
TANH = activation(_tanh, _tanh_grad, "Tanh")

class DifferentiableNode(ComputeNode):
    """
    A compute node driven by an :class:`Operation`.

    Evaluation applies the operation's forward function to the evaluated
    inputs; :meth:`backpropagate` maps an upstream gradient to one gradient
    per input using the operation's backward rule.
    """
    def __init__(self, operation: Operation) -> None:
        super().__init__()
        self.operation = operation
        self.arity = operation.arity

    def combine(self, *values: Tensor) -> Tensor:
        return self.operation(*values)

    def backpropagate(self, gradient: Tensor) -> List[Tensor]:
        """
        Gradients of this node's output with respect to each input.

        Parameters
        ----------
        gradient : Tensor
            Gradient of the final result with respect to this node's output.

        Returns
        -------
        list of Tensor
            One gradient per input, in input order.
        """
        self._check_arity()
        values = [node.evaluate() for node in self.inputs]
        output = self.operation(*values)
        if gradient.shape != output.shape:
            raise ShapeError(f"Gradient shape {gradient.shape} does not match output shape {output.shape}")
        return self.operation.gradients(gradient, values, output)

    def label(self) -> str:
        return self.operation.name

class DifferentiableAddNode(DifferentiableNode):
    def __init__(self) -> None:
        super().__init__(ADD)

class DifferentiableMultiplyNode(DifferentiableNode):
    def __init__(self) -> None:
        super().__init__(MULTIPLY)

class DifferentiableMatmulNode(DifferentiableNode):
    def __init__(self) -> None:
        super().__init__(MATMUL)

class DifferentiableActivationNode(DifferentiableNode):
    """Activation node carrying its own derivative (see :func:`activation`)."""
    def __init__(
        self,
        fn: Callable[[Any], Any],
        derivative: Callable[[Any], Any],
        name: str = "DifferentiableActivation",
    ) -> None:
        super().__init__(activation(fn, derivative, name))
