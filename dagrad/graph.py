from typing import Any, Callable, List, Optional, Sequence, Union

from dagrad.errors import StructuralError

class ComputeNode:
    """
    Base class for nodes of an evaluatable expression graph.

    A node owns an ordered list of input nodes. Inputs are shared, not owned:
    one node may feed several consumers, which makes the structure a DAG.
    Since a node's inputs have to exist before the node is wired to them, no
    cycle can be built.

    Subclasses set ``arity`` (``None`` accepts any number of inputs) and
    implement :meth:`combine`. The number of inputs is checked lazily, when
    the node is evaluated, not when it is constructed.

    Parameters
    ----------
    inputs : sequence of ComputeNode, optional
        Initial input nodes. More can be appended to ``inputs`` afterwards.
    """
    arity: Optional[int] = None

    def __init__(self, inputs: Sequence["ComputeNode"] = ()) -> None:
        self.inputs: List[ComputeNode] = list(inputs)

    def evaluate(self) -> Any:
        """
        Evaluate every input, then combine their values.

        Raises
        ------
        StructuralError
            If the node has the wrong number of inputs for its kind.
        """
        self._check_arity()
        return self.combine(*[node.evaluate() for node in self.inputs])

    def combine(self, *values: Any) -> Any:
        raise NotImplementedError

    def label(self) -> str:
        """One-line description used by :func:`format_graph`."""
        return type(self).__name__

    def lazy(self) -> "LazyComputeNode":
        """Wrap this node in a :class:`LazyComputeNode`."""
        return LazyComputeNode(self)

    def _check_arity(self) -> None:
        if self.arity is not None and len(self.inputs) != self.arity:
            raise StructuralError(
                f"{self.label()} node expects {self.arity} input(s), got {len(self.inputs)}"
            )

class ValueNode(ComputeNode):
    """A leaf node holding a constant value."""
    arity = 0

    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value

    def combine(self) -> Any:
        return self.value

    def label(self) -> str:
        return f"Value({self.value})"

class AddNode(ComputeNode):
    """
    Adds its two inputs.

    ``add`` is the combine function; if omitted, the operands' own ``+`` is
    used, which for :class:`~dagrad.tensor.Tensor` values dispatches to the
    backend primitives of the operands.
    """
    arity = 2

    def __init__(self, add: Optional[Callable[[Any, Any], Any]] = None) -> None:
        super().__init__()
        self.add = add

    def combine(self, a: Any, b: Any) -> Any:
        return self.add(a, b) if self.add is not None else a + b

    def label(self) -> str:
        return "Add"

class MultiplyNode(ComputeNode):
    """Multiplies its two inputs elementwise (see :class:`AddNode`)."""
    arity = 2

    def __init__(self, multiply: Optional[Callable[[Any, Any], Any]] = None) -> None:
        super().__init__()
        self.multiply = multiply

    def combine(self, a: Any, b: Any) -> Any:
        return self.multiply(a, b) if self.multiply is not None else a * b

    def label(self) -> str:
        return "Multiply"

class MatmulNode(ComputeNode):
    """Matrix product of its two inputs."""
    arity = 2

    def __init__(self, matmul: Optional[Callable[[Any, Any], Any]] = None) -> None:
        super().__init__()
        self.matmul = matmul

    def combine(self, a: Any, b: Any) -> Any:
        return self.matmul(a, b) if self.matmul is not None else a @ b

    def label(self) -> str:
        return "Matmul"

class ActivationNode(ComputeNode):
    """Applies ``activation_fn`` to its single input; ``name`` is its label."""
    arity = 1

    def __init__(self, activation_fn: Callable[[Any], Any], name: str) -> None:
        super().__init__()
        self.activation_fn = activation_fn
        self.name = name

    def combine(self, x: Any) -> Any:
        return self.activation_fn(x)

    def label(self) -> str:
        return self.name

class LazyComputeNode(ComputeNode):
    """
    Caches the result of the wrapped node.

    The first :meth:`evaluate` computes and stores the wrapped node's value;
    later calls return that same object without touching the graph below
    until :meth:`clear_cache` is called.
    """
    arity = 1

    def __init__(self, node: ComputeNode) -> None:
        super().__init__([node])
        self._cached: Any = None
        self._has_result = False

    @property
    def node(self) -> ComputeNode:
        return self.inputs[0]

    def evaluate(self) -> Any:
        if not self._has_result:
            self._check_arity()
            self._cached = self.node.evaluate()
            self._has_result = True
        return self._cached

    def clear_cache(self) -> None:
        """Force recomputation on the next :meth:`evaluate`."""
        self._cached = None
        self._has_result = False

    def label(self) -> str:
        return "Lazy"

def format_graph(node: ComputeNode, indent: str = "") -> str:
    """
    Render a node and its inputs as an indented tree, one node per line.

    Examples
    --------
    >>> add = AddNode(); add.inputs += [ValueNode(5), ValueNode(7)]
    >>> print(format_graph(add), end="")
    Add
      Value(5)
      Value(7)
    """
    lines = [f"{indent}{node.label()}\n"]
    for child in node.inputs:
        lines.append(format_graph(child, indent + "  "))
    return "".join(lines)

class Expr:
    """
    Thin wrapper for building node graphs with expression syntax.

    Examples
    --------
    >>> e = (value(5) + value(3)) * value(2)
    >>> e.evaluate()
    16
    """
    def __init__(self, node: ComputeNode) -> None:
        self.node = node

    def plus(self, other: Union["Expr", Any], add: Optional[Callable[[Any, Any], Any]] = None) -> "Expr":
        return self._binary(AddNode(add), other)

    def times(self, other: Union["Expr", Any], multiply: Optional[Callable[[Any, Any], Any]] = None) -> "Expr":
        return self._binary(MultiplyNode(multiply), other)

    def matmul(self, other: Union["Expr", Any], matmul: Optional[Callable[[Any, Any], Any]] = None) -> "Expr":
        return self._binary(MatmulNode(matmul), other)

    def apply(self, activation_fn: Callable[[Any], Any], name: str) -> "Expr":
        node = ActivationNode(activation_fn, name)
        node.inputs.append(self.node)
        return Expr(node)

    def lazy(self) -> "Expr":
        return Expr(self.node.lazy())

    def evaluate(self) -> Any:
        return self.node.evaluate()

    def __add__(self, other: Union["Expr", Any]) -> "Expr":
        return self.plus(other)

    def __mul__(self, other: Union["Expr", Any]) -> "Expr":
        return self.times(other)

    def __matmul__(self, other: Union["Expr", Any]) -> "Expr":
        return self.matmul(other)

    def __repr__(self) -> str:
        return f"Expr({self.node.label()})"

    def _binary(self, node: ComputeNode, other: Union["Expr", Any]) -> "Expr":
        other_node = other.node if isinstance(other, Expr) else ValueNode(other)
        node.inputs += [self.node, other_node]
        return Expr(node)

def value(v: Any) -> Expr:
    """Create an expression holding the constant ``v``."""
    return Expr(ValueNode(v))
