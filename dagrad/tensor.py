import itertools
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from dagrad.backend import (
    Primitives,
    _is_cupy_array,
    get_primitives,
    normalize_device,
    primitives_for_array,
    to_host,
)
from dagrad.errors import ShapeError

class Tensor:
    """
    An immutable multi-dimensional array of ``float32`` values.

    A ``Tensor`` is a plain value: a shape, a flat row-major buffer and a
    multi-index accessor. It records no provenance and carries no gradient;
    see :class:`dagrad.autograd.AutogradTensor` for the tracked counterpart.

    Notes
    -----
    - Backend is chosen per tensor: CPU uses NumPy, CUDA uses CuPy.
    - DType is normalized to ``float32`` on construction.
    - The data is copied on construction and the NumPy buffer is marked
      read-only, so a tensor never changes after it is built.
    - Arithmetic (``+``, ``*``, ``@``) is elementwise/matrix arithmetic with
      identical shapes required; there is no implicit broadcasting.
    """
    # NumPy defers to the reflected operators instead of building object arrays.
    __array_ufunc__ = None

    def __init__(
        self,
        data: Any,
        shape: Optional[Sequence[int]] = None,
        device: Optional[str] = None,
    ) -> None:
        """
        Construct a tensor from array-like data.

        Parameters
        ----------
        data : Any
            Array-like input (Python scalar, list/tuple, ``numpy.ndarray``,
            ``cupy.ndarray`` or another ``Tensor``). When ``shape`` is given,
            ``data`` is either a flat sequence of ``prod(shape)`` scalars laid
            out row-major, or a single scalar that fills the whole shape.
        shape : sequence of int, optional
            Target shape. Every dimension must be positive.
        device : {'cpu', 'cuda', 'cuda:0', ...} or None, optional
            Desired device. If None, the device is inferred from ``data``
            (CuPy -> 'cuda', otherwise 'cpu').

        Raises
        ------
        ShapeError
            If a dimension is not positive or ``data`` does not hold exactly
            ``prod(shape)`` values.
        RuntimeError
            If ``device`` requests CUDA but CuPy is not installed/available.

        Examples
        --------
        >>> Tensor([1, 2, 3])
        >>> Tensor([1, 2, 3, 4], shape=(2, 2))
        >>> Tensor(0.5, shape=(2, 3))
        """
        if isinstance(data, Tensor):
            data = data._data

        dev = normalize_device(device)
        if dev is None:
            prims = primitives_for_array(data)
        else:
            prims = get_primitives(dev)
            if dev == "cpu" and _is_cupy_array(data):
                data = to_host(data)

        arr = prims.xp.array(data, dtype=prims.xp.float32)
        if shape is not None:
            shape = tuple(int(d) for d in shape)
            Tensor._check_dims(shape)
            if arr.ndim == 0:
                arr = prims.xp.full(shape, arr, dtype=prims.xp.float32)
            elif arr.size != _volume(shape):
                raise ShapeError(
                    f"Cannot build a tensor of shape {shape} from {arr.size} values"
                )
            else:
                arr = arr.reshape(shape)
        Tensor._check_dims(arr.shape)

        self._init_from_array(arr, prims)

    def _init_from_array(self, arr: Any, prims: Primitives) -> None:
        if isinstance(arr, np.ndarray):
            arr.flags.writeable = False
        self._data = arr
        self._primitives = prims

    @classmethod
    def _wrap(cls, arr: Any, prims: Optional[Primitives] = None) -> "Tensor":
        """Internal: adopt a backend array produced by an operation without copying."""
        prims = prims or primitives_for_array(arr)
        # Operations on rank-0 arrays return NumPy scalars.
        arr = prims.asarray(arr)
        out = cls.__new__(cls)
        out._init_from_array(arr, prims)
        return out

    @staticmethod
    def _check_dims(shape: Tuple[int, ...]) -> None:
        if any(d <= 0 for d in shape):
            raise ShapeError(f"Tensor dimensions must be positive, got {shape}")

    @property
    def data(self) -> Any:
        """numpy.ndarray or cupy.ndarray: The read-only backend array."""
        return self._data

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The tensor's shape."""
        return tuple(self._data.shape)

    @property
    def dtype(self) -> Union[np.dtype, str]:
        """numpy.dtype: The data type of the tensor."""
        return self._data.dtype

    @property
    def ndim(self) -> int:
        """int: The number of dimensions of the tensor."""
        return self._data.ndim

    @property
    def size(self) -> int:
        """int: Total number of elements in the tensor."""
        return int(self._data.size)

    @property
    def device(self) -> str:
        """str: ``'cpu'`` or ``'cuda'``."""
        return self._primitives.device

    @property
    def primitives(self) -> Primitives:
        """Primitives: The backend primitive set used for operations on this tensor."""
        return self._primitives

    def xp(self) -> Any:
        """Return the current array backend (NumPy or CuPy)."""
        return self._primitives.xp

    def flat(self) -> List[float]:
        """Return the backing buffer as a flat row-major list of floats."""
        return to_host(self._data).ravel().tolist()

    def item(self) -> float:
        """Return the single value of a one-element tensor as a Python float."""
        if self.size != 1:
            raise ShapeError(f"item() needs a single-element tensor, got shape {self.shape}")
        return float(to_host(self._data).reshape(()))

    def __getitem__(self, idx: Union[int, Tuple[int, ...]]) -> float:
        """
        Read one element by its multi-index.

        Parameters
        ----------
        idx : int or tuple of int
            One index per dimension (``()`` for a scalar tensor).

        Returns
        -------
        float
            The element at ``idx``.

        Raises
        ------
        ShapeError
            If the number of indices differs from ``ndim``.
        IndexError
            If an index is out of range.
        """
        if not isinstance(idx, tuple):
            idx = (idx,)
        if len(idx) != self.ndim:
            raise ShapeError(f"Expected {self.ndim} indices for shape {self.shape}, got {len(idx)}")
        for i, (k, dim) in enumerate(zip(idx, self.shape)):
            if not isinstance(k, (int, np.integer)):
                raise TypeError(f"Tensor indices must be integers, got {type(k).__name__}")
            if not -dim <= k < dim:
                raise IndexError(f"Index {k} is out of range for dimension {i} of size {dim}")
        return float(self._data[idx])

    def _binary(self, op_name: str, other: Union["Tensor", Any], reflected: bool = False) -> "Tensor":
        from dagrad import ops
        from dagrad.autograd import AutogradTensor

        # Let the tracked operand's reflected method record provenance.
        if isinstance(other, AutogradTensor):
            return NotImplemented
        other = self._ensure_tensor(other)
        op = getattr(ops, op_name)
        return op(other, self) if reflected else op(self, other)

    def __add__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Elementwise addition; shapes must match."""
        return self._binary("ADD", other)

    def __radd__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand addition: ``other + self``."""
        return self._binary("ADD", other, reflected=True)

    def __mul__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Elementwise (Hadamard) product; shapes must match."""
        return self._binary("MULTIPLY", other)

    def __rmul__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Right-hand multiplication: ``other * self``."""
        return self._binary("MULTIPLY", other, reflected=True)

    def __matmul__(self, other: Union["Tensor", Any]) -> "Tensor":
        """Matrix product over the last two axes."""
        return self._binary("MATMUL", other)

    def __rmatmul__(self, other: Union["Tensor", Any]) -> "Tensor":
        return self._binary("MATMUL", other, reflected=True)

    def relu(self) -> "Tensor":
        from dagrad.ops import RELU
        return RELU(self)

    def sigmoid(self) -> "Tensor":
        from dagrad.ops import SIGMOID
        return SIGMOID(self)

    def tanh(self) -> "Tensor":
        from dagrad.ops import TANH
        return TANH(self)

    def transpose(self) -> "Tensor":
        """Swap the last two axes."""
        if self.ndim < 2:
            raise ShapeError(f"transpose() needs at least 2 dimensions, got shape {self.shape}")
        return Tensor._wrap(self._primitives.transpose(self._data), self._primitives)

    @property
    def T(self) -> "Tensor":
        """Tensor: Matrix transpose (last two axes swapped)."""
        return self.transpose()

    def __eq__(self, other: object) -> bool:
        """Structural equality: same shape and same values."""
        if not isinstance(other, Tensor):
            return NotImplemented
        if self.shape != other.shape:
            return False
        return bool(np.array_equal(to_host(self._data), to_host(other._data)))

    def __ne__(self, other: object) -> bool:
        eq = self.__eq__(other)
        return eq if eq is NotImplemented else not eq

    __hash__ = None

    def __repr__(self) -> str:
        """
        Returns a readable string representation of the tensor.

        Examples
        --------
        >>> print(Tensor([[1, 2], [3, 4]]))
        tensor([[1., 2.],
                [3., 4.]], dtype=float32, device='cpu')
        """
        data_str = np.array2string(to_host(self._data), separator=', ', prefix='tensor(')
        return f"tensor({data_str}, dtype={self.dtype}, device='{self.device}')"

    def to(
        self,
        device: str,
    ) -> "Tensor":
        """
        Return a copy of the tensor on ``device`` (``self`` if it already lives there).

        Raises
        ------
        RuntimeError
            If ``"cuda"`` is requested but CuPy is not installed or available.
        """
        dev = normalize_device(device)
        if dev == self.device:
            return self
        return Tensor(self._data, device=dev)

    def _ensure_tensor(self, x: Union["Tensor", Any]) -> "Tensor":
        """
        Ensure that ``x`` is a :class:``Tensor`` on this tensor's device.

        Notes
        -----
        Scalars become rank-0 tensors, so they only combine with rank-0 tensors.
        """
        if isinstance(x, Tensor):
            return x
        return Tensor(x, device=self.device)

    @staticmethod
    def from_provider(
        source: Any,
        device: Optional[str] = None,
    ) -> "Tensor":
        """
        Build a tensor from anything that exposes ``shape`` and multi-index access.

        This is the boundary with external weight readers: arrays (NumPy,
        CuPy, nested lists) are converted directly, any other object is read
        element by element through ``source[i, j, ...]``.

        Parameters
        ----------
        source : Any
            A ``Tensor``, an array-like, or an object with a ``shape`` attribute
            and ``__getitem__`` accepting a tuple of ints.
        device : str, optional
            Target device.

        Returns
        -------
        Tensor
        """
        if isinstance(source, Tensor):
            return source if device is None else source.to(device)
        if isinstance(source, (np.ndarray, list, tuple, int, float)) or _is_cupy_array(source):
            return Tensor(source, device=device)
        shape = tuple(int(d) for d in source.shape)
        values = [source[idx] for idx in itertools.product(*(range(d) for d in shape))]
        return Tensor(values, shape=shape, device=device)

    @staticmethod
    def full(
        shape: Sequence[int],
        value: float,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """Create a tensor of ``shape`` with every element equal to ``value``."""
        return Tensor(value, shape=shape, device=device)

    @staticmethod
    def zeros(
        *shape: int,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """
        Create a tensor filled with zeros.

        Parameters
        ----------
        *shape : int
            Shape of the output tensor.
        device : str or None, default="cpu"
            Target device for the tensor (``"cpu"`` or ``"cuda"``).

        Raises
        ------
        ShapeError
            If a dimension is not positive.
        """
        Tensor._check_dims(shape)
        prims = get_primitives(device)
        return Tensor._wrap(prims.xp.zeros(shape, dtype=prims.xp.float32), prims)

    @staticmethod
    def ones(
        *shape: int,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """Create a tensor filled with ones (see :meth:`zeros`)."""
        Tensor._check_dims(shape)
        prims = get_primitives(device)
        return Tensor._wrap(prims.xp.ones(shape, dtype=prims.xp.float32), prims)

    @staticmethod
    def randn(
        *shape: int,
        scale: float = 1.0,
        device: Optional[str] = "cpu",
    ) -> "Tensor":
        """
        Create a tensor with values sampled from a normal distribution.

        Samples i.i.d. values from ``N(0, 1)`` and scales them by ``scale``,
        resulting in a distribution ``N(0, scale^2)``.
        """
        Tensor._check_dims(shape)
        prims = get_primitives(device)
        data = scale * prims.xp.random.randn(*shape).astype(prims.xp.float32)
        return Tensor._wrap(data, prims)

def _volume(shape: Tuple[int, ...]) -> int:
    n = 1
    for d in shape:
        n *= d
    return n
