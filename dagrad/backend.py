from typing import Any, Dict, Literal, Optional, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

def _is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    This is safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)

_DeviceStr = Literal["cpu", "cuda"]
def normalize_device(device: Optional[Union[str, _DeviceStr]]) -> Optional[_DeviceStr]:
    """
    Normalize a device specifier to 'cpu', 'cuda', or None.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', str}
        Device specifier. If a string starts with 'cuda' (e.g. 'cuda', 'cuda:0'),
        it is normalized to 'cuda'. 'cpu' is preserved. None is returned as None.

    Returns
    -------
    {'cpu', 'cuda', None}
        Normalized device identifier.

    Raises
    ------
    ValueError
        If ``device`` is a string that is neither 'cpu' nor startswith 'cuda'.

    Examples
    --------
    >>> normalize_device(None)
    >>> normalize_device('cpu')
    'cpu'
    >>> normalize_device('cuda:1')
    'cuda'
    >>> normalize_device('gpu')
    Traceback (most recent call last):
        ...
    ValueError: Unknown device spec: 'gpu'
    """
    if device is None:
        return None
    if isinstance(device, str):
        dev = device.lower()
        if dev == "cpu":
            return "cpu"
        if dev.startswith("cuda"):
            return "cuda"
    raise ValueError(f"Unknown device spec: {device!r}")


class Primitives:
    """
    The set of array primitives that operations are computed with.

    Operations never call NumPy or CuPy directly; they ask the primitive set
    of their first operand. This keeps the graph core independent of the
    device a tensor lives on.

    Parameters
    ----------
    xp : module
        Array module providing the NumPy API (``numpy`` or ``cupy``).
    device : {'cpu', 'cuda'}
        Device name reported for arrays created by this set.
    """
    def __init__(self, xp: Any, device: _DeviceStr) -> None:
        self.xp = xp
        self.device = device

    def asarray(self, data: Any) -> Any:
        """Convert ``data`` to a ``float32`` array of this backend."""
        return self.xp.asarray(data, dtype=self.xp.float32)

    def add(self, a: Any, b: Any) -> Any:
        return self.xp.add(a, b)

    def multiply(self, a: Any, b: Any) -> Any:
        return self.xp.multiply(a, b)

    def matmul(self, a: Any, b: Any) -> Any:
        return self.xp.matmul(a, b)

    def transpose(self, a: Any) -> Any:
        """Swap the last two axes (matrix transpose)."""
        return self.xp.swapaxes(a, -1, -2)

    def ones_like(self, a: Any) -> Any:
        return self.xp.ones_like(a)

    def zeros_like(self, a: Any) -> Any:
        return self.xp.zeros_like(a)

    def maximum(self, a: Any, b: Any) -> Any:
        return self.xp.maximum(a, b)

    def exp(self, a: Any) -> Any:
        return self.xp.exp(a)

    def tanh(self, a: Any) -> Any:
        return self.xp.tanh(a)

    def __repr__(self) -> str:
        return f"Primitives(device={self.device!r})"


_PRIMITIVES: Dict[str, Primitives] = {"cpu": Primitives(np, "cpu")}

def get_primitives(device: Optional[str] = None) -> Primitives:
    """
    Return the primitive set for ``device`` (default CPU).

    Raises
    ------
    RuntimeError
        If CUDA is requested but CuPy is not installed/available.
    """
    dev = normalize_device(device) or "cpu"
    if dev == "cuda" and "cuda" not in _PRIMITIVES:
        if not _HAS_CUPY:
            raise RuntimeError("CUDA requested but CuPy is not installed/available.")
        _PRIMITIVES["cuda"] = Primitives(cp, "cuda")
    return _PRIMITIVES[dev]

def register_primitives(device: str, prims: Primitives) -> Optional[Primitives]:
    """
    Install ``prims`` as the primitive set used for arrays on ``device``.

    Every operation looks its primitives up through :func:`get_primitives`,
    so the new set takes effect for all later forward and backward calls.

    Parameters
    ----------
    device : {'cpu', 'cuda', 'cuda:0', ...}
        Device the primitive set serves.
    prims : Primitives
        Replacement set, typically a subclass overriding some primitives.

    Returns
    -------
    Primitives or None
        The previously registered set, so callers can restore it.

    Raises
    ------
    ValueError
        If ``device`` is not a known device spec.
    TypeError
        If ``prims`` is not a :class:`Primitives` instance.
    """
    dev = normalize_device(device)
    if dev is None:
        raise ValueError("register_primitives() needs a device")
    if not isinstance(prims, Primitives):
        raise TypeError(f"Expected a Primitives instance, got {type(prims).__name__}")
    previous = _PRIMITIVES.get(dev)
    _PRIMITIVES[dev] = prims
    return previous

def primitives_for_array(x: Any) -> Primitives:
    """Infer the primitive set from an existing array (CuPy -> CUDA, else CPU)."""
    return get_primitives("cuda" if _is_cupy_array(x) else "cpu")

def to_host(x: Any) -> np.ndarray:
    """Copy a backend array to a NumPy array on the host."""
    if _is_cupy_array(x):
        return cp.asnumpy(x)
    return np.asarray(x)
