import contextlib
from typing import Any, Literal, Optional, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

_DeviceStr = Literal["cpu", "cuda"]
_DTYPES = {"float32": np.float32, "float64": np.float64}


def has_cupy() -> bool:
    """Return whether CuPy imported successfully."""
    return _HAS_CUPY


def is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    Safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)


def get_backend(x: Any) -> Any:
    """Return the array module (``numpy`` or ``cupy``) that owns ``x``."""
    return cp if is_cupy_array(x) else np


def backend_for(device: _DeviceStr) -> Any:
    """
    Return the array module for a normalized device.

    Raises
    ------
    RuntimeError
        If ``device`` is 'cuda' but CuPy is not installed/available.
    """
    if device == "cuda":
        if not _HAS_CUPY:
            raise RuntimeError("CUDA requested but CuPy is not installed/available.")
        return cp
    return np


def device_of(x: Any) -> _DeviceStr:
    return "cuda" if is_cupy_array(x) else "cpu"


def normalize_device(device: Optional[Union[str, _DeviceStr]]) -> _DeviceStr:
    """
    Normalize a device specifier to 'cpu' or 'cuda'.

    ``None`` means 'cpu'. Strings starting with 'cuda' (e.g. 'cuda:1') map
    to 'cuda'.

    Raises
    ------
    ValueError
        If ``device`` is neither 'cpu' nor starts with 'cuda'.

    Examples
    --------
    >>> normalize_device(None)
    'cpu'
    >>> normalize_device('cuda:1')
    'cuda'
    >>> normalize_device('gpu')
    Traceback (most recent call last):
        ...
    ValueError: Unknown device spec: 'gpu'
    """
    if device is None:
        return "cpu"
    if isinstance(device, str):
        dev = device.lower()
        if dev.startswith("cuda"):
            return "cuda"
        if dev == "cpu":
            return "cpu"
    raise ValueError(f"Unknown device spec: {device!r}")


def normalize_dtype(dtype: Any) -> np.dtype:
    """
    Normalize a dtype specifier to ``float32`` or ``float64``.

    Accepts names, numpy scalar types and ``numpy.dtype`` instances.

    Raises
    ------
    ValueError
        If ``dtype`` is not one of the supported floating types.
    """
    if dtype is None:
        return np.dtype(np.float32)
    try:
        dt = np.dtype(dtype)
    except TypeError:
        raise ValueError(f"Unknown dtype spec: {dtype!r}") from None
    if dt.name not in _DTYPES:
        raise ValueError(f"Unsupported dtype {dt.name!r}; expected one of {sorted(_DTYPES)}")
    return dt


def quiet_errstate(backend: Any):
    """
    Context manager silencing divide/invalid floating warnings on ``backend``.

    NumPy reports IEEE division by zero through warnings; CuPy does not, so
    this is a no-op for CuPy.
    """
    if backend is np:
        return np.errstate(divide="ignore", invalid="ignore")
    return contextlib.nullcontext()
