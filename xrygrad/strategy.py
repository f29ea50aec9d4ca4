"""
Execution strategies for elementwise kernels.

A strategy answers one question: given an :class:`~xrygrad.kernels.ElementwiseOp`
and conformable arrays, produce the output array. Strategies differ only in
*how* the elements are computed; every strategy must return the same values
as :class:`SequentialStrategy` for the same inputs.
"""
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from xrygrad.backend import cp, get_backend, has_cupy, is_cupy_array, quiet_errstate
from xrygrad.errors import ShapeMismatchError
from xrygrad.kernels import ElementwiseOp

logger = logging.getLogger(__name__)


def check_conformable(a: Any, b: Any, what: str = "operand") -> None:
    """Raise :class:`ShapeMismatchError` unless ``a`` and ``b`` have equal shapes."""
    if tuple(a.shape) != tuple(b.shape):
        raise ShapeMismatchError(a.shape, b.shape, what=what)


class ExecutionStrategy:
    """
    Contract for running an elementwise kernel over arrays.

    Subclasses implement ``_binary`` and ``_unary``; the public methods
    validate arity and shapes first, so every strategy fails the same way.

    Notes
    -----
    - Outputs always have the input shape.
    - ``out[i]`` depends only on the inputs at ``i``.
    - Division follows IEEE semantics here without emitting NumPy warnings;
      zero-denominator policy is enforced by the engine, not the strategy.
    """
    name = "abstract"

    def apply(self, op: ElementwiseOp, a: Any, b: Any) -> Any:
        """Return ``op(a, b)`` elementwise. ``a`` and ``b`` must share a shape."""
        if op.arity != 2:
            raise TypeError(f"{op!r} is not a binary op")
        check_conformable(a, b)
        return self._binary(op, a, b)

    def apply_unary(self, op: ElementwiseOp, a: Any) -> Any:
        """Return ``op(a)`` elementwise."""
        if op.arity != 1:
            raise TypeError(f"{op!r} is not a unary op")
        return self._unary(op, a)

    def _binary(self, op: ElementwiseOp, a: Any, b: Any) -> Any:
        raise NotImplementedError

    def _unary(self, op: ElementwiseOp, a: Any) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources held by the strategy (worker threads, caches)."""

    def __enter__(self) -> "ExecutionStrategy":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class SequentialStrategy(ExecutionStrategy):
    """Baseline strategy: one vectorized backend ufunc call per op."""
    name = "sequential"

    def _binary(self, op, a, b):
        backend = get_backend(a)
        with quiet_errstate(backend):
            return op(backend, a, b)

    def _unary(self, op, a):
        backend = get_backend(a)
        with quiet_errstate(backend):
            return op(backend, a)


class DataParallelStrategy(ExecutionStrategy):
    """
    Partition the flattened index range across a thread pool.

    Each worker runs the NumPy ufunc on one contiguous slice and writes into
    the matching slice of a shared output buffer, so no two workers touch
    the same element. NumPy releases the GIL inside ufunc loops, which is
    what makes threads worthwhile here.

    Parameters
    ----------
    workers : int, optional
        Pool size. Defaults to ``os.cpu_count()``.
    min_chunk : int, default=65536
        Smallest slice handed to a worker. Arrays with fewer than
        ``2 * min_chunk`` elements are computed sequentially.

    Notes
    -----
    CuPy arrays are always delegated to :class:`SequentialStrategy`; the
    device already parallelizes a single kernel launch.
    """
    name = "parallel"

    def __init__(self, workers: Optional[int] = None, min_chunk: int = 65536) -> None:
        if workers is not None and workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        if min_chunk < 1:
            raise ValueError(f"min_chunk must be >= 1, got {min_chunk}")
        self.workers = workers or os.cpu_count() or 1
        self.min_chunk = min_chunk
        self._sequential = SequentialStrategy()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def partition(self, size: int) -> List[Tuple[int, int]]:
        """Split ``range(size)`` into contiguous ``(lo, hi)`` chunks, one per task."""
        if size == 0:
            return []
        chunk = max(self.min_chunk, -(-size // self.workers))
        return [(lo, min(lo + chunk, size)) for lo in range(0, size, chunk)]

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="xrygrad")
            return self._pool

    def _run(self, ufunc: Any, inputs: Tuple[Any, ...], shape: Tuple[int, ...], dtype: Any) -> Any:
        flats = [np.ascontiguousarray(x).reshape(-1) for x in inputs]
        out = np.empty(flats[0].shape, dtype=dtype)

        def _chunk(lo: int, hi: int) -> None:
            # errstate is per-thread, so each worker sets its own
            with quiet_errstate(np):
                ufunc(*(f[lo:hi] for f in flats), out=out[lo:hi])

        pool = self._executor()
        futures = [pool.submit(_chunk, lo, hi) for lo, hi in self.partition(out.size)]
        for fut in futures:
            fut.result()
        return out.reshape(shape)

    def _parallelizable(self, a: Any) -> bool:
        return self.workers > 1 and not is_cupy_array(a) and a.size >= 2 * self.min_chunk

    def _binary(self, op, a, b):
        if not self._parallelizable(a):
            return self._sequential._binary(op, a, b)
        dtype = np.result_type(a.dtype, b.dtype)
        return self._run(op.resolve(np), (a, b), a.shape, dtype)

    def _unary(self, op, a):
        if not self._parallelizable(a):
            return self._sequential._unary(op, a)
        return self._run(op.resolve(np), (a,), a.shape, a.dtype)

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def __repr__(self) -> str:
        return f"DataParallelStrategy(workers={self.workers}, min_chunk={self.min_chunk})"


class CompiledKernelStrategy(ExecutionStrategy):
    """
    Run ops as JIT-compiled ``cupy.ElementwiseKernel`` objects.

    Kernels are built from :attr:`ElementwiseOp.expr` once per
    ``(op, dtype)`` and cached. Anything the compiled path cannot run
    exactly like the ufunc path (NumPy arrays, dtypes other than
    float32/float64, ops without an expression, compilation failures) is
    handed to the fallback strategy instead of raising.

    Parameters
    ----------
    fallback : ExecutionStrategy, optional
        Strategy used when no kernel applies. Defaults to
        :class:`SequentialStrategy`.
    """
    name = "compiled"
    _CTYPES = {"float32": "float32", "float64": "float64"}

    def __init__(self, fallback: Optional[ExecutionStrategy] = None) -> None:
        self.fallback = fallback or SequentialStrategy()
        self._kernels: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def kernel_for(self, op: ElementwiseOp, dtype: Any) -> Optional[Any]:
        """
        Return the cached compiled kernel for ``(op, dtype)``, or ``None``.

        ``None`` is cached too, so an unsupported combination is only
        logged once.
        """
        dt = np.dtype(dtype)
        key = (op.name, dt.name)
        with self._lock:
            if key in self._kernels:
                return self._kernels[key]
            kernel = None
            ctype = self._CTYPES.get(dt.name)
            if not has_cupy():
                logger.debug("cupy unavailable; %s runs through fallback", op.name)
            elif ctype is None or op.expr is None:
                logger.debug("no compiled kernel for %s/%s; using fallback", op.name, dt.name)
            else:
                params = ", ".join(f"{ctype} {v}" for v in ("x", "y")[: op.arity])
                kernel = cp.ElementwiseKernel(params, f"{ctype} z", op.expr, f"xrygrad_{op.name}_{dt.name}")
                logger.debug("built elementwise kernel %s/%s", op.name, dt.name)
            self._kernels[key] = kernel
            return kernel

    def _launch(self, op: ElementwiseOp, *arrays: Any) -> Optional[Any]:
        if not all(is_cupy_array(x) for x in arrays):
            return None
        if len({x.dtype for x in arrays}) != 1:
            return None
        kernel = self.kernel_for(op, arrays[0].dtype)
        if kernel is None:
            return None
        try:
            return kernel(*arrays)
        except cp.cuda.compiler.CompileException as exc:
            logger.warning("compiling %s failed (%s); falling back to %s", op.name, exc, self.fallback.name)
            with self._lock:
                self._kernels[(op.name, arrays[0].dtype.name)] = None
            return None

    def _binary(self, op, a, b):
        out = self._launch(op, a, b)
        return self.fallback._binary(op, a, b) if out is None else out

    def _unary(self, op, a):
        out = self._launch(op, a)
        return self.fallback._unary(op, a) if out is None else out

    def close(self) -> None:
        with self._lock:
            self._kernels.clear()
        self.fallback.close()

    def __repr__(self) -> str:
        return f"CompiledKernelStrategy(fallback={self.fallback!r})"


STRATEGIES = {
    SequentialStrategy.name: SequentialStrategy,
    DataParallelStrategy.name: DataParallelStrategy,
    CompiledKernelStrategy.name: CompiledKernelStrategy,
}


def get_strategy(spec: Union[str, ExecutionStrategy, None] = None) -> ExecutionStrategy:
    """
    Resolve a strategy name or instance.

    Parameters
    ----------
    spec : {'sequential', 'parallel', 'compiled'} or ExecutionStrategy or None
        ``None`` selects 'sequential'. Instances are returned unchanged.

    Raises
    ------
    ValueError
        For unknown names.
    """
    if spec is None:
        return SequentialStrategy()
    if isinstance(spec, ExecutionStrategy):
        return spec
    if isinstance(spec, str) and spec.lower() in STRATEGIES:
        return STRATEGIES[spec.lower()]()
    raise ValueError(f"Unknown execution strategy: {spec!r}; expected one of {sorted(STRATEGIES)}")
