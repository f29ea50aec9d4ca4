import numpy as np
import torch

from xrygrad.tensor import Engine, Tensor

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def tdata(t: Tensor):
    return to_numpy(t.data)

def tgrad(t: Tensor):
    return to_numpy(t.grad)

def make_tensor(x_np: np.ndarray, engine: Engine) -> Tensor:
    return engine.tensor(np.asarray(x_np, dtype=np.float32))

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def random_shape(rng, max_nd=4, max_size=6):
    return tuple(int(x) for x in rng.integers(1, max_size, size=int(rng.integers(1, max_nd + 1))))

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def assert_grad_close(t: Tensor, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert tt.grad is not None, "Torch grad is None"
    assert_close(tgrad(t), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)
