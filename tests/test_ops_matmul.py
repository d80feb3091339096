import numpy as np
import pytest

from dagrad.errors import ShapeError
from dagrad.tensor import Tensor
from tests.utils import make_tensor, make_torch, tdata, assert_close, assert_grad_close


def test_matmul_2d_forward_backward(rng, device):
    a_np = rng.normal(size=(6, 10)).astype(np.float32)
    b_np = rng.normal(size=(10, 4)).astype(np.float32)
    g_np = rng.normal(size=(6, 4)).astype(np.float32)

    at = make_torch(a_np, requires_grad=True)
    bt = make_torch(b_np, requires_grad=True)
    a = make_tensor(a_np, requires_grad=True, device=device)
    b = make_tensor(b_np, requires_grad=True, device=device)

    yt = at @ bt
    y = a @ b

    yt.backward(make_torch(g_np, requires_grad=False))
    y.backward(Tensor(g_np, device=device))

    assert_close(tdata(y), yt.detach().cpu().numpy(), atol=3e-6, rtol=3e-5)
    assert_grad_close(a, at, atol=3e-6, rtol=3e-5)
    assert_grad_close(b, bt, atol=3e-6, rtol=3e-5)


def test_matmul_batched_same_batch_forward_backward(rng, device):
    a_np = rng.normal(size=(2, 3, 6, 10)).astype(np.float32)  # B1,B2,M,K
    b_np = rng.normal(size=(2, 3, 10, 5)).astype(np.float32)  # B1,B2,K,N

    at = make_torch(a_np, requires_grad=True)
    bt = make_torch(b_np, requires_grad=True)
    a = make_tensor(a_np, requires_grad=True, device=device)
    b = make_tensor(b_np, requires_grad=True, device=device)

    yt = at @ bt
    y = a @ b

    yt.sum().backward()
    y.backward()

    assert_close(tdata(y), yt.detach().cpu().numpy(), atol=5e-6, rtol=5e-5)
    assert_grad_close(a, at, atol=5e-6, rtol=5e-5)
    assert_grad_close(b, bt, atol=5e-6, rtol=5e-5)


@pytest.mark.parametrize("m,k,n", [(1, 1, 1), (2, 3, 4), (5, 2, 3)])
def test_matmul_gradients_are_g_bt_and_at_g(rng, m, k, n):
    a_np = rng.normal(size=(m, k)).astype(np.float32)
    b_np = rng.normal(size=(k, n)).astype(np.float32)
    g_np = rng.normal(size=(m, n)).astype(np.float32)

    a = make_tensor(a_np)
    b = make_tensor(b_np)
    (a @ b).backward(g_np)

    assert_close(a.grad, g_np @ b_np.T)
    assert_close(b.grad, a_np.T @ g_np)


@pytest.mark.parametrize("a_shape,b_shape", [
    ((2, 3), (2, 3)),        # inner dimension mismatch
    ((3,), (3, 2)),          # vectors are not matrices
    ((2, 2, 3), (3, 3, 2)),  # batch dimensions differ
])
def test_matmul_incompatible_shapes_raise(a_shape, b_shape):
    a = make_tensor(np.ones(a_shape))
    b = make_tensor(np.ones(b_shape))

    with pytest.raises(ShapeError):
        a @ b


def test_matmul_method_matches_operator(rng):
    a_np = rng.normal(size=(2, 3)).astype(np.float32)
    b_np = rng.normal(size=(3, 2)).astype(np.float32)
    a = make_tensor(a_np)
    b = make_tensor(b_np)

    assert a.matmul(b).value == (a @ b).value
    assert_close(Tensor(a_np) @ Tensor(b_np), a_np @ b_np)
