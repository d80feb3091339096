import threading

import numpy as np
import pytest

from dagrad.autograd import AutogradTensor
from dagrad.context import (
    AutodiffContext,
    AutodiffMode,
    is_training,
    no_grad,
    require_gradient,
    with_autodiff,
)
from dagrad.errors import UsageError
from dagrad.tensor import Tensor
from tests.utils import make_tensor, assert_close


def test_no_grad_disables_tracking(rng, device):
    x_np = rng.normal(size=(2, 3, 4)).astype(np.float32)
    x = make_tensor(x_np, requires_grad=True, device=device)

    with no_grad():
        y = x * x + x

    assert isinstance(y, Tensor), "no_grad() should disable graph construction"
    assert not hasattr(y, "grad")


def test_requires_grad_propagation(rng, device):
    x_np = rng.normal(size=(2, 3, 4)).astype(np.float32)

    x = make_tensor(x_np, requires_grad=False, device=device)
    y = make_tensor(x_np, requires_grad=True, device=device)

    z1 = x + x
    z2 = x + y

    assert z1.requires_grad is False
    assert z2.requires_grad is True
    assert z1.operation is not None and z2.operation is not None


def test_training_factory_builds_leaves():
    with AutodiffContext.with_context(AutodiffMode.TRAINING) as ctx:
        x = ctx.tensor((2, 2), [1.0, 2.0, 3.0, 4.0], requires_grad=True)
        y = ctx.tensor((2, 2), [1.0, 2.0, 3.0, 4.0], requires_grad=False)

    assert isinstance(x, AutogradTensor) and x.requires_grad
    assert isinstance(y, AutogradTensor) and not y.requires_grad
    assert x.is_leaf and x.operation is None and x.parents == ()
    assert y.grad is None


def test_inference_factory_builds_plain_values():
    with AutodiffContext.with_context(AutodiffMode.INFERENCE) as ctx:
        x = ctx.tensor((2, 2), [1.0, 2.0, 3.0, 4.0], requires_grad=True)
        y = ctx.tensor((2, 2), [1.0, 2.0, 3.0, 4.0], requires_grad=False)
        z = x + y

    for t in (x, y, z):
        assert isinstance(t, Tensor)
        assert not hasattr(t, "requires_grad")
        assert not hasattr(t, "operation")
    assert z == Tensor([2.0, 4.0, 6.0, 8.0], shape=(2, 2))


def test_tracked_inputs_are_not_recorded_during_inference(rng):
    x = make_tensor(rng.normal(size=(2, 2)))

    with AutodiffContext.inference():
        y = (x @ x).relu()

    assert isinstance(y, Tensor)
    assert x.grad is None


@pytest.mark.parametrize("default", [True, False])
def test_default_requires_grad_applies_when_unspecified(default):
    with AutodiffContext.training(default_requires_grad=default) as ctx:
        x = ctx.tensor((2, 2), 1.0)
        y = ctx.tensor((2, 2), 1.0, requires_grad=not default)

    assert x.requires_grad is default
    assert y.requires_grad is (not default)


def test_inference_nested_in_training_restores_training():
    with AutodiffContext.training(default_requires_grad=True) as outer:
        with AutodiffContext.inference() as inner:
            assert AutodiffContext.current() is inner
            assert isinstance(inner.tensor((2,), [1.0, 2.0]), Tensor)
        assert AutodiffContext.current() is outer
        x = AutodiffContext.current().tensor((2,), [1.0, 2.0])

    assert isinstance(x, AutogradTensor)
    assert x.requires_grad


def test_frame_is_restored_when_body_raises():
    with AutodiffContext.training() as outer:
        with pytest.raises(KeyError):
            with AutodiffContext.inference():
                raise KeyError("boom")
        assert AutodiffContext.current() is outer
        assert is_training()


def test_scopes_can_decorate_functions():
    @AutodiffContext.inference()
    def predict(x):
        return x * x

    x = AutogradTensor([1.0, 2.0], requires_grad=True)

    assert isinstance(predict(x), Tensor)
    assert isinstance(x * x, AutogradTensor)


def test_exiting_frames_out_of_order_is_usage_error():
    outer = no_grad()
    inner = no_grad()
    outer.__enter__()
    inner.__enter__()
    try:
        with pytest.raises(UsageError):
            outer.__exit__(None, None, None)
    finally:
        inner.__exit__(None, None, None)
        outer.__exit__(None, None, None)


def test_frames_are_isolated_per_thread():
    entered = threading.Event()
    release = threading.Event()
    seen = {}

    def worker():
        with AutodiffContext.inference():
            seen["worker_inside"] = AutodiffContext.current().mode
            entered.set()
            release.wait(timeout=5)
        seen["worker_after"] = AutodiffContext.current().mode

    t = threading.Thread(target=worker)
    t.start()
    try:
        assert entered.wait(timeout=5)
        seen["main"] = AutodiffContext.current().mode
        x = AutogradTensor([1.0], requires_grad=True)
        seen["main_tracks"] = isinstance(x + x, AutogradTensor)
    finally:
        release.set()
        t.join(timeout=5)

    assert seen["worker_inside"] is AutodiffMode.INFERENCE
    assert seen["worker_after"] is AutodiffMode.TRAINING
    assert seen["main"] is AutodiffMode.TRAINING
    assert seen["main_tracks"] is True


def test_backprop_returns_leaf_gradients():
    with AutodiffContext.training() as ctx:
        a = ctx.tensor((2, 3), [1, 2, 3, 4, 5, 6], requires_grad=True)
        b = ctx.tensor((3, 2), [7, 8, 9, 10, 11, 12], requires_grad=True)
        c = ctx.tensor((2, 2), 0.5, requires_grad=False)

        grads = ctx.backprop((a @ b) + c)

    assert set(grads) == {a, b}
    g = np.ones((2, 2), dtype=np.float32)
    assert_close(grads[a], g @ b.data.T)
    assert_close(grads[b], a.data.T @ g)


def test_backprop_is_usage_error_during_inference():
    x = AutogradTensor([1.0], requires_grad=True)
    y = x + x

    with AutodiffContext.inference() as ctx:
        with pytest.raises(UsageError):
            ctx.backprop(y)
        with pytest.raises(UsageError):
            ctx.backprop(Tensor([1.0]))


def test_with_autodiff_follows_current_mode():
    value = Tensor([1.0, 2.0, 3.0, 4.0], shape=(2, 2))

    with AutodiffContext.training():
        tracked = with_autodiff(value, requires_grad=True)
        required = require_gradient(value)
    with AutodiffContext.inference():
        plain = with_autodiff(value, requires_grad=True)
        still_plain = require_gradient(value)

    assert isinstance(tracked, AutogradTensor) and tracked.requires_grad
    assert isinstance(required, AutogradTensor) and required.requires_grad
    assert plain is value and still_plain is value


class _RowMajorWeights:
    """Minimal stand-in for a model file reader: shape plus multi-index access."""

    def __init__(self, shape, values):
        self.shape = shape
        self._values = values

    def __getitem__(self, idx):
        i, j = idx
        return self._values[i * self.shape[1] + j]


def test_leaves_wraps_named_weights_from_providers():
    weights = {
        "w": _RowMajorWeights((2, 3), [1, 2, 3, 4, 5, 6]),
        "b": np.zeros((2,), dtype=np.float32),
    }

    with AutodiffContext.training(default_requires_grad=True) as ctx:
        params = ctx.leaves(weights)

    assert set(params) == {"w", "b"}
    assert params["w"].value == Tensor([1, 2, 3, 4, 5, 6], shape=(2, 3))
    assert params["w"].requires_grad and params["b"].requires_grad
    assert params["w"][1, 2] == 6.0


def test_reentering_one_no_grad_instance_unwinds_cleanly():
    scope = no_grad()
    x = AutogradTensor([1.0], requires_grad=True)

    with scope:
        with scope:
            assert not is_training()
        assert not is_training()
        assert isinstance(x + x, Tensor)

    assert AutodiffContext.current().mode is AutodiffMode.TRAINING
    assert isinstance(x + x, AutogradTensor)
