import numpy as np
import pytest
import importlib.util

from dagrad.context import AutodiffContext, AutodiffMode, _frames

@pytest.fixture
def rng():
    return np.random.default_rng(0)

def _has_cupy():
    return importlib.util.find_spec("cupy") is not None

@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and not _has_cupy():
        pytest.skip("cupy not installed")
    return request.param

@pytest.fixture(autouse=True)
def balanced_frames():
    """Every test must leave the autodiff frame stack as it found it."""
    before = list(_frames())
    yield
    assert _frames() == before, "autodiff frame stack leaked out of a test"
    assert AutodiffContext.current().mode is AutodiffMode.TRAINING
