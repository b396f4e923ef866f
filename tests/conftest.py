import numpy as np
import pytest

from wgpu_nd import HostBackend, NativeBackend, use_backend


def _native_backend():
    try:
        return NativeBackend()
    except Exception as e:  # no adapter, no driver, or no wgpu-native library
        pytest.skip(f"no wgpu adapter available: {e}")


@pytest.fixture(scope="module", params=["host", "native"])
def backend(request):
    """Each behavioural test runs on the host backend, and on a GPU when present."""
    b = HostBackend() if request.param == "host" else _native_backend()
    with use_backend(b):
        yield b
    b.close()


@pytest.fixture
def host():
    b = HostBackend()
    with use_backend(b):
        yield b
    b.close()


@pytest.fixture
def rng():
    return np.random.default_rng(0)
