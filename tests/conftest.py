import pytest

from wgpu_dl import ENV


def pytest_addoption(parser):
    parser.addoption(
        "--run-gpu", action="store_true", default=False,
        help="run tests that need a WebGPU adapter",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "gpu: needs a WebGPU adapter (enable with --run-gpu)")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-gpu"):
        return
    skip_gpu = pytest.mark.skip(reason="needs --run-gpu")
    for item in items:
        if "gpu" in item.keywords:
            item.add_marker(skip_gpu)


@pytest.fixture(autouse=True)
def cpu_env():
    """Fresh engine on the numpy backend for every test."""
    ENV.reset()
    ENV.set_backend("cpu")
    yield ENV
    ENV.reset()
