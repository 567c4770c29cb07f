"""Feature flags and backend selection."""

import pytest

from wgpu_dl import ENV
from wgpu_dl.backends.backend_cpu import MathBackendCPU
from wgpu_dl.environment import Environment
from wgpu_dl.errors import ConfigurationError


def _environment(**factories):
    env = Environment()
    for priority, (name, factory) in enumerate(factories.items(), start=1):
        env.register_backend(name, factory, priority)
    return env


def test_features_read_environment_variables(monkeypatch):
    monkeypatch.setenv("WGPU_DL_DEBUG", "true")
    monkeypatch.setenv("WGPU_DL_POWER_PREFERENCE", "low-power")
    env = Environment()
    assert env.get("DEBUG") is True
    assert env.get("SAFE_MODE") is False
    assert env.get("POWER_PREFERENCE") == "low-power"


def test_set_overrides_and_reset_forgets(monkeypatch):
    monkeypatch.delenv("WGPU_DL_DEBUG", raising=False)
    env = Environment()
    env.set("DEBUG", True)
    assert env.get("DEBUG") is True
    env.reset()
    assert env.get("DEBUG") is False


def test_unknown_feature():
    with pytest.raises(ConfigurationError, match="Unknown feature"):
        Environment().get("NOT_A_FEATURE")


def test_best_backend_skips_unavailable():
    env = _environment(cpu=MathBackendCPU, broken=lambda: None)
    assert env.get_best_backend_type() == "cpu"
    assert env.find_backend("broken") is None


def test_set_backend_errors():
    env = _environment(cpu=MathBackendCPU, broken=lambda: None)
    with pytest.raises(ConfigurationError, match="not found"):
        env.set_backend("missing")
    with pytest.raises(ConfigurationError, match="not available"):
        env.set_backend("broken")


def test_engine_uses_backend_feature(monkeypatch):
    monkeypatch.setenv("WGPU_DL_BACKEND", "cpu")
    env = _environment(cpu=MathBackendCPU, other=MathBackendCPU)
    assert isinstance(env.engine.backend, MathBackendCPU)
    assert env.current_backend == "cpu"
    env.reset()


def test_safe_mode_flag_reaches_engine():
    ENV.set_backend("cpu", safe_mode=True)
    assert ENV.engine.safe_mode
    ENV.set_backend("cpu")
    assert not ENV.engine.safe_mode
