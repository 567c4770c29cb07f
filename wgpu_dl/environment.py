"""
Process-wide environment: feature flags, backend registry and the engine.

Features are read from environment variables the first time they are asked
for and can be overridden with ENV.set():

  WGPU_DL_BACKEND           cpu | webgpu (default: best backend that initializes)
  WGPU_DL_DEBUG             1 to log kernel timings and fail on NaN outputs
  WGPU_DL_SAFE_MODE         1 to require every tensor to be created inside tidy()
  WGPU_DL_POWER_PREFERENCE  adapter power preference (default high-performance)

ENV.reset() disposes the engine and every backend and forgets overrides, so
tests can start from a clean process state.
"""

import logging
import os
from typing import Any, Callable, Dict, Optional

from wgpu_dl import engine as engine_lib
from wgpu_dl.errors import ConfigurationError

logger = logging.getLogger(__name__)

_ENV_VARS = {
    "BACKEND": "WGPU_DL_BACKEND",
    "DEBUG": "WGPU_DL_DEBUG",
    "SAFE_MODE": "WGPU_DL_SAFE_MODE",
    "POWER_PREFERENCE": "WGPU_DL_POWER_PREFERENCE",
}

_DEFAULTS = {
    "BACKEND": None,
    "DEBUG": False,
    "SAFE_MODE": False,
    "POWER_PREFERENCE": "high-performance",
}

_BOOLEAN_FEATURES = ("DEBUG", "SAFE_MODE")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Environment:
    """Holds feature flags, registered backend factories and the global engine."""

    def __init__(self):
        self._features: Dict[str, Any] = {}
        self._registry: Dict[str, Dict[str, Any]] = {}
        self._backends: Dict[str, Any] = {}
        self._engine: Optional[engine_lib.Engine] = None
        self._current_backend: Optional[str] = None

    # ---- Features ----
    def get(self, feature: str):
        if feature not in self._features:
            self._features[feature] = self._evaluate(feature)
        return self._features[feature]

    def set(self, feature: str, value) -> None:
        self._features[feature] = value

    @staticmethod
    def _evaluate(feature: str):
        if feature not in _DEFAULTS:
            raise ConfigurationError(f"Unknown feature {feature}")
        raw = os.environ.get(_ENV_VARS[feature])
        if raw is None or raw == "":
            return _DEFAULTS[feature]
        if feature in _BOOLEAN_FEATURES:
            return _parse_bool(raw)
        return raw

    # ---- Backends ----
    def register_backend(self, name: str, factory: Callable[[], Any], priority: int = 1) -> None:
        """Register a backend factory. A factory may return None when unavailable."""
        self._registry[name] = {"factory": factory, "priority": priority}
        logger.debug(f"Registered backend {name} (priority {priority})")

    def find_backend(self, name: str):
        """Instantiate (once) and return the named backend, or None if it cannot start."""
        if name not in self._registry:
            raise ConfigurationError(
                f"Backend type '{name}' not found in registry {sorted(self._registry)}"
            )
        if name not in self._backends:
            backend = self._registry[name]["factory"]()
            if backend is None:
                return None
            self._backends[name] = backend
        return self._backends[name]

    def get_best_backend_type(self) -> str:
        """Highest-priority registered backend that initializes."""
        ranked = sorted(self._registry, key=lambda n: self._registry[n]["priority"], reverse=True)
        for name in ranked:
            if self.find_backend(name) is not None:
                return name
        raise ConfigurationError("No backend could be initialized")

    @property
    def backend(self):
        return self.engine.backend

    @property
    def current_backend(self) -> Optional[str]:
        return self._current_backend

    def set_backend(self, name: str, safe_mode: Optional[bool] = None) -> None:
        """Replace the global engine with a fresh one on the named backend."""
        backend = self.find_backend(name)
        if backend is None:
            raise ConfigurationError(f"Backend '{name}' is not available")
        if safe_mode is None:
            safe_mode = self.get("SAFE_MODE")
        self._current_backend = name
        self._engine = engine_lib.Engine(backend, safe_mode=safe_mode, debug=self.get("DEBUG"))
        logger.info(f"Using backend {name}")

    @property
    def engine(self) -> engine_lib.Engine:
        if self._engine is None:
            name = self.get("BACKEND") or self.get_best_backend_type()
            self.set_backend(name)
        return self._engine

    # ---- Teardown ----
    def reset(self) -> None:
        """Dispose the engine and all backends and forget feature overrides."""
        if self._engine is not None:
            self._engine.dispose()
        for backend in self._backends.values():
            backend.dispose()
        self._engine = None
        self._current_backend = None
        self._backends = {}
        self._features = {}


def _create_cpu_backend():
    from wgpu_dl.backends.backend_cpu import MathBackendCPU
    return MathBackendCPU()


def _create_webgpu_backend():
    try:
        from wgpu_dl.backends.backend_wgpu import MathBackendWebGPU
        return MathBackendWebGPU(power_preference=ENV.get("POWER_PREFERENCE"))
    except (ImportError, RuntimeError) as e:
        logger.warning(f"WebGPU backend unavailable, falling back: {e}")
        return None


ENV = Environment()
ENV.register_backend("cpu", _create_cpu_backend, priority=1)
ENV.register_backend("webgpu", _create_webgpu_backend, priority=2)
