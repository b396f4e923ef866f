"""Runtime configuration, read from ``WGPU_ND_*`` environment variables.

    WGPU_ND_BACKEND              auto | native | browser | host   (default auto)
    WGPU_ND_POWER_PREFERENCE     high-performance | low-power     (default high-performance)
    WGPU_ND_PIPELINE_CACHE_SIZE  max cached pipelines, 0 = unbounded (default 0)
    WGPU_ND_POOL_BYTES           byte budget of the buffer pool   (default 256 MiB)
    WGPU_ND_LOG_LEVEL            logging level for the wgpu_nd logger (unset = leave alone)
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

from wgpu_nd.wgpu_errors import ValidationError

logger = logging.getLogger(__name__)

BACKENDS = ("auto", "native", "browser", "host")
POWER_PREFERENCES = ("high-performance", "low-power")


@dataclass(frozen=True)
class Config:
    backend: str = "auto"
    power_preference: str = "high-performance"
    pipeline_cache_size: int = 0
    pool_bytes: int = 256 * 1024 * 1024
    log_level: Optional[str] = None

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValidationError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.power_preference not in POWER_PREFERENCES:
            raise ValidationError(
                f"power_preference must be one of {POWER_PREFERENCES}, got {self.power_preference!r}"
            )
        if self.pipeline_cache_size < 0 or self.pool_bytes < 0:
            raise ValidationError("pipeline_cache_size and pool_bytes must be non-negative")

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        env = os.environ if environ is None else environ
        return cls(
            backend=env.get("WGPU_ND_BACKEND", "auto").strip().lower(),
            power_preference=env.get("WGPU_ND_POWER_PREFERENCE", "high-performance").strip().lower(),
            pipeline_cache_size=_int_env(env, "WGPU_ND_PIPELINE_CACHE_SIZE", 0),
            pool_bytes=_int_env(env, "WGPU_ND_POOL_BYTES", 256 * 1024 * 1024),
            log_level=env.get("WGPU_ND_LOG_LEVEL") or None,
        )

    def replace(self, **changes) -> "Config":
        return replace(self, **changes)


def _int_env(env, name, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


_config = None


def get_config() -> Config:
    """Process-wide configuration, loaded from the environment on first use."""
    global _config
    if _config is None:
        _config = Config.from_env()
        if _config.log_level:
            configure_logging(_config.log_level)
    return _config


def set_config(config: Config) -> None:
    """Replace the process-wide configuration (affects backends created later)."""
    global _config
    _config = config
    if config.log_level:
        configure_logging(config.log_level)


def configure_logging(level="INFO") -> logging.Logger:
    """Attach a stream handler to the ``wgpu_nd`` logger."""
    root = logging.getLogger("wgpu_nd")
    root.setLevel(level.upper() if isinstance(level, str) else level)
    if not any(getattr(h, "_wgpu_nd", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._wgpu_nd = True
        root.addHandler(handler)
    return root
