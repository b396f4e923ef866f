import logging

import pytest

from wgpu_nd.wgpu_config import Config, configure_logging
from wgpu_nd.wgpu_errors import ValidationError


def test_defaults():
    config = Config.from_env({})
    assert config.backend == "auto"
    assert config.power_preference == "high-performance"
    assert config.pipeline_cache_size == 0
    assert config.pool_bytes == 256 * 1024 * 1024
    assert config.log_level is None


def test_from_env():
    config = Config.from_env({
        "WGPU_ND_BACKEND": "Host",
        "WGPU_ND_POWER_PREFERENCE": "low-power",
        "WGPU_ND_PIPELINE_CACHE_SIZE": "64",
        "WGPU_ND_POOL_BYTES": "1048576",
        "WGPU_ND_LOG_LEVEL": "debug",
    })
    assert config == Config("host", "low-power", 64, 1 << 20, "debug")


@pytest.mark.parametrize("env", [
    {"WGPU_ND_BACKEND": "cuda"},
    {"WGPU_ND_POWER_PREFERENCE": "max"},
    {"WGPU_ND_PIPELINE_CACHE_SIZE": "lots"},
    {"WGPU_ND_POOL_BYTES": "-1"},
])
def test_invalid_env(env):
    with pytest.raises(ValidationError):
        Config.from_env(env)


def test_replace_validates():
    config = Config()
    assert config.replace(backend="host").backend == "host"
    with pytest.raises(ValidationError):
        config.replace(backend="nope")


def test_configure_logging_is_idempotent():
    logger = configure_logging("DEBUG")
    count = len(logger.handlers)
    configure_logging("WARNING")
    assert len(logger.handlers) == count
    assert logger.level == logging.WARNING
