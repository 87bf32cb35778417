"""Unit tests for environment-driven settings."""

import logging
from pathlib import Path

import pytest

from pagevault.core.config import DEFAULT_CACHE_DIR, Settings
from pagevault.core.exceptions import ConfigurationError
from pagevault.core.models import DEFAULT_CHUNK_SIZE, KdfParams


def test_defaults_from_empty_env():
    settings = Settings.from_env({})
    assert settings.cache_dir == DEFAULT_CACHE_DIR
    assert settings.chunk_size == DEFAULT_CHUNK_SIZE
    assert settings.kdf_params == KdfParams()
    assert settings.session_ttl == 300
    assert settings.log_level == logging.WARNING


def test_values_from_env(tmp_path):
    settings = Settings.from_env(
        {
            "PAGEVAULT_CACHE_DIR": str(tmp_path / "cache"),
            "PAGEVAULT_CHUNK_SIZE": "1048576",
            "PAGEVAULT_KDF_MEMORY_KB": "131072",
            "PAGEVAULT_KDF_ITERATIONS": "4",
            "PAGEVAULT_KDF_PARALLELISM": "8",
            "PAGEVAULT_SESSION_TTL": "60",
            "PAGEVAULT_LOG_LEVEL": "debug",
        }
    )
    assert settings.cache_dir == Path(tmp_path / "cache")
    assert settings.chunk_size == 1048576
    assert settings.kdf_params == KdfParams(131072, 4, 8)
    assert settings.session_ttl == 60
    assert settings.log_level == logging.DEBUG


@pytest.mark.parametrize(
    "env",
    [
        {"PAGEVAULT_CHUNK_SIZE": "eight"},
        {"PAGEVAULT_CHUNK_SIZE": "0"},
        {"PAGEVAULT_CHUNK_SIZE": str(64 * 1024 * 1024)},
        {"PAGEVAULT_KDF_MEMORY_KB": "1024"},
        {"PAGEVAULT_KDF_ITERATIONS": "1"},
        {"PAGEVAULT_SESSION_TTL": "0"},
        {"PAGEVAULT_LOG_LEVEL": "chatty"},
    ],
)
def test_invalid_env_raises_configuration_error(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_blank_values_fall_back_to_defaults():
    settings = Settings.from_env({"PAGEVAULT_CHUNK_SIZE": "  "})
    assert settings.chunk_size == DEFAULT_CHUNK_SIZE
