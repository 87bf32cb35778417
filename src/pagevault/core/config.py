"""
Runtime settings, read from environment variables.

    PAGEVAULT_CACHE_DIR         durable payload cache root (default ~/.pagevault/cache)
    PAGEVAULT_CHUNK_SIZE        payload chunk size in bytes (default 8 MiB, max 32 MiB)
    PAGEVAULT_KDF_MEMORY_KB     Argon2id memory cost (floor 65536)
    PAGEVAULT_KDF_ITERATIONS    Argon2id time cost (floor 3)
    PAGEVAULT_KDF_PARALLELISM   Argon2id lanes (floor 4)
    PAGEVAULT_SESSION_TTL       seconds an unlocked session stays usable
    PAGEVAULT_LOG_LEVEL         logging level name (default WARNING)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .exceptions import ConfigurationError
from .models import DEFAULT_CHUNK_SIZE, KdfParams, validate_chunk_size
from pagevault.security.session import DEFAULT_TTL_SECONDS

DEFAULT_CACHE_DIR = Path.home() / ".pagevault" / "cache"


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    cache_dir: Path = DEFAULT_CACHE_DIR
    chunk_size: int = DEFAULT_CHUNK_SIZE
    kdf_params: KdfParams = field(default_factory=KdfParams)
    session_ttl: int = DEFAULT_TTL_SECONDS
    log_level: int = logging.WARNING

    def __post_init__(self):
        validate_chunk_size(self.chunk_size)
        if self.session_ttl <= 0:
            raise ConfigurationError("session TTL must be positive")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        defaults = KdfParams()
        kdf_params = KdfParams(
            memory_kb=_int_env(env, "PAGEVAULT_KDF_MEMORY_KB", defaults.memory_kb),
            iterations=_int_env(env, "PAGEVAULT_KDF_ITERATIONS", defaults.iterations),
            parallelism=_int_env(env, "PAGEVAULT_KDF_PARALLELISM", defaults.parallelism),
        )
        level_name = env.get("PAGEVAULT_LOG_LEVEL", "WARNING").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ConfigurationError(f"unknown log level {level_name!r}")
        cache_dir = env.get("PAGEVAULT_CACHE_DIR")
        return cls(
            cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR,
            chunk_size=_int_env(env, "PAGEVAULT_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            kdf_params=kdf_params,
            session_ttl=_int_env(env, "PAGEVAULT_SESSION_TTL", DEFAULT_TTL_SECONDS),
            log_level=level,
        )
