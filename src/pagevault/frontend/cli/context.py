"""Small helper to build a pagevault app context for the command line."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from pagevault.core.config import Settings
from pagevault.core.sink import ExportCache


@dataclass
class AppContext:
    """Container for runtime objects the commands need."""

    settings: Settings
    cache: ExportCache


def build_context(env: Optional[Mapping[str, str]] = None) -> AppContext:
    """
    Load settings and set up the payload cache.

    Everything is driven by ``PAGEVAULT_*`` environment variables (see
    :mod:`pagevault.core.config`). The cache directory is only created when
    a command actually writes to it.
    """
    settings = Settings.from_env(env)
    return AppContext(settings=settings, cache=ExportCache(settings.cache_dir))
