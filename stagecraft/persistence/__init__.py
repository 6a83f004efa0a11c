"""Run status persistence for audit and resumption."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from ..config import StagecraftConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import RunInstance, StageRecord
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRunRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresRunRepository = None  # type: ignore

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[StagecraftConfig] = None
) -> str:
    """Pick the run history URL: argument, environment, configuration, memory."""
    if database_url:
        return database_url
    env_url = os.getenv("STAGECRAFT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    config = config or load_config()
    return config.database_url or MEMORY_URL


def get_repository(
    database_url: Optional[str] = None, config: Optional[StagecraftConfig] = None
) -> RunRepository:
    """Open the run repository selected by ``database_url``.

    ``sqlite://<path>`` keeps run history in a local file, which is what lets
    a later ``stagecraft run --run-id`` resume a run or ``stagecraft runs show``
    audit it. ``postgres://`` and ``postgresql://`` need the ``postgres``
    extra. ``memory://`` keeps history only for the lifetime of the returned
    repository, so callers that want to share it pass the instance around.

    Every call opens a new repository.
    """
    url = resolve_database_url(database_url, config)
    scheme, _, location = url.partition("://")

    if scheme == "memory":
        return InMemoryRunRepository()
    if scheme == "sqlite":
        if not location:
            raise ValueError("sqlite database URL needs a path, e.g. sqlite://runs.db")
        path = Path(location).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Recording run history in {path}")
        return SQLiteRunRepository(path)
    if scheme in ("postgres", "postgresql"):
        if PostgresRunRepository is None:
            raise RuntimeError("Postgres support not available; install stagecraft[postgres]")
        return PostgresRunRepository(url)
    raise ValueError(f"Unsupported database backend: {url}")


__all__ = [
    "MEMORY_URL",
    "StageRecord",
    "RunInstance",
    "RunRepository",
    "SQLiteRunRepository",
    "PostgresRunRepository",
    "InMemoryRunRepository",
    "get_repository",
    "resolve_database_url",
]
