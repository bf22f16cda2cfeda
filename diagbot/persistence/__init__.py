"""Persistence layer for diagbot dialogue state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DiagbotConfig, load_config
from .inmemory import InMemoryDialogueRepository
from .models import (
    ROOT_STEP_KEY,
    MessageRecord,
    OverlayState,
    Scenario,
    Session,
    StateType,
    Step,
    User,
)
from .repository import DialogueRepository, apply_sliding_window
from .sqlite import SQLiteDialogueRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresDialogueRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresDialogueRepository = None  # type: ignore

_repository_instance: DialogueRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[DiagbotConfig] = None
) -> DialogueRepository:
    """Factory function to obtain a dialogue repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``DIAGBOT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DIAGBOT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryDialogueRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteDialogueRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresDialogueRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresDialogueRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ROOT_STEP_KEY",
    "DialogueRepository",
    "InMemoryDialogueRepository",
    "MessageRecord",
    "OverlayState",
    "PostgresDialogueRepository",
    "SQLiteDialogueRepository",
    "Scenario",
    "Session",
    "StateType",
    "Step",
    "User",
    "apply_sliding_window",
    "get_repository",
]
