"""Persistence layer for circleflow."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CircleflowConfig, load_config
from .inmemory import InMemoryRepository
from .models import (
    AppUser,
    ExecutionLogEntry,
    Notification,
    Request,
    RequestStep,
)
from .repository import CircleRepository, merge_metadata
from .postgres import PostgresRepository
from .sqlite import SQLiteRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[CircleflowConfig] = None
) -> CircleRepository:
    """Factory function to construct a repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CIRCLEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.

    Each call builds a new repository; the application constructs one at
    start-up and passes it to the services that need it.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CIRCLEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "AppUser",
    "CircleRepository",
    "ExecutionLogEntry",
    "InMemoryRepository",
    "Notification",
    "PostgresRepository",
    "Request",
    "RequestStep",
    "SQLiteRepository",
    "get_repository",
    "merge_metadata",
]
