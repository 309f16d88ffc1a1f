"""Snapshot cache and snapshot management for PostgreSQL databases."""

from __future__ import annotations

from .config import AppConfig, ConnectionProfileConfig, load_config
from .models import ConnectionInfo, DatabaseInfo, SnapshotInfo
from .repository import SnapshotRepository
from .results import SuccessResult
from .services import (
    AsyncpgDatabaseServices,
    DatabaseServices,
    DemoDatabaseServices,
    SnapshotError,
    create_database_services,
)

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "AsyncpgDatabaseServices",
    "ConnectionInfo",
    "ConnectionProfileConfig",
    "DatabaseInfo",
    "DatabaseServices",
    "DemoDatabaseServices",
    "SnapshotError",
    "SnapshotInfo",
    "SnapshotRepository",
    "SuccessResult",
    "__version__",
    "create_database_services",
    "load_config",
]
