"""Identity types shared by the repository and the database services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Connection to a PostgreSQL server."""

    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False, compare=False)
    maintenance_database: str = "postgres"

    def connect_kwargs(self, database: str | None = None) -> dict[str, object]:
        """Keyword arguments for ``asyncpg.connect`` targeting ``database``."""

        kwargs: dict[str, object] = {}
        if self.dsn:
            kwargs["dsn"] = self.dsn
        else:
            kwargs["host"] = self.host or "localhost"
            if self.port is not None:
                kwargs["port"] = self.port
            if self.user:
                kwargs["user"] = self.user
        if self.password:
            kwargs["password"] = self.password
        kwargs["database"] = database or self.maintenance_database
        return kwargs


@dataclass(frozen=True, slots=True)
class DatabaseInfo:
    """A database reachable through a connection."""

    connection: ConnectionInfo
    name: str

    def __str__(self) -> str:
        return f"{self.connection.name}/{self.name}"


@dataclass(frozen=True, slots=True)
class SnapshotInfo:
    """A point-in-time copy of a database."""

    database: DatabaseInfo
    name: str
    created_at: datetime | None = field(default=None, compare=False)

    def __str__(self) -> str:
        return f"{self.database}@{self.name}"


__all__ = ["ConnectionInfo", "DatabaseInfo", "SnapshotInfo"]
