"""Snapshot repository caching the snapshots loaded per database."""

from __future__ import annotations

import logging

from .models import ConnectionInfo, DatabaseInfo, SnapshotInfo
from .results import SuccessResult
from .services import AsyncpgDatabaseServices, DatabaseServices, SnapshotError

LOG = logging.getLogger(__name__)


class SnapshotRepository:
    """Caches snapshot lists per database and keeps them in sync with mutations.

    Every mutating call that succeeds refreshes the cached list of the affected
    database, and the outcome of that refresh is what the caller receives. Failures
    reported by the database service come back as failed ``SuccessResult`` values.

    The repository holds no lock. Callers sharing one instance between threads must
    serialize every public call behind a single lock covering the whole repository.

    Without an explicit service the repository builds its own
    ``AsyncpgDatabaseServices`` and stops it in ``shutdown()``. Services passed in
    stay owned by the caller.
    """

    def __init__(self, database_services: DatabaseServices | None = None) -> None:
        self._owned_services: AsyncpgDatabaseServices | None = None
        if database_services is None:
            database_services = self._owned_services = AsyncpgDatabaseServices()
        self._database_services = database_services
        self._snapshots_per_database: dict[DatabaseInfo, tuple[SnapshotInfo, ...]] = {}

    def shutdown(self) -> None:
        """Stop the database service this repository created, if any."""

        if self._owned_services is not None:
            self._owned_services.shutdown()

    def load_snapshots(self, database: DatabaseInfo) -> SuccessResult:
        """Replace the cached snapshots of ``database`` with a fresh listing."""

        _require(database, "database")
        self.clear_snapshots(database)
        try:
            snapshots = tuple(self._database_services.get_snapshots(database))
        except SnapshotError as exc:
            return _failed(exc, database=database)
        self._snapshots_per_database[database] = snapshots
        LOG.debug("Loaded snapshots", extra={"database": str(database), "count": len(snapshots)})
        return SuccessResult.success()

    def get_loaded_snapshots(self, database: DatabaseInfo) -> tuple[SnapshotInfo, ...]:
        """Cached snapshots of ``database``; empty when it was never loaded."""

        _require(database, "database")
        return self._snapshots_per_database.get(database, ())

    def is_loaded(self, database: DatabaseInfo) -> bool:
        _require(database, "database")
        return database in self._snapshots_per_database

    def clear_snapshots(self, database: DatabaseInfo) -> None:
        _require(database, "database")
        self._snapshots_per_database.pop(database, None)

    def clear_connection_snapshots(self, connection: ConnectionInfo) -> None:
        """Forget the snapshots of every database reached through ``connection``."""

        _require(connection, "connection")
        databases = [database for database in self._snapshots_per_database if database.connection == connection]
        for database in databases:
            self.clear_snapshots(database)

    def create_snapshot(self, name: str, database: DatabaseInfo) -> SuccessResult:
        """Create a snapshot, then reload the snapshots of ``database``."""

        _require(name, "name")
        _require(database, "database")
        try:
            self._database_services.create_snapshot(name, database)
        except SnapshotError as exc:
            return _failed(exc, database=database, snapshot=name)
        LOG.debug("Created snapshot", extra={"database": str(database), "snapshot": name})
        return self.load_snapshots(database)

    def restore_snapshot(self, snapshot: SnapshotInfo) -> SuccessResult:
        """Restore a snapshot; reloads its database only if it was already loaded."""

        _require(snapshot, "snapshot")
        try:
            self._database_services.restore_snapshot(snapshot)
        except SnapshotError as exc:
            return _failed(exc, database=snapshot.database, snapshot=snapshot.name)
        LOG.debug("Restored snapshot", extra={"database": str(snapshot.database), "snapshot": snapshot.name})
        return self._reload_if_loaded(snapshot.database)

    def delete_snapshot(self, snapshot: SnapshotInfo) -> SuccessResult:
        """Delete a snapshot; reloads its database only if it was already loaded."""

        _require(snapshot, "snapshot")
        try:
            self._database_services.delete_snapshot(snapshot)
        except SnapshotError as exc:
            return _failed(exc, database=snapshot.database, snapshot=snapshot.name)
        LOG.debug("Deleted snapshot", extra={"database": str(snapshot.database), "snapshot": snapshot.name})
        return self._reload_if_loaded(snapshot.database)

    def _reload_if_loaded(self, database: DatabaseInfo) -> SuccessResult:
        if database in self._snapshots_per_database:
            return self.load_snapshots(database)
        return SuccessResult.success()


def describe_error(exc: BaseException) -> str:
    """Combine an error message with the message of its cause, if any."""

    cause = exc.__cause__
    if cause is None:
        return str(exc)
    return f"{exc} ({str(cause) or type(cause).__name__})"


def _failed(exc: SnapshotError, **context: object) -> SuccessResult:
    message = describe_error(exc)
    LOG.warning(message, extra={key: str(value) for key, value in context.items()})
    return SuccessResult.failure(message)


def _require(value: object, name: str) -> None:
    if value is None:
        raise ValueError(f"{name} must not be None")


__all__ = ["SnapshotRepository", "describe_error"]
