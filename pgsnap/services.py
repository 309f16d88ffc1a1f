"""Database services that perform snapshot operations for the repository."""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Coroutine, Mapping, Protocol, Sequence, TypeVar, runtime_checkable

import asyncpg
from sqlglot import exp

from .config import AppConfig
from .models import ConnectionInfo, DatabaseInfo, SnapshotInfo

LOG = logging.getLogger(__name__)

T = TypeVar("T")

MAX_IDENTIFIER_BYTES = 63
SEPARATOR = "__"
COMMENT_MARKER = "pgsnap:"


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be listed, created, restored or deleted."""


@runtime_checkable
class DatabaseServices(Protocol):
    """Protocol implemented by snapshot-capable database services."""

    def get_snapshots(self, database: DatabaseInfo) -> Sequence[SnapshotInfo]:
        """Return every snapshot of ``database`` in creation order."""

    def create_snapshot(self, name: str, database: DatabaseInfo) -> None:
        """Create a snapshot called ``name`` of ``database``."""

    def restore_snapshot(self, snapshot: SnapshotInfo) -> None:
        """Overwrite the snapshot's database with the snapshot contents."""

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        """Drop the snapshot."""


def quote_ident(name: str) -> str:
    """Render ``name`` as a quoted PostgreSQL identifier."""

    return exp.to_identifier(name, quoted=True).sql(dialect="postgres")


def quote_literal(value: str) -> str:
    """Render ``value`` as a PostgreSQL string literal."""

    return exp.Literal.string(value).sql(dialect="postgres")


class AsyncpgDatabaseServices:
    """Snapshots PostgreSQL databases as template clones via asyncpg.

    A snapshot ``nightly`` of database ``orders`` lives in a database named
    ``pgsnap__orders__nightly``. Creating or restoring a snapshot needs exclusive
    access to the template, so other sessions on it are terminated first.
    """

    _LIST_QUERY = """
        SELECT d.datname, pg_catalog.shobj_description(d.oid, 'pg_database') AS comment
        FROM pg_catalog.pg_database AS d
        WHERE left(d.datname, length($1)) = $1
        ORDER BY d.oid
    """

    _TERMINATE_QUERY = """
        SELECT pg_catalog.pg_terminate_backend(pid)
        FROM pg_catalog.pg_stat_activity
        WHERE datname = $1 AND pid <> pg_catalog.pg_backend_pid()
    """

    def __init__(self, *, prefix: str = "pgsnap", connect_timeout: float = 3.0) -> None:
        self._prefix = prefix
        self._connect_timeout = connect_timeout
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="pgsnap-asyncpg-services",
            daemon=True,
        )
        self._loop_thread.start()

    def get_snapshots(self, database: DatabaseInfo) -> Sequence[SnapshotInfo]:
        return self._run(self._get_snapshots(database))

    def create_snapshot(self, name: str, database: DatabaseInfo) -> None:
        self._run(self._create_snapshot(name, database))

    def restore_snapshot(self, snapshot: SnapshotInfo) -> None:
        self._run(self._restore_snapshot(snapshot))

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        self._run(self._delete_snapshot(snapshot))

    def snapshot_database_name(self, name: str, database: DatabaseInfo) -> str:
        """Name of the database that stores snapshot ``name`` of ``database``."""

        if not name:
            raise SnapshotError(f"Snapshot name for '{database}' must not be empty.")
        if "\x00" in name:
            raise SnapshotError(f"Snapshot name for '{database}' contains a NUL character.")
        # The owning database is recovered from the last separator in the name.
        if SEPARATOR in name or name.startswith("_"):
            raise SnapshotError(
                f"Snapshot name '{name}' must not start with '_' or contain '{SEPARATOR}'."
            )
        full_name = f"{self._snapshot_prefix(database)}{name}"
        if len(full_name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
            raise SnapshotError(
                f"Snapshot name '{name}' is too long for database '{database.name}' "
                f"(limit is {MAX_IDENTIFIER_BYTES} bytes including '{self._snapshot_prefix(database)}')."
            )
        return full_name

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():  # pragma: no cover - already stopped
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def _snapshot_prefix(self, database: DatabaseInfo) -> str:
        return f"{self._prefix}{SEPARATOR}{database.name}{SEPARATOR}"

    async def _get_snapshots(self, database: DatabaseInfo) -> tuple[SnapshotInfo, ...]:
        prefix = self._snapshot_prefix(database)
        rows = await self._fetch(
            database.connection,
            f"list snapshots of '{database}'",
            self._LIST_QUERY,
            prefix,
        )
        snapshots: list[SnapshotInfo] = []
        for row in rows:
            datname = str(row["datname"])
            owner, _, name = datname[len(self._prefix) + len(SEPARATOR):].rpartition(SEPARATOR)
            if owner != database.name or not name:
                continue
            snapshots.append(
                SnapshotInfo(
                    database=database,
                    name=name,
                    created_at=_parse_comment(row["comment"]),
                )
            )
        LOG.debug("Listed snapshots", extra={"database": str(database), "count": len(snapshots)})
        return tuple(snapshots)

    async def _create_snapshot(self, name: str, database: DatabaseInfo) -> None:
        target = self.snapshot_database_name(name, database)
        stamp = f"{COMMENT_MARKER}{datetime.now(tz=timezone.utc).isoformat()}"
        await self._execute(
            database.connection,
            f"create snapshot '{name}' of '{database}'",
            (self._TERMINATE_QUERY, database.name),
            (f"CREATE DATABASE {quote_ident(target)} TEMPLATE {quote_ident(database.name)}",),
            (f"COMMENT ON DATABASE {quote_ident(target)} IS {quote_literal(stamp)}",),
        )

    async def _restore_snapshot(self, snapshot: SnapshotInfo) -> None:
        database = snapshot.database
        source = self.snapshot_database_name(snapshot.name, database)
        live = quote_ident(database.name)
        # The live database is only dropped once its replacement exists.
        parked = quote_ident(f"{self._prefix}_restoring_{secrets.token_hex(4)}")
        action = f"restore snapshot '{snapshot.name}' of '{database}'"
        async with self._session(database.connection, action) as conn:
            await conn.execute(self._TERMINATE_QUERY, database.name)
            await conn.execute(self._TERMINATE_QUERY, source)
            await conn.execute(f"ALTER DATABASE {live} RENAME TO {parked}")
            try:
                await conn.execute(f"CREATE DATABASE {live} TEMPLATE {quote_ident(source)}")
            except Exception:
                await conn.execute(f"ALTER DATABASE {parked} RENAME TO {live}")
                raise
            await conn.execute(f"DROP DATABASE {parked}")
        LOG.debug("Snapshot restored", extra={"action": action})

    async def _delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        database = snapshot.database
        target = self.snapshot_database_name(snapshot.name, database)
        await self._execute(
            database.connection,
            f"delete snapshot '{snapshot.name}' of '{database}'",
            (self._TERMINATE_QUERY, target),
            (f"DROP DATABASE {quote_ident(target)}",),
        )

    async def _fetch(self, connection: ConnectionInfo, action: str, query: str, *args: object) -> list[Any]:
        async with self._session(connection, action) as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, connection: ConnectionInfo, action: str, *statements: tuple[Any, ...]) -> None:
        async with self._session(connection, action) as conn:
            for statement, *args in statements:
                await conn.execute(statement, *args)
        LOG.debug("Snapshot statements executed", extra={"action": action, "statements": len(statements)})

    @asynccontextmanager
    async def _session(self, connection: ConnectionInfo, action: str) -> AsyncIterator[Any]:
        conn = await self._connect(connection)
        try:
            yield conn
        except Exception as exc:
            raise SnapshotError(f"Failed to {action}") from exc
        finally:
            try:
                await conn.close()
            except Exception:  # pragma: no cover - best effort
                pass

    async def _connect(self, connection: ConnectionInfo):
        kwargs = connection.connect_kwargs()
        kwargs.setdefault("timeout", self._connect_timeout)
        try:
            return await asyncpg.connect(**kwargs)
        except Exception as exc:
            raise SnapshotError(f"Failed to connect to '{connection.name}'") from exc


class DemoDatabaseServices:
    """In-memory database service used for demos and tests."""

    def __init__(self, snapshots: Mapping[DatabaseInfo, Sequence[str]] | None = None) -> None:
        self._snapshots: dict[DatabaseInfo, list[SnapshotInfo]] = {}
        self.restored: list[SnapshotInfo] = []
        for database, names in (snapshots or {}).items():
            for name in names:
                self.create_snapshot(name, database)

    def get_snapshots(self, database: DatabaseInfo) -> Sequence[SnapshotInfo]:
        return tuple(self._snapshots.get(database, ()))

    def create_snapshot(self, name: str, database: DatabaseInfo) -> None:
        try:
            if not name:
                raise ValueError("snapshot name must not be empty")
            if any(existing.name == name for existing in self._snapshots.get(database, ())):
                raise ValueError(f"snapshot '{name}' already exists")
        except ValueError as exc:
            raise SnapshotError(f"Failed to create snapshot '{name}' of '{database}'") from exc
        snapshot = SnapshotInfo(database=database, name=name, created_at=datetime.now(tz=timezone.utc))
        self._snapshots.setdefault(database, []).append(snapshot)

    def restore_snapshot(self, snapshot: SnapshotInfo) -> None:
        try:
            self._lookup(snapshot)
        except LookupError as exc:
            raise SnapshotError(f"Failed to restore snapshot '{snapshot.name}' of '{snapshot.database}'") from exc
        self.restored.append(snapshot)

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        try:
            index = self._lookup(snapshot)
        except LookupError as exc:
            raise SnapshotError(f"Failed to delete snapshot '{snapshot.name}' of '{snapshot.database}'") from exc
        del self._snapshots[snapshot.database][index]

    def _lookup(self, snapshot: SnapshotInfo) -> int:
        for index, existing in enumerate(self._snapshots.get(snapshot.database, ())):
            if existing == snapshot:
                return index
        raise LookupError(f"snapshot '{snapshot.name}' does not exist")


def create_database_services(config: AppConfig) -> DatabaseServices:
    """Build the database service selected by the configuration."""

    if config.backend == "demo":
        return DemoDatabaseServices()
    return AsyncpgDatabaseServices(
        prefix=config.snapshot_prefix,
        connect_timeout=config.connect_timeout,
    )


def _parse_comment(comment: object) -> datetime | None:
    if not isinstance(comment, str) or not comment.startswith(COMMENT_MARKER):
        return None
    try:
        return datetime.fromisoformat(comment[len(COMMENT_MARKER):])
    except ValueError:
        return None


__all__ = [
    "AsyncpgDatabaseServices",
    "DatabaseServices",
    "DemoDatabaseServices",
    "SnapshotError",
    "create_database_services",
    "quote_ident",
    "quote_literal",
]
