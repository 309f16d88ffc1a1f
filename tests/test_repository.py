"""Tests for the snapshot repository cache."""

from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from pgsnap.models import ConnectionInfo, DatabaseInfo, SnapshotInfo
from pgsnap.repository import SnapshotRepository, describe_error
from pgsnap.results import SuccessResult
from pgsnap.services import DemoDatabaseServices, SnapshotError

C1 = ConnectionInfo(name="C1", host="localhost")
C2 = ConnectionInfo(name="C2", host="replica")
D1 = DatabaseInfo(connection=C1, name="orders")
D2 = DatabaseInfo(connection=C1, name="billing")
D3 = DatabaseInfo(connection=C2, name="orders")


def _snapshot(database: DatabaseInfo, name: str) -> SnapshotInfo:
    return SnapshotInfo(database=database, name=name)


def _failure(message: str, cause: Exception | None = None) -> SnapshotError:
    error = SnapshotError(message)
    error.__cause__ = cause
    return error


class _ServicesStub:
    """Scripted database service recording every call."""

    def __init__(self) -> None:
        self.listings: dict[DatabaseInfo, list[Sequence[SnapshotInfo] | SnapshotError]] = {}
        self.errors: dict[str, SnapshotError] = {}
        self.calls: list[tuple[str, object]] = []

    def queue(self, database: DatabaseInfo, *results: Sequence[SnapshotInfo] | SnapshotError) -> None:
        self.listings.setdefault(database, []).extend(results)

    def enumerations(self, database: DatabaseInfo) -> int:
        return sum(1 for call, arg in self.calls if call == "get" and arg == database)

    def get_snapshots(self, database: DatabaseInfo) -> Sequence[SnapshotInfo]:
        self.calls.append(("get", database))
        pending = self.listings.get(database) or [()]
        result = pending.pop(0) if len(pending) > 1 else pending[0]
        if isinstance(result, SnapshotError):
            raise result
        return result

    def create_snapshot(self, name: str, database: DatabaseInfo) -> None:
        self.calls.append(("create", (name, database)))
        if "create" in self.errors:
            raise self.errors["create"]

    def restore_snapshot(self, snapshot: SnapshotInfo) -> None:
        self.calls.append(("restore", snapshot))
        if "restore" in self.errors:
            raise self.errors["restore"]

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        self.calls.append(("delete", snapshot))
        if "delete" in self.errors:
            raise self.errors["delete"]


@pytest.fixture
def services() -> _ServicesStub:
    return _ServicesStub()


@pytest.fixture
def repository(services: _ServicesStub) -> SnapshotRepository:
    return SnapshotRepository(services)


def test_unloaded_database_returns_empty_tuple(repository: SnapshotRepository) -> None:
    assert repository.get_loaded_snapshots(D1) == ()
    assert repository.is_loaded(D1) is False


def test_load_stores_service_listing(repository: SnapshotRepository, services: _ServicesStub) -> None:
    s1, s2 = _snapshot(D1, "a"), _snapshot(D1, "b")
    services.queue(D1, [s1, s2])

    result = repository.load_snapshots(D1)

    assert result == SuccessResult.success()
    assert repository.get_loaded_snapshots(D1) == (s1, s2)
    assert repository.is_loaded(D1) is True


def test_loaded_empty_listing_is_distinct_from_not_loaded(repository: SnapshotRepository) -> None:
    assert repository.load_snapshots(D1).succeeded

    assert repository.get_loaded_snapshots(D1) == ()
    assert repository.is_loaded(D1) is True


def test_second_load_replaces_previous_listing(repository: SnapshotRepository, services: _ServicesStub) -> None:
    s1, s2, s3 = _snapshot(D1, "a"), _snapshot(D1, "b"), _snapshot(D1, "c")
    services.queue(D1, [s1, s2], [s3])

    repository.load_snapshots(D1)
    repository.load_snapshots(D1)

    assert repository.get_loaded_snapshots(D1) == (s3,)


def test_failed_load_drops_stale_listing(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.queue(D1, [_snapshot(D1, "a")], _failure("Failed to list snapshots", OSError("connection refused")))
    repository.load_snapshots(D1)

    result = repository.load_snapshots(D1)

    assert result.failed
    assert result.message == "Failed to list snapshots (connection refused)"
    assert repository.get_loaded_snapshots(D1) == ()
    assert repository.is_loaded(D1) is False


def test_failure_without_cause_uses_plain_message(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.queue(D1, _failure("Snapshot name must not be empty."))

    result = repository.load_snapshots(D1)

    assert result.message == "Snapshot name must not be empty."


def test_clear_is_idempotent(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.queue(D1, [_snapshot(D1, "a")])
    repository.load_snapshots(D1)

    repository.clear_snapshots(D1)
    repository.clear_snapshots(D1)
    repository.clear_snapshots(D2)

    assert repository.get_loaded_snapshots(D1) == ()
    assert repository.is_loaded(D1) is False


def test_clear_connection_only_drops_its_databases(repository: SnapshotRepository, services: _ServicesStub) -> None:
    for database in (D1, D2, D3):
        services.queue(database, [_snapshot(database, "base")])
        repository.load_snapshots(database)

    repository.clear_connection_snapshots(C1)

    assert repository.is_loaded(D1) is False
    assert repository.is_loaded(D2) is False
    assert repository.get_loaded_snapshots(D3) == (_snapshot(D3, "base"),)
    repository.clear_connection_snapshots(C1)


def test_create_reloads_database(repository: SnapshotRepository, services: _ServicesStub) -> None:
    nightly = _snapshot(D1, "nightly")
    services.queue(D1, [nightly])

    result = repository.create_snapshot("nightly", D1)

    assert result.succeeded
    assert services.calls == [("create", ("nightly", D1)), ("get", D1)]
    assert repository.get_loaded_snapshots(D1) == (nightly,)


def test_create_reports_reload_failure(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.queue(D1, _failure("Failed to list snapshots", TimeoutError("timed out")))

    result = repository.create_snapshot("nightly", D1)

    assert result.failed
    assert result.message == "Failed to list snapshots (timed out)"
    assert ("create", ("nightly", D1)) in services.calls


def test_create_failure_leaves_cache_untouched(repository: SnapshotRepository, services: _ServicesStub) -> None:
    existing = _snapshot(D1, "a")
    services.queue(D1, [existing])
    repository.load_snapshots(D1)
    services.errors["create"] = _failure("Failed to create snapshot 'b'", RuntimeError("disk full"))

    result = repository.create_snapshot("b", D1)

    assert result == SuccessResult.failure("Failed to create snapshot 'b' (disk full)")
    assert services.enumerations(D1) == 1
    assert repository.get_loaded_snapshots(D1) == (existing,)


def test_create_passes_empty_name_through(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.errors["create"] = _failure("Snapshot name must not be empty.")

    result = repository.create_snapshot("", D1)

    assert result.failed
    assert services.calls == [("create", ("", D1))]


def test_restore_without_loaded_database_skips_reload(repository: SnapshotRepository, services: _ServicesStub) -> None:
    result = repository.restore_snapshot(_snapshot(D1, "a"))

    assert result == SuccessResult.success()
    assert services.enumerations(D1) == 0
    assert repository.is_loaded(D1) is False


def test_restore_reloads_loaded_database_once(repository: SnapshotRepository, services: _ServicesStub) -> None:
    snapshot = _snapshot(D1, "a")
    services.queue(D1, [snapshot])
    repository.load_snapshots(D1)

    result = repository.restore_snapshot(snapshot)

    assert result.succeeded
    assert services.enumerations(D1) == 2


def test_delete_reloads_loaded_database(repository: SnapshotRepository, services: _ServicesStub) -> None:
    keep, drop = _snapshot(D1, "keep"), _snapshot(D1, "drop")
    services.queue(D1, [keep, drop], [keep])
    repository.load_snapshots(D1)

    result = repository.delete_snapshot(drop)

    assert result.succeeded
    assert services.enumerations(D1) == 2
    assert repository.get_loaded_snapshots(D1) == (keep,)


def test_delete_without_loaded_database_skips_reload(repository: SnapshotRepository, services: _ServicesStub) -> None:
    result = repository.delete_snapshot(_snapshot(D2, "a"))

    assert result.succeeded
    assert services.enumerations(D2) == 0


@pytest.mark.parametrize("operation", ["restore", "delete"])
def test_mutation_failure_keeps_cache(
    repository: SnapshotRepository, services: _ServicesStub, operation: str
) -> None:
    snapshot = _snapshot(D1, "a")
    services.queue(D1, [snapshot])
    repository.load_snapshots(D1)
    services.errors[operation] = _failure(f"Failed to {operation} snapshot 'a'", PermissionError("not owner"))

    result = getattr(repository, f"{operation}_snapshot")(snapshot)

    assert result.message == f"Failed to {operation} snapshot 'a' (not owner)"
    assert services.enumerations(D1) == 1
    assert repository.get_loaded_snapshots(D1) == (snapshot,)


@pytest.mark.parametrize(
    ("method", "args"),
    [
        ("load_snapshots", (None,)),
        ("get_loaded_snapshots", (None,)),
        ("is_loaded", (None,)),
        ("clear_snapshots", (None,)),
        ("clear_connection_snapshots", (None,)),
        ("create_snapshot", (None, D1)),
        ("create_snapshot", ("nightly", None)),
        ("restore_snapshot", (None,)),
        ("delete_snapshot", (None,)),
    ],
)
def test_missing_arguments_fail_fast(
    repository: SnapshotRepository, services: _ServicesStub, method: str, args: tuple[object, ...]
) -> None:
    with pytest.raises(ValueError, match="must not be None"):
        getattr(repository, method)(*args)

    assert services.calls == []


def test_unexpected_errors_propagate() -> None:
    class _BrokenServices(_ServicesStub):
        def get_snapshots(self, database):  # type: ignore[override]
            raise KeyError("bug")

    broken = SnapshotRepository(_BrokenServices())

    with pytest.raises(KeyError):
        broken.load_snapshots(D1)


def test_describe_error_appends_cause() -> None:
    try:
        try:
            raise OSError("no route to host")
        except OSError as exc:
            raise SnapshotError("Failed to connect to 'C1'") from exc
    except SnapshotError as error:
        assert describe_error(error) == "Failed to connect to 'C1' (no route to host)"


def test_scenario_against_demo_services() -> None:
    services = DemoDatabaseServices({D1: ("S1", "S2")})
    repository = SnapshotRepository(services)

    assert repository.load_snapshots(D1).succeeded
    assert [snapshot.name for snapshot in repository.get_loaded_snapshots(D1)] == ["S1", "S2"]

    assert repository.create_snapshot("nightly", D1).succeeded
    assert [snapshot.name for snapshot in repository.get_loaded_snapshots(D1)] == ["S1", "S2", "nightly"]

    nightly = repository.get_loaded_snapshots(D1)[-1]
    assert repository.delete_snapshot(nightly).succeeded
    assert [snapshot.name for snapshot in repository.get_loaded_snapshots(D1)] == ["S1", "S2"]

    repository.clear_snapshots(D1)
    assert repository.get_loaded_snapshots(D1) == ()


def test_demo_duplicate_create_surfaces_failure() -> None:
    repository = SnapshotRepository(DemoDatabaseServices({D1: ("S1",)}))

    result = repository.create_snapshot("S1", D1)

    assert result.failed
    assert result.message == "Failed to create snapshot 'S1' of 'C1/orders' (snapshot 'S1' already exists)"


def test_failure_names_cause_type_when_cause_is_silent(repository: SnapshotRepository, services: _ServicesStub) -> None:
    services.queue(D1, _failure("Failed to connect to 'C1'", asyncio.TimeoutError()))

    result = repository.load_snapshots(D1)

    assert result.message == "Failed to connect to 'C1' (TimeoutError)"


class _OwnedServices:
    instances: list[_OwnedServices] = []

    def __init__(self) -> None:
        self.stopped = False
        _OwnedServices.instances.append(self)

    def shutdown(self) -> None:
        self.stopped = True


def test_shutdown_stops_services_created_by_repository(monkeypatch: pytest.MonkeyPatch) -> None:
    _OwnedServices.instances.clear()
    monkeypatch.setattr("pgsnap.repository.AsyncpgDatabaseServices", _OwnedServices)

    repository = SnapshotRepository()
    repository.shutdown()

    assert [service.stopped for service in _OwnedServices.instances] == [True]


def test_shutdown_leaves_injected_services_alone(services: _ServicesStub) -> None:
    services.shutdown = lambda: pytest.fail("caller-owned service was stopped")  # type: ignore[attr-defined]
    repository = SnapshotRepository(services)

    repository.shutdown()
