"""Walk through loading, creating, deleting and clearing snapshots with the demo service."""

from __future__ import annotations

import logging

from pgsnap import ConnectionInfo, DatabaseInfo, DemoDatabaseServices, SnapshotRepository


def main() -> None:
    logging.basicConfig(level=logging.DEBUG)
    connection = ConnectionInfo(name="C1", host="localhost")
    database = DatabaseInfo(connection=connection, name="D1")
    repository = SnapshotRepository(DemoDatabaseServices({database: ("S1", "S2")}))

    print("load:", repository.load_snapshots(database))
    print("create:", repository.create_snapshot("nightly", database))
    nightly = repository.get_loaded_snapshots(database)[-1]
    print("delete:", repository.delete_snapshot(nightly))
    print("duplicate:", repository.create_snapshot("S1", database))
    print("loaded:", [snapshot.name for snapshot in repository.get_loaded_snapshots(database)])

    repository.clear_connection_snapshots(connection)
    print("after clear:", repository.get_loaded_snapshots(database))


if __name__ == "__main__":
    main()
