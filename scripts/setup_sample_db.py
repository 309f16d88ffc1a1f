"""Launch a sample PostgreSQL container, register it with pgsnap and take a first snapshot."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pgsnap.config import CONFIG_FILE, AppConfig, ConnectionProfileConfig, load_config, save_config
from pgsnap.repository import SnapshotRepository
from pgsnap.services import AsyncpgDatabaseServices

DEFAULT_CONTAINER = "pgsnap-sample-db"
DEFAULT_PORT = 5543
DEFAULT_PASSWORD = "pgsnap"
DEFAULT_DB = "pgsnap_demo"
DEFAULT_USER = "pgsnap"
PROFILE_NAME = "Docker Sample"
DOCKER_IMAGE = "postgres:16-alpine"


def run(cmd: list[str], *, check: bool = True, **kwargs) -> subprocess.CompletedProcess[str]:
    print("$", " ".join(cmd))
    return subprocess.run(cmd, check=check, text=True, **kwargs)


def container_exists(name: str) -> bool:
    result = subprocess.run(
        ["docker", "ps", "-a", "--filter", f"name={name}", "--format", "{{.ID}}"],
        text=True,
        capture_output=True,
    )
    return bool(result.stdout.strip())


def start_container(name: str, port: int, password: str, database: str, user: str) -> None:
    if container_exists(name):
        print(f"Container '{name}' already exists. Reusing it.")
        run(["docker", "start", name], check=False)
    else:
        run(
            [
                "docker",
                "run",
                "-d",
                "--name",
                name,
                "-e",
                f"POSTGRES_PASSWORD={password}",
                "-e",
                f"POSTGRES_DB={database}",
                "-e",
                f"POSTGRES_USER={user}",
                "-p",
                f"{port}:5432",
                DOCKER_IMAGE,
            ]
        )
    wait_for_start(name, user)


def wait_for_start(name: str, user: str, retries: int = 15, delay: float = 1.0) -> None:
    for _ in range(retries):
        result = subprocess.run(["docker", "exec", name, "pg_isready", "-U", user], text=True)
        if result.returncode == 0:
            return
        time.sleep(delay)
    print("Warning: database did not report ready state; continuing anyway.")


def seed_data(name: str, database: str, user: str) -> None:
    sql = """
    CREATE TABLE IF NOT EXISTS accounts (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE
    );
    INSERT INTO accounts (email) VALUES
        ('anna@example.com'),
        ('ben@example.com')
    ON CONFLICT DO NOTHING;
    """.strip()

    run(
        ["docker", "exec", "-i", name, "psql", "-U", user, "-d", database, "-v", "ON_ERROR_STOP=1"],
        input=sql,
    )


def update_config(port: int, user: str, database: str, password: str) -> AppConfig:
    config = load_config()
    profiles = [profile for profile in config.profiles if profile.name != PROFILE_NAME]
    profiles.append(
        ConnectionProfileConfig(
            name=PROFILE_NAME,
            host="localhost",
            port=port,
            user=user,
            password=password,
            maintenance_database="postgres",
            databases=[database],
        )
    )
    config = config.model_copy(update={"profiles": profiles})
    save_config(config)
    print(f"Saved '{PROFILE_NAME}' profile to {CONFIG_FILE}.")
    return config


def take_snapshot(config: AppConfig, name: str) -> int:
    services = AsyncpgDatabaseServices(prefix=config.snapshot_prefix, connect_timeout=config.connect_timeout)
    repository = SnapshotRepository(services)
    try:
        for database in config.databases_for(PROFILE_NAME):
            result = repository.create_snapshot(name, database)
            if result.failed:
                print(f"Snapshot of {database} failed: {result.message}")
                return 1
            names = ", ".join(snapshot.name for snapshot in repository.get_loaded_snapshots(database))
            print(f"Snapshots of {database}: {names}")
    finally:
        services.shutdown()
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--container", default=DEFAULT_CONTAINER, help="Docker container name")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Host port to expose Postgres on")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Postgres password")
    parser.add_argument("--database", default=DEFAULT_DB, help="Database name to create")
    parser.add_argument("--user", default=DEFAULT_USER, help="Database user")
    parser.add_argument("--snapshot", default="seeded", help="Name of the snapshot taken after seeding")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        start_container(args.container, args.port, args.password, args.database, args.user)
        seed_data(args.container, args.database, args.user)
    except FileNotFoundError:
        print("Docker is not installed or not on PATH.")
        return 1
    config = update_config(args.port, args.user, args.database, args.password)
    return take_snapshot(config, args.snapshot)


if __name__ == "__main__":
    raise SystemExit(main())
