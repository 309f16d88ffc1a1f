"""Configuration loading helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import ConnectionInfo, DatabaseInfo

CONFIG_FILE = Path.home() / ".config" / "pgsnap" / "config.toml"


class ConnectionProfileConfig(BaseModel):
    """Connection profile stored in config.toml."""

    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    maintenance_database: str = "postgres"
    databases: list[str] = Field(default_factory=list)

    def to_connection(self) -> ConnectionInfo:
        return ConnectionInfo(
            name=self.name,
            dsn=self.dsn,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            maintenance_database=self.maintenance_database,
        )


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    backend: Literal["asyncpg", "demo"] = "asyncpg"
    snapshot_prefix: str = "pgsnap"
    connect_timeout: float = 3.0
    profiles: list[ConnectionProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))

    def connections(self) -> tuple[ConnectionInfo, ...]:
        """Runtime connections for every configured profile."""

        return tuple(profile.to_connection() for profile in self.profiles)

    def connection_by_name(self, name: str) -> ConnectionInfo:
        return self._profile_by_name(name).to_connection()

    def databases_for(self, name: str) -> tuple[DatabaseInfo, ...]:
        """Databases managed through the named profile."""

        profile = self._profile_by_name(name)
        connection = profile.to_connection()
        return tuple(DatabaseInfo(connection=connection, name=database) for database in profile.databases)

    def _profile_by_name(self, name: str) -> ConnectionProfileConfig:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing or invalid."""

    try:
        with CONFIG_FILE.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    data: dict[str, object] = {}
    for key in ("backend", "snapshot_prefix", "connect_timeout"):
        if key in raw:
            data[key] = raw[key]
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed = [profile for profile in profiles if isinstance(profile, dict) and profile.get("name")]
        if parsed:
            data["profiles"] = parsed
    try:
        return AppConfig.model_validate(data)
    except ValidationError:
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"backend = {_toml_string(config.backend)}",
        f"snapshot_prefix = {_toml_string(config.snapshot_prefix)}",
        f"connect_timeout = {config.connect_timeout}",
    ]
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.append(f"name = {_toml_string(profile.name)}")
        for key in ("dsn", "host", "user", "password"):
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {_toml_string(value)}")
        if profile.port is not None:
            lines.append(f"port = {profile.port}")
        lines.append(f"maintenance_database = {_toml_string(profile.maintenance_database)}")
        if profile.databases:
            names = ", ".join(_toml_string(name) for name in profile.databases)
            lines.append(f"databases = [{names}]")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _toml_string(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes.
    return json.dumps(value)


def _default_profiles() -> tuple[ConnectionProfileConfig, ...]:
    """Default profile used before config is customized."""

    return (
        ConnectionProfileConfig(
            name="Local",
            host="localhost",
            port=5432,
            user="postgres",
        ),
    )


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConnectionProfileConfig",
    "load_config",
    "save_config",
]
