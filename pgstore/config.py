"""Connection configuration, normalization and config-file helpers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import tomllib

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

CONFIG_FILE = Path.home() / ".config" / "pgstore" / "config.toml"

DEFAULT_HOST = "localhost"
DEFAULT_PORT = "5432"
DEFAULT_USERNAME = "postgres"
DEFAULT_PASSWORD = "postgres"
DEFAULT_DBNAME = "postgres"
DEFAULT_SSL_MODE = "disable"
ENABLED_SSL_MODE = "enable"
DEFAULT_TIME_ZONE = "Asia/Shanghai"

MIN_PORT = 1
MAX_PORT = 65535


class ConnectionConfig(BaseModel):
    """Caller-facing connection options; empty, zero or ``None`` values mean "use the default"."""

    model_config = ConfigDict(frozen=True)

    host: str = ""
    port: int | None = 0
    username: str = ""
    password: str = ""
    dbname: str = ""
    ssl_mode: bool = False
    time_zone: str = ""


@dataclass(frozen=True, slots=True)
class ConnectionDescriptor:
    """Fully resolved connection parameters, every value already string-encoded."""

    host: str
    port: str
    user: str
    password: str
    dbname: str
    sslmode: str
    timezone: str

    @property
    def dsn(self) -> str:
        """Space separated ``key=value`` pairs in the order the driver expects."""

        return (
            f"host={self.host} port={self.port} user={self.user} password={self.password} "
            f"dbname={self.dbname} sslmode={self.sslmode} TimeZone={self.timezone}"
        )

    @property
    def ssl_enabled(self) -> bool:
        return self.sslmode != DEFAULT_SSL_MODE

    def redacted(self) -> str:
        """Return the DSN with the password masked, safe for logs and terminals."""

        return self.dsn.replace(f"password={self.password} ", "password=*** ", 1)

    def connect_kwargs(self) -> dict[str, object]:
        """Keyword arguments for ``asyncpg.connect`` / ``asyncpg.create_pool``."""

        return {
            "host": self.host,
            "port": int(self.port),
            "user": self.user,
            "password": self.password,
            "database": self.dbname,
            "ssl": "require" if self.ssl_enabled else False,
            "server_settings": {"TimeZone": self.timezone},
        }

    def __str__(self) -> str:
        return self.dsn

    def __repr__(self) -> str:
        return f"ConnectionDescriptor({self.redacted()!r})"


def normalize(config: ConnectionConfig) -> ConnectionDescriptor:
    """Fill in defaults and validate the port.

    Normalization is permissive: host and time zone are passed through
    without validation and every other field silently falls back to its
    default. Only an out-of-range port is rejected.
    """

    # TODO: validate host as an address or resolvable name.
    host = config.host or DEFAULT_HOST
    if not config.port:
        port = DEFAULT_PORT
    else:
        if config.port < MIN_PORT or config.port > MAX_PORT:
            raise ValidationError(
                f"port should be in range from {MIN_PORT} to {MAX_PORT}, got {config.port}"
            )
        port = str(config.port)
    sslmode = ENABLED_SSL_MODE if config.ssl_mode else DEFAULT_SSL_MODE
    # TODO: check the time zone against the IANA zone list.
    return ConnectionDescriptor(
        host=host,
        port=port,
        user=config.username or DEFAULT_USERNAME,
        password=config.password or DEFAULT_PASSWORD,
        dbname=config.dbname or DEFAULT_DBNAME,
        sslmode=sslmode,
        timezone=config.time_zone or DEFAULT_TIME_ZONE,
    )


class AppConfig(BaseModel):
    """Shape of the pgstore configuration file."""

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    pool_min_size: int = 1
    pool_max_size: int = 10
    connect_timeout: float = 10.0

    def with_connection(self, **updates: object) -> AppConfig:
        """Return a copy with connection fields overridden (``None`` values are ignored)."""

        changes = {key: value for key, value in updates.items() if value is not None}
        if not changes:
            return self
        connection = self.connection.model_copy(update=changes)
        return self.model_copy(update={"connection": connection})


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    return AppConfig(**data)


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Persist configuration to disk."""

    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"pool_min_size = {config.pool_min_size}",
        f"pool_max_size = {config.pool_max_size}",
        f"connect_timeout = {config.connect_timeout}",
        "",
        "[connection]",
    ]
    connection = config.connection
    for key in ("host", "username", "password", "dbname", "time_zone"):
        value = getattr(connection, key)
        if value:
            lines.append(f"{key} = {_quote(value)}")
    if connection.port:
        lines.append(f"port = {connection.port}")
    lines.append(f"ssl_mode = {str(connection.ssl_mode).lower()}")
    target.write_text("\n".join(lines) + "\n")


_TOML_ESCAPES = {"\\": "\\\\", '"': '\\"', "\b": "\\b", "\t": "\\t", "\n": "\\n", "\f": "\\f", "\r": "\\r"}


def _quote(value: str) -> str:
    escaped = "".join(
        _TOML_ESCAPES.get(char, char if char >= " " and char != "\x7f" else f"\\u{ord(char):04x}")
        for char in value
    )
    return f'"{escaped}"'


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for key in ("pool_min_size", "pool_max_size"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            data[key] = value
    timeout = raw.get("connect_timeout")
    if isinstance(timeout, (int, float)) and not isinstance(timeout, bool):
        data["connect_timeout"] = float(timeout)
    connection = raw.get("connection")
    if isinstance(connection, dict):
        parsed: dict[str, object] = {}
        for key in ("host", "username", "password", "dbname", "time_zone"):
            value = connection.get(key)
            if isinstance(value, str):
                parsed[key] = value
        port = connection.get("port")
        if isinstance(port, int) and not isinstance(port, bool):
            parsed["port"] = port
        ssl_mode = connection.get("ssl_mode")
        if isinstance(ssl_mode, bool):
            parsed["ssl_mode"] = ssl_mode
        data["connection"] = ConnectionConfig(**parsed)
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConnectionConfig",
    "ConnectionDescriptor",
    "DEFAULT_DBNAME",
    "DEFAULT_HOST",
    "DEFAULT_PASSWORD",
    "DEFAULT_PORT",
    "DEFAULT_SSL_MODE",
    "DEFAULT_TIME_ZONE",
    "DEFAULT_USERNAME",
    "ENABLED_SSL_MODE",
    "load_config",
    "normalize",
    "save_config",
]
