"""calmirror configuration loading and validation.

Reads a TOML file (or the process environment) and returns a validated
MirrorConfig dataclass. Only the sections below are recognised::

    [storage]
    backend = "postgres"            # or "memory"
    auto_create_tables = true
    auto_connect = true

    [storage.connection]
    dsn = "${CALMIRROR_DATABASE_URL}"   # or host/port/database/user/password

    [storage.ssl]
    certificate_path = "/etc/ssl/certs/db.pem"
    reject_unauthorized = true

    [storage.tables]
    prefix = "acme"                 # -> acme_calmirror_events, ...

    [storage.logging]
    enabled = true
    level = "INFO"
    pretty_print = true
    format = "text"

    [provider]
    api_uri = "https://api.us.nylas.com"
    api_key = "${CALMIRROR_API_KEY}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_VALID_BACKENDS = ("memory", "postgres")
_VALID_LOG_FORMATS = ("text", "json")
_VALID_DSN_SCHEMES = ("postgres", "postgresql")

DEFAULT_API_URI = "https://api.us.nylas.com"
DEFAULT_TABLE_BASENAMES = {
    "credentials": "calmirror_credentials",
    "calendars": "calmirror_calendars",
    "events": "calmirror_events",
}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


def standard_table_names(prefix: str = "") -> TableNames:
    """Return the default table names, optionally prefixed with ``<prefix>_``."""
    table_prefix = f"{prefix}_" if prefix else ""
    return TableNames(
        credentials=f"{table_prefix}{DEFAULT_TABLE_BASENAMES['credentials']}",
        calendars=f"{table_prefix}{DEFAULT_TABLE_BASENAMES['calendars']}",
        events=f"{table_prefix}{DEFAULT_TABLE_BASENAMES['events']}",
    )


def _validate_identifier(value: str, field_name: str) -> str:
    normalized = value.strip()
    if _IDENTIFIER_PATTERN.fullmatch(normalized) is None:
        raise ConfigError(
            f"Invalid {field_name}: {value!r}. Expected a SQL identifier-style string."
        )
    return normalized


@dataclass
class TableNames:
    """Per-deployment table names for the relational adapter."""

    credentials: str = DEFAULT_TABLE_BASENAMES["credentials"]
    calendars: str = DEFAULT_TABLE_BASENAMES["calendars"]
    events: str = DEFAULT_TABLE_BASENAMES["events"]

    def __post_init__(self) -> None:
        self.credentials = _validate_identifier(self.credentials, "tables.credentials")
        self.calendars = _validate_identifier(self.calendars, "tables.calendars")
        self.events = _validate_identifier(self.events, "tables.events")


@dataclass
class ConnectionParams:
    """Connection target: either a DSN or structured parameters."""

    dsn: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str = "postgres"
    password: str | None = None

    def __post_init__(self) -> None:
        if self.dsn is not None:
            scheme = urlparse(self.dsn).scheme
            if scheme not in _VALID_DSN_SCHEMES:
                raise ConfigError(
                    f"Unsupported DSN scheme {scheme!r}; expected one of {_VALID_DSN_SCHEMES}"
                )

    def describe(self) -> str:
        """Return the connection target with any password removed."""
        if self.dsn is not None:
            parsed = urlparse(self.dsn)
            host = parsed.hostname or "localhost"
            port = parsed.port or 5432
            database = parsed.path.lstrip("/") or "postgres"
            return f"{host}:{port}/{database}"
        return f"{self.host}:{self.port}/{self.database}"

    def __repr__(self) -> str:
        return f"ConnectionParams(target={self.describe()!r})"


@dataclass
class SSLConfig:
    """TLS settings for the relational adapter."""

    certificate_path: str | None = None
    reject_unauthorized: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration from the [storage.logging] section."""

    enabled: bool = True
    level: str = "INFO"
    pretty_print: bool = True
    format: str = "text"  # "text" or "json"


@dataclass
class StorageConfig:
    """Storage adapter configuration from the [storage] section."""

    backend: str = "memory"
    connection: ConnectionParams = field(default_factory=ConnectionParams)
    ssl: SSLConfig | None = None
    tables: TableNames = field(default_factory=TableNames)
    auto_create_tables: bool = True
    auto_connect: bool = True
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class ProviderConfig:
    """Upstream calendar service settings from the [provider] section."""

    api_uri: str = DEFAULT_API_URI
    api_key: str | None = None
    client_id: str | None = None
    timeout: float = 30.0

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(api_uri={self.api_uri!r}, client_id={self.client_id!r}, "
            f"api_key_set={self.api_key is not None!r})"
        )


@dataclass
class MirrorConfig:
    """Top-level configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a table")
    return value


def _parse_connection(section: dict[str, Any]) -> ConnectionParams:
    dsn = section.get("dsn")
    if dsn is not None:
        if not isinstance(dsn, str) or not dsn.strip():
            raise ConfigError("storage.connection.dsn must be a non-empty string when set")
        return ConnectionParams(dsn=dsn.strip())

    try:
        port = int(section.get("port", 5432))
    except (TypeError, ValueError) as exc:
        raise ConfigError("storage.connection.port must be an integer") from exc

    password = section.get("password")
    return ConnectionParams(
        host=str(section.get("host", "localhost")),
        port=port,
        database=str(section.get("database", "postgres")),
        user=str(section.get("user", "postgres")),
        password=str(password) if password is not None else None,
    )


def _parse_tables(section: dict[str, Any]) -> TableNames:
    prefix = str(section.get("prefix", "")).strip()
    if prefix:
        _validate_identifier(prefix, "tables.prefix")
    defaults = standard_table_names(prefix)
    return TableNames(
        credentials=str(section.get("credentials", defaults.credentials)),
        calendars=str(section.get("calendars", defaults.calendars)),
        events=str(section.get("events", defaults.events)),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_format = str(section.get("format", "text")).lower()
    if log_format not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"Invalid storage.logging.format: {log_format!r}. Must be 'text' or 'json'."
        )
    return LoggingConfig(
        enabled=bool(section.get("enabled", True)),
        level=str(section.get("level", "INFO")).upper(),
        pretty_print=bool(section.get("pretty_print", True)),
        format=log_format,
    )


def parse_config(data: dict[str, Any]) -> MirrorConfig:
    """Build a MirrorConfig from an already-decoded mapping."""
    data = resolve_env_vars(data)

    storage_section = _section(data, "storage", "storage")
    backend = str(storage_section.get("backend", "memory")).strip().lower()
    if backend not in _VALID_BACKENDS:
        raise ConfigError(f"Invalid storage.backend: {backend!r}. Must be one of {_VALID_BACKENDS}")

    ssl_section = storage_section.get("ssl")
    ssl: SSLConfig | None = None
    if ssl_section is not None:
        if not isinstance(ssl_section, dict):
            raise ConfigError("[storage.ssl] must be a table")
        ssl = SSLConfig(
            certificate_path=ssl_section.get("certificate_path"),
            reject_unauthorized=bool(ssl_section.get("reject_unauthorized", True)),
        )

    storage = StorageConfig(
        backend=backend,
        connection=_parse_connection(_section(storage_section, "connection", "storage.connection")),
        ssl=ssl,
        tables=_parse_tables(_section(storage_section, "tables", "storage.tables")),
        auto_create_tables=bool(storage_section.get("auto_create_tables", True)),
        auto_connect=bool(storage_section.get("auto_connect", True)),
        logging=_parse_logging(_section(storage_section, "logging", "storage.logging")),
    )

    provider_section = _section(data, "provider", "provider")
    try:
        timeout = float(provider_section.get("timeout", 30.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError("provider.timeout must be a number") from exc
    provider = ProviderConfig(
        api_uri=str(provider_section.get("api_uri", DEFAULT_API_URI)).rstrip("/"),
        api_key=provider_section.get("api_key"),
        client_id=provider_section.get("client_id"),
        timeout=timeout,
    )

    return MirrorConfig(storage=storage, provider=provider)


def load_config(path: Path) -> MirrorConfig:
    """Load and validate a calmirror TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid fields.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)


def config_from_env() -> MirrorConfig:
    """Build a config from ``CALMIRROR_*`` environment variables.

    Without ``CALMIRROR_DATABASE_URL`` the in-memory backend is selected.
    """
    database_url = os.environ.get("CALMIRROR_DATABASE_URL")
    prefix = os.environ.get("CALMIRROR_TABLE_PREFIX", "")
    defaults = standard_table_names(prefix)
    tables = TableNames(
        credentials=os.environ.get("CALMIRROR_TABLE_CREDENTIALS", defaults.credentials),
        calendars=os.environ.get("CALMIRROR_TABLE_CALENDARS", defaults.calendars),
        events=os.environ.get("CALMIRROR_TABLE_EVENTS", defaults.events),
    )
    cert_path = os.environ.get("CALMIRROR_CERT_PATH")

    storage = StorageConfig(
        backend="postgres" if database_url else "memory",
        connection=ConnectionParams(dsn=database_url) if database_url else ConnectionParams(),
        ssl=SSLConfig(certificate_path=cert_path) if cert_path else None,
        tables=tables,
        logging=LoggingConfig(level=os.environ.get("CALMIRROR_LOG_LEVEL", "INFO").upper()),
    )
    provider = ProviderConfig(
        api_uri=os.environ.get("CALMIRROR_API_URI", DEFAULT_API_URI).rstrip("/"),
        api_key=os.environ.get("CALMIRROR_API_KEY"),
        client_id=os.environ.get("CALMIRROR_CLIENT_ID"),
    )
    return MirrorConfig(storage=storage, provider=provider)
