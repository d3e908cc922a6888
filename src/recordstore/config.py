"""Record store configuration loading and validation.

Reads ``recordstore.toml`` from a config directory, resolves ``${VAR}``
references against the environment, and returns a validated
:class:`StoreConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from recordstore.db import SSL_MODES
from recordstore.repository import validate_identifier

CONFIG_FILENAME = "recordstore.toml"
DEFAULT_TABLE = "records"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when record store configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [store.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from [store.db] section."""

    name: str
    schema: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class StoreConfig:
    """Parsed and validated record store configuration."""

    db: DatabaseConfig
    table: str = DEFAULT_TABLE
    versioned: bool = True
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _parse_identifier(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{path} must be a non-empty string")
    try:
        return validate_identifier(value.strip(), path)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _parse_int(value: Any, path: str, *, minimum: int = 0) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise ConfigError(f"{path} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path} must be an integer") from exc
    if parsed < minimum:
        raise ConfigError(f"{path} must be >= {minimum}, got {parsed}")
    return parsed


def _parse_db(db_section: Any) -> DatabaseConfig:
    """Parse the required [store.db] sub-section."""
    if not isinstance(db_section, dict):
        raise ConfigError("Missing [store.db] section in config")

    name = db_section.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("store.db.name must be a non-empty string")

    schema_raw = db_section.get("schema")
    schema = None if schema_raw is None else _parse_identifier(schema_raw, "store.db.schema")

    ssl_raw = db_section.get("sslmode")
    ssl: str | None = None
    if ssl_raw is not None:
        ssl = str(ssl_raw).strip().lower()
        if ssl not in SSL_MODES:
            raise ConfigError(
                f"Invalid store.db.sslmode: {ssl_raw!r}. "
                f"Must be one of: {', '.join(sorted(SSL_MODES))}"
            )

    min_pool_size = _parse_int(db_section.get("min_pool_size", 2), "store.db.min_pool_size")
    max_pool_size = _parse_int(
        db_section.get("max_pool_size", 10), "store.db.max_pool_size", minimum=1
    )
    if min_pool_size > max_pool_size:
        raise ConfigError(
            f"store.db.min_pool_size ({min_pool_size}) must not exceed "
            f"store.db.max_pool_size ({max_pool_size})"
        )

    return DatabaseConfig(
        name=name.strip(),
        schema=schema,
        host=str(db_section.get("host", "localhost")),
        port=_parse_int(db_section.get("port", 5432), "store.db.port", minimum=1),
        user=str(db_section.get("user", "postgres")),
        password=str(db_section.get("password", "postgres")),
        ssl=ssl,
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
    )


def _parse_logging(logging_section: Any) -> LoggingConfig:
    """Parse the optional [store.logging] sub-section."""
    if not isinstance(logging_section, dict):
        raise ConfigError("store.logging must be a table")

    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid store.logging.format: {log_format!r}. Must be 'text' or 'json'."
        )

    log_root = logging_section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("store.logging.log_root must be a string when set")

    return LoggingConfig(level=log_level, format=log_format, log_root=log_root)


def load_config(config_dir: Path) -> StoreConfig:
    """Load and validate a recordstore.toml from *config_dir*.

    Parameters
    ----------
    config_dir:
        Directory containing ``recordstore.toml``.

    Returns
    -------
    StoreConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    store_section = data.get("store")
    if not isinstance(store_section, dict):
        raise ConfigError("Missing [store] section in config")

    table = _parse_identifier(store_section.get("table", DEFAULT_TABLE), "store.table")

    versioned = store_section.get("versioned", True)
    if not isinstance(versioned, bool):
        raise ConfigError("store.versioned must be a boolean")

    return StoreConfig(
        db=_parse_db(store_section.get("db")),
        table=table,
        versioned=versioned,
        logging=_parse_logging(store_section.get("logging", {})),
    )
