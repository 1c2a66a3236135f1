"""Configuration loading utilities for the tenant store."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "TENANT_STORE_"

DEFAULT_STORAGE_SUBDIR = "tenant-store"


def _default_storage_dir() -> Path:
    """Return the default storage directory under the current working directory."""

    return (Path.cwd() / DEFAULT_STORAGE_SUBDIR).resolve()


DEFAULT_STORAGE_DIR = _default_storage_dir()
DEFAULT_BACKEND = "lancedb"
DEFAULT_TENANT_TABLE = "tenants"
DEFAULT_AUDIT_TABLE = "audit_log"
DEFAULT_BATCH_LIMIT = 100
DEFAULT_CALL_TIMEOUT = "30s"
DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY = "2s"
DEFAULT_RETRY_MAX_DELAY = "20s"
DEFAULT_CIRCUIT_FAILURE_THRESHOLD = 3
DEFAULT_CIRCUIT_OPEN_DURATION = "60s"
DEFAULT_INDEX_MAX_AGE = "5m"
DEFAULT_SHARED_CACHE_TTL = "15m"
DEFAULT_PRINCIPAL_CACHE_TTL = "5m"
DEFAULT_NEGATIVE_CACHE_TTL = "60s"
DEFAULT_SHARED_CACHE_MAX_ENTRIES = 1000
DEFAULT_PRINCIPAL_CACHE_MAX_ENTRIES = 1000
DEFAULT_CACHE_MAX_VALUE_BYTES = 100_000
DEFAULT_UPDATE_LOCK_TIMEOUT = "5s"
DEFAULT_CREATE_LOCK_TIMEOUT = "10s"
DEFAULT_CACHE_SWEEP_INTERVAL = "1m"
DEFAULT_LOG_LEVEL = "INFO"

BACKENDS = ("memory", "lancedb")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

T_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "backend": f"{ENV_PREFIX}BACKEND",
    "storage_dir": f"{ENV_PREFIX}STORAGE_DIR",
    "redis_url": f"{ENV_PREFIX}REDIS_URL",
    "tenant_table": f"{ENV_PREFIX}TENANT_TABLE",
    "audit_table": f"{ENV_PREFIX}AUDIT_TABLE",
    "batch_limit": f"{ENV_PREFIX}BATCH_LIMIT",
    "call_timeout": f"{ENV_PREFIX}CALL_TIMEOUT",
    "retry_max_attempts": f"{ENV_PREFIX}RETRY_MAX_ATTEMPTS",
    "retry_initial_delay": f"{ENV_PREFIX}RETRY_INITIAL_DELAY",
    "retry_max_delay": f"{ENV_PREFIX}RETRY_MAX_DELAY",
    "circuit_failure_threshold": f"{ENV_PREFIX}CIRCUIT_FAILURE_THRESHOLD",
    "circuit_open_duration": f"{ENV_PREFIX}CIRCUIT_OPEN_DURATION",
    "index_max_age": f"{ENV_PREFIX}INDEX_MAX_AGE",
    "shared_cache_ttl": f"{ENV_PREFIX}SHARED_CACHE_TTL",
    "principal_cache_ttl": f"{ENV_PREFIX}PRINCIPAL_CACHE_TTL",
    "negative_cache_ttl": f"{ENV_PREFIX}NEGATIVE_CACHE_TTL",
    "shared_cache_max_entries": f"{ENV_PREFIX}SHARED_CACHE_MAX_ENTRIES",
    "principal_cache_max_entries": f"{ENV_PREFIX}PRINCIPAL_CACHE_MAX_ENTRIES",
    "cache_max_value_bytes": f"{ENV_PREFIX}CACHE_MAX_VALUE_BYTES",
    "update_lock_timeout": f"{ENV_PREFIX}UPDATE_LOCK_TIMEOUT",
    "create_lock_timeout": f"{ENV_PREFIX}CREATE_LOCK_TIMEOUT",
    "cache_sweep_interval": f"{ENV_PREFIX}CACHE_SWEEP_INTERVAL",
    "log_level": f"{ENV_PREFIX}LOG_LEVEL",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "backend": DEFAULT_BACKEND,
    "storage_dir": str(DEFAULT_STORAGE_DIR),
    "redis_url": None,
    "tenant_table": DEFAULT_TENANT_TABLE,
    "audit_table": DEFAULT_AUDIT_TABLE,
    "batch_limit": DEFAULT_BATCH_LIMIT,
    "call_timeout": DEFAULT_CALL_TIMEOUT,
    "retry_max_attempts": DEFAULT_RETRY_MAX_ATTEMPTS,
    "retry_initial_delay": DEFAULT_RETRY_INITIAL_DELAY,
    "retry_max_delay": DEFAULT_RETRY_MAX_DELAY,
    "circuit_failure_threshold": DEFAULT_CIRCUIT_FAILURE_THRESHOLD,
    "circuit_open_duration": DEFAULT_CIRCUIT_OPEN_DURATION,
    "index_max_age": DEFAULT_INDEX_MAX_AGE,
    "shared_cache_ttl": DEFAULT_SHARED_CACHE_TTL,
    "principal_cache_ttl": DEFAULT_PRINCIPAL_CACHE_TTL,
    "negative_cache_ttl": DEFAULT_NEGATIVE_CACHE_TTL,
    "shared_cache_max_entries": DEFAULT_SHARED_CACHE_MAX_ENTRIES,
    "principal_cache_max_entries": DEFAULT_PRINCIPAL_CACHE_MAX_ENTRIES,
    "cache_max_value_bytes": DEFAULT_CACHE_MAX_VALUE_BYTES,
    "update_lock_timeout": DEFAULT_UPDATE_LOCK_TIMEOUT,
    "create_lock_timeout": DEFAULT_CREATE_LOCK_TIMEOUT,
    "cache_sweep_interval": DEFAULT_CACHE_SWEEP_INTERVAL,
    "log_level": DEFAULT_LOG_LEVEL,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the tenant store runtime."""

    backend: str
    storage_dir: Path
    redis_url: str | None
    tenant_table: str
    audit_table: str
    batch_limit: int
    call_timeout: timedelta
    retry_max_attempts: int
    retry_initial_delay: timedelta
    retry_max_delay: timedelta
    circuit_failure_threshold: int
    circuit_open_duration: timedelta
    index_max_age: timedelta
    shared_cache_ttl: timedelta
    principal_cache_ttl: timedelta
    negative_cache_ttl: timedelta
    shared_cache_max_entries: int
    principal_cache_max_entries: int
    cache_max_value_bytes: int
    update_lock_timeout: timedelta
    create_lock_timeout: timedelta
    cache_sweep_interval: timedelta
    log_level: str
    config_file: Path | None = None


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(environ if environ is not None else os.environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def hot_reload_config(*_args: Any, **_kwargs: Any) -> None:
    """Explicitly prevent runtime configuration reloading."""

    raise ConfigError("Configuration can only be loaded during startup. Restart the process to apply changes.")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenant-store",
        description="Tenant store configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file (created on first run). Default: none.",
    )
    parser.add_argument(
        "--backend",
        dest="backend",
        metavar="NAME",
        help=f"Row store backend: memory or lancedb (default: {DEFAULT_BACKEND}).",
    )
    parser.add_argument(
        "--storage-dir",
        dest="storage_dir",
        metavar="PATH",
        help=f"Directory for the LanceDB row store (default: {DEFAULT_STORAGE_DIR}).",
    )
    parser.add_argument(
        "--redis-url",
        dest="redis_url",
        metavar="URL",
        help="Redis URL for the shared cache tier and write lock (default: in-process).",
    )
    parser.add_argument(
        "--tenant-table",
        dest="tenant_table",
        metavar="NAME",
        help=f"Name of the tenant table (default: {DEFAULT_TENANT_TABLE}).",
    )
    parser.add_argument(
        "--audit-table",
        dest="audit_table",
        metavar="NAME",
        help=f"Name of the audit log table (default: {DEFAULT_AUDIT_TABLE}).",
    )

    parser.add_argument(
        "--batch-limit",
        dest="batch_limit",
        metavar="INT",
        help=f"Maximum ranges per backend batch call (default: {DEFAULT_BATCH_LIMIT}).",
    )
    parser.add_argument("--call-timeout", dest="call_timeout", metavar="DURATION", help="Timeout for each backend call (default: 30s).")
    parser.add_argument(
        "--retry-max-attempts",
        dest="retry_max_attempts",
        metavar="INT",
        help=f"Attempts per backend call before giving up (default: {DEFAULT_RETRY_MAX_ATTEMPTS}).",
    )
    parser.add_argument("--retry-initial-delay", dest="retry_initial_delay", metavar="DURATION", help="First backoff delay (default: 2s).")
    parser.add_argument("--retry-max-delay", dest="retry_max_delay", metavar="DURATION", help="Backoff delay cap (default: 20s).")
    parser.add_argument(
        "--circuit-failure-threshold",
        dest="circuit_failure_threshold",
        metavar="INT",
        help=f"Consecutive rate-limit errors that open the circuit (0 disables; default: {DEFAULT_CIRCUIT_FAILURE_THRESHOLD}).",
    )
    parser.add_argument(
        "--circuit-open-duration",
        dest="circuit_open_duration",
        metavar="DURATION",
        help="How long backend calls stay paused once the circuit opens (default: 60s).",
    )

    parser.add_argument("--index-max-age", dest="index_max_age", metavar="DURATION", help="Maximum age of the lookup index (default: 5m).")
    parser.add_argument("--shared-cache-ttl", dest="shared_cache_ttl", metavar="DURATION", help="Shared tier TTL (default: 15m).")
    parser.add_argument("--principal-cache-ttl", dest="principal_cache_ttl", metavar="DURATION", help="Per-principal tier TTL (default: 5m).")
    parser.add_argument("--negative-cache-ttl", dest="negative_cache_ttl", metavar="DURATION", help="TTL for cached lookup misses (default: 60s).")
    parser.add_argument(
        "--shared-cache-max-entries",
        dest="shared_cache_max_entries",
        metavar="INT",
        help=f"Shared tier size bound (default: {DEFAULT_SHARED_CACHE_MAX_ENTRIES}).",
    )
    parser.add_argument(
        "--principal-cache-max-entries",
        dest="principal_cache_max_entries",
        metavar="INT",
        help=f"Per-principal tier size bound (default: {DEFAULT_PRINCIPAL_CACHE_MAX_ENTRIES}).",
    )
    parser.add_argument(
        "--cache-max-value-bytes",
        dest="cache_max_value_bytes",
        metavar="INT",
        help=f"Largest encoded value the cache accepts (0 for unlimited; default: {DEFAULT_CACHE_MAX_VALUE_BYTES}).",
    )
    parser.add_argument("--update-lock-timeout", dest="update_lock_timeout", metavar="DURATION", help="Lock wait for updates and deletes (default: 5s).")
    parser.add_argument("--create-lock-timeout", dest="create_lock_timeout", metavar="DURATION", help="Lock wait for tenant creation (default: 10s).")
    parser.add_argument(
        "--cache-sweep-interval",
        dest="cache_sweep_interval",
        metavar="DURATION",
        help="Interval of the expired-entry sweeper (0 disables; default: 1m).",
    )
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help=f"Log level (default: {DEFAULT_LOG_LEVEL}).")

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    backend = str(values.get("backend", DEFAULT_BACKEND)).strip().lower()
    if backend not in BACKENDS:
        raise ConfigError(f"backend must be one of: {', '.join(BACKENDS)}")

    storage_dir = _parse_path(values["storage_dir"], field="storage_dir")

    redis_url_value = values.get("redis_url")
    redis_url = str(redis_url_value).strip() if redis_url_value not in (None, "") else None
    if redis_url is not None and not redis_url.startswith(("redis://", "rediss://", "unix://")):
        raise ConfigError("redis_url must use the redis://, rediss:// or unix:// scheme")

    tenant_table = _parse_table_name(values.get("tenant_table", DEFAULT_TENANT_TABLE), field="tenant_table")
    audit_table = _parse_table_name(values.get("audit_table", DEFAULT_AUDIT_TABLE), field="audit_table")
    if tenant_table == audit_table:
        raise ConfigError("tenant_table and audit_table must be distinct")

    batch_limit = _parse_int(values.get("batch_limit", DEFAULT_BATCH_LIMIT), field="batch_limit", minimum=1)
    call_timeout = _parse_duration(values.get("call_timeout", DEFAULT_CALL_TIMEOUT), default_unit="s", field="call_timeout")
    retry_max_attempts = _parse_int(values.get("retry_max_attempts", DEFAULT_RETRY_MAX_ATTEMPTS), field="retry_max_attempts", minimum=1)
    retry_initial_delay = _parse_duration(
        values.get("retry_initial_delay", DEFAULT_RETRY_INITIAL_DELAY),
        default_unit="s",
        field="retry_initial_delay",
    )
    retry_max_delay = _parse_duration(values.get("retry_max_delay", DEFAULT_RETRY_MAX_DELAY), default_unit="s", field="retry_max_delay")
    if retry_max_delay < retry_initial_delay:
        raise ConfigError("retry_max_delay must be >= retry_initial_delay")

    circuit_failure_threshold = _parse_int(
        values.get("circuit_failure_threshold", DEFAULT_CIRCUIT_FAILURE_THRESHOLD),
        field="circuit_failure_threshold",
        minimum=0,
    )
    circuit_open_duration = _parse_duration(
        values.get("circuit_open_duration", DEFAULT_CIRCUIT_OPEN_DURATION),
        default_unit="s",
        field="circuit_open_duration",
    )

    index_max_age = _parse_duration(values.get("index_max_age", DEFAULT_INDEX_MAX_AGE), default_unit="m", field="index_max_age")
    shared_cache_ttl = _parse_duration(values.get("shared_cache_ttl", DEFAULT_SHARED_CACHE_TTL), default_unit="m", field="shared_cache_ttl")
    principal_cache_ttl = _parse_duration(
        values.get("principal_cache_ttl", DEFAULT_PRINCIPAL_CACHE_TTL),
        default_unit="m",
        field="principal_cache_ttl",
    )
    negative_cache_ttl = _parse_duration(
        values.get("negative_cache_ttl", DEFAULT_NEGATIVE_CACHE_TTL),
        default_unit="s",
        field="negative_cache_ttl",
    )
    shared_cache_max_entries = _parse_int(
        values.get("shared_cache_max_entries", DEFAULT_SHARED_CACHE_MAX_ENTRIES),
        field="shared_cache_max_entries",
        minimum=1,
    )
    principal_cache_max_entries = _parse_int(
        values.get("principal_cache_max_entries", DEFAULT_PRINCIPAL_CACHE_MAX_ENTRIES),
        field="principal_cache_max_entries",
        minimum=1,
    )
    cache_max_value_bytes = _parse_int(
        values.get("cache_max_value_bytes", DEFAULT_CACHE_MAX_VALUE_BYTES),
        field="cache_max_value_bytes",
        minimum=0,
    )

    update_lock_timeout = _parse_duration(
        values.get("update_lock_timeout", DEFAULT_UPDATE_LOCK_TIMEOUT),
        default_unit="s",
        field="update_lock_timeout",
    )
    create_lock_timeout = _parse_duration(
        values.get("create_lock_timeout", DEFAULT_CREATE_LOCK_TIMEOUT),
        default_unit="s",
        field="create_lock_timeout",
    )
    cache_sweep_interval = _parse_duration(
        values.get("cache_sweep_interval", DEFAULT_CACHE_SWEEP_INTERVAL),
        default_unit="m",
        field="cache_sweep_interval",
    )

    log_level = str(values.get("log_level", DEFAULT_LOG_LEVEL)).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        backend=backend,
        storage_dir=storage_dir,
        redis_url=redis_url,
        tenant_table=tenant_table,
        audit_table=audit_table,
        batch_limit=batch_limit,
        call_timeout=call_timeout,
        retry_max_attempts=retry_max_attempts,
        retry_initial_delay=retry_initial_delay,
        retry_max_delay=retry_max_delay,
        circuit_failure_threshold=circuit_failure_threshold,
        circuit_open_duration=circuit_open_duration,
        index_max_age=index_max_age,
        shared_cache_ttl=shared_cache_ttl,
        principal_cache_ttl=principal_cache_ttl,
        negative_cache_ttl=negative_cache_ttl,
        shared_cache_max_entries=shared_cache_max_entries,
        principal_cache_max_entries=principal_cache_max_entries,
        cache_max_value_bytes=cache_max_value_bytes,
        update_lock_timeout=update_lock_timeout,
        create_lock_timeout=create_lock_timeout,
        cache_sweep_interval=cache_sweep_interval,
        log_level=log_level,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    return {
        "config_file": str(config.config_file) if config.config_file else None,
        "backend": config.backend,
        "storage_dir": str(config.storage_dir),
        "redis_url": config.redis_url,
        "tenant_table": config.tenant_table,
        "audit_table": config.audit_table,
        "batch_limit": config.batch_limit,
        "call_timeout": _format_duration(config.call_timeout, preferred_unit="s"),
        "retry_max_attempts": config.retry_max_attempts,
        "retry_initial_delay": _format_duration(config.retry_initial_delay, preferred_unit="s"),
        "retry_max_delay": _format_duration(config.retry_max_delay, preferred_unit="s"),
        "circuit_failure_threshold": config.circuit_failure_threshold,
        "circuit_open_duration": _format_duration(config.circuit_open_duration, preferred_unit="s"),
        "index_max_age": _format_duration(config.index_max_age, preferred_unit="m"),
        "shared_cache_ttl": _format_duration(config.shared_cache_ttl, preferred_unit="m"),
        "principal_cache_ttl": _format_duration(config.principal_cache_ttl, preferred_unit="m"),
        "negative_cache_ttl": _format_duration(config.negative_cache_ttl, preferred_unit="s"),
        "shared_cache_max_entries": config.shared_cache_max_entries,
        "principal_cache_max_entries": config.principal_cache_max_entries,
        "cache_max_value_bytes": config.cache_max_value_bytes,
        "update_lock_timeout": _format_duration(config.update_lock_timeout, preferred_unit="s"),
        "create_lock_timeout": _format_duration(config.create_lock_timeout, preferred_unit="s"),
        "cache_sweep_interval": _format_duration(config.cache_sweep_interval, preferred_unit="m"),
        "log_level": config.log_level,
    }


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_ms = round(duration.total_seconds() * 1000)
    factor_ms = round(T_DURATION_UNITS.get(preferred_unit, 1) * 1000)
    if factor_ms and total_ms % factor_ms == 0:
        return f"{total_ms // factor_ms}{preferred_unit}"
    if total_ms % 1000 == 0:
        return f"{total_ms // 1000}s"
    return f"{total_ms}ms"


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid integer for {field}: {value!r}")
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip().lower()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    number_part = stripped
    if stripped.endswith("ms"):
        unit = "ms"
        number_part = stripped[:-2]
    elif stripped[-1] in T_DURATION_UNITS:
        unit = stripped[-1]
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a non-negative integer optionally suffixed with ms, s, m, or h")
    amount = int(number_part)
    return timedelta(seconds=amount * T_DURATION_UNITS[unit])


def _parse_table_name(value: Any, *, field: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"Invalid table name for {field}: {value!r}")
    stripped = value.strip()
    if not stripped or not stripped.replace("_", "").replace("-", "").isalnum():
        raise ConfigError(f"{field} must contain only letters, digits, '-' or '_'")
    return stripped


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
