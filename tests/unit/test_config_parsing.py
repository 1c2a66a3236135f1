from __future__ import annotations

from datetime import timedelta

import pytest

from tenant_store.config import ConfigError, hot_reload_config, load_config


def test_defaults_without_overrides() -> None:
    cfg = load_config(argv=[], environ={})

    assert cfg.backend == "lancedb"
    assert cfg.redis_url is None
    assert cfg.tenant_table == "tenants"
    assert cfg.audit_table == "audit_log"
    assert cfg.batch_limit == 100
    assert cfg.call_timeout == timedelta(seconds=30)
    assert cfg.retry_max_attempts == 3
    assert cfg.retry_initial_delay == timedelta(seconds=2)
    assert cfg.retry_max_delay == timedelta(seconds=20)
    assert cfg.circuit_failure_threshold == 3
    assert cfg.circuit_open_duration == timedelta(seconds=60)
    assert cfg.index_max_age == timedelta(minutes=5)
    assert cfg.shared_cache_ttl == timedelta(minutes=15)
    assert cfg.principal_cache_ttl == timedelta(minutes=5)
    assert cfg.negative_cache_ttl == timedelta(seconds=60)
    assert cfg.cache_max_value_bytes == 100_000
    assert cfg.update_lock_timeout == timedelta(seconds=5)
    assert cfg.create_lock_timeout == timedelta(seconds=10)
    assert cfg.cache_sweep_interval == timedelta(minutes=1)
    assert cfg.log_level == "INFO"
    assert cfg.config_file is None


def test_environment_overrides_defaults_and_cli_overrides_environment() -> None:
    environ = {
        "TENANT_STORE_BATCH_LIMIT": "25",
        "TENANT_STORE_SHARED_CACHE_TTL": "90s",
        "TENANT_STORE_BACKEND": "Memory",
    }

    from_env = load_config(argv=[], environ=environ)
    assert from_env.batch_limit == 25
    assert from_env.shared_cache_ttl == timedelta(seconds=90)
    assert from_env.backend == "memory"

    from_cli = load_config(argv=["--batch-limit", "10"], environ=environ)
    assert from_cli.batch_limit == 10
    assert from_cli.shared_cache_ttl == timedelta(seconds=90)


@pytest.mark.parametrize(
    ("flag", "value", "field", "expected"),
    [
        ("--call-timeout", "250ms", "call_timeout", timedelta(milliseconds=250)),
        ("--index-max-age", "3", "index_max_age", timedelta(minutes=3)),
        ("--shared-cache-ttl", "2h", "shared_cache_ttl", timedelta(hours=2)),
        ("--cache-sweep-interval", "0", "cache_sweep_interval", timedelta(0)),
        ("--negative-cache-ttl", "45", "negative_cache_ttl", timedelta(seconds=45)),
    ],
)
def test_duration_suffixes(flag: str, value: str, field: str, expected: timedelta) -> None:
    cfg = load_config(argv=[flag, value], environ={})
    assert getattr(cfg, field) == expected


def test_redis_url_accepted() -> None:
    cfg = load_config(argv=["--redis-url", "redis://localhost:6379/2"], environ={})
    assert cfg.redis_url == "redis://localhost:6379/2"


@pytest.mark.parametrize(
    "argv",
    [
        ["--backend", "sqlite"],
        ["--batch-limit", "0"],
        ["--retry-initial-delay", "30s", "--retry-max-delay", "5s"],
        ["--redis-url", "http://localhost"],
        ["--tenant-table", "shared", "--audit-table", "shared"],
        ["--tenant-table", "bad name"],
        ["--call-timeout", "soon"],
        ["--log-level", "chatty"],
    ],
)
def test_invalid_values_raise_config_error(argv: list[str]) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=argv, environ={})


def test_hot_reload_is_rejected() -> None:
    with pytest.raises(ConfigError):
        hot_reload_config()
