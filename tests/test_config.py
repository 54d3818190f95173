# -*- coding: utf-8 -*-
from __future__ import annotations

import pytest

from tiermint.config import load_from_env

ENV_KEYS = (
    "CATALOG_PATH",
    "LEDGER_BACKEND",
    "LEDGER_PATH",
    "DB_URL",
    "ROLLBACK_POLICY",
    "ACTOR_LOCK_BACKEND",
    "REDIS_URL",
    "ACTOR_LOCK_TTL_SECONDS",
    "ACTOR_LOCK_MAX_WAIT_SECONDS",
    "ALLOCATION_LOCK_TIMEOUT_SECONDS",
    "COMPLETION_LOG_PATH",
    "MIRROR_DIR",
    "MIRROR_URL",
    "MIRROR_TOKEN",
    "PII_HASH_SALT",
    "METRICS_PORT",
    "ENV",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    config = load_from_env()
    assert config.ledger_backend == "sql"
    assert config.rollback_policy == "burn"
    assert config.actor_lock_backend == "memory"
    assert config.actor_lock_ttl == 120.0
    assert config.actor_lock_max_wait == 0.0
    assert config.allocation_lock_timeout == 30.0
    assert config.metrics_port == 9108
    assert config.mirror_dir is None
    assert config.env == "dev"


def test_values_are_read_and_normalised(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_BACKEND", "FILE")
    monkeypatch.setenv("ROLLBACK_POLICY", " Reclaim ")
    monkeypatch.setenv("ACTOR_LOCK_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("ACTOR_LOCK_MAX_WAIT_SECONDS", "2.5")
    monkeypatch.setenv("MIRROR_DIR", "/var/lib/tiermint/mirror")
    monkeypatch.setenv("METRICS_PORT", "9200")
    monkeypatch.setenv("ENV", "prod")

    config = load_from_env()

    assert config.ledger_backend == "file"
    assert config.rollback_policy == "reclaim"
    assert config.redis_url == "redis://localhost:6379/0"
    assert config.actor_lock_max_wait == 2.5
    assert config.mirror_dir == "/var/lib/tiermint/mirror"
    assert config.metrics_port == 9200
    assert config.env == "prod"


@pytest.mark.parametrize(
    "env, message",
    [
        ({"ROLLBACK_POLICY": "recycle"}, "ROLLBACK_POLICY"),
        ({"ACTOR_LOCK_BACKEND": "redis"}, "REDIS_URL"),
        ({"LEDGER_BACKEND": "file", "ACTOR_LOCK_BACKEND": "sql"}, "LEDGER_BACKEND=sql"),
        ({"METRICS_PORT": "70000"}, "METRICS_PORT"),
        ({"METRICS_PORT": "abc"}, "METRICS_PORT"),
        ({"ENV": "qa"}, "ENV"),
        ({"ACTOR_LOCK_TTL_SECONDS": "0"}, "ACTOR_LOCK_TTL_SECONDS"),
        ({"ALLOCATION_LOCK_TIMEOUT_SECONDS": "soon"}, "ALLOCATION_LOCK_TIMEOUT_SECONDS"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, env, message) -> None:
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    with pytest.raises(ValueError) as exc:
        load_from_env()
    assert message in str(exc.value)
