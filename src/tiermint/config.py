# -*- coding: utf-8 -*-
"""Configuration loader for the allocation engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Optional, cast

DEFAULT_METRICS_PORT = 9108
DEFAULT_ACTOR_LOCK_TTL = 120.0
DEFAULT_ALLOCATION_LOCK_TIMEOUT = 30.0
SUPPORTED_ENVS = {"dev", "stage", "prod"}
SUPPORTED_LEDGER_BACKENDS = {"file", "sql"}
SUPPORTED_LOCK_BACKENDS = {"memory", "redis", "sql"}
SUPPORTED_POLICIES = {"reclaim", "burn"}


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Typed configuration block for the allocation engine."""

    catalog_path: str
    ledger_backend: Literal["file", "sql"]
    ledger_path: str
    db_url: str
    rollback_policy: Literal["reclaim", "burn"]
    actor_lock_backend: Literal["memory", "redis", "sql"]
    redis_url: Optional[str]
    actor_lock_ttl: float
    actor_lock_max_wait: float
    allocation_lock_timeout: float
    completion_log_path: Optional[str]
    mirror_dir: Optional[str]
    mirror_url: Optional[str]
    mirror_token: Optional[str]
    pii_hash_salt: str
    metrics_port: int
    env: Literal["dev", "stage", "prod"]


def _choice(name: str, default: str, allowed: set[str]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}")
    return value


def _seconds(name: str, default: float, *, allow_zero: bool = False) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{name} must be positive")
    return value


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def load_from_env() -> ServiceConfig:
    """Read configuration from environment variables with validation."""

    catalog_path = os.getenv("CATALOG_PATH", "rarity-categorization.json")
    ledger_backend = _choice("LEDGER_BACKEND", "sql", SUPPORTED_LEDGER_BACKENDS)
    ledger_path = os.getenv("LEDGER_PATH", "data/minted-tracker.json")
    db_url = os.getenv("DB_URL", "sqlite+pysqlite:///tiermint.sqlite")
    rollback_policy = _choice("ROLLBACK_POLICY", "burn", SUPPORTED_POLICIES)
    actor_lock_backend = _choice("ACTOR_LOCK_BACKEND", "memory", SUPPORTED_LOCK_BACKENDS)
    redis_url = _optional("REDIS_URL")
    if actor_lock_backend == "redis" and redis_url is None:
        raise ValueError("REDIS_URL is required when ACTOR_LOCK_BACKEND=redis")
    if actor_lock_backend == "sql" and ledger_backend != "sql":
        raise ValueError("ACTOR_LOCK_BACKEND=sql requires LEDGER_BACKEND=sql")

    metrics_port_str = os.getenv("METRICS_PORT", str(DEFAULT_METRICS_PORT))
    try:
        metrics_port = int(metrics_port_str)
        if not (1 <= metrics_port <= 65535):
            raise ValueError
    except ValueError as exc:
        raise ValueError("METRICS_PORT must be a valid TCP port") from exc

    env = os.getenv("ENV", "dev")
    if env not in SUPPORTED_ENVS:
        raise ValueError(f"ENV must be one of {sorted(SUPPORTED_ENVS)}")

    return ServiceConfig(
        catalog_path=catalog_path,
        ledger_backend=cast(Literal["file", "sql"], ledger_backend),
        ledger_path=ledger_path,
        db_url=db_url,
        rollback_policy=cast(Literal["reclaim", "burn"], rollback_policy),
        actor_lock_backend=cast(Literal["memory", "redis", "sql"], actor_lock_backend),
        redis_url=redis_url,
        actor_lock_ttl=_seconds("ACTOR_LOCK_TTL_SECONDS", DEFAULT_ACTOR_LOCK_TTL),
        actor_lock_max_wait=_seconds("ACTOR_LOCK_MAX_WAIT_SECONDS", 0.0, allow_zero=True),
        allocation_lock_timeout=_seconds("ALLOCATION_LOCK_TIMEOUT_SECONDS", DEFAULT_ALLOCATION_LOCK_TIMEOUT),
        completion_log_path=_optional("COMPLETION_LOG_PATH"),
        mirror_dir=_optional("MIRROR_DIR"),
        mirror_url=_optional("MIRROR_URL"),
        mirror_token=_optional("MIRROR_TOKEN"),
        pii_hash_salt=os.getenv("PII_HASH_SALT", "development-salt"),
        metrics_port=metrics_port,
        env=cast(Literal["dev", "stage", "prod"], env),
    )
