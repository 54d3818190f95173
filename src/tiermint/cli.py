# -*- coding: utf-8 -*-
"""Command line interface for the allocation engine."""
from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Optional, Sequence

from .bootstrap import get_runtime
from .config import load_from_env
from .errors import AllocationError
from .observability import MetricsServer
from .stores import JsonFileLedgerStore

EXIT_TERMINAL = 1
EXIT_TRANSIENT = 75


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def _run_reserve(args: argparse.Namespace) -> int:
    engine = get_runtime().engine
    identifiers = engine.reserve(args.tier, args.quantity)
    _emit({"tier": args.tier, "identifiers": identifiers})
    return 0


def _run_commit(args: argparse.Namespace) -> int:
    engine = get_runtime().engine
    records = engine.commit(args.tier, args.identifiers, args.reference, actor=args.actor)
    _emit({"recorded": [record.to_dict() for record in records]})
    return 0


def _run_rollback(args: argparse.Namespace) -> int:
    engine = get_runtime().engine
    released = engine.rollback(args.tier, args.identifiers)
    _emit({"tier": args.tier, "released": released, "policy": engine.policy.value})
    return 0


def _run_stats(args: argparse.Namespace) -> int:
    stats = get_runtime().engine.stats()
    _emit({rarity.value: entry.to_dict() for rarity, entry in stats.items()})
    return 0


def _run_preview(args: argparse.Namespace) -> int:
    identifiers = get_runtime().engine.preview(args.tier, args.count)
    _emit({"tier": args.tier, "next": identifiers})
    return 0


def _run_reconcile(args: argparse.Namespace) -> int:
    found = get_runtime().reconciler.reconcile()
    _emit({"discrepancies": [item.to_dict() for item in found]})
    return 0


def _run_repair(args: argparse.Namespace) -> int:
    report = get_runtime().reconciler.repair(release_orphans=args.release_orphans)
    _emit(report.to_dict())
    return 0


def _run_reset(args: argparse.Namespace) -> int:
    tiers = get_runtime().engine.reset(args.tier, force=args.force)
    _emit({"reset": [rarity.value for rarity in tiers]})
    return 0


def _run_restore_ledger(args: argparse.Namespace) -> int:
    config = load_from_env()
    if config.ledger_backend != "file":
        raise ValueError("restore-ledger only applies to LEDGER_BACKEND=file")
    restored = JsonFileLedgerStore(config.ledger_path).restore(args.sources)
    _emit(
        {
            "restored": config.ledger_path,
            "tiers": {rarity.value: restored[rarity].to_dict() for rarity in restored.tiers},
            "next": "run reconcile before serving reservations",
        }
    )
    return 0


def _run_lock_status(args: argparse.Namespace) -> int:
    runtime = get_runtime()
    payload: dict[str, Any] = {
        "allocation": [
            {
                "tier": lock.tier.value,
                "held": lock.held,
                "acquired_at": lock.acquired_at.isoformat() if lock.acquired_at else None,
            }
            for lock in runtime.engine.lock_status()
        ]
    }
    if args.actor:
        actor_lock = runtime.actor_locks.status(args.actor)
        payload["actor"] = (
            {
                "acquired_at": actor_lock.acquired_at.isoformat(),
                "expires_at": actor_lock.expires_at.isoformat(),
            }
            if actor_lock
            else None
        )
    _emit(payload)
    return 0


def _run_metrics(args: argparse.Namespace) -> int:
    runtime = get_runtime()
    port = args.port if args.port is not None else runtime.config.metrics_port
    server = MetricsServer(runtime.meters, engine=runtime.engine)
    server.start(port)
    if args.oneshot:
        healthy = server.refresh()
        server.stop()
        _emit({"port": port, "healthy": healthy})
        return 0
    duration = args.duration
    try:
        if duration is not None:
            time.sleep(duration)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:  # pragma: no cover - manual interrupt
        pass
    finally:
        server.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tiermint", description="Tiered identifier allocation CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    reserve_cmd = sub.add_parser("reserve", help="Reserve identifiers from a tier")
    reserve_cmd.add_argument("tier")
    reserve_cmd.add_argument("--quantity", type=int, default=1)
    reserve_cmd.set_defaults(func=_run_reserve)

    commit_cmd = sub.add_parser("commit", help="Record confirmed completions")
    commit_cmd.add_argument("tier")
    commit_cmd.add_argument("identifiers", nargs="+")
    commit_cmd.add_argument("--reference", required=True, help="External reference id (for example a tx hash)")
    commit_cmd.add_argument("--actor", default="")
    commit_cmd.set_defaults(func=_run_commit)

    rollback_cmd = sub.add_parser("rollback", help="Release reserved identifiers")
    rollback_cmd.add_argument("tier")
    rollback_cmd.add_argument("identifiers", nargs="+")
    rollback_cmd.set_defaults(func=_run_rollback)

    stats_cmd = sub.add_parser("stats", help="Per-tier supply statistics")
    stats_cmd.set_defaults(func=_run_stats)

    preview_cmd = sub.add_parser("preview", help="Show what the next reservation would return")
    preview_cmd.add_argument("tier")
    preview_cmd.add_argument("--count", type=int, default=1)
    preview_cmd.set_defaults(func=_run_preview)

    reconcile_cmd = sub.add_parser("reconcile", help="Report drift between completions and the ledger")
    reconcile_cmd.set_defaults(func=_run_reconcile)

    repair_cmd = sub.add_parser("repair", help="Heal drift and recompute cursors")
    repair_cmd.add_argument("--release-orphans", action="store_true", help="Also roll back unconfirmed reservations")
    repair_cmd.set_defaults(func=_run_repair)

    reset_cmd = sub.add_parser("reset", help="Empty a tier ledger (all tiers when omitted)")
    reset_cmd.add_argument("tier", nargs="?")
    reset_cmd.add_argument("--force", action="store_true", help="Reset even when completions exist")
    reset_cmd.set_defaults(func=_run_reset)

    restore_cmd = sub.add_parser("restore-ledger", help="Rebuild an unreadable ledger file from its copies")
    restore_cmd.add_argument(
        "--from", dest="sources", action="append", default=[], help="Extra ledger document to merge (repeatable)"
    )
    restore_cmd.set_defaults(func=_run_restore_ledger)

    lock_cmd = sub.add_parser("lock-status", help="Show allocation and actor lock state")
    lock_cmd.add_argument("--actor")
    lock_cmd.set_defaults(func=_run_lock_status)

    metrics_cmd = sub.add_parser("serve-metrics", help="Run the Prometheus exporter")
    metrics_cmd.add_argument("--port", type=int)
    metrics_cmd.add_argument("--oneshot", action="store_true", help="Start, then stop immediately")
    metrics_cmd.add_argument("--duration", type=float, help="Stop after this many seconds")
    metrics_cmd.set_defaults(func=_run_metrics)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        result = args.func(args)
    except AllocationError as exc:  # CLI boundary
        print(f"{exc.code}: {exc.detail.message} ({exc.detail.details})", file=sys.stderr)
        return EXIT_TRANSIENT if exc.transient else EXIT_TERMINAL
    except ValueError as exc:  # configuration errors
        print(str(exc), file=sys.stderr)
        return EXIT_TERMINAL
    return int(result)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
