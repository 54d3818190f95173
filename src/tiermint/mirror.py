# -*- coding: utf-8 -*-
"""Asynchronous, best-effort mirroring of ledger snapshots.

The mirror is a secondary copy for operators; it is never read back by the
engine and its failures never reach the caller of a ledger operation.
"""
from __future__ import annotations

import itertools
import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx

from .core.clock import Clock, ensure_clock
from .logging_utils import event_logger
from .metrics import DEFAULT_METERS
from .types import LoggerLike, MeterLike, MirrorStore


@dataclass(slots=True)
class BackoffPolicy:
    """Exponential backoff policy with upper bound."""

    base_seconds: float = 1.0
    cap_seconds: float = 60.0
    max_retries: int = 12

    def next_delay(self, retry_count: int) -> float:
        attempt = max(retry_count, 1)
        delay = self.base_seconds * (2 ** (attempt - 1))
        return float(min(max(delay, self.base_seconds), self.cap_seconds))


class DirectoryMirrorStore(MirrorStore):
    """Writes each snapshot as a timestamped JSON file plus ``latest.json``."""

    def __init__(self, directory: str | Path, *, clock: Clock | None = None) -> None:
        self._directory = Path(directory)
        self._clock = ensure_clock(clock)
        self._sequence = itertools.count(1)

    @property
    def directory(self) -> Path:
        return self._directory

    def write(self, payload: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = self._clock.now().strftime("%Y%m%dT%H%M%S%fZ")
        name = f"ledger-{stamp}-{next(self._sequence):06d}.json"
        self._atomic_write(self._directory / name, payload)
        self._atomic_write(self._directory / "latest.json", payload)

    def _atomic_write(self, target: Path, payload: str) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=target.name, suffix=".tmp", dir=self._directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, target)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


class HttpMirrorStore(MirrorStore):
    """PUTs the snapshot document to a remote endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(timeout=timeout)

    def write(self, payload: str) -> None:
        response = self._client.put(self._url, content=payload.encode("utf-8"), headers=self._headers)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class MirrorSync:
    """Background worker pushing the most recent snapshot to a mirror store.

    ``submit`` never blocks on I/O and never raises. Snapshots submitted while
    a write is pending are coalesced so only the latest one is sent; a failed
    write is retried with :class:`BackoffPolicy` unless a newer snapshot
    supersedes it.
    """

    def __init__(
        self,
        store: MirrorStore,
        *,
        backoff: Optional[BackoffPolicy] = None,
        meters: MeterLike | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        self._store = store
        self._backoff = backoff or BackoffPolicy()
        self._meters = meters or DEFAULT_METERS
        self._logger = logger or event_logger("tiermint.mirror")
        self._cond = threading.Condition()
        self._pending: Optional[str] = None
        self._in_flight = False
        self._closed = False
        self._retry_count = 0
        self._thread = threading.Thread(target=self._run, name="tiermint-mirror", daemon=True)
        self._thread.start()

    def submit(self, document: Mapping[str, Any]) -> None:
        payload = json.dumps(document, ensure_ascii=False, indent=2, default=str)
        with self._cond:
            if self._closed:
                return
            if self._pending is not None:
                self._meters.record_mirror("coalesced")
            self._pending = payload
            self._retry_count = 0
            self._cond.notify_all()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every submitted snapshot was written or abandoned."""

        with self._cond:
            return self._cond.wait_for(lambda: self._pending is None and not self._in_flight, timeout=timeout)

    def close(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._pending is not None or self._closed)
                if self._pending is None:
                    return
                payload = self._pending
                self._pending = None
                self._in_flight = True
            delay = self._write(payload)
            with self._cond:
                self._in_flight = False
                if delay is not None and self._pending is None and not self._closed:
                    self._pending = payload
                    # a newer submit or close() interrupts the backoff wait
                    self._cond.wait_for(lambda: self._closed or self._pending != payload, timeout=delay)
                self._cond.notify_all()
                if self._closed and self._pending is None:
                    return

    def _write(self, payload: str) -> Optional[float]:
        """Return the retry delay after a failure, ``None`` when finished."""

        try:
            self._store.write(payload)
        except Exception as exc:  # pylint: disable=broad-except
            self._meters.record_mirror("failure")
            with self._cond:
                self._retry_count += 1
                retry_count = self._retry_count
            if retry_count > self._backoff.max_retries:
                self._logger.error(
                    "mirror_sync_abandoned",
                    extra={"retry_count": retry_count, "error": str(exc)},
                )
                return None
            delay = self._backoff.next_delay(retry_count)
            self._logger.warning(
                "mirror_sync_failed",
                extra={"retry_count": retry_count, "delay": delay, "error": str(exc)},
            )
            return delay
        self._meters.record_mirror("success")
        with self._cond:
            self._retry_count = 0
        return None


__all__ = ["BackoffPolicy", "DirectoryMirrorStore", "HttpMirrorStore", "MirrorSync"]
