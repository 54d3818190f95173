# -*- coding: utf-8 -*-
"""JSON event logging for allocation, minting and reconciliation.

Each record is one JSON object: ``{"message": <event name>, **fields}``. Actor
account ids go through :func:`actor_digest` before they reach a log line.
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Mapping

from .types import HashFunc, LoggerLike

ACTOR_DIGEST_LENGTH = 16


class EventLogger(LoggerLike):
    """Writes named allocation events as single-line JSON."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _emit(self, level: int, event: str, fields: Mapping[str, Any] | None, *args: Any, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        line = json.dumps({"message": event, **(fields or {})}, ensure_ascii=False, default=str)
        self._logger.log(level, line, *args, **kwargs)

    def info(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.INFO, msg, extra, *args, **kwargs)

    def warning(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.WARNING, msg, extra, *args, **kwargs)

    def error(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.ERROR, msg, extra, *args, **kwargs)


def event_logger(name: str = "tiermint") -> EventLogger:
    """Return the event logger for *name*, attaching a stderr handler once."""

    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.setLevel(logging.INFO)
        logger.addHandler(handler)
    return EventLogger(logger)


def actor_digest(salt: str) -> HashFunc:
    """Salted SHA-256 of an actor account id, truncated for log lines."""

    prefix = salt.encode("utf-8")

    def _digest(actor: str) -> str:
        return hashlib.sha256(prefix + actor.encode("utf-8")).hexdigest()[:ACTOR_DIGEST_LENGTH]

    return _digest
