# -*- coding: utf-8 -*-
"""Per-tier allocation lock.

Within one process each rarity has its own mutex so reservations for the
same tier are linearised while different tiers proceed in parallel. Across
processes the primary store's compare-and-set takes over that role.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from .core.clock import Clock, ensure_clock
from .errors import allocation_lock_timeout
from .metrics import DEFAULT_METERS
from .types import AllocationLock, MeterLike, Rarity


class TierLockRegistry:
    def __init__(self, *, clock: Clock | None = None, meters: MeterLike | None = None) -> None:
        self._clock = ensure_clock(clock)
        self._meters = meters or DEFAULT_METERS
        self._locks = {rarity: threading.Lock() for rarity in Rarity}
        self._acquired_at: dict[Rarity, Optional[datetime]] = {rarity: None for rarity in Rarity}

    @contextmanager
    def hold(self, tier: Rarity, timeout: float) -> Iterator[None]:
        """Hold *tier*'s lock, raising ``AllocationLockTimeout`` after *timeout*."""

        lock = self._locks[tier]
        if not lock.acquire(timeout=max(timeout, 0.0)):
            self._meters.record_lock_timeout("allocation")
            raise allocation_lock_timeout(f"tier={tier.value} waited={timeout}s")
        self._acquired_at[tier] = self._clock.now()
        try:
            yield
        finally:
            self._acquired_at[tier] = None
            lock.release()

    def status(self) -> list[AllocationLock]:
        return [
            AllocationLock(tier=rarity, held=self._locks[rarity].locked(), acquired_at=self._acquired_at[rarity])
            for rarity in Rarity
        ]


__all__ = ["TierLockRegistry"]
