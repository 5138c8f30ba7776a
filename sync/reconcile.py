"""Reconciliation loop and sync lock.

A refresh replaces local state with the remote snapshot. Because the sheet
lags behind writes, a refresh issued right after a write can return the
pre-write row and visibly undo the user's change. The sync lock is the guard
against that: every write arms it for a cooldown window and refreshes are
skipped while it is held. It is a timing heuristic, not a guarantee; the
webhook never confirms a write.

Copyright (c) Bryn Gwalad 2025
"""

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Callable, List

from api.models import AuditLog, Connectivity, Equipment, filter_records
from sync.cache import LocalCacheStore
from sync.errors import NotConfigured, RemoteUnavailable
from sync.remote import RemoteSyncClient
from sync.state import InventoryState

logger = logging.getLogger("equiptrack_sync")

DEFAULT_LOCK_SECONDS = 8.0


class SyncLock:
    """Cooperative gate with an explicit expiry. Nothing ever waits on it."""

    def __init__(self, cooldown: float = DEFAULT_LOCK_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._expires_at = 0.0
        self.generation = 0

    def arm(self) -> None:
        self._expires_at = self._clock() + self.cooldown
        self.generation += 1

    def release(self) -> None:
        self._expires_at = 0.0

    @property
    def held(self) -> bool:
        return self._clock() < self._expires_at

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())


@dataclass
class RefreshResult:
    items: List[Equipment] = field(default_factory=list)
    logs: List[AuditLog] = field(default_factory=list)
    connectivity: Connectivity = Connectivity.DEGRADED
    skipped: bool = False


class Reconciler:
    def __init__(self, state: InventoryState, cache: LocalCacheStore, remote: RemoteSyncClient, lock: SyncLock):
        self.state = state
        self.cache = cache
        self.remote = remote
        self.lock = lock

    def _current(self, skipped: bool) -> RefreshResult:
        return RefreshResult(
            items=list(self.state.items),
            logs=list(self.state.logs),
            connectivity=self.state.connectivity,
            skipped=skipped,
        )

    async def refresh(self, force: bool = False) -> RefreshResult:
        """Pull the authoritative lists, or fall back to the cache.

        ``force`` clears the sync lock first (manual refresh).
        """
        if force:
            self.lock.release()
        elif self.lock.held:
            logger.debug("Refresh skipped; sync lock held for %.1fs more", self.lock.remaining)
            return self._current(skipped=True)

        generation = self.lock.generation
        self.state.connectivity = Connectivity.SYNCING
        # both fetches run to completion so neither failure goes unretrieved
        results = await asyncio.gather(
            self.remote.fetch_items(), self.remote.fetch_logs(), return_exceptions=True,
        )
        try:
            for outcome in results:
                if isinstance(outcome, BaseException):
                    raise outcome
            raw_items, raw_logs = results
        except NotConfigured:
            logger.info("No webhook configured; serving cached inventory")
            return self._fallback()
        except RemoteUnavailable as exc:
            logger.warning("Remote unavailable, using local cache: %s", exc)
            return self._fallback()

        if self.lock.generation != generation:
            # A write went out while we were fetching; this snapshot predates it.
            logger.info("Discarding refresh result; a write was sent during the fetch")
            self.state.connectivity = Connectivity.CONNECTED
            return self._current(skipped=True)

        items = filter_records(Equipment, raw_items)
        logs = filter_records(AuditLog, raw_logs)
        self.state.items = items
        self.state.logs = logs
        self.cache.save_items(items)
        self.cache.save_logs(logs)
        self.state.connectivity = Connectivity.CONNECTED
        logger.info("Refreshed %d item(s) and %d log(s) from remote", len(items), len(logs))
        return self._current(skipped=False)

    def _fallback(self) -> RefreshResult:
        self.state.connectivity = Connectivity.DEGRADED
        return RefreshResult(
            items=self.cache.load_items(),
            logs=self.cache.load_logs(),
            connectivity=Connectivity.DEGRADED,
            skipped=False,
        )

    async def run_periodic(self, interval: float) -> None:
        """Refresh every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except Exception:
                # refresh already degrades on remote errors; keep the loop alive on anything else
                logger.exception("Periodic refresh failed")
