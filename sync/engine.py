"""Sync engine facade.

One ``SyncEngine`` is built per process with an injected cache store and
remote client. It owns every piece of mutable state the UI observes (items,
logs, connectivity, sync lock), so no module-level singletons are involved
and nothing depends on the lifetime of a particular request or view.

Copyright (c) Bryn Gwalad 2025
"""

import logging
import os
from typing import Any, Callable, List, Mapping, Optional, Union
from urllib.parse import urlparse

from api.models import AuditLog, Connectivity, Equipment, Stats, compute_stats
from sync.cache import LocalCacheStore
from sync.coordinator import MutationCoordinator
from sync.errors import InvalidEndpoint
from sync.reconcile import DEFAULT_LOCK_SECONDS, Reconciler, RefreshResult, SyncLock
from sync.remote import RemoteSyncClient
from sync.state import InventoryState

logger = logging.getLogger("equiptrack_sync")

WEBHOOK_HOST = "script.google.com"


def validate_endpoint(url: str) -> str:
    """Accept only http(s) URLs pointing at an Apps Script deployment."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidEndpoint(f"not a URL: {url!r}")
    if parsed.hostname != WEBHOOK_HOST:
        raise InvalidEndpoint(f"webhook must be hosted on {WEBHOOK_HOST}, got {parsed.hostname}")
    return url


class SyncEngine:
    """Everything the UI calls into.

    Arguments:
        cache: durable snapshot store
        remote: webhook client; built from ``default_endpoint`` when omitted
        default_endpoint: used when the user has not set an override
        lock_seconds: sync lock cooldown after every write
        remote_timeout: optional network timeout for the webhook client
        clock: monotonic clock for the sync lock (tests inject a fake)
    """

    def __init__(
        self,
        cache: LocalCacheStore,
        remote: Optional[RemoteSyncClient] = None,
        default_endpoint: Optional[str] = None,
        lock_seconds: float = DEFAULT_LOCK_SECONDS,
        remote_timeout: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.cache = cache
        self.default_endpoint = default_endpoint or None
        self.remote = remote or RemoteSyncClient(self._resolve_endpoint, timeout=remote_timeout)
        self.state = InventoryState()
        self.lock = SyncLock(lock_seconds, clock) if clock else SyncLock(lock_seconds)
        self.coordinator = MutationCoordinator(self.state, cache, self.remote, self.lock)
        self.reconciler = Reconciler(self.state, cache, self.remote, self.lock)

    @classmethod
    def from_env(cls, cache: LocalCacheStore, **kwargs: Any) -> "SyncEngine":
        """Build an engine from SHEET_WEBHOOK_URL / SYNC_LOCK_SECONDS / REMOTE_TIMEOUT_SECONDS."""
        timeout = os.getenv("REMOTE_TIMEOUT_SECONDS")
        kwargs.setdefault("default_endpoint", os.getenv("SHEET_WEBHOOK_URL", ""))
        kwargs.setdefault("lock_seconds", float(os.getenv("SYNC_LOCK_SECONDS", str(DEFAULT_LOCK_SECONDS))))
        kwargs.setdefault("remote_timeout", float(timeout) if timeout else None)
        return cls(cache, **kwargs)

    def start(self) -> None:
        """Load the last-known-good snapshot so the UI has something to show."""
        self.state.items = self.cache.load_items()
        self.state.logs = self.cache.load_logs()
        self.state.connectivity = Connectivity.DEGRADED
        logger.info("Loaded %d cached item(s) and %d cached log(s)", len(self.state.items), len(self.state.logs))

    async def close(self) -> None:
        await self.remote.aclose()

    # ── endpoint ───────────────────────────────────────────────

    def _resolve_endpoint(self) -> Optional[str]:
        return self.cache.load_endpoint() or self.default_endpoint

    @property
    def endpoint(self) -> Optional[str]:
        return self._resolve_endpoint()

    def set_endpoint(self, url: Optional[str]) -> Optional[str]:
        """Store a user override; an empty value clears it."""
        url = (url or "").strip()
        if url:
            validate_endpoint(url)
        self.cache.save_endpoint(url or None)
        logger.info("Webhook override %s", "set" if url else "cleared")
        return self.endpoint

    # ── observable state ───────────────────────────────────────

    @property
    def items(self) -> List[Equipment]:
        return list(self.state.items)

    @property
    def logs(self) -> List[AuditLog]:
        return list(self.state.logs)

    @property
    def connectivity(self) -> Connectivity:
        return self.state.connectivity

    def find_item(self, item_id: str) -> Optional[Equipment]:
        """Resolve a scanned tag to an item."""
        return self.state.find((item_id or "").strip())

    def stats(self) -> Stats:
        return compute_stats(self.state.items)

    # ── operations ─────────────────────────────────────────────

    async def create_item(self, fields: Union[Mapping[str, Any], Equipment]) -> Equipment:
        return await self.coordinator.create_item(fields)

    async def update_item(self, item: Equipment, user_name: str = "system") -> Equipment:
        return await self.coordinator.update_item(item, user_name=user_name)

    async def delete_item(self, item_id: str) -> None:
        await self.coordinator.delete_item(item_id)

    async def record_check_out_or_in(
        self,
        item: Union[Equipment, str],
        user_name: str,
        project_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Equipment:
        return await self.coordinator.record_check_out_or_in(item, user_name, project_name, notes)

    async def refresh(self, force: bool = False) -> RefreshResult:
        return await self.reconciler.refresh(force=force)

    async def run_periodic_refresh(self, interval: float) -> None:
        await self.reconciler.run_periodic(interval)
