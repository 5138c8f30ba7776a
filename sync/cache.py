"""Local cache store.

A durable key/value store holding the last-known-good item list and log list
as JSON snapshots, one row per key. Every save is a single-row write inside
one transaction, so readers never observe a partial snapshot. Reads never
fail: a missing or unreadable snapshot reads as empty.

Copyright (c) Bryn Gwalad 2025
"""

from datetime import datetime, timezone
import json
import logging
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel

from api.models import AuditLog, Equipment, from_record, to_record

logger = logging.getLogger("equiptrack_sync")

# Same keys the browser client used in localStorage.
ITEMS_KEY = "equiptrack_data"
LOGS_KEY = "equiptrack_logs"
ENDPOINT_KEY = "equiptrack_webhook_url"

LOG_RETENTION = 100


class CacheEntry(SQLModel, table=True):
    """One cached snapshot.

    Attributes:
        key: snapshot name (see ITEMS_KEY / LOGS_KEY / ENDPOINT_KEY)
        value: JSON text
        updated_at: when the snapshot was last written
    """

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LocalCacheStore:
    """Durable snapshot store backed by a SQLModel engine."""

    def __init__(self, engine: Engine, log_retention: int = LOG_RETENTION):
        self.engine = engine
        self.log_retention = log_retention
        SQLModel.metadata.create_all(engine, tables=[CacheEntry.__table__])

    # ── raw key/value ──────────────────────────────────────────

    def _read(self, key: str) -> Optional[str]:
        with Session(self.engine) as session:
            entry = session.get(CacheEntry, key)
            return entry.value if entry else None

    def _write(self, key: str, value: str) -> None:
        with Session(self.engine) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                entry = CacheEntry(key=key, value=value)
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)
            session.add(entry)
            session.commit()

    def _delete(self, key: str) -> None:
        with Session(self.engine) as session:
            entry = session.get(CacheEntry, key)
            if entry is not None:
                session.delete(entry)
                session.commit()

    def _load_list(self, key: str) -> List[Any]:
        raw = self._read(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.exception("Cached snapshot %s is not valid JSON; treating as empty", key)
            return []
        if not isinstance(data, list):
            logger.error("Cached snapshot %s is not a list; treating as empty", key)
            return []
        return data

    def _save_list(self, key: str, models: Sequence[Any]) -> None:
        self._write(key, json.dumps([to_record(m) for m in models]))

    # ── items ──────────────────────────────────────────────────

    def load_items(self) -> List[Equipment]:
        items = []
        for record in self._load_list(ITEMS_KEY):
            try:
                items.append(from_record(Equipment, record))
            except (ValidationError, AttributeError):
                logger.warning("Skipping unreadable cached item: %r", record)
        return items

    def save_items(self, items: Sequence[Equipment]) -> None:
        self._save_list(ITEMS_KEY, items)

    def upsert_item(self, item: Equipment) -> None:
        """Replace the entry with the same id, or insert at the front."""
        items = self.load_items()
        for index, existing in enumerate(items):
            if existing.id == item.id:
                items[index] = item
                break
        else:
            items.insert(0, item)
        self.save_items(items)

    def remove_item(self, item_id: str) -> None:
        items = self.load_items()
        remaining = [i for i in items if i.id != item_id]
        if len(remaining) != len(items):
            self.save_items(remaining)

    # ── logs ───────────────────────────────────────────────────

    def load_logs(self) -> List[AuditLog]:
        logs = []
        for record in self._load_list(LOGS_KEY):
            try:
                logs.append(from_record(AuditLog, record))
            except (ValidationError, AttributeError):
                logger.warning("Skipping unreadable cached log: %r", record)
        return logs

    def save_logs(self, logs: Sequence[AuditLog]) -> None:
        self._save_list(LOGS_KEY, logs)

    def upsert_log(self, log: AuditLog) -> None:
        """Insert at the front and keep only the newest ``log_retention``."""
        logs = self.load_logs()
        logs.insert(0, log)
        self.save_logs(logs[: self.log_retention])

    # ── endpoint override ──────────────────────────────────────

    def load_endpoint(self) -> Optional[str]:
        return self._read(ENDPOINT_KEY) or None

    def save_endpoint(self, url: Optional[str]) -> None:
        if url:
            self._write(ENDPOINT_KEY, url)
        else:
            self._delete(ENDPOINT_KEY)
