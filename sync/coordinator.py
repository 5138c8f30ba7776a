"""Optimistic mutation coordinator.

Every mutation runs the same four phases:

1. validate   - normalize against entity invariants, or raise InvalidMutation
2. snapshot   - shallow copy of the in-memory items and logs
3. apply      - update memory, then the local cache (no await in between)
4. sync       - arm the sync lock and send the write to the webhook

Only a TransportError in phase 4 undoes phase 3. Anything else the webhook
does, including silently dropping the write, leaves the local change in
place until the next successful refresh replaces it.

Per mutation the states are Idle -> Applying -> AwaitingRemote and then
Settled or RolledBack. There is no Confirmed state.

Copyright (c) Bryn Gwalad 2025
"""

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from api.models import (
    AuditLog,
    Connectivity,
    Equipment,
    EquipmentStatus,
    LogAction,
    new_equipment_id,
    new_log_id,
    normalize_equipment,
    to_record,
    utcnow,
)
from sync import remote as actions
from sync.cache import LocalCacheStore
from sync.errors import InvalidMutation, NotConfigured, TransportError
from sync.reconcile import SyncLock
from sync.remote import RemoteSyncClient
from sync.state import InventoryState, Snapshot

logger = logging.getLogger("equiptrack_sync")

Message = Tuple[str, Dict[str, Any]]

# Caller-supplied fields accepted by create_item; everything else is ours.
CREATE_FIELDS = ("id", "name", "category", "status", "current_holder", "project_name", "location", "image_url")


class MutationCoordinator:
    def __init__(
        self,
        state: InventoryState,
        cache: LocalCacheStore,
        remote: RemoteSyncClient,
        lock: SyncLock,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state = state
        self.cache = cache
        self.remote = remote
        self.lock = lock
        self.clock = clock

    # ── public mutations ───────────────────────────────────────

    async def create_item(self, fields: Union[Mapping[str, Any], Equipment]) -> Equipment:
        """Create an item. A missing id is generated as ``EQ-XXXXXX``."""
        if isinstance(fields, Equipment):
            fields = fields.model_dump()
        data = {k: fields[k] for k in CREATE_FIELDS if fields.get(k) not in (None, "")}
        data["id"] = str(data.get("id") or new_equipment_id()).strip()
        data["last_action_date"] = self.clock()
        try:
            item = normalize_equipment(Equipment.model_validate(data))
        except ValidationError as exc:
            raise InvalidMutation(f"invalid equipment: {exc}") from exc
        if self.state.find(item.id) is not None:
            raise InvalidMutation(f"equipment {item.id} already exists")

        snap = self._begin("create", item.id)
        self._apply_item(item)
        await self._sync("create", item.id, snap, [(actions.ADD_ITEM, {"item": to_record(item)})])
        return item

    async def update_item(self, item: Equipment, user_name: str = "system") -> Equipment:
        """Replace an existing item. A status change also writes a STATUS_UPDATE log."""
        current = self.state.find(item.id)
        if current is None:
            raise InvalidMutation(f"equipment {item.id} does not exist")
        now = self.clock()
        updated = normalize_equipment(item).model_copy(update={"last_action_date": now})

        messages: List[Message] = [(actions.UPDATE_ITEM, {"item": to_record(updated)})]
        log = None
        if updated.status != current.status:
            log = self._make_log(
                updated,
                LogAction.STATUS_UPDATE,
                user_name or "system",
                notes=f"{current.status.value} -> {updated.status.value}",
                ts=now,
            )
            messages.append((actions.ADD_LOG, {"log": to_record(log)}))

        snap = self._begin("update", item.id)
        self._apply_item(updated)
        if log is not None:
            self._apply_log(log)
        await self._sync("update", item.id, snap, messages)
        return updated

    async def delete_item(self, item_id: str) -> None:
        if self.state.find(item_id) is None:
            logger.warning("Delete requested for unknown equipment %s; nothing to do", item_id)
            return
        snap = self._begin("delete", item_id)
        self.state.items = [i for i in self.state.items if i.id != item_id]
        self.cache.remove_item(item_id)
        await self._sync("delete", item_id, snap, [(actions.DELETE_ITEM, {"id": item_id})])

    async def record_check_out_or_in(
        self,
        item: Union[Equipment, str],
        user_name: str,
        project_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Equipment:
        """Check an AVAILABLE item out to ``user_name``, or check any other item back in.

        The direction comes from the stored item, not from the caller's copy.
        """
        item_id = item if isinstance(item, str) else item.id
        current = self.state.find(item_id)
        if current is None:
            raise InvalidMutation(f"equipment {item_id} does not exist")
        user_name = (user_name or "").strip()
        project_name = (project_name or "").strip() or None
        notes = (notes or "").strip() or None
        now = self.clock()

        if current.status == EquipmentStatus.AVAILABLE:
            if not user_name:
                raise InvalidMutation("check-out requires a user name")
            action = LogAction.CHECK_OUT
            changes = {"status": EquipmentStatus.IN_USE, "current_holder": user_name, "project_name": project_name}
        else:
            action = LogAction.CHECK_IN
            changes = {"status": EquipmentStatus.AVAILABLE, "current_holder": None, "project_name": None}
        changes["last_action_date"] = now
        updated = normalize_equipment(current.model_copy(update=changes))
        log = self._make_log(
            updated,
            action,
            user_name or current.current_holder or "system",
            project_name=project_name if action == LogAction.CHECK_OUT else None,
            notes=notes,
            ts=now,
        )

        snap = self._begin(action.value.lower(), item_id)
        self._apply_item(updated)
        self._apply_log(log)
        await self._sync(
            action.value.lower(),
            item_id,
            snap,
            [
                (actions.UPDATE_ITEM, {"item": to_record(updated)}),
                (actions.ADD_LOG, {"log": to_record(log)}),
            ],
        )
        return updated

    # ── phases ─────────────────────────────────────────────────

    def _begin(self, label: str, item_id: str) -> Snapshot:
        logger.debug("%s %s: Idle -> Applying", label, item_id)
        return self.state.snapshot()

    def _make_log(
        self,
        item: Equipment,
        action: LogAction,
        user_name: str,
        project_name: Optional[str] = None,
        notes: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> AuditLog:
        ts = ts or self.clock()
        return AuditLog(
            id=new_log_id(ts),
            equipment_id=item.id,
            equipment_name=item.name,
            action=action,
            user_name=user_name,
            project_name=project_name,
            notes=notes,
            timestamp=ts,
        )

    def _apply_item(self, item: Equipment) -> None:
        items = list(self.state.items)
        for index, existing in enumerate(items):
            if existing.id == item.id:
                items[index] = item
                break
        else:
            items.insert(0, item)
        self.state.items = items
        self.cache.upsert_item(item)

    def _apply_log(self, log: AuditLog) -> None:
        self.state.logs = [log] + self.state.logs[: self.cache.log_retention - 1]
        self.cache.upsert_log(log)

    def _rollback(self, snap: Snapshot) -> None:
        self.state.restore(snap)
        self.cache.save_items(snap.items)
        self.cache.save_logs(snap.logs)

    async def _sync(self, label: str, item_id: str, snap: Snapshot, messages: List[Message]) -> None:
        """Phase 4. Re-raises TransportError after restoring ``snap``."""
        logger.debug("%s %s: Applying -> AwaitingRemote", label, item_id)
        self.lock.arm()
        try:
            for action, payload in messages:
                await self.remote.send_mutation(action, payload)
        except NotConfigured:
            logger.info("%s %s kept locally; no webhook configured", label, item_id)
            self.state.connectivity = Connectivity.DEGRADED
            return
        except TransportError:
            logger.exception("%s %s could not be sent; rolling back", label, item_id)
            self._rollback(snap)
            logger.debug("%s %s: AwaitingRemote -> RolledBack", label, item_id)
            raise
        logger.debug("%s %s: AwaitingRemote -> Settled", label, item_id)
