"""Data models for the EquipTrack sync engine.

This module defines the records the engine moves between the local cache, the
remote sheet and the API: Equipment and AuditLog, plus the helpers that
enforce their invariants and convert them to and from the camelCase wire
format used by the spreadsheet webhook.

Copyright (c) Bryn Gwalad 2025
"""

from datetime import datetime, timezone
from enum import Enum
import logging
import secrets
import string
import uuid
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import ValidationError
from sqlmodel import Field, SQLModel

from sync.errors import InvalidMutation

logger = logging.getLogger("equiptrack_sync")

# Ids the sheet may hand back for header rows or half-written rows.
PLACEHOLDER_IDS = {"id", "undefined", "null", "none"}

ID_ALPHABET = string.ascii_uppercase + string.digits


class EquipmentStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"
    MAINTENANCE = "MAINTENANCE"
    LOST = "LOST"


class LogAction(str, Enum):
    CHECK_OUT = "CHECK_OUT"
    CHECK_IN = "CHECK_IN"
    STATUS_UPDATE = "STATUS_UPDATE"


class Connectivity(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    SYNCING = "syncing"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Equipment(SQLModel):
    """A trackable asset.

    Attributes:
        id: stable identifier, also the scannable tag payload
        name: display name
        category: free-text grouping
        status: current lifecycle status
        current_holder: who has the item; present only while IN_USE
        project_name: which project the holder took it for
        last_action_date: stamped by the coordinator on every mutation
        location: optional storage location
        image_url: optional picture (URL or data URI)
    """

    id: str
    name: str
    category: str
    status: EquipmentStatus = EquipmentStatus.AVAILABLE
    current_holder: Optional[str] = None
    project_name: Optional[str] = None
    last_action_date: datetime = Field(default_factory=utcnow)
    location: Optional[str] = None
    image_url: Optional[str] = None


class AuditLog(SQLModel):
    """Append-only record of a status transition.

    ``equipment_id`` and ``equipment_name`` are a snapshot taken when the log
    was written, not a live reference.
    """

    id: str
    equipment_id: str
    equipment_name: str
    action: LogAction
    user_name: str
    project_name: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Stats(SQLModel):
    total: int = 0
    available: int = 0
    in_use: int = 0
    maintenance: int = 0
    lost: int = 0


# python attribute -> key used by the sheet and the original browser cache
EQUIPMENT_WIRE_FIELDS = {
    "id": "id",
    "name": "name",
    "category": "category",
    "status": "status",
    "current_holder": "currentHolder",
    "project_name": "projectName",
    "last_action_date": "lastActionDate",
    "location": "location",
    "image_url": "imageUrl",
}

AUDIT_LOG_WIRE_FIELDS = {
    "id": "id",
    "equipment_id": "equipmentId",
    "equipment_name": "equipmentName",
    "action": "action",
    "user_name": "userName",
    "project_name": "projectName",
    "notes": "notes",
    "timestamp": "timestamp",
}

_WIRE_FIELDS = {
    Equipment: EQUIPMENT_WIRE_FIELDS,
    AuditLog: AUDIT_LOG_WIRE_FIELDS,
}

# Attributes that are not free text; everything else is read as a string.
_TYPED_FIELDS = {"status", "action", "last_action_date", "timestamp"}

M = TypeVar("M", Equipment, AuditLog)


def new_equipment_id() -> str:
    """Generate an ``EQ-XXXXXX`` tag id for items created without one."""
    return "EQ-" + "".join(secrets.choice(ID_ALPHABET) for _ in range(6))


def new_log_id(ts: Optional[datetime] = None) -> str:
    """Generate a unique log id.

    The id is composed as: LOG-<YYYYmmddTHHMMSSffffff>-<random hex> so that
    ids sort roughly by creation time and are never reused.
    """
    ts = ts or utcnow()
    return f"LOG-{ts.strftime('%Y%m%dT%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def _wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    return value


def to_record(model: SQLModel) -> Dict[str, Any]:
    """Convert a model into the camelCase dict sent to the sheet and cached.

    Optional fields that are unset are omitted, the same way the browser
    client dropped ``undefined`` keys when serializing.
    """
    fields = _WIRE_FIELDS[type(model)]
    record = {}
    for attr, key in fields.items():
        value = getattr(model, attr)
        if value is None:
            continue
        record[key] = _wire_value(value)
    return record


def _number_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def from_record(model_cls: Type[M], record: Dict[str, Any]) -> M:
    """Build a model from a camelCase record. Raises ValidationError."""
    fields = _WIRE_FIELDS[model_cls]
    data = {}
    for attr, key in fields.items():
        value = record.get(key, record.get(attr))
        # sheets hand back empty cells as ""
        if value == "" and attr not in ("name", "category", "user_name", "equipment_name"):
            value = None
        # and numeric-looking cells (ids, years, model numbers) as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool) and attr not in _TYPED_FIELDS:
            value = _number_text(value)
        if value is not None:
            data[attr] = value
    return model_cls.model_validate(data)


def is_valid_id(value: Any) -> bool:
    if value is None:
        return False
    text = str(value).strip()
    return bool(text) and text.lower() not in PLACEHOLDER_IDS


def filter_records(model_cls: Type[M], records: Iterable[Any]) -> List[M]:
    """Drop header rows, partial rows and anything that fails validation."""
    cleaned = []
    dropped = 0
    for record in records:
        if not isinstance(record, dict) or not is_valid_id(record.get("id")):
            dropped += 1
            continue
        try:
            cleaned.append(from_record(model_cls, record))
        except ValidationError:
            dropped += 1
    if dropped:
        logger.warning("Dropped %d malformed %s record(s) from remote", dropped, model_cls.__name__)
    return cleaned


def normalize_equipment(item: Equipment) -> Equipment:
    """Return a copy of ``item`` that satisfies the holder invariant.

    IN_USE requires a non-empty holder; any other status drops the holder and
    project. Raises InvalidMutation when the record cannot be made valid.
    """
    if not is_valid_id(item.id):
        raise InvalidMutation("equipment id is required")
    if not (item.name or "").strip():
        raise InvalidMutation("equipment name is required")
    if not (item.category or "").strip():
        raise InvalidMutation("equipment category is required")

    holder = (item.current_holder or "").strip() or None
    project = (item.project_name or "").strip() or None
    if item.status == EquipmentStatus.IN_USE:
        if holder is None:
            raise InvalidMutation(f"{item.id}: IN_USE requires a current holder")
    else:
        holder = None
        project = None
    return item.model_copy(update={
        "id": item.id.strip(),
        "name": item.name.strip(),
        "category": item.category.strip(),
        "current_holder": holder,
        "project_name": project,
    })


def compute_stats(items: Iterable[Equipment]) -> Stats:
    stats = Stats()
    for item in items:
        stats.total += 1
        if item.status == EquipmentStatus.AVAILABLE:
            stats.available += 1
        elif item.status == EquipmentStatus.IN_USE:
            stats.in_use += 1
        elif item.status == EquipmentStatus.MAINTENANCE:
            stats.maintenance += 1
        elif item.status == EquipmentStatus.LOST:
            stats.lost += 1
    return stats
