"""HTTP API for the EquipTrack sync engine.

Exposes the engine's function surface to the UI: item CRUD, check-out and
check-in, audit logs, manual refresh, connectivity status and the webhook
override. The module starts a background task that periodically reconciles
with the spreadsheet webhook when one is configured.

Copyright (c) Bryn Gwalad 2025
"""

from typing import Optional
import os
import asyncio

from fastapi import FastAPI, Header, HTTPException, Query
from sqlmodel import SQLModel
from dotenv import load_dotenv
import logging

# Load environment variables from a .env file at project root if present.
load_dotenv()

from utils.database import engine as db_engine, init_db
from sync.cache import LocalCacheStore
from sync.engine import SyncEngine
from sync.errors import InvalidEndpoint, InvalidMutation, TransportError
from .models import AuditLog, Equipment, EquipmentStatus

# How often the background task pulls the sheet. 0 disables it.
REFRESH_INTERVAL_SECONDS = float(os.getenv("REFRESH_INTERVAL_SECONDS", "60"))

NOT_SAVED = "changes not saved, please retry"

app = FastAPI(title="EquipTrack Sync API")

# Module logger
logger = logging.getLogger("equiptrack_api")


class ItemCreate(SQLModel):
    id: Optional[str] = None
    name: str
    category: str
    status: Optional[EquipmentStatus] = None
    current_holder: Optional[str] = None
    project_name: Optional[str] = None
    location: Optional[str] = None
    image_url: Optional[str] = None


class ItemUpdate(SQLModel):
    name: Optional[str] = None
    category: Optional[str] = None
    status: Optional[EquipmentStatus] = None
    current_holder: Optional[str] = None
    project_name: Optional[str] = None
    location: Optional[str] = None
    image_url: Optional[str] = None


class CheckAction(SQLModel):
    user_name: Optional[str] = None
    project_name: Optional[str] = None
    notes: Optional[str] = None


class EndpointSetting(SQLModel):
    url: Optional[str] = None


def _serialize_item(item: Equipment) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "category": item.category,
        "status": item.status.value,
        "current_holder": item.current_holder,
        "project_name": item.project_name,
        "last_action_date": item.last_action_date.isoformat(),
        "location": item.location,
        "image_url": item.image_url,
    }


def _serialize_log(log: AuditLog) -> dict:
    return {
        "id": log.id,
        "equipment_id": log.equipment_id,
        "equipment_name": log.equipment_name,
        "action": log.action.value,
        "user_name": log.user_name,
        "project_name": log.project_name,
        "notes": log.notes,
        "timestamp": log.timestamp.isoformat(),
    }


def get_engine() -> SyncEngine:
    """Return the process-wide engine, building it from the environment on first use."""
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = SyncEngine.from_env(LocalCacheStore(db_engine))
        engine.start()
        app.state.engine = engine
    return engine


def _require_item(engine: SyncEngine, item_id: str) -> Equipment:
    item = engine.find_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@app.on_event("startup")
async def on_startup():
    """Application startup handler.

    Loads the cached inventory, runs a first refresh and starts the
    periodic reconciliation task.
    """
    init_db()

    # Configure logger (do not override global config if already set by app)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    engine = get_engine()
    logger.info("Sync engine starting; endpoint configured=%s", bool(engine.endpoint))
    await engine.refresh(force=True)

    app.state.refresh_task = None
    if REFRESH_INTERVAL_SECONDS > 0:
        app.state.refresh_task = asyncio.create_task(engine.run_periodic_refresh(REFRESH_INTERVAL_SECONDS))


@app.get("/items/")
def list_items(category: Optional[str] = Query(default=None)):
    """List items, optionally filtered by category."""
    items = get_engine().items
    if category is not None:
        items = [i for i in items if i.category == category]
    return [_serialize_item(i) for i in items]


@app.get("/items/{item_id}")
def get_item(item_id: str):
    """Resolve a scanned tag to an item or raise 404 if not found."""
    return _serialize_item(_require_item(get_engine(), item_id))


@app.post("/items/")
async def create_item(item: ItemCreate):
    """Create a new item. The id is generated when omitted."""
    try:
        created = await get_engine().create_item(item.model_dump(exclude_none=True))
    except InvalidMutation as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TransportError:
        raise HTTPException(status_code=503, detail=NOT_SAVED)
    return _serialize_item(created)


@app.put("/items/{item_id}")
async def update_item(item_id: str, changes: ItemUpdate, user_id: str = Header("system", alias="X-User-Id")):
    """Update an existing item. The `X-User-Id` header is recorded on status changes."""
    engine = get_engine()
    current = _require_item(engine, item_id)
    try:
        updated = await engine.update_item(
            current.model_copy(update=changes.model_dump(exclude_unset=True)),
            user_name=user_id,
        )
    except InvalidMutation as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TransportError:
        raise HTTPException(status_code=503, detail=NOT_SAVED)
    return _serialize_item(updated)


@app.delete("/items/{item_id}")
async def delete_item(item_id: str):
    """Delete an item by id."""
    engine = get_engine()
    _require_item(engine, item_id)
    try:
        await engine.delete_item(item_id)
    except TransportError:
        raise HTTPException(status_code=503, detail=NOT_SAVED)
    return {"ok": True}


@app.post("/items/{item_id}/action")
async def check_out_or_in(item_id: str, action: CheckAction, user_id: str = Header("system", alias="X-User-Id")):
    """Check an available item out, or check any other item back in.

    `user_name` in the body names the holder; it falls back to `X-User-Id`.
    """
    engine = get_engine()
    item = _require_item(engine, item_id)
    try:
        updated = await engine.record_check_out_or_in(
            item,
            action.user_name or user_id,
            project_name=action.project_name,
            notes=action.notes,
        )
    except InvalidMutation as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TransportError:
        raise HTTPException(status_code=503, detail=NOT_SAVED)
    return _serialize_item(updated)


@app.get("/logs/")
def list_logs(
    equipment_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Return audit logs, most recent first."""
    logs = get_engine().logs
    if equipment_id is not None:
        logs = [log for log in logs if log.equipment_id == equipment_id]
    logs.sort(key=lambda log: log.timestamp, reverse=True)
    return [_serialize_log(log) for log in logs[:limit]]


@app.post("/refresh/")
async def refresh(force: bool = Query(True)):
    """Pull the sheet. Manual refreshes clear the sync lock by default."""
    result = await get_engine().refresh(force=force)
    return {
        "items": [_serialize_item(i) for i in result.items],
        "logs": [_serialize_log(log) for log in result.logs],
        "connectivity": result.connectivity.value,
        "skipped": result.skipped,
    }


@app.get("/status/")
def status():
    engine = get_engine()
    return {
        "connectivity": engine.connectivity.value,
        "configured": bool(engine.remote.endpoint),
        "sync_locked": engine.lock.held,
        "stats": engine.stats().model_dump(),
    }


@app.get("/settings/endpoint")
def get_endpoint():
    return {"url": get_engine().endpoint}


@app.put("/settings/endpoint")
def set_endpoint(setting: EndpointSetting):
    """Set or clear (empty url) the webhook override."""
    try:
        url = get_engine().set_endpoint(setting.url)
    except InvalidEndpoint as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"url": url}


@app.on_event("shutdown")
async def on_shutdown():
    # gracefully cancel the refresh task
    task = getattr(app.state, "refresh_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()
