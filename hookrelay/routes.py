"""Status and database API routes.

Read-only views over the persistence store plus service info. The webhook
core never depends on these.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from hookrelay import __version__
from hookrelay.events import now_iso
from hookrelay.store import EventFilters

logger = logging.getLogger(__name__)

router = APIRouter(tags=["status"])
database_router = APIRouter(prefix="/api", tags=["database"])


def _error(e: Exception) -> JSONResponse:
    return JSONResponse({"success": False, "error": str(e)}, status_code=500)


@router.get("/")
async def root(request: Request):
    """Service status."""
    settings = request.app.state.receiver.settings
    return {
        "status": "running",
        "message": "Webhook receiver is active",
        "webhook_url": settings.webhook_url,
        "info": f"GET {settings.base_url}/api/info",
    }


@router.get("/api/info")
async def info(request: Request):
    """Connected clients, history size and public URLs."""
    receiver = request.app.state.receiver
    base = receiver.settings.base_url
    return {
        "status": "running",
        "message": "Webhook receiver is active",
        "connectedClients": receiver.broadcaster.client_count,
        "eventsInHistory": len(receiver.history),
        "handshake": receiver.secrets.state.value,
        "backgroundFailures": receiver.runner.failures,
        "timestamp": now_iso(),
        "version": __version__,
        "urls": {
            "public_url": base,
            "webhook_endpoint": f"{base}/webhook",
            "dashboard": base,
            "sse_stream": f"{base}/events",
        },
    }


@database_router.get("/database/test")
async def database_test(request: Request):
    """Check that the event database is reachable."""
    result = await asyncio.to_thread(request.app.state.receiver.store.test_connection)
    return {
        "success": result.success,
        "message": "Database connection successful" if result.success else "Database connection failed",
        "time": (result.data or {}).get("time"),
        "error": result.error or None,
    }


@database_router.get("/database/stats")
async def database_stats(request: Request):
    """Table counts and 24h event statistics."""
    store = request.app.state.receiver.store
    try:
        stats = await asyncio.to_thread(store.get_database_stats, raise_errors=True)
        event_stats = await asyncio.to_thread(store.get_event_stats, raise_errors=True)
    except Exception as e:
        logger.exception("Database stats failed")
        return _error(e)
    return {"success": True, "stats": {**(stats or {}), **(event_stats or {})}}


@database_router.get("/webhooks")
async def list_webhooks(request: Request):
    """Active webhook registrations."""
    store = request.app.state.receiver.store
    try:
        webhooks = await asyncio.to_thread(store.get_all_webhooks, raise_errors=True)
    except Exception as e:
        logger.exception("Listing webhooks failed")
        return _error(e)
    return {"success": True, "webhooks": webhooks, "count": len(webhooks)}


def _webhook_not_found(webhook_gid: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "Webhook not found", "webhook_gid": webhook_gid},
        status_code=404,
    )


@database_router.get("/webhooks/{webhook_gid}")
async def get_webhook(request: Request, webhook_gid: str):
    """One webhook registration, active or not."""
    store = request.app.state.receiver.store
    try:
        webhook = await asyncio.to_thread(store.get_webhook, webhook_gid, raise_errors=True)
    except Exception as e:
        logger.exception("Loading webhook %s failed", webhook_gid)
        return _error(e)
    if webhook is None:
        return _webhook_not_found(webhook_gid)
    return {"success": True, "webhook": webhook}


@database_router.post("/webhooks/{webhook_gid}/deactivate")
async def deactivate_webhook(request: Request, webhook_gid: str):
    """Mark a registration inactive; its events are kept."""
    store = request.app.state.receiver.store
    result = await asyncio.to_thread(store.deactivate_webhook, webhook_gid)
    if not result.success:
        return JSONResponse({"success": False, "error": result.error}, status_code=500)
    if result.data is None:
        return _webhook_not_found(webhook_gid)
    logger.info("Webhook deactivated: %s", webhook_gid)
    return {"success": True, "webhook": result.data}


@database_router.get("/events/database")
async def database_events(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    resource_type: str | None = None,
    action: str | None = None,
    resource_gid: str | None = None,
):
    """Paginated event log with optional filters."""
    store = request.app.state.receiver.store
    filters = EventFilters(resource_type=resource_type, action=action, resource_gid=resource_gid)
    try:
        events = await asyncio.to_thread(store.get_recent_events, limit, offset, filters, raise_errors=True)
        total = await asyncio.to_thread(store.get_total_event_count, filters, raise_errors=True)
    except Exception as e:
        logger.exception("Event query failed")
        return _error(e)
    return {
        "success": True,
        "events": events,
        "count": len(events),
        "total": total,
        "limit": limit,
        "offset": offset,
        "hasMore": offset + len(events) < total,
    }
