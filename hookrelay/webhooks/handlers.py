"""Webhook HTTP handlers — FastAPI routes for the receiver and its stream.

POST /webhook:
1. Reads the raw body (needed for HMAC verification)
2. X-Hook-Secret present -> echo it, then bind the secret after the response
3. Otherwise checks X-Hook-Signature against the current secret
4. Parses and ingests the batch; responds once in-memory work is done

Security contract:
- Return 401 only for signature failures, with no detail beyond the reason
- A rejected batch changes no state
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from hookrelay.events import QueueSink, now_iso
from hookrelay.receiver import Receiver
from hookrelay.webhooks.handshake import HANDSHAKE_HEADER
from hookrelay.webhooks.ingestion import extract_events
from hookrelay.webhooks.verification import SIGNATURE_HEADER, VerificationOutcome, check_batch

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _receiver(request: Request) -> Receiver:
    return request.app.state.receiver


def _parse_body(raw: bytes) -> Any:
    """Decode a JSON body. Empty body -> {}; raises ValueError on bad JSON."""
    if not raw.strip():
        return {}
    return json.loads(raw)


def _parent_gid(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    parent = body.get("parent")
    if isinstance(parent, dict) and parent.get("gid") is not None:
        return str(parent["gid"])
    return None


async def _handle_handshake(receiver: Receiver, secret: str, raw: bytes) -> Response:
    try:
        body = _parse_body(raw)
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    async def bind_secret() -> None:
        receiver.handshake.handle(secret, body)

    # Echo first; the secret is bound once the response has gone out
    return Response(
        status_code=200,
        headers={HANDSHAKE_HEADER: secret},
        background=BackgroundTask(bind_secret),
    )


async def _handle_webhook(request: Request) -> Response:
    """Handshake or event batch.

    Returns 200 on success, 401 on signature failure, 400 on unparseable JSON.
    """
    start = time.time()
    receiver = _receiver(request)
    raw = await request.body()

    hook_secret = request.headers.get(HANDSHAKE_HEADER)
    if hook_secret:
        return await _handle_handshake(receiver, hook_secret, raw)

    outcome = check_batch(raw, request.headers.get(SIGNATURE_HEADER), receiver.secrets)
    if outcome is VerificationOutcome.REJECTED:
        logger.warning("WEBHOOK_AUDIT status=signature_failed bytes=%d", len(raw))
        receiver.pipeline.reject("Invalid signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        body = _parse_body(raw)
    except (ValueError, UnicodeDecodeError):
        logger.warning("WEBHOOK_AUDIT status=invalid_json bytes=%d", len(raw))
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    events = extract_events(body)
    processed = receiver.pipeline.ingest(
        events,
        signature_verified=outcome is VerificationOutcome.VERIFIED,
        parent_gid=_parent_gid(body),
    )

    elapsed_ms = (time.time() - start) * 1000
    logger.info(
        "WEBHOOK_AUDIT status=%s received=%d processed=%d elapsed=%.1fms",
        outcome.value,
        len(events),
        processed,
        elapsed_ms,
    )
    return JSONResponse({"received": True, "processed": processed, "timestamp": now_iso()})


def register_webhook_routes(app: FastAPI) -> None:
    """Register the webhook endpoint, the event stream and history routes."""

    @app.post("/webhook")
    async def webhook(request: Request):
        """Receive handshakes and event batches."""
        return await _handle_webhook(request)

    @app.get("/events")
    async def stream_events(request: Request):
        """Server-Sent Events stream: connected, history, then live events."""
        receiver = _receiver(request)
        sink = QueueSink(maxsize=receiver.settings.sse_queue_size)
        client_id = receiver.broadcaster.subscribe(sink)

        async def event_generator():
            try:
                async for message in sink.messages():
                    yield message
            finally:
                receiver.broadcaster.unsubscribe(client_id)

        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/events/history")
    async def event_history(request: Request):
        """Snapshot of the in-memory history, newest first."""
        events = _receiver(request).history.snapshot_dicts()
        return {"success": True, "events": events, "count": len(events)}

    @app.post("/api/events/clear")
    async def clear_history(request: Request):
        """Empty the in-memory history and tell stream clients."""
        receiver = _receiver(request)
        count = receiver.history.clear()
        receiver.broadcaster.publish({"type": "history_cleared", "clearedCount": count})
        logger.info("History cleared: %d events", count)
        return {"success": True, "message": f"Cleared {count} events"}

    logger.info("Webhook routes registered: /webhook, /events, /api/events/{history,clear}")
