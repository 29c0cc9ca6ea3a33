"""Event batch ingestion — history, persistence, broadcast.

Each accepted batch is processed in array order. For every event:
1. Build an EventRecord
2. Prepend it to the history buffer
3. Broadcast a ``webhook_event`` notification

The batch's rows are then saved by a single background task, one after
another in array order (save_event, then update_webhook_stats), so the
event log ids follow the batch. Persistence errors are logged by the task
runner and never reach the sender.
"""

from __future__ import annotations

import logging
from typing import Any

from hookrelay.events import EventBroadcaster, now_iso
from hookrelay.history import EventRecord, HistoryBuffer
from hookrelay.store import StoreResult, WebhookStore
from hookrelay.tasks import DetachedTaskRunner
from hookrelay.webhooks.handshake import synthetic_webhook_gid

logger = logging.getLogger(__name__)


def _gid(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _sub(event: dict[str, Any], key: str) -> dict[str, Any]:
    value = event.get(key)
    return value if isinstance(value, dict) else {}


def build_event_record(
    event: dict[str, Any],
    *,
    signature_verified: bool,
    received_at: str | None = None,
) -> EventRecord:
    """Normalize one inbound event."""
    resource = _sub(event, "resource")
    return EventRecord(
        action=event.get("action"),
        resource_type=resource.get("resource_type"),
        resource_gid=_gid(resource.get("gid")),
        resource_name=resource.get("name"),
        created_at=event.get("created_at"),
        received_at=received_at or now_iso(),
        user=event.get("user"),
        parent=event.get("parent"),
        full_event=event,
        signature_verified=signature_verified,
    )


def build_event_row(
    event: dict[str, Any],
    *,
    webhook_gid: str,
    signature_verified: bool,
) -> dict[str, Any]:
    """Row written to the webhook_events log."""
    resource = _sub(event, "resource")
    return {
        "webhook_gid": webhook_gid,
        "event_type": event.get("type") or "webhook",
        "action": event.get("action"),
        "resource_gid": _gid(resource.get("gid")),
        "resource_type": resource.get("resource_type"),
        "user_gid": _gid(_sub(event, "user").get("gid")),
        "created_at": event.get("created_at") or now_iso(),
        "payload": event,
        "signature_verified": signature_verified,
    }


def extract_events(body: Any) -> list[Any]:
    """The ``events`` array of a batch; anything else is an empty batch."""
    if not isinstance(body, dict):
        return []
    events = body.get("events")
    return events if isinstance(events, list) else []


class EventIngestionPipeline:
    """Feeds accepted batches into history, persistence and the broadcaster."""

    def __init__(
        self,
        history: HistoryBuffer,
        broadcaster: EventBroadcaster,
        store: WebhookStore,
        runner: DetachedTaskRunner,
    ) -> None:
        self._history = history
        self._broadcaster = broadcaster
        self._store = store
        self._runner = runner

    def ingest(
        self,
        events: list[Any],
        *,
        signature_verified: bool,
        parent_gid: str | None = None,
    ) -> int:
        """Process a batch in order. Returns the number of events ingested."""
        webhook_gid = parent_gid or synthetic_webhook_gid()
        rows: list[dict[str, Any]] = []
        for index, event in enumerate(events):
            if not isinstance(event, dict):
                logger.warning("Skipping event %d: expected object, got %s", index, type(event).__name__)
                continue

            record = build_event_record(event, signature_verified=signature_verified)
            self._history.append(record)
            rows.append(build_event_row(event, webhook_gid=webhook_gid, signature_verified=signature_verified))

            self._broadcaster.publish({
                "type": "webhook_event",
                "event": record.to_dict(),
            })

        if rows:
            self._runner.spawn(self._persist_batch, rows, parent_gid, name=f"save_events[{len(rows)}]")
        return len(rows)

    def reject(self, reason: str = "Invalid signature") -> None:
        """Announce a rejected batch to stream observers."""
        self._broadcaster.publish({"type": "error", "error": reason, "timestamp": now_iso()})

    def _persist_batch(self, rows: list[dict[str, Any]], parent_gid: str | None) -> StoreResult:
        """Save rows sequentially. A failed row does not stop the rest."""
        failed = 0
        for index, row in enumerate(rows):
            try:
                result = self._persist(row, parent_gid)
            except Exception:
                logger.exception("Failed to persist event %d of batch", index)
                failed += 1
                continue
            if not result.success:
                logger.warning("Failed to persist event %d of batch: %s", index, result.error)
                failed += 1

        if failed:
            return StoreResult(success=False, error=f"{failed} of {len(rows)} events not saved")
        return StoreResult(success=True, data={"saved": len(rows)})

    def _persist(self, row: dict[str, Any], parent_gid: str | None) -> StoreResult:
        result = self._store.save_event(row)
        if result.success and parent_gid:
            return self._store.update_webhook_stats(parent_gid)
        return result
