"""Event broadcasting for real-time dashboard streaming.

Provides:
- Sink / QueueSink: per-connection output for Server-Sent Events
- EventBroadcaster: fan-out of notifications to every connected stream client

Delivery contract:
- Each publish is serialized once and written to every registered sink
- A sink that raises is unsubscribed; delivery to the others continues
- New subscribers get a ``connected`` frame and the full history before live events
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from hookrelay.history import HistoryBuffer

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ":heartbeat\n\n"
DEFAULT_HEARTBEAT_SECONDS = 30.0


def now_iso() -> str:
    """UTC timestamp in ISO 8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_sse(data: dict[str, Any]) -> str:
    """Render one ``data:`` frame."""
    return f"data: {json.dumps(data, default=str)}\n\n"


class SinkError(Exception):
    """A stream sink could not accept a message."""


class SinkClosedError(SinkError):
    """The sink's connection has gone away."""


class SinkOverflowError(SinkError):
    """The consumer is not draining its queue fast enough."""


@runtime_checkable
class Sink(Protocol):
    """Output side of one stream connection."""

    def write(self, message: str) -> None:
        """Accept one rendered frame. Raises on failure."""
        ...


_CLOSE = object()


class QueueSink:
    """Bounded queue feeding one SSE response body.

    ``write`` never blocks: a full queue means a stalled consumer, which is
    reported as a failure so the broadcaster drops the client.
    """

    def __init__(self, maxsize: int = 500) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, message: str) -> None:
        if self._closed:
            raise SinkClosedError("stream closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise SinkOverflowError(f"queue full ({self._queue.maxsize} frames pending)") from None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake the reader; make room if the queue is saturated
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSE)

    async def messages(self) -> AsyncIterator[str]:
        """Yield frames until the sink is closed."""
        while True:
            message = await self._queue.get()
            if message is _CLOSE:
                return
            yield message


@dataclass
class StreamClient:
    """One open stream connection, owned by the broadcaster."""

    id: str
    sink: Sink
    connected_at: str = field(default_factory=now_iso)


class EventBroadcaster:
    """Fans out notifications to all connected stream clients."""

    def __init__(self, history: HistoryBuffer) -> None:
        self._history = history
        self._clients: dict[str, StreamClient] = {}
        self._lock = threading.Lock()

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def client_ids(self) -> list[str]:
        with self._lock:
            return list(self._clients)

    def subscribe(self, sink: Sink) -> str:
        """Register a sink and replay the current history to it.

        Returns the new client id. If the initial frames cannot be written
        the client is already unsubscribed when this returns.
        """
        client_id = uuid.uuid4().hex[:12]
        client = StreamClient(id=client_id, sink=sink)
        records = self._history.snapshot_dicts()
        with self._lock:
            self._clients[client_id] = client
            total = len(self._clients)
        logger.info("Stream client connected: %s (total: %d)", client_id, total)

        # Written before any later publish can reach this sink
        if self._deliver(client, format_sse({
            "type": "connected",
            "message": "Connected to webhook receiver",
            "timestamp": now_iso(),
            "historyCount": len(records),
        })):
            self._deliver(client, format_sse({
                "type": "history",
                "events": records,
                "count": len(records),
            }))
        return client_id

    def unsubscribe(self, client_id: str) -> None:
        """Remove a client. Safe to call more than once."""
        with self._lock:
            client = self._clients.pop(client_id, None)
            total = len(self._clients)
        if client is None:
            return
        close = getattr(client.sink, "close", None)
        if callable(close):
            close()
        logger.info("Stream client disconnected: %s (total: %d)", client_id, total)

    def publish(self, event: dict[str, Any]) -> int:
        """Send an event to every client. Returns the number of successful deliveries."""
        payload = dict(event)
        payload.setdefault("timestamp", now_iso())
        sent = self._write_all(format_sse(payload))
        if sent:
            logger.debug("Broadcast %s to %d client(s)", payload.get("type"), sent)
        return sent

    def heartbeat(self) -> int:
        """Send a comment-only keep-alive frame to every client."""
        return self._write_all(HEARTBEAT_FRAME)

    async def run_heartbeat(self, interval: float = DEFAULT_HEARTBEAT_SECONDS) -> None:
        """Send keep-alives forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            self.heartbeat()

    def _write_all(self, message: str) -> int:
        with self._lock:
            clients = list(self._clients.values())
        return sum(1 for client in clients if self._deliver(client, message))

    def _deliver(self, client: StreamClient, message: str) -> bool:
        try:
            client.sink.write(message)
            return True
        except Exception as e:
            logger.warning("Dropping stream client %s: %s", client.id, e)
            self.unsubscribe(client.id)
            return False
