"""Tests for the handshake handler, ingestion pipeline and background runner.

These run outside an event loop, where DetachedTaskRunner executes work
inline, so persistence calls can be asserted directly.
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest

from hookrelay.events import EventBroadcaster
from hookrelay.history import HistoryBuffer
from hookrelay.store import StoreResult
from hookrelay.tasks import DetachedTaskRunner
from hookrelay.webhooks.handshake import HandshakeHandler, redact_secret, synthetic_webhook_gid
from hookrelay.webhooks.ingestion import EventIngestionPipeline
from hookrelay.webhooks.secret_store import HandshakeState, SecretStore


@pytest.fixture()
def store() -> MagicMock:
    mock = MagicMock()
    mock.save_webhook.return_value = StoreResult(success=True)
    mock.save_event.return_value = StoreResult(success=True, data={"id": 1})
    mock.update_webhook_stats.return_value = StoreResult(success=True)
    return mock


@pytest.fixture()
def history() -> HistoryBuffer:
    return HistoryBuffer(50)


@pytest.fixture()
def broadcaster() -> MagicMock:
    return MagicMock(spec=EventBroadcaster)


@pytest.fixture()
def runner() -> DetachedTaskRunner:
    return DetachedTaskRunner()


@pytest.fixture()
def secrets() -> SecretStore:
    return SecretStore()


@pytest.fixture()
def handshake(secrets, broadcaster, store, runner) -> HandshakeHandler:
    return HandshakeHandler(secrets, broadcaster, store, runner, target_url="http://receiver.test/webhook")


@pytest.fixture()
def pipeline(history, broadcaster, store, runner) -> EventIngestionPipeline:
    return EventIngestionPipeline(history, broadcaster, store, runner)


def _events(n: int) -> list[dict]:
    return [
        {"action": "changed", "resource": {"gid": str(i), "resource_type": "task"}}
        for i in range(n)
    ]


# ── Handshake ─────────────────────────────────────────────────────────────


class TestRedaction:
    """Secrets are never shown in full."""

    def test_long_secret_truncated(self):
        assert redact_secret("0123456789abcdef") == "0123456789..."

    def test_short_secret_halved(self):
        assert redact_secret("abc123") == "abc..."

    def test_single_char(self):
        assert redact_secret("x") == "..."


class TestHandshakeHandler:
    """Secret binding and registration."""

    def test_binds_secret(self, handshake, secrets):
        assert handshake.state is HandshakeState.AWAITING_SECRET
        handshake.handle("abc123", {})
        assert secrets.get() == "abc123"
        assert handshake.state is HandshakeState.BOUND

    def test_rebind_replaces_secret(self, handshake, secrets, broadcaster):
        handshake.handle("first-secret", {})
        notification = handshake.handle("second-secret", {})
        assert secrets.get() == "second-secret"
        assert notification["rebound"] is True

    def test_registration_saved(self, handshake, store):
        handshake.handle("s3cret", {"webhook_gid": "wh_9", "resource": "1201", "resource_type": "project"})
        store.save_webhook.assert_called_once_with({
            "webhook_gid": "wh_9",
            "resource_gid": "1201",
            "resource_type": "project",
            "target_url": "http://receiver.test/webhook",
            "secret": "s3cret",
        })

    def test_synthetic_gid_when_absent(self, handshake, store):
        handshake.handle("s3cret", {})
        saved = store.save_webhook.call_args[0][0]
        assert saved["webhook_gid"].startswith("webhook_")
        assert saved["resource_gid"] == "unknown"
        assert saved["resource_type"] == "unknown"

    def test_synthetic_gids_unique(self):
        assert len({synthetic_webhook_gid() for _ in range(50)}) == 50

    def test_broadcast_redacts_secret(self, handshake, broadcaster):
        secret = "a-very-long-shared-secret-value"
        handshake.handle(secret, {})
        notification = broadcaster.publish.call_args[0][0]
        assert notification["type"] == "handshake"
        assert secret not in str(notification)
        assert notification["hookSecret"] == "a-very-lon..."

    def test_persistence_failure_does_not_raise(self, handshake, store, runner, secrets):
        store.save_webhook.side_effect = RuntimeError("db down")
        handshake.handle("abc123", {})
        assert secrets.get() == "abc123"
        assert runner.failures == 1


# ── Ingestion ─────────────────────────────────────────────────────────────


class TestEventIngestionPipeline:
    """History, persistence and broadcast per event."""

    def test_processes_in_order(self, pipeline, history, broadcaster):
        assert pipeline.ingest(_events(3), signature_verified=True) == 3
        # Newest first in history; broadcast in array order
        assert [r.resource_gid for r in history.snapshot()] == ["2", "1", "0"]
        broadcast_gids = [c[0][0]["event"]["resource_gid"] for c in broadcaster.publish.call_args_list]
        assert broadcast_gids == ["0", "1", "2"]

    def test_broadcast_type(self, pipeline, broadcaster):
        pipeline.ingest(_events(1), signature_verified=False)
        payload = broadcaster.publish.call_args[0][0]
        assert payload["type"] == "webhook_event"
        assert payload["event"]["signature_verified"] is False

    def test_persists_and_updates_stats(self, pipeline, store):
        pipeline.ingest(_events(2), signature_verified=True, parent_gid="wh_1")
        assert store.save_event.call_count == 2
        row = store.save_event.call_args_list[0][0][0]
        assert row["webhook_gid"] == "wh_1"
        assert row["signature_verified"] is True
        assert store.update_webhook_stats.call_count == 2
        store.update_webhook_stats.assert_called_with("wh_1")

    def test_no_stats_update_without_parent(self, pipeline, store):
        pipeline.ingest(_events(1), signature_verified=True)
        store.save_event.assert_called_once()
        store.update_webhook_stats.assert_not_called()
        assert store.save_event.call_args[0][0]["webhook_gid"].startswith("webhook_")

    def test_no_stats_update_when_save_fails(self, pipeline, store, runner):
        store.save_event.return_value = StoreResult(success=False, error="boom")
        pipeline.ingest(_events(1), signature_verified=True, parent_gid="wh_1")
        store.update_webhook_stats.assert_not_called()
        assert runner.failures == 1

    def test_persistence_exception_is_contained(self, pipeline, store, history, broadcaster, runner):
        store.save_event.side_effect = RuntimeError("connection refused")
        assert pipeline.ingest(_events(2), signature_verified=True) == 2
        assert len(history) == 2
        assert broadcaster.publish.call_count == 2
        # Both rows attempted; the batch task reports one failure
        assert store.save_event.call_count == 2
        assert runner.failures == 1

    def test_one_persistence_task_per_batch(self, pipeline, runner):
        with patch.object(runner, "spawn", wraps=runner.spawn) as spawn:
            pipeline.ingest(_events(4), signature_verified=True, parent_gid="wh_1")
        spawn.assert_called_once()
        assert runner.completed == 1

    def test_failed_row_does_not_stop_batch(self, pipeline, store, runner):
        store.save_event.side_effect = [
            StoreResult(success=True),
            StoreResult(success=False, error="constraint"),
            StoreResult(success=True),
        ]
        pipeline.ingest(_events(3), signature_verified=True, parent_gid="wh_1")
        assert store.save_event.call_count == 3
        assert store.update_webhook_stats.call_count == 2
        assert runner.failures == 1

    @pytest.mark.asyncio
    async def test_rows_saved_in_array_order(self, history, broadcaster, store, runner):
        saved: list[str] = []

        def save_event(row):
            # Earlier rows are slower; concurrent saves would reorder them
            time.sleep(0.02 * (5 - len(saved)))
            saved.append(row["resource_gid"])
            return StoreResult(success=True)

        store.save_event.side_effect = save_event
        pipeline = EventIngestionPipeline(history, broadcaster, store, runner)
        pipeline.ingest(_events(5), signature_verified=True)
        await runner.drain()
        assert saved == ["0", "1", "2", "3", "4"]

    def test_empty_batch(self, pipeline, history, broadcaster, store):
        assert pipeline.ingest([], signature_verified=True) == 0
        assert len(history) == 0
        broadcaster.publish.assert_not_called()
        store.save_event.assert_not_called()

    def test_non_object_events_skipped(self, pipeline, history):
        assert pipeline.ingest([{"action": "added"}, "junk", 7], signature_verified=False) == 1
        assert len(history) == 1

    def test_reject_broadcasts_error(self, pipeline, broadcaster, history):
        pipeline.reject("Invalid signature")
        payload = broadcaster.publish.call_args[0][0]
        assert payload["type"] == "error"
        assert payload["error"] == "Invalid signature"
        assert len(history) == 0

    def test_history_capped(self, broadcaster, store, runner):
        history = HistoryBuffer(5)
        pipeline = EventIngestionPipeline(history, broadcaster, store, runner)
        pipeline.ingest(_events(8), signature_verified=True)
        assert [r.resource_gid for r in history.snapshot()] == ["7", "6", "5", "4", "3"]


# ── Background runner ─────────────────────────────────────────────────────


class TestDetachedTaskRunner:
    """Fire-and-forget execution."""

    def test_inline_without_loop(self, runner):
        calls = []
        runner.spawn(calls.append, 1)
        assert calls == [1]
        assert runner.completed == 1

    def test_inline_failure_logged(self, runner, caplog):
        def boom():
            raise ValueError("nope")

        runner.spawn(boom, name="boom")
        assert runner.failures == 1
        assert "Background task failed: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_does_not_block_caller(self, runner):
        def slow():
            time.sleep(0.2)
            return StoreResult(success=True)

        start = time.monotonic()
        runner.spawn(slow)
        assert time.monotonic() - start < 0.1
        assert runner.pending == 1
        await runner.drain()
        assert runner.pending == 0
        assert runner.completed == 1

    @pytest.mark.asyncio
    async def test_async_failure_counted(self, runner):
        def boom():
            raise RuntimeError("db down")

        runner.spawn(boom)
        await runner.drain()
        assert runner.failures == 1

    @pytest.mark.asyncio
    async def test_failed_store_result_counted(self, runner):
        runner.spawn(lambda: StoreResult(success=False, error="constraint"))
        await runner.drain()
        assert runner.failures == 1
        assert runner.completed == 0

    @pytest.mark.asyncio
    async def test_drain_without_tasks(self, runner):
        await asyncio.wait_for(runner.drain(), timeout=1)
