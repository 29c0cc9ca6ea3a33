"""Wiring of the webhook core components for one process."""

from __future__ import annotations

from dataclasses import dataclass

from hookrelay.config import Settings
from hookrelay.events import EventBroadcaster
from hookrelay.history import HistoryBuffer
from hookrelay.store import PostgresWebhookStore, WebhookStore
from hookrelay.tasks import DetachedTaskRunner
from hookrelay.webhooks.handshake import HandshakeHandler
from hookrelay.webhooks.ingestion import EventIngestionPipeline
from hookrelay.webhooks.secret_store import SecretStore


@dataclass
class Receiver:
    """Owns all webhook state; attached to ``app.state.receiver``."""

    settings: Settings
    secrets: SecretStore
    history: HistoryBuffer
    broadcaster: EventBroadcaster
    store: WebhookStore
    runner: DetachedTaskRunner
    handshake: HandshakeHandler
    pipeline: EventIngestionPipeline

    @classmethod
    def build(cls, settings: Settings, store: WebhookStore | None = None) -> Receiver:
        secrets = SecretStore(settings.asana_webhook_secret)
        history = HistoryBuffer(settings.webhook_max_history)
        broadcaster = EventBroadcaster(history)
        store = store if store is not None else PostgresWebhookStore(settings.database_url)
        runner = DetachedTaskRunner()
        return cls(
            settings=settings,
            secrets=secrets,
            history=history,
            broadcaster=broadcaster,
            store=store,
            runner=runner,
            handshake=HandshakeHandler(
                secrets, broadcaster, store, runner, target_url=settings.webhook_url,
            ),
            pipeline=EventIngestionPipeline(history, broadcaster, store, runner),
        )
