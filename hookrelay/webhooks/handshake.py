"""X-Hook-Secret handshake.

When a webhook is created the platform sends a request carrying
``X-Hook-Secret``. The receiver must echo the value back in the same header
with a 200 and an empty body, within seconds. From then on every event
batch is signed with that secret.

Everything the handler does after the echo is in-memory or detached, so
the response is never held up by persistence.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from hookrelay.events import EventBroadcaster, now_iso
from hookrelay.store import WebhookStore
from hookrelay.tasks import DetachedTaskRunner
from hookrelay.webhooks.secret_store import HandshakeState, SecretStore

logger = logging.getLogger(__name__)

HANDSHAKE_HEADER = "X-Hook-Secret"

# Characters of the secret shown to stream observers
_REDACT_KEEP = 10


def redact_secret(secret: str) -> str:
    """Keep a short prefix for correlation; never expose the whole secret."""
    if len(secret) <= _REDACT_KEEP:
        return secret[: len(secret) // 2] + "..."
    return secret[:_REDACT_KEEP] + "..."


def synthetic_webhook_gid() -> str:
    """Identifier for a registration whose handshake carried no webhook gid."""
    return f"webhook_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class HandshakeHandler:
    """Binds the shared secret and records the webhook registration."""

    def __init__(
        self,
        secrets: SecretStore,
        broadcaster: EventBroadcaster,
        store: WebhookStore,
        runner: DetachedTaskRunner,
        *,
        target_url: str,
    ) -> None:
        self._secrets = secrets
        self._broadcaster = broadcaster
        self._store = store
        self._runner = runner
        self._target_url = target_url

    @property
    def state(self) -> HandshakeState:
        return self._secrets.state

    def registration_for(self, secret: str, body: dict[str, Any]) -> dict[str, Any]:
        """Build the webhook row saved for this handshake."""
        return {
            "webhook_gid": str(body.get("webhook_gid") or synthetic_webhook_gid()),
            "resource_gid": str(body.get("resource") or "unknown"),
            "resource_type": str(body.get("resource_type") or "unknown"),
            "target_url": self._target_url,
            "secret": secret,
        }

    def handle(self, secret: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """Install ``secret`` and announce the handshake.

        Called after the echo response has been prepared. A repeat handshake
        replaces the previous secret. Returns the notification that was
        broadcast.
        """
        previous = self._secrets.state
        self._secrets.set(secret)

        registration = self.registration_for(secret, body or {})
        self._runner.spawn(self._store.save_webhook, registration, name="save_webhook")

        notification = {
            "type": "handshake",
            "hookSecret": redact_secret(secret),
            "webhookGid": registration["webhook_gid"],
            "rebound": previous is HandshakeState.BOUND,
            "secretSaved": True,
            "timestamp": now_iso(),
        }
        self._broadcaster.publish(notification)

        logger.info(
            "WEBHOOK_AUDIT handshake webhook=%s state=%s->%s",
            registration["webhook_gid"],
            previous.value,
            HandshakeState.BOUND.value,
        )
        return notification
