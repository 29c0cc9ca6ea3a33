"""Postgres persistence for webhook registrations and received events.

Two tables:
- webhooks:       one row per registered webhook (upserted on handshake)
- webhook_events: append-only log of every event received

Write operations return a StoreResult instead of raising; the webhook core
schedules them as background work and only logs failures. Read operations
log and return an empty value on failure, except where the HTTP layer needs
to report the error (``raise_errors=True``).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


@dataclass
class StoreResult:
    """Outcome of a persistence write."""

    success: bool
    data: dict[str, Any] | None = None
    error: str = ""


@runtime_checkable
class WebhookStore(Protocol):
    """Persistence operations the webhook core calls as background work."""

    def save_webhook(self, webhook: dict[str, Any]) -> StoreResult:
        ...

    def save_event(self, event: dict[str, Any]) -> StoreResult:
        ...

    def update_webhook_stats(self, webhook_gid: str) -> StoreResult:
        ...


@dataclass
class EventFilters:
    """Optional filters for event queries."""

    resource_type: str | None = None
    action: str | None = None
    resource_gid: str | None = None  # substring match

    def where_clause(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if self.resource_type:
            clauses.append("resource_type = %s")
            params.append(self.resource_type)
        if self.action:
            clauses.append("action = %s")
            params.append(self.action)
        if self.resource_gid:
            clauses.append("resource_gid LIKE %s")
            params.append(f"%{self.resource_gid}%")
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS webhooks (
        id            SERIAL PRIMARY KEY,
        webhook_gid   TEXT NOT NULL UNIQUE,
        resource_gid  TEXT,
        resource_type TEXT,
        target_url    TEXT,
        secret        TEXT,
        active        BOOLEAN DEFAULT true,
        event_count   INT DEFAULT 0,
        last_event_at TIMESTAMPTZ,
        created_at    TIMESTAMPTZ DEFAULT now(),
        updated_at    TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id                 SERIAL PRIMARY KEY,
        webhook_gid        TEXT,
        event_type         TEXT,
        action             TEXT,
        resource_gid       TEXT,
        resource_type      TEXT,
        user_gid           TEXT,
        created_at         TIMESTAMPTZ,
        received_at        TIMESTAMPTZ DEFAULT now(),
        payload            JSONB,
        signature_verified BOOLEAN DEFAULT false
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_received_at ON webhook_events (received_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_webhook_gid ON webhook_events (webhook_gid)",
)


class PostgresWebhookStore:
    """psycopg-backed store. Opens a short-lived connection per call."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_tables(self) -> None:
        """Create tables if they don't exist.  Idempotent."""
        with self._get_conn() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("Webhook tables initialized")

    # ── Webhook registrations ────────────────────────────────────────────

    def save_webhook(self, webhook: dict[str, Any]) -> StoreResult:
        """Insert or refresh a webhook registration (reactivates it)."""
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """INSERT INTO webhooks (webhook_gid, resource_gid, resource_type, target_url, secret, active)
                       VALUES (%s, %s, %s, %s, %s, true)
                       ON CONFLICT (webhook_gid)
                       DO UPDATE SET secret = EXCLUDED.secret,
                                     updated_at = now(),
                                     active = true
                       RETURNING *""",
                    (
                        webhook["webhook_gid"],
                        webhook.get("resource_gid"),
                        webhook.get("resource_type"),
                        webhook.get("target_url"),
                        webhook.get("secret"),
                    ),
                ).fetchone()
            return StoreResult(success=True, data=row)
        except Exception as e:
            logger.exception("Failed to save webhook %s", webhook.get("webhook_gid"))
            return StoreResult(success=False, error=str(e))

    def update_webhook_stats(self, webhook_gid: str) -> StoreResult:
        """Bump the event counter and last-event time for a webhook."""
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """UPDATE webhooks
                       SET event_count = event_count + 1,
                           last_event_at = now()
                       WHERE webhook_gid = %s
                       RETURNING *""",
                    (webhook_gid,),
                ).fetchone()
            return StoreResult(success=True, data=row)
        except Exception as e:
            logger.exception("Failed to update stats for webhook %s", webhook_gid)
            return StoreResult(success=False, error=str(e))

    def deactivate_webhook(self, webhook_gid: str) -> StoreResult:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    "UPDATE webhooks SET active = false WHERE webhook_gid = %s RETURNING *",
                    (webhook_gid,),
                ).fetchone()
            return StoreResult(success=True, data=row)
        except Exception as e:
            logger.exception("Failed to deactivate webhook %s", webhook_gid)
            return StoreResult(success=False, error=str(e))

    def get_webhook(self, webhook_gid: str, *, raise_errors: bool = False) -> dict[str, Any] | None:
        try:
            with self._get_conn() as conn:
                return conn.execute(
                    "SELECT * FROM webhooks WHERE webhook_gid = %s",
                    (webhook_gid,),
                ).fetchone()
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to load webhook %s", webhook_gid)
            return None

    def get_all_webhooks(self, *, raise_errors: bool = False) -> list[dict[str, Any]]:
        """Active webhooks, newest first."""
        try:
            with self._get_conn() as conn:
                return conn.execute(
                    "SELECT * FROM webhooks WHERE active = true ORDER BY created_at DESC"
                ).fetchall()
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to list webhooks")
            return []

    # ── Event log ────────────────────────────────────────────────────────

    def save_event(self, event: dict[str, Any]) -> StoreResult:
        """Append one received event to the log."""
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """INSERT INTO webhook_events
                       (webhook_gid, event_type, action, resource_gid, resource_type,
                        user_gid, created_at, payload, signature_verified)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                       RETURNING id, webhook_gid, action, resource_gid, received_at""",
                    (
                        event.get("webhook_gid"),
                        event.get("event_type"),
                        event.get("action"),
                        event.get("resource_gid"),
                        event.get("resource_type"),
                        event.get("user_gid"),
                        event.get("created_at"),
                        json.dumps(event.get("payload") or {}),
                        bool(event.get("signature_verified")),
                    ),
                ).fetchone()
            return StoreResult(success=True, data=row)
        except Exception as e:
            logger.exception("Failed to save event for webhook %s", event.get("webhook_gid"))
            return StoreResult(success=False, error=str(e))

    def get_recent_events(
        self,
        limit: int = 50,
        offset: int = 0,
        filters: EventFilters | None = None,
        *,
        raise_errors: bool = False,
    ) -> list[dict[str, Any]]:
        """Logged events, newest first, with optional filters."""
        where, params = (filters or EventFilters()).where_clause()
        try:
            with self._get_conn() as conn:
                return conn.execute(
                    f"SELECT * FROM webhook_events{where} ORDER BY received_at DESC LIMIT %s OFFSET %s",
                    (*params, limit, offset),
                ).fetchall()
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to query events")
            return []

    def get_total_event_count(
        self,
        filters: EventFilters | None = None,
        *,
        raise_errors: bool = False,
    ) -> int:
        where, params = (filters or EventFilters()).where_clause()
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    f"SELECT COUNT(*) AS total FROM webhook_events{where}",
                    params,
                ).fetchone()
            return int(row["total"]) if row else 0
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to count events")
            return 0

    def get_event_stats(self, *, raise_errors: bool = False) -> dict[str, Any] | None:
        """Event statistics over the last 24 hours."""
        try:
            with self._get_conn() as conn:
                return conn.execute(
                    """SELECT COUNT(*) AS total_events,
                              COUNT(DISTINCT webhook_gid) AS active_webhooks,
                              COUNT(*) FILTER (WHERE signature_verified) AS verified_events,
                              MAX(received_at) AS last_event_time
                       FROM webhook_events
                       WHERE received_at > now() - INTERVAL '24 hours'"""
                ).fetchone()
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to compute event stats")
            return None

    def cleanup_old_events(self, days: int = 30) -> StoreResult:
        """Delete events older than ``days``."""
        try:
            with self._get_conn() as conn:
                cur = conn.execute(
                    "DELETE FROM webhook_events WHERE received_at < now() - make_interval(days => %s)",
                    (days,),
                )
            return StoreResult(success=True, data={"deleted": cur.rowcount})
        except Exception as e:
            logger.exception("Failed to clean up events older than %d days", days)
            return StoreResult(success=False, error=str(e))

    # ── Utilities ────────────────────────────────────────────────────────

    def test_connection(self) -> StoreResult:
        try:
            with self._get_conn() as conn:
                row = conn.execute("SELECT now() AS current_time").fetchone()
            return StoreResult(success=True, data={"time": str(row["current_time"])})
        except Exception as e:
            logger.warning("Database connection test failed: %s", e)
            return StoreResult(success=False, error=str(e))

    def get_database_stats(self, *, raise_errors: bool = False) -> dict[str, int] | None:
        try:
            with self._get_conn() as conn:
                webhooks = conn.execute(
                    "SELECT COUNT(*) AS n FROM webhooks WHERE active = true"
                ).fetchone()
                events = conn.execute("SELECT COUNT(*) AS n FROM webhook_events").fetchone()
                recent = conn.execute(
                    "SELECT COUNT(*) AS n FROM webhook_events WHERE received_at > now() - INTERVAL '24 hours'"
                ).fetchone()
            return {
                "active_webhooks": int(webhooks["n"]),
                "total_events": int(events["n"]),
                "events_24h": int(recent["n"]),
            }
        except Exception:
            if raise_errors:
                raise
            logger.exception("Failed to compute database stats")
            return None
