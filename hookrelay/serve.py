"""FastAPI application factory and process entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from hookrelay import __version__
from hookrelay.config import Settings, get_settings
from hookrelay.middleware import install_middleware
from hookrelay.receiver import Receiver
from hookrelay.routes import database_router, router
from hookrelay.store import WebhookStore
from hookrelay.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _bootstrap_database(receiver: Receiver) -> None:
    """Create tables and report connectivity. Never fatal."""
    result = receiver.store.test_connection()
    if not result.success:
        logger.warning("Database unavailable (%s); events will only be kept in memory", result.error)
        return
    logger.info("Database connected (%s)", (result.data or {}).get("time"))
    try:
        receiver.store.init_tables()
    except Exception:
        logger.exception("Failed to initialize webhook tables")
        return

    days = receiver.settings.event_retention_days
    if days > 0:
        cleanup = receiver.store.cleanup_old_events(days)
        if cleanup.success:
            logger.info("Deleted %d event(s) older than %d days", (cleanup.data or {}).get("deleted", 0), days)


@asynccontextmanager
async def lifespan(app: FastAPI):
    receiver: Receiver = app.state.receiver
    settings = receiver.settings
    heartbeat: asyncio.Task | None = None

    if not settings.testing:
        await asyncio.to_thread(_bootstrap_database, receiver)
        heartbeat = asyncio.create_task(
            receiver.broadcaster.run_heartbeat(settings.sse_heartbeat_seconds),
            name="sse-heartbeat",
        )

    logger.info(
        "Webhook receiver ready: %s (secret %s, history %d)",
        settings.webhook_url,
        receiver.secrets.state.value,
        settings.webhook_max_history,
    )
    try:
        yield
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        for client_id in receiver.broadcaster.client_ids():
            receiver.broadcaster.unsubscribe(client_id)
        await receiver.runner.drain()
        logger.info("Webhook receiver stopped")


def create_app(settings: Settings | None = None, store: WebhookStore | None = None) -> FastAPI:
    """Build the application with its own receiver state."""
    settings = settings or get_settings()
    app = FastAPI(title="hookrelay", version=__version__, lifespan=lifespan)
    app.state.receiver = Receiver.build(settings, store=store)

    register_webhook_routes(app)
    app.include_router(router)
    app.include_router(database_router)
    install_middleware(app, settings.cors_origins, log_requests=not settings.testing)
    return app


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    load_dotenv()
    get_settings.cache_clear()
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Webhook receiver with live event stream")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    if args.port != settings.port:
        settings = settings.model_copy(update={"port": args.port})

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
