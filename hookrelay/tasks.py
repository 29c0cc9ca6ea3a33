"""Fire-and-forget execution of blocking side effects.

Persistence calls are blocking (psycopg), so they run in worker threads via
``asyncio.to_thread``. The caller gets control back immediately; errors are
logged here and counted, never raised into the request path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class DetachedTaskRunner:
    """Runs callables in the background and keeps their tasks alive until done."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0
        self.completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, func: Callable[..., Any], *args: Any, name: str = "") -> None:
        """Schedule ``func(*args)`` without waiting for it.

        Outside a running event loop the call runs inline, with the same
        error capture.
        """
        label = name or getattr(func, "__name__", "task")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                result = func(*args)
            except Exception:
                self._record_exception(label)
            else:
                self._record_result(label, result)
            return

        task = loop.create_task(asyncio.to_thread(func, *args), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    async def drain(self, timeout: float | None = 10.0) -> None:
        """Wait for outstanding tasks (shutdown and tests)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d background task(s) still running after drain", len(pending))

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        label = task.get_name()
        if task.cancelled():
            logger.warning("Background task cancelled: %s", label)
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error("Background task failed: %s", label, exc_info=exc)
            return
        self._record_result(label, task.result())

    def _record_exception(self, label: str) -> None:
        self.failures += 1
        logger.exception("Background task failed: %s", label)

    def _record_result(self, label: str, result: Any) -> None:
        # Store calls report failure as StoreResult(success=False)
        if getattr(result, "success", True) is False:
            self.failures += 1
            logger.error("Background task %s reported failure: %s", label, getattr(result, "error", ""))
            return
        self.completed += 1
