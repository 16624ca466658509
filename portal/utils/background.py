"""Best-effort background work for the request path.

The API-key guard must not await its side effects (usage counter update,
activity-log write). Those coroutines are handed to BackgroundTaskQueue:

    app.state.background.submit(record_usage(...), name="api_key_usage_update")

Guarantees:
  - submit() never raises and never blocks the caller
  - a strong reference to each task is held until it finishes (asyncio keeps
    only weak references to tasks)
  - a failing task is reported to the error sink; the exception is never
    propagated to the request that scheduled it
  - shutdown() waits briefly for in-flight work, then cancels the rest

The queue is created in the FastAPI lifespan and stored on ``app.state``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional

from portal.utils.logger import get_logger
from portal.utils.sanitizer import sanitize_error

logger = get_logger(__name__)

ErrorSink = Callable[[str, BaseException], None]


def log_task_error(name: str, error: BaseException) -> None:
    """Default error sink: one structured ERROR line per failed task."""
    logger.error(
        "background_task_failed",
        task=name,
        error=sanitize_error(error),
        error_type=type(error).__name__,
    )


class BackgroundTaskQueue:
    """Fire-and-forget task dispatcher with an explicit error sink."""

    def __init__(self, error_sink: Optional[ErrorSink] = None) -> None:
        self._error_sink: ErrorSink = error_sink or log_task_error
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self.failure_count = 0

    @property
    def pending(self) -> int:
        """Number of tasks scheduled and not yet finished."""
        return len(self._tasks)

    def submit(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
    ) -> Optional[asyncio.Task[Any]]:
        """Schedule ``coro`` on the running loop and return immediately.

        After shutdown() the coroutine is closed without running and None is
        returned.
        """
        if self._closed:
            coro.close()
            logger.debug("background_task_dropped", task=name, reason="queue closed")
            return None

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.failure_count += 1
        try:
            self._error_sink(task.get_name(), exc)
        except Exception as sink_exc:
            logger.error(
                "background_error_sink_failed",
                task=task.get_name(),
                error=str(sink_exc),
            )

    async def drain(self) -> None:
        """Wait until every task submitted so far has finished.

        Tasks submitted by the drained tasks themselves are waited for too.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout_s: float = 5.0) -> None:
        """Refuse new work, wait up to ``timeout_s`` for in-flight tasks, cancel the rest."""
        self._closed = True
        if not self._tasks:
            return

        pending = list(self._tasks)
        _done, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "background_tasks_cancelled_on_shutdown",
                count=len(still_running),
            )
