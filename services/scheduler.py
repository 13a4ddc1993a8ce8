import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Arranges for `engine.resume(execution_id, action_order)` to run after a delay."""

    def schedule_resume(self, execution_id: str, action_order: int, delay_seconds: float):
        raise NotImplementedError

    def cancel(self, execution_id: str):
        """Drops a pending resumption if the scheduler can. Resumptions of cancelled executions are no-ops anyway."""


class CeleryScheduler(Scheduler):
    """Production scheduler: a countdown task on the worker queue."""

    def schedule_resume(self, execution_id: str, action_order: int, delay_seconds: float):
        from services.flow_tasks import resume_execution_task

        resume_execution_task.apply_async(args=[execution_id, action_order], countdown=delay_seconds)
        logger.info(f"[Scheduler] Resume of {execution_id} at action {action_order} queued in {delay_seconds}s")


class AsyncioScheduler(Scheduler):
    """In-process scheduler: a timer on the running event loop."""

    def __init__(self, resume: Callable[[str, int], Awaitable]):
        self.resume = resume
        self._handles = {}
        self._tasks = set()

    def schedule_resume(self, execution_id: str, action_order: int, delay_seconds: float):
        loop = asyncio.get_running_loop()
        self._handles[execution_id] = loop.call_later(delay_seconds, self._fire, execution_id, action_order)
        logger.info(f"[Scheduler] Resume of {execution_id} at action {action_order} in {delay_seconds}s")

    def _fire(self, execution_id: str, action_order: int):
        self._handles.pop(execution_id, None)
        task = asyncio.ensure_future(self.resume(execution_id, action_order))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self, execution_id: str):
        handle = self._handles.pop(execution_id, None)
        if handle:
            handle.cancel()
