from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from ticketflow.tickets.callbacks import (
    CallbackOutcome,
    CallbackReceiver,
    EngineEventType,
    EngineNotification,
)
from ticketflow.tickets.errors import TicketServiceError

from .client import ExternalTask, ProcessEngineClient

logger = logging.getLogger(__name__)


class ExternalTaskWorker:
    """Polls an engine topic and turns locked tasks into ticket notifications.

    A task is completed only after its notification was applied or found to be
    redundant; deferred or failed tasks are left for the lock to expire so the
    engine hands them out again.
    """

    def __init__(
        self,
        engine: ProcessEngineClient,
        receiver: CallbackReceiver,
        *,
        topic: str,
        processing_activity: str,
        interval: float = 5.0,
        lock_duration: float = 30.0,
        worker_id: str | None = None,
    ) -> None:
        self.worker_id = worker_id or f"ticketflow-{uuid4()}"
        self._engine = engine
        self._receiver = receiver
        self._topic = topic
        self._processing_activity = processing_activity
        self._interval = interval
        self._lock_duration = lock_duration

    async def run(self) -> None:
        logger.info("External task worker %s polling topic %s", self.worker_id, self._topic)
        try:
            while True:
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("External task poll failed; retrying in %.1fs", self._interval)
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.info("External task worker %s shutting down", self.worker_id)
            raise

    async def poll_once(self) -> int:
        """Fetch one batch and handle it; returns the number of completed tasks."""

        try:
            tasks = await self._engine.fetch_and_lock(
                self.worker_id, self._topic, lock_duration=self._lock_duration
            )
        except TicketServiceError as exc:
            logger.warning("Fetching external tasks failed: %s", exc)
            return 0

        completed = 0
        for task in tasks:
            try:
                handled = await self._handle(task)
            except Exception:
                logger.exception("Handling external task %s failed", task.id)
                continue
            if handled:
                completed += 1
        return completed

    async def _handle(self, task: ExternalTask) -> bool:
        if task.activity_id != self._processing_activity:
            logger.error("Unhandled activity %s on task %s", task.activity_id, task.id)
            return False

        notification = EngineNotification(
            process_instance_id=task.process_instance_id,
            event_type=EngineEventType.INSTANCE_ADVANCED,
            details={"activityId": task.activity_id, "taskId": task.id},
        )
        try:
            result = await self._receiver.handle(notification)
        except TicketServiceError as exc:
            logger.warning("Handling external task %s failed: %s", task.id, exc)
            return False
        if result.outcome is CallbackOutcome.DEFERRED:
            return False

        try:
            await self._engine.complete_external_task(
                self.worker_id,
                task.id,
                {"handledAt": datetime.now(timezone.utc).isoformat()},
            )
        except TicketServiceError as exc:
            logger.warning("Completing external task %s failed: %s", task.id, exc)
            return False
        return True
