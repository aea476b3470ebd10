# mayday/core/notifications/retry_worker.py
"""
In-process retry worker for notifications.

Polls for pending notifications whose retry (or scheduled send) time has
come, or whose first attempt was never claimed, and hands them to the
delivery manager. Delivery claims each notification with a
compare-and-swap, so several workers can poll the same table without
sending anything twice.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

from mayday.core.notifications.delivery import DeliveryManager, DeliveryOutcome
from mayday.core.notifications.domain import Notification
from mayday.core.notifications.ports import NotificationRepository
from mayday.core.notifications.router import sort_by_priority
from mayday.infra.logging_config import get_logger
from mayday.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationRetryWorker:
    """
    Usage:
        worker = NotificationRetryWorker(repo, delivery, poll_interval=15)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: NotificationRepository,
        delivery: DeliveryManager,
        *,
        poll_interval: float = 15.0,
        batch_size: int = 20,
        stale_timeout: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repo
        self._delivery = delivery
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._stale_timeout = stale_timeout
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="notification_retry_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Notification retry worker started: poll={self._poll_interval}s, batch={self._batch_size}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Notification retry worker stopped")

    async def run_once(self) -> list[DeliveryOutcome]:
        """Deliver one batch of due notifications. Returns the outcomes of claimed ones."""
        due = await self._repo.list_due(self._clock(), self._batch_size)
        DispatchMetrics.retry_backlog(len(due))
        if not due:
            return []

        batch = sort_by_priority(due)
        results = await asyncio.gather(
            *(self._deliver(n) for n in batch),
            return_exceptions=True,
        )

        outcomes: list[DeliveryOutcome] = []
        for notification, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Retry delivery raised: {type(result).__name__}: {result}",
                    extra={"notification_id": notification.id},
                )
                inc_counter("notification_retry_errors")
                continue
            if result.claimed:
                outcomes.append(result)

        sent = sum(1 for o in outcomes if o.sent)
        inc_counter("notification_retries_attempted", amount=len(outcomes))
        logger.info(f"Retry batch processed: due={len(batch)}, claimed={len(outcomes)}, sent={sent}")
        return outcomes

    async def _deliver(self, notification: Notification) -> DeliveryOutcome:
        return await self._delivery.deliver(notification)

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loop_count += 1

                # Requeue claims abandoned mid-send: at startup, then every 60 loops
                if self._loop_count == 1 or self._loop_count % 60 == 0:
                    try:
                        await self._repo.reset_stale_queued(self._stale_timeout)
                    except Exception as exc:
                        logger.warning(f"Stale notification reset failed: {exc}")

                outcomes = await self.run_once()
                if outcomes and len(outcomes) >= self._batch_size:
                    # Full batch: more may be waiting
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Notification retry worker loop error: {exc}", exc_info=True)
                inc_counter("notification_retry_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Notification retry worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
