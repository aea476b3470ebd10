# mayday/core/dispatch/expiry.py
"""
Periodic sweep of overdue dispatches.

A PENDING dispatch past its ``expires_at`` is moved to EXPIRED with a
compare-and-swap, gets an EXPIRED audit entry and is reported on the
audit log for human escalation. EXPIRED is not terminal: officers can
still acknowledge or resolve it. A dispatch is only ever expired once.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from mayday.core.dispatch.domain import (
    AssignmentAuditEntry,
    AuditAction,
    DispatchRequest,
    DispatchStatus,
    ExpiredMeta,
)
from mayday.core.dispatch.ports import DispatchRepository
from mayday.infra.audit_log import audit_event
from mayday.infra.logging_config import get_logger
from mayday.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchExpirySweeper:
    def __init__(
        self,
        repo: DispatchRepository,
        *,
        interval: float = 60.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repo = repo
        self._interval = interval
        self._batch_size = batch_size
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="dispatch_expiry_sweeper")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Dispatch expiry sweeper started: interval={self._interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Dispatch expiry sweeper stopped")

    async def sweep_once(self) -> list[DispatchRequest]:
        """Expire every overdue PENDING dispatch. Returns the ones this call expired."""
        now = self._clock()
        overdue = await self._repo.list_overdue(now, self._batch_size)
        DispatchMetrics.overdue_backlog(len(overdue))

        expired: list[DispatchRequest] = []
        for dispatch in overdue:
            try:
                updated = await self._repo.transition(
                    dispatch.id,
                    (DispatchStatus.PENDING,),
                    DispatchStatus.EXPIRED,
                    enforcement_only=False,
                    expired_at=now,
                )
            except Exception as exc:
                logger.error(
                    f"Dispatch expiry failed, left for the next sweep: {type(exc).__name__}: {exc}",
                    extra={"dispatch_id": dispatch.id},
                    exc_info=True,
                )
                DispatchMetrics.database_error("dispatch_expire")
                continue
            if updated is None:
                # Acknowledged or expired by someone else in the meantime
                continue
            expired.append(updated)
            await self._record_expiry(updated, now)

        if expired:
            logger.warning(f"Dispatch expiry sweep: expired={len(expired)} of overdue={len(overdue)}")
        return expired

    async def _record_expiry(self, dispatch: DispatchRequest, now: datetime) -> None:
        overdue_minutes = max(0, int((now - dispatch.expires_at).total_seconds() // 60))
        try:
            await self._repo.append_audit(
                AssignmentAuditEntry(
                    dispatch_id=dispatch.id,
                    action=AuditAction.EXPIRED,
                    note=f"Dispatch SLA expired without acknowledgement ({overdue_minutes} min overdue)",
                    metadata=ExpiredMeta(expires_at=dispatch.expires_at, overdue_minutes=overdue_minutes),
                    created_at=now,
                )
            )
        except Exception as exc:
            logger.error(
                f"Expiry audit entry write failed: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch.id},
                exc_info=True,
            )
            DispatchMetrics.database_error("audit_append")

        DispatchMetrics.dispatch_expired(dispatch.jurisdiction)
        logger.warning(
            f"Dispatch expired unacknowledged: priority={dispatch.priority.value}, "
            f"rule={dispatch.rule_code}, overdue={overdue_minutes}m",
            extra={"dispatch_id": dispatch.id, "jurisdiction": dispatch.jurisdiction},
        )
        audit_event(
            "dispatch.expired",
            dispatch_id=dispatch.id,
            jurisdiction=dispatch.jurisdiction,
            detail="SLA expired without acknowledgement; human escalation required",
            extra={
                "priority": dispatch.priority.value,
                "rule_code": dispatch.rule_code,
                "overdue_minutes": overdue_minutes,
            },
            level=logging.WARNING,
        )

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Dispatch expiry sweeper loop error: {exc}", exc_info=True)
                inc_counter("dispatch_expiry_sweeper_loop_errors")
                await asyncio.sleep(self._interval * 2)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected sweeper death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Dispatch expiry sweeper task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
