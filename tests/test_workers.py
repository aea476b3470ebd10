# tests/test_workers.py
"""Tests for the background workers: dispatch expiry sweeper and notification retry worker"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from mayday.core.dispatch.domain import (
    AuditAction,
    DispatchRequest,
    DispatchStatus,
)
from mayday.core.dispatch.expiry import DispatchExpirySweeper
from mayday.core.law.domain import RulePriority
from mayday.core.notifications.delivery import DeliveryManager
from mayday.core.notifications.domain import (
    Channel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
)
from mayday.core.notifications.retry_worker import NotificationRetryWorker
from mayday.infra.metrics import get_metrics_collector
from tests.fakes import FIXED_NOW, FakeCarrier, FakeDispatchRepo


def _dispatch(dispatch_id: str, minutes: int = 60, status=DispatchStatus.PENDING) -> DispatchRequest:
    return DispatchRequest(
        id=dispatch_id,
        jurisdiction="KANAWHA",
        address="1 Main St",
        species="dog",
        requester_name="Pat",
        requester_phone="+13045559999",
        priority=RulePriority.CRITICAL,
        requested_at=FIXED_NOW,
        expires_at=FIXED_NOW + timedelta(minutes=minutes),
        status=status,
        rule_code="WV-BITE-RABIES",
    )


# ---------------------------------------------------------------------------
# Expiry sweeper
# ---------------------------------------------------------------------------

class TestExpirySweeper:
    @pytest.fixture
    def repo(self):
        repo = FakeDispatchRepo()
        for d in (
            _dispatch("overdue", minutes=60),
            _dispatch("not-yet", minutes=120),
            _dispatch("accepted", minutes=30, status=DispatchStatus.ACCEPTED),
        ):
            repo.rows[d.id] = d
        return repo

    @pytest.mark.asyncio
    async def test_expires_overdue_pending_only(self, repo, clock):
        clock.advance(minutes=75)
        sweeper = DispatchExpirySweeper(repo, clock=clock)

        expired = await sweeper.sweep_once()

        assert [d.id for d in expired] == ["overdue"]
        assert repo.rows["overdue"].status is DispatchStatus.EXPIRED
        assert repo.rows["overdue"].expired_at == FIXED_NOW + timedelta(minutes=75)
        assert repo.rows["not-yet"].status is DispatchStatus.PENDING
        assert repo.rows["accepted"].status is DispatchStatus.ACCEPTED

        (entry,) = repo.audit
        assert entry.action is AuditAction.EXPIRED
        assert entry.metadata.overdue_minutes == 15
        assert get_metrics_collector().get_counter(
            "dispatches_expired_total", {"jurisdiction": "KANAWHA"}
        ) == 1

    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(self, repo, clock):
        clock.advance(minutes=75)
        sweeper = DispatchExpirySweeper(repo, clock=clock)

        await sweeper.sweep_once()
        again = await sweeper.sweep_once()

        assert again == []
        assert len(repo.audit) == 1
        assert get_metrics_collector().get_gauge("dispatches_overdue") == 0

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_expire_once(self, repo, clock):
        clock.advance(minutes=75)
        a = DispatchExpirySweeper(repo, clock=clock)
        b = DispatchExpirySweeper(repo, clock=clock)

        results = await asyncio.gather(a.sweep_once(), b.sweep_once())

        assert sum(len(r) for r in results) == 1
        assert len(repo.audit) == 1

    @pytest.mark.asyncio
    async def test_audit_failure_still_expires(self, repo, clock):
        clock.advance(minutes=75)
        repo.fail_audit = ConnectionError("audit table locked")

        expired = await DispatchExpirySweeper(repo, clock=clock).sweep_once()

        assert len(expired) == 1
        assert repo.rows["overdue"].status is DispatchStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_one_failing_dispatch_does_not_abort_sweep(self, repo, clock):
        repo.rows["broken"] = _dispatch("broken", minutes=30)
        repo.fail_transition["broken"] = ConnectionError("row lock timeout")
        clock.advance(minutes=75)

        expired = await DispatchExpirySweeper(repo, clock=clock).sweep_once()

        assert [d.id for d in expired] == ["overdue"]
        assert repo.rows["overdue"].status is DispatchStatus.EXPIRED
        assert repo.rows["broken"].status is DispatchStatus.PENDING
        assert get_metrics_collector().get_counter(
            "database_errors_total", {"operation": "dispatch_expire"}
        ) == 1

        del repo.fail_transition["broken"]
        again = await DispatchExpirySweeper(repo, clock=clock).sweep_once()
        assert [d.id for d in again] == ["broken"]

    @pytest.mark.asyncio
    async def test_start_stop(self, repo, clock):
        sweeper = DispatchExpirySweeper(repo, interval=3600, clock=clock)

        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0)
        await sweeper.stop()

        assert not sweeper.running


# ---------------------------------------------------------------------------
# Retry worker
# ---------------------------------------------------------------------------

async def _stored(manager, repo, address, *, retry_in=None, priority=NotificationPriority.URGENT):
    n = manager.router.create_notification(
        recipient_id=f"officer-{address[-1]}",
        recipient_type=RecipientType.OFFICER,
        notification_type=NotificationType.DISPATCH_ASSIGNMENT,
        priority=priority,
        title="Dispatch",
        body="Respond to 1 Main St",
        channel=Channel.SMS,
        delivery_address=address,
    )
    if retry_in is not None:
        n.retry_count = 1
        n.next_retry_at = FIXED_NOW + retry_in
    return await repo.create(n)


class TestRetryWorker:
    @pytest.mark.asyncio
    async def test_run_once_delivers_due_notifications(self, notification_repo, clock):
        carrier = FakeCarrier()
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        due = await _stored(manager, notification_repo, "+13045550101", retry_in=timedelta(minutes=-1))
        later = await _stored(manager, notification_repo, "+13045550102", retry_in=timedelta(minutes=5))
        fresh = await _stored(manager, notification_repo, "+13045550103")

        outcomes = await NotificationRetryWorker(notification_repo, manager, clock=clock).run_once()

        assert [o.notification.id for o in outcomes] == [due.id]
        assert notification_repo.rows[due.id].status is NotificationStatus.SENT
        assert notification_repo.rows[later.id].status is NotificationStatus.PENDING
        assert notification_repo.rows[fresh.id].status is NotificationStatus.PENDING
        assert carrier.sent == [(Channel.SMS, "+13045550101", "Respond to 1 Main St")]

    @pytest.mark.asyncio
    async def test_retry_failure_reschedules(self, notification_repo, clock):
        carrier = FakeCarrier(failing={"+13045550101"})
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        n = await _stored(manager, notification_repo, "+13045550101", retry_in=timedelta(0))

        await NotificationRetryWorker(notification_repo, manager, clock=clock).run_once()

        stored = notification_repo.rows[n.id]
        assert stored.retry_count == 2
        assert stored.next_retry_at == FIXED_NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_empty_batch(self, notification_repo, clock):
        manager = DeliveryManager(notification_repo, FakeCarrier(), clock=clock)
        assert await NotificationRetryWorker(notification_repo, manager, clock=clock).run_once() == []

    @pytest.mark.asyncio
    async def test_two_workers_send_once(self, notification_repo, clock):
        carrier = FakeCarrier()
        manager = DeliveryManager(notification_repo, carrier, clock=clock)
        await _stored(manager, notification_repo, "+13045550101", retry_in=timedelta(0))
        a = NotificationRetryWorker(notification_repo, manager, clock=clock)
        b = NotificationRetryWorker(notification_repo, manager, clock=clock)

        await asyncio.gather(a.run_once(), b.run_once())

        assert len(carrier.sent) == 1

    @pytest.mark.asyncio
    async def test_loop_resets_stale_claims_periodically(self, clock):
        repo = AsyncMock()
        worker = NotificationRetryWorker(repo, AsyncMock(), poll_interval=0, stale_timeout=120, clock=clock)
        worker._loop_count = 59
        worker._running = True

        async def stop_after_one_batch():
            worker._running = False
            return []

        worker.run_once = stop_after_one_batch

        await worker._loop()

        repo.reset_stale_queued.assert_awaited_once_with(120)

    @pytest.mark.asyncio
    async def test_first_loop_resets_stale_claims(self, clock):
        repo = AsyncMock()
        worker = NotificationRetryWorker(repo, AsyncMock(), poll_interval=0, stale_timeout=120, clock=clock)
        worker._running = True

        async def stop_after_one_batch():
            worker._running = False
            return []

        worker.run_once = stop_after_one_batch

        await worker._loop()

        repo.reset_stale_queued.assert_awaited_once_with(120)

    @pytest.mark.asyncio
    async def test_no_stale_reset_between_periods(self, clock):
        repo = AsyncMock()
        worker = NotificationRetryWorker(repo, AsyncMock(), poll_interval=0, clock=clock)
        worker._loop_count = 5
        worker._running = True

        async def stop_after_one_batch():
            worker._running = False
            return []

        worker.run_once = stop_after_one_batch

        await worker._loop()

        repo.reset_stale_queued.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_reset_error_does_not_stop_batch(self, clock):
        repo = AsyncMock()
        repo.reset_stale_queued.side_effect = ConnectionError("db down")
        worker = NotificationRetryWorker(repo, AsyncMock(), poll_interval=0, clock=clock)
        worker._loop_count = 59
        worker._running = True
        calls = []

        async def stop_after_one_batch():
            calls.append(1)
            worker._running = False
            return []

        worker.run_once = stop_after_one_batch

        await worker._loop()

        assert calls == [1]
