# mayday/infra/pg_notification_repo_async.py
"""
Async PostgreSQL notification repository (asyncpg).

Claims are compare-and-swap (pending -> queued) and saves are guarded
by the row version, so a notification is never sent twice even with
several retry workers polling the same table.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from mayday.core.notifications.domain import (
    FIRST_ATTEMPT_GRACE,
    Channel,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RecipientType,
    RecipientVolume,
    SuppressionReason,
)
from mayday.core.notifications.preferences import NotificationPreferences
from mayday.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from mayday.infra.logging_config import get_logger
from mayday.infra.metrics import inc_counter

logger = get_logger(__name__)


def _row_to_notification(row) -> Notification:
    return Notification(
        id=str(row["id"]),
        recipient_id=row["recipient_id"],
        recipient_type=RecipientType(row["recipient_type"]),
        type=NotificationType(row["type"]),
        priority=NotificationPriority(row["priority"]),
        title=row["title"],
        body=row["body"],
        short_body=row["short_body"],
        channel=Channel(row["channel"]) if row["channel"] else None,
        delivery_address=row["delivery_address"],
        created_at=row["created_at"],
        max_retries=row["max_retries"],
        status=NotificationStatus(row["status"]),
        scheduled_for=row["scheduled_for"],
        sent_at=row["sent_at"],
        delivered_at=row["delivered_at"],
        read_at=row["read_at"],
        failed_at=row["failed_at"],
        failure_reason=row["failure_reason"],
        retry_count=row["retry_count"],
        next_retry_at=row["next_retry_at"],
        related_entity_type=row["related_entity_type"],
        related_entity_id=row["related_entity_id"],
        action_url=row["action_url"],
        tracking_id=row["tracking_id"],
        external_id=row["external_id"],
        provider_status=row["provider_status"],
        suppressed_reason=SuppressionReason(row["suppressed_reason"]) if row["suppressed_reason"] else None,
        suppressed_detail=row["suppressed_detail"],
        response_action=row["response_action"],
        acknowledged_at=row["acknowledged_at"],
        version=row["version"],
        updated_at=row["updated_at"],
    )


class AsyncPostgresNotificationRepository:
    async def create(self, n: Notification) -> Notification:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications (
                  id, recipient_id, recipient_type, type, priority, priority_score,
                  title, body, short_body, channel, delivery_address, status,
                  created_at, scheduled_for, max_retries, related_entity_type,
                  related_entity_id, action_url, suppressed_reason, suppressed_detail, version
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                        $16, $17, $18, $19, $20, $21)
                RETURNING *
                """,
                n.id,
                n.recipient_id,
                n.recipient_type.value,
                n.type.value,
                n.priority.value,
                n.priority.score,
                n.title,
                n.body,
                n.short_body,
                n.channel.value if n.channel else None,
                n.delivery_address,
                n.status.value,
                n.created_at,
                n.scheduled_for,
                n.max_retries,
                n.related_entity_type,
                n.related_entity_id,
                n.action_url,
                n.suppressed_reason.value if n.suppressed_reason else None,
                n.suppressed_detail,
                n.version,
            )
        inc_counter("notification_rows_created", type=n.type.value)
        return _row_to_notification(row)

    @retry_on_transient_error()
    async def get(self, notification_id: str) -> Optional[Notification]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM notifications WHERE id = $1", notification_id)
        return _row_to_notification(row) if row else None

    async def save(self, n: Notification, expected_version: int) -> bool:
        """
        Write delivery state if the row is still at ``expected_version``.

        Response fields belong to ``mark_response`` and are left alone.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE notifications
                SET status = $3,
                    sent_at = $4,
                    delivered_at = $5,
                    read_at = $6,
                    failed_at = $7,
                    failure_reason = $8,
                    retry_count = $9,
                    next_retry_at = $10,
                    tracking_id = $11,
                    external_id = $12,
                    provider_status = $13,
                    suppressed_reason = $14,
                    suppressed_detail = $15,
                    version = $16,
                    updated_at = now()
                WHERE id = $1 AND version = $2
                """,
                n.id,
                expected_version,
                n.status.value,
                n.sent_at,
                n.delivered_at,
                n.read_at,
                n.failed_at,
                (n.failure_reason or "")[:2000] or None,
                n.retry_count,
                n.next_retry_at,
                n.tracking_id,
                n.external_id,
                n.provider_status,
                n.suppressed_reason.value if n.suppressed_reason else None,
                n.suppressed_detail,
                n.version,
            )
        return int(result.split()[-1]) == 1 if result else False

    async def claim(self, notification_id: str, claimed_at: datetime) -> Optional[Notification]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE notifications
                SET status = 'queued', version = version + 1, updated_at = $2
                WHERE id = $1 AND status = 'pending'
                RETURNING *
                """,
                notification_id,
                claimed_at,
            )
        return _row_to_notification(row) if row else None

    @retry_on_transient_error()
    async def list_due(self, now: datetime, limit: int) -> list[Notification]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                WHERE status = 'pending'
                  AND (
                    next_retry_at <= $1
                    OR (next_retry_at IS NULL AND scheduled_for <= $1)
                    OR (next_retry_at IS NULL AND scheduled_for IS NULL AND created_at <= $3)
                  )
                ORDER BY priority_score DESC, created_at ASC
                LIMIT $2
                """,
                now,
                limit,
                now - FIRST_ATTEMPT_GRACE,
            )
        return [_row_to_notification(row) for row in rows]

    @retry_on_transient_error()
    async def count_sent_since(self, recipient_id: str, now: datetime) -> RecipientVolume:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                  count(*) FILTER (WHERE sent_at >= $2)::int AS last_hour,
                  count(*) FILTER (WHERE sent_at >= $3)::int AS last_day,
                  count(*) FILTER (WHERE sent_at >= $4)::int AS last_week,
                  max(sent_at) AS last_sent_at,
                  count(*) FILTER (WHERE status = 'pending' AND scheduled_for > $5)::int AS batched
                FROM notifications
                WHERE recipient_id = $1
                  AND (sent_at >= $4 OR (status = 'pending' AND scheduled_for > $5))
                """,
                recipient_id,
                now - timedelta(hours=1),
                now - timedelta(days=1),
                now - timedelta(days=7),
                now,
            )
        return RecipientVolume(
            last_hour=row["last_hour"],
            last_day=row["last_day"],
            last_week=row["last_week"],
            last_sent_at=row["last_sent_at"],
            batched=row["batched"],
        )

    async def mark_response(
        self,
        related_entity_type: str,
        related_entity_id: str,
        recipient_id: str,
        action: str,
        at: datetime,
    ) -> int:
        """
        Record a recipient response on every matching notification.

        Leaves the row version alone; a send in flight still saves.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE notifications
                SET response_action = $4, acknowledged_at = $5
                WHERE related_entity_type = $1
                  AND related_entity_id = $2
                  AND recipient_id = $3
                """,
                related_entity_type,
                related_entity_id,
                recipient_id,
                action,
                at,
            )
        return int(result.split()[-1]) if result else 0

    async def reset_stale_queued(self, timeout_seconds: int = 300) -> int:
        """
        Return notifications stuck in 'queued' to 'pending' for another attempt.

        Covers a process dying between the claim and the send.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE notifications
                SET status = 'pending', next_retry_at = now(), version = version + 1, updated_at = now()
                WHERE status = 'queued'
                  AND updated_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        count = int(result.split()[-1]) if result else 0
        if count > 0:
            logger.warning(f"Reset {count} stale queued notifications (stuck > {timeout_seconds}s)")
            inc_counter("notifications_stale_reset", amount=count)
        return count

    @retry_on_transient_error()
    async def get_preferences(self, recipient_id: str) -> Optional[NotificationPreferences]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT preferences FROM notification_preferences WHERE recipient_id = $1",
                recipient_id,
            )
        if row is None:
            return None
        raw = row["preferences"]
        if isinstance(raw, str):
            return NotificationPreferences.model_validate_json(raw)
        return NotificationPreferences.model_validate(raw)


# Global singleton
_notification_repo: AsyncPostgresNotificationRepository | None = None


def get_notification_repo() -> AsyncPostgresNotificationRepository:
    global _notification_repo
    if _notification_repo is None:
        _notification_repo = AsyncPostgresNotificationRepository()
    return _notification_repo
