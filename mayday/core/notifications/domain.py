# mayday/core/notifications/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

# A first attempt that never got claimed (claim error, crash before claim)
# becomes due for the retry worker after this long
FIRST_ATTEMPT_GRACE = timedelta(minutes=1)


class NotificationType(str, Enum):
    CASE_UPDATE = "case_update"
    MATCH_FOUND = "match_found"
    VERIFICATION_REQUIRED = "verification_required"
    DISPATCH_ASSIGNMENT = "dispatch_assignment"
    DISPATCH_UPDATE = "dispatch_update"
    SAFETY_ALERT = "safety_alert"
    ESCALATION = "escalation"
    HANDOFF = "handoff"
    SYSTEM = "system"
    MARKETING = "marketing"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"

    @property
    def score(self) -> int:
        return PRIORITY_SCORES[self]


PRIORITY_SCORES: dict[NotificationPriority, int] = {
    NotificationPriority.CRITICAL: 100,
    NotificationPriority.URGENT: 80,
    NotificationPriority.HIGH: 60,
    NotificationPriority.NORMAL: 40,
    NotificationPriority.LOW: 20,
}


class NotificationStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUPPRESSED = "suppressed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
    NotificationStatus.SUPPRESSED,
})


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    PHONE = "phone"
    IN_APP = "in_app"


class SuppressionReason(str, Enum):
    OPT_OUT = "opt_out"
    CHANNEL_DISABLED = "channel_disabled"
    TYPE_DISABLED = "type_disabled"
    QUIET_HOURS = "quiet_hours"
    RATE_LIMIT = "rate_limit"
    NO_CHANNEL = "no_channel"


class RecipientType(str, Enum):
    OFFICER = "officer"
    VOLUNTEER = "volunteer"
    MODERATOR = "moderator"
    ADMIN = "admin"
    USER = "user"


@dataclass
class Notification:
    """
    One (recipient, channel) delivery unit.

    ``max_retries`` is fixed at creation from the route policy and never
    changes afterwards.
    """
    id: str
    recipient_id: str
    recipient_type: RecipientType
    type: NotificationType
    priority: NotificationPriority
    title: str
    body: str
    channel: Optional[Channel]
    delivery_address: str
    created_at: datetime
    max_retries: int
    status: NotificationStatus = NotificationStatus.PENDING
    short_body: Optional[str] = None

    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    failure_reason: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None

    # Context
    related_entity_type: Optional[str] = None  # "dispatch", "case", ...
    related_entity_id: Optional[str] = None
    action_url: Optional[str] = None

    tracking_id: Optional[str] = None
    external_id: Optional[str] = None  # Provider's message id
    provider_status: Optional[str] = None

    suppressed_reason: Optional[SuppressionReason] = None
    suppressed_detail: Optional[str] = None

    # Set when the recipient acts on the related dispatch
    response_action: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    version: int = 1
    updated_at: Optional[datetime] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_due(self, now: datetime) -> bool:
        """
        Pending and its retry time has come. A first attempt is due at
        ``scheduled_for``, or once it has sat unclaimed past the grace
        period.
        """
        if self.status is not NotificationStatus.PENDING:
            return False
        due_at = self.next_retry_at or self.scheduled_for or self.created_at + FIRST_ATTEMPT_GRACE
        return due_at <= now


@dataclass(frozen=True)
class RecipientVolume:
    """Recent send volume for a recipient, used for rate limiting and batching."""
    last_hour: int = 0
    last_day: int = 0
    last_week: int = 0
    last_sent_at: Optional[datetime] = None
    # Pending notifications held back in an open batch window
    batched: int = 0
