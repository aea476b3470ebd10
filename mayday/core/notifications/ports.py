# mayday/core/notifications/ports.py
"""Collaborators the delivery manager depends on."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from mayday.core.notifications.domain import Channel, Notification, RecipientVolume
from mayday.core.notifications.preferences import NotificationPreferences


@dataclass(frozen=True)
class CarrierResult:
    """Outcome of one carrier send. ``error`` is None on success."""
    provider_id: Optional[str] = None
    provider_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: str) -> "CarrierResult":
        return cls(error=error)


class MessageCarrier(Protocol):
    """
    Sends one message over one channel.

    Implementations never raise for provider errors; they return a
    ``CarrierResult`` with ``error`` set instead.
    """

    async def send(
        self,
        channel: Channel,
        address: str,
        body: str,
        *,
        subject: str | None = None,
        reference: str | None = None,
    ) -> CarrierResult: ...


class NotificationRepository(Protocol):
    async def create(self, notification: Notification) -> Notification: ...

    async def get(self, notification_id: str) -> Optional[Notification]: ...

    async def save(self, notification: Notification, expected_version: int) -> bool:
        """
        Persist delivery state if the stored version still equals
        ``expected_version``. Response fields are not written.
        """
        ...

    async def claim(self, notification_id: str, claimed_at: datetime) -> Optional[Notification]:
        """Atomically move pending -> queued. None when another worker won."""
        ...

    async def list_due(self, now: datetime, limit: int) -> Sequence[Notification]: ...

    async def count_sent_since(self, recipient_id: str, now: datetime) -> RecipientVolume: ...

    async def mark_response(
        self,
        related_entity_type: str,
        related_entity_id: str,
        recipient_id: str,
        action: str,
        at: datetime,
    ) -> int:
        """
        Set the response on every matching notification without bumping
        versions; returns rows updated.
        """
        ...

    async def reset_stale_queued(self, timeout_seconds: int = 300) -> int:
        """Return notifications claimed longer than ``timeout_seconds`` ago to pending."""
        ...

    async def get_preferences(self, recipient_id: str) -> Optional[NotificationPreferences]: ...
