# mayday/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from mayday.core.errors import ValidationError
from mayday.core.law.domain import LawTriggerResult, LegalBasis, RulePriority, TriggerCategory

DEFAULT_SLA_MINUTES = 480  # 8 hours
DISPATCH_ENTITY = "dispatch"


class DispatchStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"  # Overdue and unacknowledged; still actionable
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is DispatchStatus.COMPLETED


NON_TERMINAL_STATUSES = (DispatchStatus.PENDING, DispatchStatus.ACCEPTED, DispatchStatus.EXPIRED)
ACKNOWLEDGEABLE_STATUSES = (DispatchStatus.PENDING, DispatchStatus.EXPIRED)


class SourceCaseType(str, Enum):
    MISSING = "MISSING"
    FOUND = "FOUND"
    SIGHTING = "SIGHTING"
    EMERGENCY = "EMERGENCY"
    DIRECT_REPORT = "DIRECT_REPORT"


class ContactPreference(str, Enum):
    SMS = "SMS"
    EMAIL = "EMAIL"
    BOTH = "BOTH"


class AuditAction(str, Enum):
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    COMPLETED = "COMPLETED"
    POLICE_NOTIFIED = "POLICE_NOTIFIED"
    EXPIRED = "EXPIRED"


RESPONSE_ACKNOWLEDGED = "ACKNOWLEDGED"


# ---------------------------------------------------------------------------
# Audit metadata, one shape per action
# ---------------------------------------------------------------------------

class OfferedMeta(BaseModel):
    kind: Literal["offered"] = "offered"
    law_triggers: list[TriggerCategory]
    rule_code: str
    requires_immediate: bool
    source: str = "dispatch_orchestrator"


class AcceptedMeta(BaseModel):
    kind: Literal["accepted"] = "accepted"
    officer_id: str
    previous_status: Optional[DispatchStatus] = None
    source: str = "dispatch_orchestrator"


class CompletedMeta(BaseModel):
    kind: Literal["completed"] = "completed"
    officer_id: str
    resolution_code: str
    source: str = "dispatch_orchestrator"


class PoliceNotifiedMeta(BaseModel):
    kind: Literal["police_notified"] = "police_notified"
    law_triggers: list[TriggerCategory]
    priority: RulePriority
    fallback: bool = True  # Written because the police log was unavailable
    source: str = "dispatch_orchestrator"


class ExpiredMeta(BaseModel):
    kind: Literal["expired"] = "expired"
    expires_at: datetime
    overdue_minutes: int
    source: str = "expiry_sweeper"


AuditMeta = Annotated[
    Union[OfferedMeta, AcceptedMeta, CompletedMeta, PoliceNotifiedMeta, ExpiredMeta],
    Field(discriminator="kind"),
]

audit_meta_adapter: TypeAdapter[AuditMeta] = TypeAdapter(AuditMeta)


@dataclass(frozen=True)
class AssignmentAuditEntry:
    """Append-only chain-of-custody row for a dispatch."""
    dispatch_id: str
    action: AuditAction
    note: str
    metadata: AuditMeta
    actor: Optional[str] = None  # Officer id, None for system actions
    created_at: Optional[datetime] = None
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

@dataclass
class DispatchRequest:
    id: str
    jurisdiction: str
    address: str
    species: str
    requester_name: str
    requester_phone: str
    priority: RulePriority
    requested_at: datetime
    expires_at: datetime
    status: DispatchStatus = DispatchStatus.PENDING

    lat: Optional[float] = None
    lng: Optional[float] = None
    condition_description: Optional[str] = None
    requester_id: Optional[str] = None
    requester_email: Optional[str] = None

    source_case_type: Optional[SourceCaseType] = None
    source_case_id: Optional[str] = None

    # Copied from the law evaluation
    is_enforcement_dispatch: bool = True
    legal_basis: Optional[LegalBasis] = None
    statute_citations: tuple[str, ...] = ()
    law_triggers: tuple[TriggerCategory, ...] = ()
    rule_id: Optional[str] = None
    rule_code: Optional[str] = None

    assigned_officer_id: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    police_notified: bool = False
    police_notified_at: Optional[datetime] = None
    resolution_code: Optional[str] = None
    resolution_notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        """Past its SLA deadline without being acknowledged or completed."""
        return (
            self.status in ACKNOWLEDGEABLE_STATUSES
            and now > self.expires_at
        )


@dataclass(frozen=True)
class Responder:
    officer_id: str
    jurisdiction: str
    user_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    preference: ContactPreference = ContactPreference.SMS
    active: bool = True


@dataclass
class CreateDispatchParams:
    source_case_type: SourceCaseType
    jurisdiction: str
    address: str
    species: str
    reporter_name: str
    reporter_phone: str
    law_triggers: list[TriggerCategory | str] = field(default_factory=list)
    lat: Optional[float] = None
    lng: Optional[float] = None
    source_case_id: Optional[str] = None
    description: Optional[str] = None
    reporter_id: Optional[str] = None
    reporter_email: Optional[str] = None
    notify_police: bool = False
    notes: Optional[str] = None

    def validate(self) -> None:
        """
        Raises:
            ValidationError: listing every missing required field
        """
        required = {
            "source_case_type": self.source_case_type,
            "jurisdiction": self.jurisdiction,
            "address": self.address,
            "species": self.species,
            "reporter_name": self.reporter_name,
            "reporter_phone": self.reporter_phone,
        }
        missing = [
            name for name, value in required.items()
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if isinstance(self.source_case_type, str) and not isinstance(self.source_case_type, SourceCaseType):
            try:
                self.source_case_type = SourceCaseType(self.source_case_type.strip().upper())
            except ValueError as exc:
                raise ValidationError(f"Unknown source_case_type: {self.source_case_type}") from exc


@dataclass
class DispatchResult:
    success: bool
    law_evaluation: LawTriggerResult
    dispatch_id: Optional[str] = None
    notifications_sent: int = 0
    police_notified: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class PoliceNotificationRecord:
    dispatch_id: str
    jurisdiction: str
    priority: RulePriority
    message: str
    law_triggers: tuple[TriggerCategory, ...]
    statute_citations: tuple[str, ...]
    sent_at: datetime
    notification_type: str = "DISPATCH_911"
