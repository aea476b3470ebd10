# mayday/core/dispatch/ports.py
"""Collaborators the dispatch orchestrator depends on."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from mayday.core.dispatch.domain import (
    AssignmentAuditEntry,
    DispatchRequest,
    DispatchStatus,
    PoliceNotificationRecord,
    Responder,
    SourceCaseType,
)


class DispatchRepository(Protocol):
    async def create(self, dispatch: DispatchRequest) -> DispatchRequest: ...

    async def get(self, dispatch_id: str) -> Optional[DispatchRequest]: ...

    async def transition(
        self,
        dispatch_id: str,
        from_statuses: Sequence[DispatchStatus],
        to_status: DispatchStatus,
        *,
        enforcement_only: bool = True,
        **fields: Any,
    ) -> Optional[DispatchRequest]:
        """
        Compare-and-swap the status and set ``fields`` in the same update.

        Returns the updated dispatch, or None if its status was not in
        ``from_statuses`` (or it does not exist).
        """
        ...

    async def mark_police_notified(self, dispatch_id: str, at: datetime) -> None: ...

    async def append_audit(self, entry: AssignmentAuditEntry) -> AssignmentAuditEntry: ...

    async def eligible_responders(self, jurisdiction: str) -> Sequence[Responder]: ...

    async def link_source_case(
        self,
        case_type: SourceCaseType,
        case_id: str,
        dispatch_id: str,
        at: datetime,
    ) -> bool:
        """Returns False when the case type has no linkable record."""
        ...

    async def list_overdue(self, now: datetime, limit: int) -> Sequence[DispatchRequest]: ...


class PoliceLog(Protocol):
    async def log_police_notification(self, record: PoliceNotificationRecord) -> bool: ...
