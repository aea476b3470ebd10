# mayday/core/dispatch/orchestrator.py
"""
Enforcement dispatch orchestration.

create_dispatch runs these steps; only evaluation and persistence can end
the operation early, everything after the dispatch row exists is
best-effort and logged on failure:

    1. evaluate law triggers (fail-open)
    2. expires_at = now + primary rule SLA (default 480 minutes)
    3. persist PENDING dispatch
    4. OFFERED audit entry
    5. eligible responders for the jurisdiction
    6. concurrent notification fan-out, count of sends
    7. source case back-reference
    8. police notification (log, or audit entry fallback)

acknowledge and resolve are compare-and-swap status updates, so two
officers accepting at once produce exactly one ACCEPTED entry.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from mayday.core.dispatch.domain import (
    ACKNOWLEDGEABLE_STATUSES,
    DEFAULT_SLA_MINUTES,
    DISPATCH_ENTITY,
    NON_TERMINAL_STATUSES,
    RESPONSE_ACKNOWLEDGED,
    AcceptedMeta,
    AssignmentAuditEntry,
    AuditAction,
    CompletedMeta,
    CreateDispatchParams,
    DispatchRequest,
    DispatchResult,
    DispatchStatus,
    OfferedMeta,
    PoliceNotificationRecord,
    PoliceNotifiedMeta,
    Responder,
)
from mayday.core.dispatch.messages import (
    dispatch_link,
    format_officer_message,
    format_officer_short_message,
    format_police_message,
)
from mayday.core.dispatch.ports import DispatchRepository, PoliceLog
from mayday.core.errors import ValidationError
from mayday.core.law.domain import LawTriggerResult, RulePriority, parse_triggers
from mayday.core.law.engine import LawTriggerEngine
from mayday.core.law.table import normalize_jurisdiction
from mayday.core.notifications.delivery import DeliveryManager
from mayday.core.notifications.domain import NotificationPriority, NotificationType, RecipientType
from mayday.core.notifications.ports import NotificationRepository
from mayday.core.notifications.preferences import preferences_for_responder
from mayday.infra.audit_log import audit_event
from mayday.infra.logging_config import LogContext, get_logger
from mayday.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

NOTIFICATION_PRIORITY_FOR_RULE: dict[RulePriority, NotificationPriority] = {
    RulePriority.CRITICAL: NotificationPriority.CRITICAL,
    RulePriority.HIGH: NotificationPriority.URGENT,
    RulePriority.MEDIUM: NotificationPriority.HIGH,
    RulePriority.LOW: NotificationPriority.NORMAL,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchOrchestrator:
    def __init__(
        self,
        engine: LawTriggerEngine,
        dispatches: DispatchRepository,
        notifications: NotificationRepository,
        delivery: DeliveryManager,
        police_log: PoliceLog | None = None,
        *,
        base_url: str = "https://petmayday.org/admin/aco/dispatch",
        default_sla_minutes: int = DEFAULT_SLA_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self._engine = engine
        self._dispatches = dispatches
        self._notifications = notifications
        self._delivery = delivery
        self._police_log = police_log
        self._base_url = base_url
        self._default_sla_minutes = default_sla_minutes
        self._clock = clock
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_dispatch(self, params: CreateDispatchParams) -> DispatchResult:
        """
        Evaluate an incident and, if the law requires it, create and fan
        out an enforcement dispatch.

        Always returns a definite result; ``success=False`` only when the
        dispatch could not be persisted.

        Raises:
            ValidationError: if required fields are missing or a trigger is unknown
        """
        params.validate()
        triggers = parse_triggers(params.law_triggers)
        jurisdiction = normalize_jurisdiction(params.jurisdiction)

        evaluation = await self._engine.evaluate(jurisdiction, triggers)
        if not evaluation.triggers_dispatch or evaluation.primary_rule is None:
            return DispatchResult(success=True, law_evaluation=evaluation)

        now = self._clock()
        primary = evaluation.primary_rule
        sla_minutes = primary.response_sla_minutes or self._default_sla_minutes
        priority = evaluation.highest_priority or RulePriority.MEDIUM

        dispatch = DispatchRequest(
            id=self._id_factory(),
            jurisdiction=jurisdiction,
            address=params.address.strip(),
            species=params.species.strip(),
            requester_name=params.reporter_name.strip(),
            requester_phone=params.reporter_phone.strip(),
            requester_id=params.reporter_id,
            requester_email=params.reporter_email,
            priority=priority,
            requested_at=now,
            expires_at=now + timedelta(minutes=sla_minutes),
            lat=params.lat,
            lng=params.lng,
            condition_description=params.description,
            source_case_type=params.source_case_type,
            source_case_id=params.source_case_id,
            legal_basis=primary.legal_basis,
            statute_citations=evaluation.all_citations,
            law_triggers=tuple(sorted(triggers, key=lambda t: t.value)),
            rule_id=primary.rule_id,
            rule_code=primary.rule_code,
            notes=params.notes,
        )

        try:
            dispatch = await self._dispatches.create(dispatch)
        except Exception as exc:
            logger.error(
                f"Dispatch creation failed: jurisdiction={jurisdiction}, rule={primary.rule_code}, "
                f"error={type(exc).__name__}: {exc}",
                extra={"jurisdiction": jurisdiction},
                exc_info=True,
            )
            DispatchMetrics.database_error("dispatch_create")
            return DispatchResult(
                success=False,
                law_evaluation=evaluation,
                error="Failed to create dispatch request",
            )

        log = LogContext(logger, dispatch_id=dispatch.id, jurisdiction=jurisdiction)
        DispatchMetrics.dispatch_created(jurisdiction, priority.value)
        log.info(
            f"Dispatch created: rule={primary.rule_code}, priority={priority.value}, "
            f"sla={sla_minutes}m, immediate={evaluation.requires_immediate}"
        )

        await self._append_audit(
            AssignmentAuditEntry(
                dispatch_id=dispatch.id,
                action=AuditAction.OFFERED,
                note=(
                    f"ACO dispatch created. Legal basis: {primary.legal_basis.value}. "
                    f"Citations: {', '.join(evaluation.all_citations)}"
                ),
                metadata=OfferedMeta(
                    law_triggers=list(dispatch.law_triggers),
                    rule_code=primary.rule_code,
                    requires_immediate=evaluation.requires_immediate,
                ),
                created_at=now,
            )
        )

        responders = await self._eligible_responders(dispatch)
        with DispatchMetrics.track_fan_out(jurisdiction):
            sent = await self._fan_out(dispatch, evaluation, responders)
        log.info(f"Fan-out complete: responders={len(responders)}, sent={sent}")

        await self._link_source_case(dispatch)

        police_notified = False
        if params.notify_police:
            police_notified = await self.notify_police(dispatch, evaluation)

        return DispatchResult(
            success=True,
            law_evaluation=evaluation,
            dispatch_id=dispatch.id,
            notifications_sent=sent,
            police_notified=police_notified,
        )

    async def _append_audit(self, entry: AssignmentAuditEntry) -> bool:
        try:
            await self._dispatches.append_audit(entry)
            return True
        except Exception as exc:
            logger.error(
                f"Audit entry write failed: action={entry.action.value}, "
                f"error={type(exc).__name__}: {exc}",
                extra={"dispatch_id": entry.dispatch_id},
                exc_info=True,
            )
            DispatchMetrics.database_error("audit_append")
            return False

    async def _eligible_responders(self, dispatch: DispatchRequest) -> Sequence[Responder]:
        try:
            responders = await self._dispatches.eligible_responders(dispatch.jurisdiction)
        except Exception as exc:
            logger.error(
                f"Responder lookup failed, no officers notified: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch.id, "jurisdiction": dispatch.jurisdiction},
                exc_info=True,
            )
            DispatchMetrics.database_error("responder_lookup")
            return []
        return [r for r in responders if r.active]

    async def _fan_out(
        self,
        dispatch: DispatchRequest,
        evaluation: LawTriggerResult,
        responders: Sequence[Responder],
    ) -> int:
        if not responders:
            logger.warning(
                "No active responders for jurisdiction",
                extra={"dispatch_id": dispatch.id, "jurisdiction": dispatch.jurisdiction},
            )
            return 0

        body = format_officer_message(
            dispatch_id=dispatch.id,
            priority=dispatch.priority,
            address=dispatch.address,
            species=dispatch.species,
            citations=evaluation.all_citations,
            requires_immediate=evaluation.requires_immediate,
            base_url=self._base_url,
        )
        short_body = format_officer_short_message(
            dispatch_id=dispatch.id,
            priority=dispatch.priority,
            address=dispatch.address,
            base_url=self._base_url,
        )
        title = f"MAYDAY ACO dispatch ({dispatch.priority.value}) - {dispatch.jurisdiction}"

        results = await asyncio.gather(
            *(self._notify_responder(dispatch, r, title, body, short_body) for r in responders),
            return_exceptions=True,
        )

        sent = 0
        for responder, result in zip(responders, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Responder notification raised: {type(result).__name__}: {result}",
                    extra={"dispatch_id": dispatch.id, "officer_id": responder.officer_id},
                )
                continue
            if result:
                sent += 1
        return sent

    async def _notify_responder(
        self,
        dispatch: DispatchRequest,
        responder: Responder,
        title: str,
        body: str,
        short_body: str,
    ) -> bool:
        outcome = await self._delivery.notify(
            recipient_id=responder.officer_id,
            recipient_type=RecipientType.OFFICER,
            notification_type=NotificationType.DISPATCH_ASSIGNMENT,
            priority=NOTIFICATION_PRIORITY_FOR_RULE[dispatch.priority],
            title=title,
            body=body,
            short_body=short_body,
            prefs=preferences_for_responder(responder),
            related_entity_type=DISPATCH_ENTITY,
            related_entity_id=dispatch.id,
            action_url=dispatch_link(self._base_url, dispatch.id),
        )
        return outcome.sent

    async def _link_source_case(self, dispatch: DispatchRequest) -> None:
        if not dispatch.source_case_id or dispatch.source_case_type is None:
            return
        try:
            linked = await self._dispatches.link_source_case(
                dispatch.source_case_type,
                dispatch.source_case_id,
                dispatch.id,
                self._clock(),
            )
        except Exception as exc:
            logger.warning(
                f"Source case link failed: case={dispatch.source_case_type.value}/{dispatch.source_case_id}, "
                f"error={type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch.id},
            )
            DispatchMetrics.database_error("source_case_link")
            return
        if not linked:
            logger.debug(
                f"Source case type {dispatch.source_case_type.value} has no linkable record",
                extra={"dispatch_id": dispatch.id},
            )

    # ------------------------------------------------------------------
    # Police
    # ------------------------------------------------------------------

    async def notify_police(self, dispatch: DispatchRequest, evaluation: LawTriggerResult) -> bool:
        """
        Record a police/911 notification for the dispatch.

        Writes to the police log; if that is unavailable or refuses the
        record, a POLICE_NOTIFIED audit entry is written instead. Never
        raises. True when either record was written.
        """
        now = self._clock()
        message = format_police_message(
            dispatch_id=dispatch.id,
            priority=dispatch.priority,
            address=dispatch.address,
            species=dispatch.species,
            citations=evaluation.all_citations,
            law_triggers=dispatch.law_triggers,
            reporter_name=dispatch.requester_name,
            reporter_phone=dispatch.requester_phone,
        )
        record = PoliceNotificationRecord(
            dispatch_id=dispatch.id,
            jurisdiction=dispatch.jurisdiction,
            priority=dispatch.priority,
            message=message,
            law_triggers=dispatch.law_triggers,
            statute_citations=evaluation.all_citations,
            sent_at=now,
        )

        logged = False
        if self._police_log is not None:
            try:
                logged = await self._police_log.log_police_notification(record)
            except Exception as exc:
                logger.warning(
                    f"Police log unavailable, falling back to audit entry: {type(exc).__name__}: {exc}",
                    extra={"dispatch_id": dispatch.id},
                )
                DispatchMetrics.database_error("police_log")

        if not logged:
            logged = await self._append_audit(
                AssignmentAuditEntry(
                    dispatch_id=dispatch.id,
                    action=AuditAction.POLICE_NOTIFIED,
                    note=f"Police/911 notification sent. {', '.join(evaluation.all_citations)}",
                    metadata=PoliceNotifiedMeta(
                        law_triggers=list(dispatch.law_triggers),
                        priority=dispatch.priority,
                    ),
                    created_at=now,
                )
            )

        if not logged:
            logger.error(
                "Police notification could not be recorded",
                extra={"dispatch_id": dispatch.id, "jurisdiction": dispatch.jurisdiction},
            )
            return False

        try:
            await self._dispatches.mark_police_notified(dispatch.id, now)
        except Exception as exc:
            logger.warning(
                f"Failed to flag dispatch as police-notified: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch.id},
            )
            DispatchMetrics.database_error("mark_police_notified")

        try:
            audit_event(
                "dispatch.police_notified",
                dispatch_id=dispatch.id,
                jurisdiction=dispatch.jurisdiction,
                detail=f"priority={dispatch.priority.value}",
                extra={"law_triggers": [t.value for t in dispatch.law_triggers]},
            )
        except Exception as exc:
            logger.warning(
                f"Police notification audit event failed: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch.id},
            )
        return True

    # ------------------------------------------------------------------
    # Acknowledge / resolve
    # ------------------------------------------------------------------

    async def acknowledge(self, dispatch_id: str, officer_id: str) -> bool:
        """
        Accept a dispatch on behalf of an officer.

        Only one concurrent caller wins; the others get False and cause
        no side effects. Expired dispatches can still be accepted.
        """
        if not dispatch_id or not officer_id:
            raise ValidationError("dispatch_id and officer_id are required")

        now = self._clock()
        try:
            updated = await self._dispatches.transition(
                dispatch_id,
                ACKNOWLEDGEABLE_STATUSES,
                DispatchStatus.ACCEPTED,
                enforcement_only=True,
                assigned_officer_id=officer_id,
                acknowledged_at=now,
            )
        except Exception as exc:
            logger.error(
                f"Acknowledge failed: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
                exc_info=True,
            )
            DispatchMetrics.database_error("dispatch_acknowledge")
            return False

        if updated is None:
            logger.info(
                "Acknowledge rejected: dispatch not pending or not an enforcement dispatch",
                extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
            )
            return False

        DispatchMetrics.dispatch_transition(DispatchStatus.ACCEPTED.value)
        await self._append_audit(
            AssignmentAuditEntry(
                dispatch_id=dispatch_id,
                action=AuditAction.ACCEPTED,
                actor=officer_id,
                note="ACO acknowledged dispatch",
                metadata=AcceptedMeta(officer_id=officer_id),
                created_at=now,
            )
        )

        try:
            await self._notifications.mark_response(
                DISPATCH_ENTITY, dispatch_id, officer_id, RESPONSE_ACKNOWLEDGED, now,
            )
        except Exception as exc:
            logger.warning(
                f"Notification response update failed: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
            )
            DispatchMetrics.database_error("notification_response")

        logger.info(
            "Dispatch acknowledged",
            extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
        )
        return True

    async def resolve(
        self,
        dispatch_id: str,
        officer_id: str,
        resolution_code: str,
        resolution_notes: Optional[str] = None,
    ) -> bool:
        """Complete a dispatch from any non-terminal status."""
        if not dispatch_id or not officer_id or not resolution_code:
            raise ValidationError("dispatch_id, officer_id and resolution_code are required")

        now = self._clock()
        try:
            updated = await self._dispatches.transition(
                dispatch_id,
                NON_TERMINAL_STATUSES,
                DispatchStatus.COMPLETED,
                enforcement_only=True,
                resolution_code=resolution_code,
                resolution_notes=resolution_notes,
                completed_at=now,
            )
        except Exception as exc:
            logger.error(
                f"Resolve failed: {type(exc).__name__}: {exc}",
                extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
                exc_info=True,
            )
            DispatchMetrics.database_error("dispatch_resolve")
            return False

        if updated is None:
            logger.info(
                "Resolve rejected: dispatch already completed or not found",
                extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
            )
            return False

        DispatchMetrics.dispatch_transition(DispatchStatus.COMPLETED.value)
        await self._append_audit(
            AssignmentAuditEntry(
                dispatch_id=dispatch_id,
                action=AuditAction.COMPLETED,
                actor=officer_id,
                note=f"Resolution: {resolution_code}. {resolution_notes or ''}".strip(),
                metadata=CompletedMeta(officer_id=officer_id, resolution_code=resolution_code),
                created_at=now,
            )
        )
        logger.info(
            f"Dispatch resolved: code={resolution_code}",
            extra={"dispatch_id": dispatch_id, "officer_id": officer_id},
        )
        return True
