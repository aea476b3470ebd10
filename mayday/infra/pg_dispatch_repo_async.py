# mayday/infra/pg_dispatch_repo_async.py
"""
Async PostgreSQL dispatch repository (asyncpg).

Status changes are compare-and-swap updates
(``UPDATE ... WHERE status = ANY($n) RETURNING *``): when two officers
accept at once, exactly one UPDATE matches a row.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

from mayday.core.dispatch.domain import (
    AssignmentAuditEntry,
    AuditAction,
    ContactPreference,
    DispatchRequest,
    DispatchStatus,
    Responder,
    SourceCaseType,
    audit_meta_adapter,
)
from mayday.core.law.domain import LegalBasis, RulePriority, TriggerCategory
from mayday.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from mayday.infra.logging_config import get_logger
from mayday.infra.metrics import inc_counter

logger = get_logger(__name__)

# Columns a status transition may set alongside the status
_TRANSITION_FIELDS = frozenset({
    "assigned_officer_id",
    "acknowledged_at",
    "resolution_code",
    "resolution_notes",
    "completed_at",
    "expired_at",
})

_SOURCE_CASE_TABLES = {
    SourceCaseType.MISSING: "missing_pet_case",
    SourceCaseType.FOUND: "found_animal_case",
    SourceCaseType.SIGHTING: "sighting",
}


def _row_to_dispatch(row) -> DispatchRequest:
    return DispatchRequest(
        id=str(row["id"]),
        jurisdiction=row["jurisdiction"],
        address=row["address"],
        species=row["species"],
        requester_name=row["requester_name"],
        requester_phone=row["requester_phone"],
        priority=RulePriority(row["priority"]),
        requested_at=row["requested_at"],
        expires_at=row["expires_at"],
        status=DispatchStatus(row["status"]),
        lat=row["lat"],
        lng=row["lng"],
        condition_description=row["condition_description"],
        requester_id=row["requester_id"],
        requester_email=row["requester_email"],
        source_case_type=SourceCaseType(row["source_case_type"]) if row["source_case_type"] else None,
        source_case_id=row["source_case_id"],
        is_enforcement_dispatch=row["is_enforcement_dispatch"],
        legal_basis=LegalBasis(row["legal_basis"]) if row["legal_basis"] else None,
        statute_citations=tuple(row["statute_citations"] or ()),
        law_triggers=tuple(TriggerCategory(t) for t in (row["law_triggers"] or ())),
        rule_id=row["rule_id"],
        rule_code=row["rule_code"],
        assigned_officer_id=row["assigned_officer_id"],
        acknowledged_at=row["acknowledged_at"],
        police_notified=row["police_notified"],
        police_notified_at=row["police_notified_at"],
        resolution_code=row["resolution_code"],
        resolution_notes=row["resolution_notes"],
        completed_at=row["completed_at"],
        expired_at=row["expired_at"],
        notes=row["notes"],
        updated_at=row["updated_at"],
    )


def _row_to_audit(row) -> AssignmentAuditEntry:
    meta = row["meta"]
    if isinstance(meta, str):
        meta = json.loads(meta)
    return AssignmentAuditEntry(
        id=row["id"],
        dispatch_id=str(row["dispatch_request_id"]),
        action=AuditAction(row["action"]),
        actor=row["actor_id"],
        note=row["note"],
        metadata=audit_meta_adapter.validate_python(meta),
        created_at=row["created_at"],
    )


def _row_to_responder(row) -> Responder:
    return Responder(
        officer_id=str(row["id"]),
        user_id=row["user_id"],
        name=row["name"],
        jurisdiction=row["jurisdiction"],
        phone=row["phone"],
        email=row["email"],
        preference=ContactPreference(row["notification_preference"]),
        active=row["status"] == "ACTIVE",
    )


class AsyncPostgresDispatchRepository:
    async def create(self, dispatch: DispatchRequest) -> DispatchRequest:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_requests (
                  id, jurisdiction, lat, lng, address, species, condition_description,
                  requester_id, requester_name, requester_phone, requester_email,
                  priority, status, requested_at, expires_at, is_enforcement_dispatch,
                  legal_basis, statute_citations, law_triggers, rule_id, rule_code,
                  source_case_type, source_case_id, notes
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                        $16, $17, $18, $19, $20, $21, $22, $23, $24)
                RETURNING *
                """,
                dispatch.id,
                dispatch.jurisdiction,
                dispatch.lat,
                dispatch.lng,
                dispatch.address,
                dispatch.species,
                dispatch.condition_description,
                dispatch.requester_id,
                dispatch.requester_name,
                dispatch.requester_phone,
                dispatch.requester_email,
                dispatch.priority.value,
                dispatch.status.value,
                dispatch.requested_at,
                dispatch.expires_at,
                dispatch.is_enforcement_dispatch,
                dispatch.legal_basis.value if dispatch.legal_basis else None,
                list(dispatch.statute_citations),
                [t.value for t in dispatch.law_triggers],
                dispatch.rule_id,
                dispatch.rule_code,
                dispatch.source_case_type.value if dispatch.source_case_type else None,
                dispatch.source_case_id,
                dispatch.notes,
            )
        inc_counter("dispatch_rows_created")
        return _row_to_dispatch(row)

    @retry_on_transient_error()
    async def get(self, dispatch_id: str) -> Optional[DispatchRequest]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_requests WHERE id = $1", dispatch_id)
        return _row_to_dispatch(row) if row else None

    async def transition(
        self,
        dispatch_id: str,
        from_statuses: Sequence[DispatchStatus],
        to_status: DispatchStatus,
        *,
        enforcement_only: bool = True,
        **fields: Any,
    ) -> Optional[DispatchRequest]:
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set columns in a status transition: {sorted(unknown)}")

        params: list[Any] = [dispatch_id, to_status.value, [s.value for s in from_statuses]]
        assignments = ["status = $2", "updated_at = now()"]
        for name, value in fields.items():
            params.append(value)
            assignments.append(f"{name} = ${len(params)}")

        enforcement_clause = "AND is_enforcement_dispatch" if enforcement_only else ""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE dispatch_requests
                SET {', '.join(assignments)}
                WHERE id = $1
                  AND status = ANY($3::text[])
                  {enforcement_clause}
                RETURNING *
                """,
                *params,
            )
        if row is None:
            return None
        logger.debug(
            f"Dispatch status -> {to_status.value}",
            extra={"dispatch_id": dispatch_id},
        )
        return _row_to_dispatch(row)

    async def mark_police_notified(self, dispatch_id: str, at: datetime) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE dispatch_requests
                SET police_notified = true, police_notified_at = $2, updated_at = now()
                WHERE id = $1
                """,
                dispatch_id,
                at,
            )

    async def append_audit(self, entry: AssignmentAuditEntry) -> AssignmentAuditEntry:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_assignments (dispatch_request_id, action, actor_id, note, meta, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, COALESCE($6, now()))
                RETURNING *
                """,
                entry.dispatch_id,
                entry.action.value,
                entry.actor,
                entry.note,
                entry.metadata.model_dump_json(),
                entry.created_at,
            )
        return _row_to_audit(row)

    @retry_on_transient_error()
    async def eligible_responders(self, jurisdiction: str) -> list[Responder]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, name, jurisdiction, phone, email, notification_preference, status
                FROM aco_officers
                WHERE upper(jurisdiction) = upper($1)
                  AND status = 'ACTIVE'
                ORDER BY id
                """,
                jurisdiction,
            )
        return [_row_to_responder(row) for row in rows]

    async def link_source_case(
        self,
        case_type: SourceCaseType,
        case_id: str,
        dispatch_id: str,
        at: datetime,
    ) -> bool:
        table = _SOURCE_CASE_TABLES.get(case_type)
        if table is None:
            return False
        async with safe_db_conn() as conn:
            result = await conn.execute(
                f"UPDATE {table} SET aco_notified_at = $2, aco_dispatch_id = $3 WHERE id = $1",
                case_id,
                at,
                dispatch_id,
            )
        updated = int(result.split()[-1]) if result else 0
        return updated > 0

    @retry_on_transient_error()
    async def list_overdue(self, now: datetime, limit: int) -> list[DispatchRequest]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM dispatch_requests
                WHERE status = 'PENDING'
                  AND expires_at < $1
                ORDER BY expires_at
                LIMIT $2
                """,
                now,
                limit,
            )
        return [_row_to_dispatch(row) for row in rows]


class AsyncPostgresPoliceLog:
    """Writes police/911 notification records to police_notifications."""

    async def log_police_notification(self, record) -> bool:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO police_notifications (
                  dispatch_request_id, jurisdiction, notification_type, message_content,
                  priority, law_triggers, statute_citations, sent_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                record.dispatch_id,
                record.jurisdiction,
                record.notification_type,
                record.message,
                record.priority.value,
                [t.value for t in record.law_triggers],
                list(record.statute_citations),
                record.sent_at,
            )
        logger.info(
            f"Police notification logged: priority={record.priority.value}",
            extra={"dispatch_id": record.dispatch_id, "jurisdiction": record.jurisdiction},
        )
        return True


# Global singletons
_dispatch_repo: AsyncPostgresDispatchRepository | None = None
_police_log: AsyncPostgresPoliceLog | None = None


def get_dispatch_repo() -> AsyncPostgresDispatchRepository:
    global _dispatch_repo
    if _dispatch_repo is None:
        _dispatch_repo = AsyncPostgresDispatchRepository()
    return _dispatch_repo


def get_police_log() -> AsyncPostgresPoliceLog:
    global _police_log
    if _police_log is None:
        _police_log = AsyncPostgresPoliceLog()
    return _police_log
