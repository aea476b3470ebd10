# mayday/infra/audit_log.py
"""
Out-of-band audit logging for legally relevant events.

Records fail-open rule evaluations, escalation signals, police
notifications and dispatch expiry to a dedicated logger named "audit"
(separate from the application log) with structured context, so they
can be routed to a separate sink via logging configuration.

The per-dispatch chain of custody lives in the dispatch_assignments
table; this log covers events that must be surfaced even when that
table cannot be written.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    dispatch_id: str | None = None,
    jurisdiction: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
    level: int = logging.INFO,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "law.evaluation_failed_open", "notification.escalation_required")
        dispatch_id: Dispatch affected (if applicable)
        jurisdiction: Jurisdiction affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
        level: Log level (WARNING for events needing human attention)
    """
    record = {
        "audit_action": action,
        "dispatch_id": dispatch_id or "",
        "jurisdiction": jurisdiction or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.log(
        level,
        f"AUDIT: {action} dispatch={dispatch_id or '-'} jurisdiction={jurisdiction or '-'} {detail}",
        extra=record,
    )
