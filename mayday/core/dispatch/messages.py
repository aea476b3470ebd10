# mayday/core/dispatch/messages.py
"""
Plain-text message bodies for officer alerts and police notifications.

SMS bodies stay free of markup; the same text is used for email.
"""
from __future__ import annotations

from typing import Iterable

from mayday.core.law.domain import TRIGGER_CATEGORY_LABELS, RulePriority, TriggerCategory

_OFFICER_BANNERS = {
    RulePriority.CRITICAL: "🚨 CRITICAL - IMMEDIATE RESPONSE",
    RulePriority.HIGH: "⚠️ HIGH PRIORITY",
}

_POLICE_BANNERS = {
    RulePriority.CRITICAL: "🚨 CRITICAL - IMMEDIATE POLICE RESPONSE NEEDED",
    RulePriority.HIGH: "⚠️ HIGH PRIORITY - POLICE NOTIFICATION",
}


def dispatch_link(base_url: str, dispatch_id: str) -> str:
    return f"{base_url.rstrip('/')}/{dispatch_id}"


def trigger_label(trigger: TriggerCategory) -> str:
    return f"{TRIGGER_CATEGORY_LABELS.get(trigger, trigger.value)} ({trigger.value})"


def _join(lines: Iterable[str]) -> str:
    # Collapse runs of blank lines left by optional sections
    out: list[str] = []
    for line in lines:
        if not line and out and not out[-1]:
            continue
        out.append(line)
    while out and not out[-1]:
        out.pop()
    while out and not out[0]:
        out.pop(0)
    return "\n".join(out)


def format_officer_message(
    *,
    dispatch_id: str,
    priority: RulePriority,
    address: str,
    species: str,
    citations: Iterable[str],
    requires_immediate: bool,
    base_url: str,
) -> str:
    citation_text = ", ".join(citations) or "N/A"
    return _join([
        _OFFICER_BANNERS.get(priority, ""),
        "MAYDAY ACO DISPATCH",
        "",
        f"Location: {address}",
        f"Animal: {species}",
        f"Legal Basis: {citation_text}",
        "",
        "⏰ IMMEDIATE RESPONSE REQUIRED" if requires_immediate else "",
        "",
        f"View details: {dispatch_link(base_url, dispatch_id)}",
        "",
        "Reply ACK to acknowledge.",
    ])


def format_officer_short_message(
    *,
    dispatch_id: str,
    priority: RulePriority,
    address: str,
    base_url: str,
) -> str:
    """One-segment variant for voice and SMS fallbacks."""
    return (
        f"MAYDAY {priority.value} ACO dispatch at {address}. "
        f"{dispatch_link(base_url, dispatch_id)} Reply ACK."
    )


def format_police_message(
    *,
    dispatch_id: str,
    priority: RulePriority,
    address: str,
    species: str,
    citations: Iterable[str],
    law_triggers: Iterable[TriggerCategory],
    reporter_name: str,
    reporter_phone: str,
) -> str:
    return _join([
        _POLICE_BANNERS.get(priority, "Police Notification"),
        "MAYDAY Animal Incident - Law Enforcement Required",
        "",
        f"Location: {address}",
        f"Animal: {species}",
        f"Legal Basis: {', '.join(citations) or 'N/A'}",
        f"Triggers: {', '.join(trigger_label(t) for t in law_triggers)}",
        "",
        f"Reporter: {reporter_name}",
        f"Phone: {reporter_phone}",
        "",
        f"Dispatch ID: {dispatch_id}",
    ])
