# mayday/core/law/engine.py
"""
Law trigger evaluation.

Maps (jurisdiction, trigger categories) to the ordered list of legal
rules that require an enforcement dispatch. Rule lookup is delegated to
a ``RuleTable``; this module only orders and aggregates.

Failure policy: fail-open. If the lookup errors, the caller gets
"no dispatch required" so intake is never blocked, and the failure is
logged and written to the audit log for out-of-band review.
"""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from mayday.core.law.domain import (
    LawRule,
    LawTriggerResult,
    TriggerCategory,
    parse_triggers,
)
from mayday.core.law.table import RuleTable, normalize_jurisdiction
from mayday.infra.audit_log import audit_event
from mayday.infra.logging_config import get_logger
from mayday.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _sort_key(rule: LawRule) -> tuple[int, str]:
    return (-rule.priority.rank, rule.rule_code)


def aggregate_rules(rules: Sequence[LawRule]) -> LawTriggerResult:
    """
    Order and aggregate matched rules into a result.

    Pure: the same rules always produce the same result.
    """
    unique: dict[str, LawRule] = {}
    for rule in rules:
        unique.setdefault(rule.rule_id, rule)

    ordered = tuple(sorted(unique.values(), key=_sort_key))
    if not ordered:
        return LawTriggerResult.no_dispatch()

    citations: list[str] = []
    for rule in ordered:
        for citation in rule.statute_citations:
            if citation not in citations:
                citations.append(citation)

    primary = ordered[0]
    return LawTriggerResult(
        triggers_dispatch=True,
        rules=ordered,
        primary_rule=primary,
        highest_priority=primary.priority,
        requires_immediate=any(r.requires_immediate_response for r in ordered),
        all_citations=tuple(citations),
    )


class LawTriggerEngine:
    """Evaluates law triggers against a rule table."""

    def __init__(self, rule_table: RuleTable):
        self._rule_table = rule_table

    async def evaluate(
        self,
        jurisdiction: str,
        triggers: Iterable[TriggerCategory | str],
    ) -> LawTriggerResult:
        """
        Evaluate law triggers for a jurisdiction.

        An empty trigger set yields "no dispatch required" without a lookup.

        Raises:
            ValidationError: if a trigger is not a known category
        """
        trigger_set = parse_triggers(triggers)
        if not trigger_set:
            return LawTriggerResult.no_dispatch()

        county = normalize_jurisdiction(jurisdiction)

        try:
            rules = await self._rule_table.lookup_rules(county, trigger_set)
        except Exception as exc:
            trigger_names = sorted(t.value for t in trigger_set)
            logger.error(
                f"Law trigger evaluation failed, failing open: jurisdiction={county}, "
                f"triggers={trigger_names}, error={exc.__class__.__name__}: {exc}",
                extra={"jurisdiction": county},
                exc_info=True,
            )
            audit_event(
                "law.evaluation_failed_open",
                jurisdiction=county,
                detail="Rule lookup failed; dispatch not created",
                extra={"law_triggers": trigger_names, "error": str(exc)[:500]},
                level=logging.WARNING,
            )
            DispatchMetrics.law_failed_open(county)
            return LawTriggerResult.no_dispatch(lookup_failed=True)

        result = aggregate_rules(rules)
        DispatchMetrics.law_evaluated(county, result.triggers_dispatch)
        logger.debug(
            f"Law triggers evaluated: jurisdiction={county}, matched={len(result.rules)}, "
            f"primary={result.primary_rule.rule_code if result.primary_rule else None}",
            extra={"jurisdiction": county},
        )
        return result
