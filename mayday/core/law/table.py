# mayday/core/law/table.py
"""
Rule table lookup.

The rule engine never reads rules itself; it asks a ``RuleTable`` for
the rows matching (jurisdiction, triggers) and only orders and
aggregates what comes back. Two implementations exist:

- ``StaticRuleTable`` - rules loaded once from a JSON file
  (packaged West Virginia set by default)
- ``AsyncPostgresRuleTable`` (mayday.infra.pg_rule_table_async) - the
  ``law_rules`` table

Both apply the same jurisdiction precedence via
``apply_jurisdiction_precedence``.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from pydantic import BaseModel, Field, field_validator

from mayday.core.law.domain import (
    STATEWIDE,
    LawRule,
    LegalBasis,
    RulePriority,
    RuleRow,
    TriggerCategory,
)
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)


class RuleTable(Protocol):
    async def lookup_rules(
        self, jurisdiction: str, triggers: frozenset[TriggerCategory]
    ) -> Sequence[LawRule]: ...


def normalize_jurisdiction(jurisdiction: str) -> str:
    return jurisdiction.strip().upper()


def apply_jurisdiction_precedence(
    rows: Iterable[RuleRow],
    jurisdiction: str,
    triggers: frozenset[TriggerCategory],
) -> list[LawRule]:
    """
    Select the rules that govern ``triggers`` in ``jurisdiction``.

    Statewide rows apply everywhere. County rows apply only in their
    county; a county row flagged ``supersedes_state`` removes the
    statewide rows for its trigger. Inactive rows are ignored. The same
    rule matched through several triggers is returned once, in first
    seen order.
    """
    county = normalize_jurisdiction(jurisdiction)

    by_trigger: dict[TriggerCategory, list[RuleRow]] = {}
    for row in rows:
        if not row.active or row.trigger not in triggers:
            continue
        row_jurisdiction = normalize_jurisdiction(row.jurisdiction)
        if row_jurisdiction not in (STATEWIDE, county):
            continue
        by_trigger.setdefault(row.trigger, []).append(row)

    selected: list[LawRule] = []
    seen: set[str] = set()
    # Iterate triggers in enum order so the result does not depend on set ordering
    for trigger in TriggerCategory:
        trigger_rows = by_trigger.get(trigger)
        if not trigger_rows:
            continue
        local = [r for r in trigger_rows if normalize_jurisdiction(r.jurisdiction) == county]
        if any(r.supersedes_state for r in local):
            governing = local
        else:
            governing = trigger_rows
        for row in governing:
            if row.rule.rule_id in seen:
                continue
            seen.add(row.rule.rule_id)
            selected.append(row.rule)

    return selected


# ---------------------------------------------------------------------------
# JSON rule file schema
# ---------------------------------------------------------------------------

class RuleRowSchema(BaseModel):
    """One rule as stored in the JSON rule file."""

    rule_id: str
    rule_code: str
    rule_name: str
    jurisdiction: str = STATEWIDE
    legal_basis: LegalBasis
    priority: RulePriority
    response_sla_minutes: Optional[int] = Field(default=None, gt=0)
    requires_immediate_response: bool = False
    statute_citations: list[str] = Field(default_factory=list)
    triggers: list[TriggerCategory] = Field(min_length=1)
    supersedes_state: bool = False
    active: bool = True

    @field_validator("jurisdiction")
    @classmethod
    def _upper(cls, value: str) -> str:
        return normalize_jurisdiction(value)

    def to_rows(self) -> list[RuleRow]:
        rule = LawRule(
            rule_id=self.rule_id,
            rule_code=self.rule_code,
            rule_name=self.rule_name,
            legal_basis=self.legal_basis,
            priority=self.priority,
            response_sla_minutes=self.response_sla_minutes,
            requires_immediate_response=self.requires_immediate_response,
            statute_citations=tuple(self.statute_citations),
        )
        return [
            RuleRow(
                rule=rule,
                jurisdiction=self.jurisdiction,
                trigger=trigger,
                supersedes_state=self.supersedes_state,
                active=self.active,
            )
            for trigger in self.triggers
        ]


class RuleFileSchema(BaseModel):
    version: str
    rules: list[RuleRowSchema]


class StaticRuleTable:
    """In-memory rule table built from configuration rows."""

    def __init__(self, rows: Iterable[RuleRow]):
        self._rows: tuple[RuleRow, ...] = tuple(rows)

    @property
    def rows(self) -> tuple[RuleRow, ...]:
        return self._rows

    async def lookup_rules(
        self, jurisdiction: str, triggers: frozenset[TriggerCategory]
    ) -> list[LawRule]:
        return apply_jurisdiction_precedence(self._rows, jurisdiction, triggers)


def default_rule_file() -> Path:
    """Packaged West Virginia rule set (next to this file: rules/wv_rules.json)."""
    return Path(__file__).resolve().parent / "rules" / "wv_rules.json"


def load_rule_table(path: str | Path | None = None) -> StaticRuleTable:
    """
    Load a rule table from a JSON file.

    Raises:
        pydantic.ValidationError: if the file does not match the schema
        FileNotFoundError: if the file does not exist
    """
    rule_path = Path(path) if path else default_rule_file()
    raw = json.loads(rule_path.read_text(encoding="utf-8"))
    parsed = RuleFileSchema.model_validate(raw)

    rows: list[RuleRow] = []
    for rule in parsed.rules:
        rows.extend(rule.to_rows())

    logger.info(
        f"Rule table loaded: version={parsed.version}, rules={len(parsed.rules)}, "
        f"rows={len(rows)}, path={rule_path.name}"
    )
    return StaticRuleTable(rows)
