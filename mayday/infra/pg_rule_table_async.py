# mayday/infra/pg_rule_table_async.py
"""
Rule table backed by the law_rules / law_rule_triggers tables.
"""
from __future__ import annotations

from typing import Iterable

from mayday.core.law.domain import (
    STATEWIDE,
    LawRule,
    LegalBasis,
    RulePriority,
    RuleRow,
    TriggerCategory,
)
from mayday.core.law.table import apply_jurisdiction_precedence, normalize_jurisdiction
from mayday.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_rule_row(row) -> RuleRow:
    rule = LawRule(
        rule_id=row["rule_id"],
        rule_code=row["rule_code"],
        rule_name=row["rule_name"],
        legal_basis=LegalBasis(row["legal_basis"]),
        priority=RulePriority(row["priority"]),
        response_sla_minutes=row["response_sla_minutes"],
        requires_immediate_response=row["requires_immediate_response"],
        statute_citations=tuple(row["statute_citations"] or ()),
    )
    return RuleRow(
        rule=rule,
        jurisdiction=row["jurisdiction"],
        trigger=TriggerCategory(row["trigger_category"]),
        supersedes_state=row["supersedes_state"],
        active=row["active"],
    )


class AsyncPostgresRuleTable:
    @retry_on_transient_error()
    async def lookup_rules(
        self, jurisdiction: str, triggers: frozenset[TriggerCategory]
    ) -> list[LawRule]:
        if not triggers:
            return []

        county = normalize_jurisdiction(jurisdiction)
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT r.rule_id, r.rule_code, r.rule_name, r.jurisdiction, r.legal_basis,
                       r.priority, r.response_sla_minutes, r.requires_immediate_response,
                       r.statute_citations, r.supersedes_state, r.active, t.trigger_category
                FROM law_rules r
                JOIN law_rule_triggers t ON t.rule_id = r.rule_id
                WHERE r.active
                  AND upper(r.jurisdiction) = ANY($1::text[])
                  AND t.trigger_category = ANY($2::text[])
                ORDER BY r.rule_id, t.trigger_category
                """,
                [STATEWIDE, county],
                [t.value for t in triggers],
            )

        rule_rows = []
        for row in rows:
            try:
                rule_rows.append(_row_to_rule_row(row))
            except ValueError as exc:
                # Unknown trigger or priority in the table: skip the row, keep the rest
                logger.warning(f"Skipping malformed law rule row {row['rule_id']}: {exc}")

        return apply_jurisdiction_precedence(rule_rows, jurisdiction, triggers)

    async def upsert_rows(self, rows: Iterable[RuleRow]) -> int:
        """
        Write rule rows into the tables (used to seed from a JSON rule file).

        Returns the number of distinct rules written.
        """
        by_rule: dict[str, list[RuleRow]] = {}
        for row in rows:
            by_rule.setdefault(row.rule.rule_id, []).append(row)

        async with safe_db_conn(autocommit=False) as conn:
            for rule_id, rule_rows in by_rule.items():
                first = rule_rows[0]
                rule = first.rule
                await conn.execute(
                    """
                    INSERT INTO law_rules (
                      rule_id, rule_code, rule_name, jurisdiction, legal_basis, priority,
                      response_sla_minutes, requires_immediate_response, statute_citations,
                      supersedes_state, active, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, now())
                    ON CONFLICT (rule_id) DO UPDATE SET
                      rule_code = EXCLUDED.rule_code,
                      rule_name = EXCLUDED.rule_name,
                      jurisdiction = EXCLUDED.jurisdiction,
                      legal_basis = EXCLUDED.legal_basis,
                      priority = EXCLUDED.priority,
                      response_sla_minutes = EXCLUDED.response_sla_minutes,
                      requires_immediate_response = EXCLUDED.requires_immediate_response,
                      statute_citations = EXCLUDED.statute_citations,
                      supersedes_state = EXCLUDED.supersedes_state,
                      active = EXCLUDED.active,
                      updated_at = now()
                    """,
                    rule_id,
                    rule.rule_code,
                    rule.rule_name,
                    normalize_jurisdiction(first.jurisdiction),
                    rule.legal_basis.value,
                    rule.priority.value,
                    rule.response_sla_minutes,
                    rule.requires_immediate_response,
                    list(rule.statute_citations),
                    first.supersedes_state,
                    first.active,
                )
                await conn.execute("DELETE FROM law_rule_triggers WHERE rule_id = $1", rule_id)
                await conn.executemany(
                    "INSERT INTO law_rule_triggers (rule_id, trigger_category) VALUES ($1, $2)",
                    [(rule_id, r.trigger.value) for r in rule_rows],
                )

        logger.info(f"Law rules upserted: {len(by_rule)}")
        return len(by_rule)
