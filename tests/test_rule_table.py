# tests/test_rule_table.py
"""
Tests for rule tables:
- jurisdiction precedence (statewide vs county, supersedes_state)
- JSON rule file loading and validation
- asyncpg-backed rule table (mocked connection)
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pydantic
import pytest

from mayday.core.law.domain import (
    LawRule,
    LegalBasis,
    RulePriority,
    RuleRow,
    TriggerCategory,
)
from mayday.core.law.table import (
    StaticRuleTable,
    apply_jurisdiction_precedence,
    load_rule_table,
)
from mayday.infra.pg_rule_table_async import AsyncPostgresRuleTable

BITE = TriggerCategory.BITE_INCIDENT
NUISANCE = TriggerCategory.PUBLIC_NUISANCE


def _row(code, jurisdiction, trigger, *, supersedes=False, active=True, priority=RulePriority.HIGH):
    return RuleRow(
        rule=LawRule(
            rule_id=f"id-{code}",
            rule_code=code,
            rule_name=code,
            legal_basis=LegalBasis.STATE_LAW if jurisdiction == "STATE" else LegalBasis.COUNTY_ORDINANCE,
            priority=priority,
        ),
        jurisdiction=jurisdiction,
        trigger=trigger,
        supersedes_state=supersedes,
        active=active,
    )


class TestJurisdictionPrecedence:
    def test_statewide_rows_apply_everywhere(self):
        rows = [_row("STATE-BITE", "STATE", BITE)]
        rules = apply_jurisdiction_precedence(rows, "Monroe", frozenset({BITE}))
        assert [r.rule_code for r in rules] == ["STATE-BITE"]

    def test_other_county_rows_ignored(self):
        rows = [_row("KAN-BITE", "KANAWHA", BITE)]
        assert apply_jurisdiction_precedence(rows, "CABELL", frozenset({BITE})) == []

    def test_county_and_state_rows_combined(self):
        rows = [_row("STATE-BITE", "STATE", BITE), _row("KAN-BITE", "kanawha", BITE)]
        rules = apply_jurisdiction_precedence(rows, "Kanawha", frozenset({BITE}))
        assert {r.rule_code for r in rules} == {"STATE-BITE", "KAN-BITE"}

    def test_superseding_county_row_removes_state_rows_for_that_trigger_only(self):
        rows = [
            _row("STATE-NUISANCE", "STATE", NUISANCE),
            _row("STATE-BITE", "STATE", BITE),
            _row("KAN-NUISANCE", "KANAWHA", NUISANCE, supersedes=True),
        ]
        rules = apply_jurisdiction_precedence(rows, "KANAWHA", frozenset({NUISANCE, BITE}))
        assert {r.rule_code for r in rules} == {"KAN-NUISANCE", "STATE-BITE"}

    def test_inactive_rows_ignored(self):
        rows = [_row("STATE-BITE", "STATE", BITE, active=False)]
        assert apply_jurisdiction_precedence(rows, "KANAWHA", frozenset({BITE})) == []

    def test_rule_matched_by_two_triggers_returned_once(self):
        rows = [_row("MULTI", "STATE", BITE), _row("MULTI", "STATE", NUISANCE)]
        rules = apply_jurisdiction_precedence(rows, "KANAWHA", frozenset({BITE, NUISANCE}))
        assert len(rules) == 1

    def test_unrequested_triggers_ignored(self):
        rows = [_row("STATE-BITE", "STATE", BITE)]
        assert apply_jurisdiction_precedence(rows, "KANAWHA", frozenset({NUISANCE})) == []


class TestRuleFile:
    def test_packaged_rules_load(self):
        table = load_rule_table()
        assert isinstance(table, StaticRuleTable)
        codes = {row.rule.rule_code for row in table.rows}
        assert {"WV-VICIOUS-DOG", "WV-BITE-RABIES", "KAN-NUISANCE"} <= codes

    def test_one_row_per_trigger(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "version": "test",
            "rules": [{
                "rule_id": "r1",
                "rule_code": "T-1",
                "rule_name": "Test",
                "jurisdiction": "monroe",
                "legal_basis": "COUNTY_ORDINANCE",
                "priority": "LOW",
                "triggers": ["BITE_INCIDENT", "PUBLIC_NUISANCE"],
            }],
        }), encoding="utf-8")

        table = load_rule_table(path)

        assert len(table.rows) == 2
        assert {row.jurisdiction for row in table.rows} == {"MONROE"}
        assert table.rows[0].rule.response_sla_minutes is None

    def test_unknown_trigger_in_file_rejected(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "version": "test",
            "rules": [{
                "rule_id": "r1",
                "rule_code": "T-1",
                "rule_name": "Test",
                "legal_basis": "STATE_LAW",
                "priority": "LOW",
                "triggers": ["NOT_A_TRIGGER"],
            }],
        }), encoding="utf-8")

        with pytest.raises(pydantic.ValidationError):
            load_rule_table(path)

    def test_non_positive_sla_rejected(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "version": "test",
            "rules": [{
                "rule_id": "r1",
                "rule_code": "T-1",
                "rule_name": "Test",
                "legal_basis": "STATE_LAW",
                "priority": "LOW",
                "response_sla_minutes": 0,
                "triggers": ["BITE_INCIDENT"],
            }],
        }), encoding="utf-8")

        with pytest.raises(pydantic.ValidationError):
            load_rule_table(path)


def _db_row(code, jurisdiction, trigger, *, supersedes=False):
    return {
        "rule_id": f"id-{code}",
        "rule_code": code,
        "rule_name": code,
        "jurisdiction": jurisdiction,
        "legal_basis": "STATE_LAW" if jurisdiction == "STATE" else "COUNTY_ORDINANCE",
        "priority": "MEDIUM",
        "response_sla_minutes": 240,
        "requires_immediate_response": False,
        "statute_citations": ["§1"],
        "supersedes_state": supersedes,
        "active": True,
        "trigger_category": trigger,
    }


class TestPostgresRuleTable:
    @pytest.mark.asyncio
    async def test_lookup_applies_precedence(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            _db_row("STATE-NUISANCE", "STATE", "PUBLIC_NUISANCE"),
            _db_row("KAN-NUISANCE", "KANAWHA", "PUBLIC_NUISANCE", supersedes=True),
        ])

        with patch("mayday.infra.pg_rule_table_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            rules = await AsyncPostgresRuleTable().lookup_rules("kanawha", frozenset({NUISANCE}))

        assert [r.rule_code for r in rules] == ["KAN-NUISANCE"]
        args = mock_conn.fetch.call_args.args
        assert args[1] == ["STATE", "KANAWHA"]
        assert args[2] == ["PUBLIC_NUISANCE"]

    @pytest.mark.asyncio
    async def test_malformed_rows_skipped(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            _db_row("GOOD", "STATE", "BITE_INCIDENT"),
            _db_row("BAD", "STATE", "RETIRED_TRIGGER"),
        ])

        with patch("mayday.infra.pg_rule_table_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            rules = await AsyncPostgresRuleTable().lookup_rules("KANAWHA", frozenset({BITE}))

        assert [r.rule_code for r in rules] == ["GOOD"]

    @pytest.mark.asyncio
    async def test_empty_triggers_skip_query(self):
        with patch("mayday.infra.pg_rule_table_async.safe_db_conn") as mock_ctx:
            rules = await AsyncPostgresRuleTable().lookup_rules("KANAWHA", frozenset())
        assert rules == []
        mock_ctx.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_writes_rule_and_triggers(self):
        mock_conn = AsyncMock()
        rows = [_row("MULTI", "STATE", BITE), _row("MULTI", "STATE", NUISANCE)]

        with patch("mayday.infra.pg_rule_table_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            count = await AsyncPostgresRuleTable().upsert_rows(rows)

        assert count == 1
        triggers = mock_conn.executemany.call_args.args[1]
        assert sorted(t for _, t in triggers) == ["BITE_INCIDENT", "PUBLIC_NUISANCE"]
