# tests/test_law_engine.py
"""
Tests for law trigger evaluation:
- rule ordering and aggregation
- fail-open on lookup errors
- evaluation against the packaged West Virginia rule set
"""
from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from mayday.core.errors import ValidationError
from mayday.core.law.domain import (
    LawRule,
    LegalBasis,
    RulePriority,
    TriggerCategory,
    parse_triggers,
)
from mayday.core.law.engine import LawTriggerEngine, aggregate_rules
from mayday.core.law.table import load_rule_table
from mayday.infra.metrics import get_metrics_collector


def _rule(code: str, priority: RulePriority, *, sla=None, immediate=False, citations=()) -> LawRule:
    return LawRule(
        rule_id=f"id-{code}",
        rule_code=code,
        rule_name=code.title(),
        legal_basis=LegalBasis.STATE_LAW,
        priority=priority,
        response_sla_minutes=sla,
        requires_immediate_response=immediate,
        statute_citations=tuple(citations),
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class TestAggregateRules:
    def test_no_rules_means_no_dispatch(self):
        result = aggregate_rules([])
        assert result.triggers_dispatch is False
        assert result.rules == ()
        assert result.primary_rule is None
        assert result.highest_priority is None
        assert result.lookup_failed is False

    def test_orders_by_priority_then_rule_code(self):
        rules = [
            _rule("B-LOW", RulePriority.LOW),
            _rule("Z-CRIT", RulePriority.CRITICAL),
            _rule("A-CRIT", RulePriority.CRITICAL),
            _rule("C-MED", RulePriority.MEDIUM),
        ]
        result = aggregate_rules(rules)

        assert [r.rule_code for r in result.rules] == ["A-CRIT", "Z-CRIT", "C-MED", "B-LOW"]
        assert result.primary_rule.rule_code == "A-CRIT"
        assert result.highest_priority is RulePriority.CRITICAL

    def test_same_input_in_any_order_gives_same_result(self):
        rules = [
            _rule("X", RulePriority.HIGH, citations=["c1"]),
            _rule("Y", RulePriority.HIGH, citations=["c2"]),
            _rule("W", RulePriority.LOW, citations=["c3"]),
        ]
        assert aggregate_rules(rules) == aggregate_rules(list(reversed(rules)))

    def test_citations_deduplicated_in_rule_order(self):
        rules = [
            _rule("B", RulePriority.MEDIUM, citations=["§2", "§3"]),
            _rule("A", RulePriority.CRITICAL, citations=["§1", "§2"]),
        ]
        result = aggregate_rules(rules)
        assert result.all_citations == ("§1", "§2", "§3")

    def test_requires_immediate_if_any_rule_does(self):
        rules = [
            _rule("A", RulePriority.CRITICAL, immediate=False),
            _rule("B", RulePriority.LOW, immediate=True),
        ]
        assert aggregate_rules(rules).requires_immediate is True

    def test_duplicate_rule_ids_counted_once(self):
        rule = _rule("A", RulePriority.HIGH)
        result = aggregate_rules([rule, rule])
        assert len(result.rules) == 1

    def test_to_dict_is_json_friendly(self):
        result = aggregate_rules([_rule("A", RulePriority.HIGH, citations=["§1"])])
        data = result.to_dict()
        assert data["primary_rule"] == "A"
        assert data["highest_priority"] == "HIGH"
        assert data["all_citations"] == ["§1"]


# ---------------------------------------------------------------------------
# Trigger parsing
# ---------------------------------------------------------------------------

class TestParseTriggers:
    def test_accepts_strings_and_enums(self):
        parsed = parse_triggers(["BITE_INCIDENT", TriggerCategory.ABANDONMENT])
        assert parsed == frozenset({TriggerCategory.BITE_INCIDENT, TriggerCategory.ABANDONMENT})

    def test_rejects_unknown_values(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_triggers(["BITE_INCIDENT", "ALIENS"])
        assert "ALIENS" in str(exc_info.value)

    def test_closed_set_has_31_categories(self):
        assert len(TriggerCategory) == 31


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestLawTriggerEngine:
    @pytest.mark.asyncio
    async def test_empty_triggers_skip_lookup(self):
        table = AsyncMock()
        engine = LawTriggerEngine(table)

        result = await engine.evaluate("KANAWHA", [])

        assert result.triggers_dispatch is False
        table.lookup_rules.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_trigger_raises_before_lookup(self):
        table = AsyncMock()
        engine = LawTriggerEngine(table)

        with pytest.raises(ValidationError):
            await engine.evaluate("KANAWHA", ["NOT_A_TRIGGER"])
        table.lookup_rules.assert_not_called()

    @pytest.mark.asyncio
    async def test_jurisdiction_normalized_for_lookup(self):
        table = AsyncMock()
        table.lookup_rules.return_value = []
        engine = LawTriggerEngine(table)

        await engine.evaluate("  kanawha ", ["BITE_INCIDENT"])

        args = table.lookup_rules.call_args.args
        assert args[0] == "KANAWHA"
        assert args[1] == frozenset({TriggerCategory.BITE_INCIDENT})

    @pytest.mark.asyncio
    async def test_lookup_failure_fails_open(self, caplog):
        table = AsyncMock()
        table.lookup_rules.side_effect = ConnectionError("database down")
        engine = LawTriggerEngine(table)

        with caplog.at_level(logging.WARNING, logger="audit"):
            result = await engine.evaluate("KANAWHA", ["ATTACK_ON_HUMAN"])

        assert result.triggers_dispatch is False
        assert result.lookup_failed is True
        assert any("law.evaluation_failed_open" in r.getMessage() for r in caplog.records)
        assert get_metrics_collector().get_counter(
            "law_evaluation_fail_open_total", {"jurisdiction": "KANAWHA"}
        ) == 1


class TestWestVirginiaRules:
    @pytest.fixture
    def engine(self):
        return LawTriggerEngine(load_rule_table())

    @pytest.mark.asyncio
    async def test_bite_and_cruelty(self, engine):
        result = await engine.evaluate("Kanawha", ["BITE_INCIDENT", "CRUELTY_SUSPECTED"])

        assert result.triggers_dispatch is True
        assert [r.rule_code for r in result.rules] == ["WV-BITE-RABIES", "WV-CRUELTY"]
        assert result.primary_rule.response_sla_minutes == 60
        assert result.highest_priority is RulePriority.CRITICAL
        assert result.requires_immediate is True
        assert result.all_citations == (
            "W. Va. Code §19-20A-8",
            "W. Va. Code §19-20-20",
            "W. Va. Code §61-8-19",
            "W. Va. Code §7-10-4",
        )

    @pytest.mark.asyncio
    async def test_trigger_without_rule_means_no_dispatch(self, engine):
        result = await engine.evaluate("KANAWHA", ["WILDLIFE_CONFLICT"])
        assert result.triggers_dispatch is False
        assert result.lookup_failed is False

    @pytest.mark.asyncio
    async def test_county_ordinance_supersedes_state_rule(self, engine):
        result = await engine.evaluate("KANAWHA", ["PUBLIC_NUISANCE"])
        assert [r.rule_code for r in result.rules] == ["KAN-NUISANCE"]
        assert result.primary_rule.legal_basis is LegalBasis.COUNTY_ORDINANCE

    @pytest.mark.asyncio
    async def test_state_rule_applies_in_other_counties(self, engine):
        result = await engine.evaluate("CABELL", ["PUBLIC_NUISANCE"])
        assert [r.rule_code for r in result.rules] == ["WV-NUISANCE"]
        # LOW rule without an SLA
        assert result.primary_rule.response_sla_minutes is None

    @pytest.mark.asyncio
    async def test_county_rule_added_alongside_state_rule(self, engine):
        result = await engine.evaluate("GREENBRIER", ["VICIOUS_ANIMAL"])
        assert [r.rule_code for r in result.rules] == ["GRB-DANGEROUS", "WV-VICIOUS-DOG"]
        assert result.primary_rule.response_sla_minutes == 20

    @pytest.mark.asyncio
    async def test_county_rules_do_not_leak(self, engine):
        result = await engine.evaluate("CABELL", ["EXOTIC_ANIMAL"])
        assert result.triggers_dispatch is False
