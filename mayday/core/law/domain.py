# mayday/core/law/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from mayday.core.errors import ValidationError


class TriggerCategory(str, Enum):
    """Observed condition used to look up applicable legal rules."""

    # Cruelty & neglect
    CRUELTY_SUSPECTED = "CRUELTY_SUSPECTED"
    NEGLECT_SUSPECTED = "NEGLECT_SUSPECTED"
    ABANDONMENT = "ABANDONMENT"
    HOARDING_SITUATION = "HOARDING_SITUATION"
    INADEQUATE_SHELTER = "INADEQUATE_SHELTER"
    NO_FOOD_WATER = "NO_FOOD_WATER"
    MEDICAL_NEGLECT = "MEDICAL_NEGLECT"

    # Dangerous animals
    BITE_INCIDENT = "BITE_INCIDENT"
    ATTACK_ON_HUMAN = "ATTACK_ON_HUMAN"
    ATTACK_ON_ANIMAL = "ATTACK_ON_ANIMAL"
    AGGRESSIVE_BEHAVIOR = "AGGRESSIVE_BEHAVIOR"
    VICIOUS_ANIMAL = "VICIOUS_ANIMAL"
    UNPROVOKED_AGGRESSION = "UNPROVOKED_AGGRESSION"

    # Public safety
    AT_LARGE_HAZARD = "AT_LARGE_HAZARD"
    PUBLIC_NUISANCE = "PUBLIC_NUISANCE"
    TRAFFIC_HAZARD = "TRAFFIC_HAZARD"
    PACK_BEHAVIOR = "PACK_BEHAVIOR"
    REPEATED_ESCAPE = "REPEATED_ESCAPE"

    # Health & condition
    INJURED_SEVERE = "INJURED_SEVERE"
    INJURED_MODERATE = "INJURED_MODERATE"
    SICK_CONTAGIOUS = "SICK_CONTAGIOUS"
    DECEASED_ANIMAL = "DECEASED_ANIMAL"
    RABIES_EXPOSURE = "RABIES_EXPOSURE"

    # Tethering & confinement
    TETHERING_VIOLATION = "TETHERING_VIOLATION"
    INADEQUATE_CONFINEMENT = "INADEQUATE_CONFINEMENT"
    EXTREME_WEATHER_EXPOSURE = "EXTREME_WEATHER_EXPOSURE"

    # Other
    ILLEGAL_BREEDING = "ILLEGAL_BREEDING"
    EXOTIC_ANIMAL = "EXOTIC_ANIMAL"
    LIVESTOCK_AT_LARGE = "LIVESTOCK_AT_LARGE"
    WILDLIFE_CONFLICT = "WILDLIFE_CONFLICT"
    OTHER_LAW_CONCERN = "OTHER_LAW_CONCERN"


TRIGGER_CATEGORY_LABELS: dict[TriggerCategory, str] = {
    TriggerCategory.CRUELTY_SUSPECTED: "Suspected animal cruelty",
    TriggerCategory.NEGLECT_SUSPECTED: "Suspected neglect",
    TriggerCategory.ABANDONMENT: "Animal appears abandoned",
    TriggerCategory.HOARDING_SITUATION: "Hoarding situation",
    TriggerCategory.INADEQUATE_SHELTER: "Inadequate shelter/housing",
    TriggerCategory.NO_FOOD_WATER: "No access to food/water",
    TriggerCategory.MEDICAL_NEGLECT: "Untreated medical condition",
    TriggerCategory.BITE_INCIDENT: "Bite incident occurred",
    TriggerCategory.ATTACK_ON_HUMAN: "Attack on human",
    TriggerCategory.ATTACK_ON_ANIMAL: "Attack on another animal",
    TriggerCategory.AGGRESSIVE_BEHAVIOR: "Aggressive/threatening behavior",
    TriggerCategory.VICIOUS_ANIMAL: "Vicious animal",
    TriggerCategory.UNPROVOKED_AGGRESSION: "Unprovoked aggression",
    TriggerCategory.AT_LARGE_HAZARD: "At-large creating hazard",
    TriggerCategory.PUBLIC_NUISANCE: "Public nuisance",
    TriggerCategory.TRAFFIC_HAZARD: "Traffic hazard",
    TriggerCategory.PACK_BEHAVIOR: "Pack/group behavior",
    TriggerCategory.REPEATED_ESCAPE: "Repeated escape history",
    TriggerCategory.INJURED_SEVERE: "Severely injured (life-threatening)",
    TriggerCategory.INJURED_MODERATE: "Moderately injured",
    TriggerCategory.SICK_CONTAGIOUS: "Appears sick/contagious",
    TriggerCategory.DECEASED_ANIMAL: "Deceased animal",
    TriggerCategory.RABIES_EXPOSURE: "Possible rabies exposure",
    TriggerCategory.TETHERING_VIOLATION: "Improper tethering",
    TriggerCategory.INADEQUATE_CONFINEMENT: "Inadequate confinement",
    TriggerCategory.EXTREME_WEATHER_EXPOSURE: "Exposed to extreme weather",
    TriggerCategory.ILLEGAL_BREEDING: "Suspected illegal breeding",
    TriggerCategory.EXOTIC_ANIMAL: "Exotic/prohibited animal",
    TriggerCategory.LIVESTOCK_AT_LARGE: "Livestock at large",
    TriggerCategory.WILDLIFE_CONFLICT: "Wildlife conflict",
    TriggerCategory.OTHER_LAW_CONCERN: "Other legal concern",
}


def parse_triggers(values: Iterable[str | TriggerCategory]) -> frozenset[TriggerCategory]:
    """Parse raw trigger strings into the closed enum; unknown values are rejected."""
    parsed: set[TriggerCategory] = set()
    unknown: list[str] = []
    for value in values:
        try:
            parsed.add(TriggerCategory(value))
        except ValueError:
            unknown.append(str(value))
    if unknown:
        raise ValidationError(f"Unknown law trigger categories: {', '.join(sorted(unknown))}")
    return frozenset(parsed)


class RulePriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Higher rank = more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    RulePriority.CRITICAL: 4,
    RulePriority.HIGH: 3,
    RulePriority.MEDIUM: 2,
    RulePriority.LOW: 1,
}


class LegalBasis(str, Enum):
    STATE_LAW = "STATE_LAW"
    COUNTY_ORDINANCE = "COUNTY_ORDINANCE"


@dataclass(frozen=True)
class LawRule:
    """A legal rule loaded from configuration. Never mutated at runtime."""
    rule_id: str
    rule_code: str
    rule_name: str
    legal_basis: LegalBasis
    priority: RulePriority
    response_sla_minutes: Optional[int] = None  # None = no deadline
    requires_immediate_response: bool = False
    statute_citations: tuple[str, ...] = ()


@dataclass(frozen=True)
class LawTriggerResult:
    """Outcome of one evaluation. Recomputed on every call, never persisted on its own."""
    triggers_dispatch: bool
    rules: tuple[LawRule, ...] = ()
    primary_rule: Optional[LawRule] = None
    highest_priority: Optional[RulePriority] = None
    requires_immediate: bool = False
    all_citations: tuple[str, ...] = ()
    lookup_failed: bool = False

    @classmethod
    def no_dispatch(cls, *, lookup_failed: bool = False) -> "LawTriggerResult":
        return cls(triggers_dispatch=False, lookup_failed=lookup_failed)

    def to_dict(self) -> dict:
        return {
            "triggers_dispatch": self.triggers_dispatch,
            "rule_codes": [r.rule_code for r in self.rules],
            "primary_rule": self.primary_rule.rule_code if self.primary_rule else None,
            "highest_priority": self.highest_priority.value if self.highest_priority else None,
            "requires_immediate": self.requires_immediate,
            "all_citations": list(self.all_citations),
            "lookup_failed": self.lookup_failed,
        }


@dataclass(frozen=True)
class RuleRow:
    """
    Raw rule table row as returned by a rule lookup.

    ``jurisdiction`` is either a county name or ``"STATE"`` for statewide
    statutes. A county row with ``supersedes_state`` replaces every
    statewide row for the same trigger.
    """
    rule: LawRule
    jurisdiction: str
    trigger: TriggerCategory
    supersedes_state: bool = False
    active: bool = True


STATEWIDE = "STATE"
