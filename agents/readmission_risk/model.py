"""
Readmission Risk Service - Rule-Based Risk Scorer

This module implements the 30-day readmission risk score as an ordered table
of explicit, auditable clinical rules.

================================================================================
WHY A RULE TABLE
================================================================================

Every point of the score is traceable to one named rule, and every rule that
fires contributes one human-readable factor. Clinicians see exactly WHY a
patient was flagged:

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         PATIENT ASSESSMENT INPUT                        │
    │     (age, prior hospitalizations, conditions, medications, stay)        │
    └─────────────────────────────────────────────────────────────────────────┘
                                       │
                                       ▼
           ┌───────────────────────────────────────────────────────┐
           │   RULE TABLE (evaluated in order, all rules checked)  │
           │                                                       │
           │   DEM001  Age over 65 ............... +20  [age]      │
           │   DEM002  Age over 50 ............... +10  [age]      │
           │   UTL001  3+ prior hospitalizations . +25  [hosp]     │
           │   UTL002  1-2 prior hospitalizations  +15  [hosp]     │
           │   CHR001  Diabetes .................. +15             │
           │   CHR002  Heart condition ........... +20             │
           │   CHR003  Hypertension .............. +10             │
           │   CHR004  Respiratory condition ..... +15             │
           │   MED001  More than 5 medications ... +15             │
           │   UTL003  Stay longer than 7 days ... +10             │
           │                                                       │
           │   Rules sharing a [group] are mutually exclusive:     │
           │   the first one that fires wins.                      │
           └───────────────────────────────────────────────────────┘
                                       │
                                       ▼
    ┌─────────────────────────────────────────────────────────────────────────┐
    │  score = min(sum of fired weights, 100)                                 │
    │  tier  = Low (<30) | Moderate (30-59) | High (>=60)                     │
    └─────────────────────────────────────────────────────────────────────────┘

The scorer is a pure function of its input and "now" (used only for the
length-of-stay rule), so it is safe to call concurrently.

================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from readmission_risk.config import settings

# Configure module logger
logger = logging.getLogger(__name__)


DISCLAIMER = "This is a simplified prediction model for demonstration purposes only"


# =============================================================================
# ENUMERATIONS AND DATA CLASSES
# =============================================================================

class RiskLevel(str, Enum):
    """Coarse readmission risk tier derived from the numeric score."""
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


Predicate = Callable[[Dict[str, Any], datetime], bool]


@dataclass(frozen=True)
class ScoringRule:
    """
    One row of the scoring table.

    Attributes:
        rule_id: Stable identifier for tracking and the /rules listing
        factor: Human-readable factor reported when the rule fires
        weight: Points added to the score when the rule fires
        predicate: Callable(patient_data, now) -> bool
        group: Rules sharing a group are mutually exclusive; the first
            rule of the group (in table order) that fires wins
    """
    rule_id: str
    factor: str
    weight: int
    predicate: Predicate
    group: Optional[str] = None


@dataclass
class RiskAssessment:
    """Result of scoring one patient."""
    readmission_risk: int
    risk_level: RiskLevel
    factors: List[str] = field(default_factory=list)
    notes: str = DISCLAIMER

    # Sum of fired weights before the ceiling was applied
    raw_score: int = 0
    triggered_rules: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire format returned by POST /api/predictions."""
        return {
            "readmissionRisk": self.readmission_risk,
            "riskLevel": self.risk_level.value,
            "factors": list(self.factors),
            "notes": self.notes,
        }


# =============================================================================
# INPUT ACCESSORS
# =============================================================================
# Payloads use the camelCase keys of the HTTP API. Missing or null fields
# read as "nothing to score".

def _age(data: Dict[str, Any]) -> Optional[int]:
    return data.get("age")


def _hospitalization_count(data: Dict[str, Any]) -> int:
    return len(data.get("previousHospitalizations") or [])


def _conditions(data: Dict[str, Any]) -> List[str]:
    history = data.get("medicalHistory") or {}
    return [c.lower() for c in history.get("conditions") or []]


def _medication_count(data: Dict[str, Any]) -> int:
    history = data.get("medicalHistory") or {}
    return len(history.get("medications") or [])


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(text))


def stay_duration_days(data: Dict[str, Any], now: datetime) -> Optional[int]:
    """Whole days since current admission, floored; None without an admission date."""
    visit = data.get("currentVisit") or {}
    admitted = _parse_timestamp(visit.get("admissionDate"))
    if admitted is None:
        return None
    return (_as_utc(now) - admitted).days


# =============================================================================
# PREDICATE BUILDERS
# =============================================================================

def age_over(years: int) -> Predicate:
    def predicate(data: Dict[str, Any], now: datetime) -> bool:
        age = _age(data)
        return age is not None and age > years
    return predicate


def hospitalizations_over(count: int) -> Predicate:
    def predicate(data: Dict[str, Any], now: datetime) -> bool:
        return _hospitalization_count(data) > count
    return predicate


def condition_mentions(*keywords: str) -> Predicate:
    """Case-insensitive substring match against any listed condition."""
    needles = tuple(k.lower() for k in keywords)

    def predicate(data: Dict[str, Any], now: datetime) -> bool:
        return any(
            needle in condition
            for condition in _conditions(data)
            for needle in needles
        )
    return predicate


def medications_over(count: int) -> Predicate:
    def predicate(data: Dict[str, Any], now: datetime) -> bool:
        return _medication_count(data) > count
    return predicate


def stay_longer_than(days: int) -> Predicate:
    def predicate(data: Dict[str, Any], now: datetime) -> bool:
        duration = stay_duration_days(data, now)
        return duration is not None and duration > days
    return predicate


# =============================================================================
# DEFAULT RULE TABLE
# =============================================================================

DEFAULT_RULES: Tuple[ScoringRule, ...] = (
    # Demographics
    ScoringRule("DEM001", "Age over 65", 20, age_over(65), group="age"),
    ScoringRule("DEM002", "Age over 50", 10, age_over(50), group="age"),

    # Utilization history
    ScoringRule(
        "UTL001", "Multiple previous hospitalizations", 25,
        hospitalizations_over(2), group="hospitalizations",
    ),
    ScoringRule(
        "UTL002", "Prior hospitalization", 15,
        hospitalizations_over(0), group="hospitalizations",
    ),

    # Chronic conditions
    ScoringRule("CHR001", "Diabetes", 15, condition_mentions("diabet")),
    ScoringRule("CHR002", "Heart condition", 20, condition_mentions("heart", "cardiac")),
    ScoringRule(
        "CHR003", "Hypertension", 10,
        condition_mentions("hypertension", "blood pressure"),
    ),
    ScoringRule(
        "CHR004", "Respiratory condition", 15,
        condition_mentions("respiratory", "copd", "asthma"),
    ),

    # Polypharmacy
    ScoringRule("MED001", "Multiple medications (>5)", 15, medications_over(5)),

    # Current visit
    ScoringRule("UTL003", "Extended hospital stay (>7 days)", 10, stay_longer_than(7)),
)


# =============================================================================
# SCORER
# =============================================================================

class RiskScorer:
    """
    Evaluates a rule table against a patient assessment payload.

    Every rule is checked against the same input; there is no short-circuit
    between unrelated rules. Within a group only the first firing rule counts.

    Example:
        >>> scorer = RiskScorer()
        >>> scorer.score({"age": 70}).factors
        ['Age over 65']
    """

    VERSION = "1.0.0"

    def __init__(
        self,
        rules: Sequence[ScoringRule] = DEFAULT_RULES,
        max_score: Optional[int] = None,
        moderate_threshold: Optional[int] = None,
        high_threshold: Optional[int] = None,
    ):
        self.rules = tuple(rules)
        self.max_score = settings.max_risk_score if max_score is None else max_score
        self.moderate_threshold = (
            settings.moderate_risk_threshold
            if moderate_threshold is None else moderate_threshold
        )
        self.high_threshold = (
            settings.high_risk_threshold if high_threshold is None else high_threshold
        )
        logger.info(f"RiskScorer v{self.VERSION} initialized with {len(self.rules)} rules")

    def score(
        self,
        patient_data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> RiskAssessment:
        """
        Score a patient.

        Args:
            patient_data: Assessment payload with camelCase keys
                (age, previousHospitalizations, medicalHistory.conditions,
                medicalHistory.medications, currentVisit.admissionDate)
            now: Reference time for the length-of-stay rule (default: UTC now)

        Returns:
            RiskAssessment with clamped score, tier and factors
        """
        now = now or datetime.now(timezone.utc)

        raw_score = 0
        factors: List[str] = []
        triggered: List[str] = []
        fired_groups = set()

        for rule in self.rules:
            if rule.group is not None and rule.group in fired_groups:
                continue
            if not rule.predicate(patient_data, now):
                continue
            raw_score += rule.weight
            triggered.append(rule.rule_id)
            if rule.factor not in factors:
                factors.append(rule.factor)
            if rule.group is not None:
                fired_groups.add(rule.group)

        score = min(raw_score, self.max_score)
        level = self.classify(score)

        logger.debug(
            f"Scored readmission risk {score} ({level.value}), "
            f"{len(triggered)} rules fired"
        )

        return RiskAssessment(
            readmission_risk=score,
            risk_level=level,
            factors=factors,
            raw_score=raw_score,
            triggered_rules=triggered,
        )

    def classify(self, score: int) -> RiskLevel:
        """Map a numeric score to its tier."""
        if score < self.moderate_threshold:
            return RiskLevel.LOW
        if score < self.high_threshold:
            return RiskLevel.MODERATE
        return RiskLevel.HIGH

    def describe(self) -> List[Dict[str, Any]]:
        """Rule table as plain dictionaries for the /rules listing."""
        return [
            {
                "id": rule.rule_id,
                "factor": rule.factor,
                "weight": rule.weight,
                "group": rule.group,
            }
            for rule in self.rules
        ]
