"""
Readmission Risk Service - Scorer Unit Tests

Run with: pytest agents/readmission_risk/tests/test_model.py -v
"""

from datetime import datetime, timedelta

import pytest

from readmission_risk.model import (
    DISCLAIMER,
    DEFAULT_RULES,
    RiskLevel,
    RiskScorer,
    ScoringRule,
    age_over,
    stay_duration_days,
)
from readmission_risk.tests.factories import NOW


def admitted_days_ago(days, **extra):
    return {"currentVisit": {"admissionDate": NOW - timedelta(days=days, **extra)}}


MAXIMAL_INPUT = {
    "age": 80,
    "previousHospitalizations": [{}, {}, {}],
    "medicalHistory": {
        "conditions": ["Diabetes mellitus", "Heart failure", "Hypertension", "COPD"],
        "medications": ["a", "b", "c", "d", "e", "f"],
    },
    "currentVisit": {"admissionDate": NOW - timedelta(days=8)},
}


class TestEmptyInput:
    """An assessment with nothing to score."""

    def test_empty_input_scores_zero(self, scorer):
        result = scorer.score({}, now=NOW)

        assert result.readmission_risk == 0
        assert result.risk_level == RiskLevel.LOW
        assert result.factors == []

    def test_notes_are_always_the_disclaimer(self, scorer):
        assert scorer.score({}, now=NOW).notes == DISCLAIMER
        assert scorer.score(MAXIMAL_INPUT, now=NOW).notes == DISCLAIMER

    def test_null_fields_are_skipped(self, scorer):
        result = scorer.score(
            {
                "age": None,
                "previousHospitalizations": None,
                "medicalHistory": None,
                "currentVisit": {"admissionDate": None},
            },
            now=NOW,
        )
        assert result.readmission_risk == 0
        assert result.factors == []


class TestAgeRules:
    """Age rules are mutually exclusive."""

    @pytest.mark.parametrize("age,score,factors", [
        (70, 20, ["Age over 65"]),
        (66, 20, ["Age over 65"]),
        (65, 10, ["Age over 50"]),
        (55, 10, ["Age over 50"]),
        (50, 0, []),
        (40, 0, []),
        (0, 0, []),
    ])
    def test_age_thresholds(self, scorer, age, score, factors):
        result = scorer.score({"age": age}, now=NOW)
        assert result.readmission_risk == score
        assert result.factors == factors


class TestHospitalizationRules:

    @pytest.mark.parametrize("count,score,factors", [
        (0, 0, []),
        (1, 15, ["Prior hospitalization"]),
        (2, 15, ["Prior hospitalization"]),
        (3, 25, ["Multiple previous hospitalizations"]),
        (7, 25, ["Multiple previous hospitalizations"]),
    ])
    def test_hospitalization_counts(self, scorer, count, score, factors):
        result = scorer.score({"previousHospitalizations": [{}] * count}, now=NOW)
        assert result.readmission_risk == score
        assert result.factors == factors


class TestConditionRules:

    def test_diabetes_and_cardiac(self, scorer):
        result = scorer.score(
            {"medicalHistory": {"conditions": ["Type 2 Diabetes", "Cardiac arrhythmia"]}},
            now=NOW,
        )
        assert result.readmission_risk == 35
        assert result.factors == ["Diabetes", "Heart condition"]
        assert result.risk_level == RiskLevel.MODERATE

    def test_matching_is_case_insensitive(self, scorer):
        result = scorer.score(
            {"medicalHistory": {"conditions": ["HEART FAILURE", "High Blood Pressure"]}},
            now=NOW,
        )
        assert result.factors == ["Heart condition", "Hypertension"]
        assert result.readmission_risk == 30

    def test_each_condition_rule_fires_once(self, scorer):
        result = scorer.score(
            {"medicalHistory": {"conditions": ["COPD", "Asthma", "Respiratory failure"]}},
            now=NOW,
        )
        assert result.readmission_risk == 15
        assert result.factors == ["Respiratory condition"]

    def test_unrelated_conditions_do_not_score(self, scorer):
        result = scorer.score(
            {"medicalHistory": {"conditions": ["Fractured wrist", "Migraine"]}},
            now=NOW,
        )
        assert result.readmission_risk == 0

    def test_prediabetes_matches_substring(self, scorer):
        result = scorer.score({"medicalHistory": {"conditions": ["Prediabetic"]}}, now=NOW)
        assert result.factors == ["Diabetes"]


class TestMedicationRule:

    def test_six_medications_score(self, scorer):
        result = scorer.score({"medicalHistory": {"medications": ["m"] * 6}}, now=NOW)
        assert result.readmission_risk == 15
        assert result.factors == ["Multiple medications (>5)"]

    def test_five_medications_do_not_score(self, scorer):
        result = scorer.score({"medicalHistory": {"medications": ["m"] * 5}}, now=NOW)
        assert result.readmission_risk == 0


class TestLengthOfStayRule:

    def test_eight_days_fires(self, scorer):
        result = scorer.score(admitted_days_ago(8), now=NOW)
        assert "Extended hospital stay (>7 days)" in result.factors
        assert result.readmission_risk == 10

    def test_exactly_seven_days_does_not_fire(self, scorer):
        result = scorer.score(admitted_days_ago(7), now=NOW)
        assert result.factors == []

    def test_partial_days_are_floored(self, scorer):
        result = scorer.score(admitted_days_ago(7, hours=23), now=NOW)
        assert result.factors == []

    def test_iso_string_with_z_suffix(self, scorer):
        admitted = (NOW - timedelta(days=10)).strftime("%Y-%m-%dT%H:%M:%SZ")
        result = scorer.score({"currentVisit": {"admissionDate": admitted}}, now=NOW)
        assert result.factors == ["Extended hospital stay (>7 days)"]

    def test_naive_timestamp_is_treated_as_utc(self):
        naive = datetime(2024, 5, 20, 12, 0, 0)
        assert stay_duration_days({"currentVisit": {"admissionDate": naive}}, NOW) == 12

    def test_future_admission_does_not_fire(self, scorer):
        result = scorer.score(admitted_days_ago(-3), now=NOW)
        assert result.factors == []


class TestClampAndTiers:

    def test_maximal_input_is_clamped(self, scorer):
        result = scorer.score(MAXIMAL_INPUT, now=NOW)

        assert result.raw_score == 130
        assert result.readmission_risk == 100
        assert result.risk_level == RiskLevel.HIGH

    def test_factor_order_follows_rule_order(self, scorer):
        result = scorer.score(MAXIMAL_INPUT, now=NOW)
        assert result.factors == [
            "Age over 65",
            "Multiple previous hospitalizations",
            "Diabetes",
            "Heart condition",
            "Hypertension",
            "Respiratory condition",
            "Multiple medications (>5)",
            "Extended hospital stay (>7 days)",
        ]

    @pytest.mark.parametrize("score,level", [
        (0, RiskLevel.LOW),
        (29, RiskLevel.LOW),
        (30, RiskLevel.MODERATE),
        (59, RiskLevel.MODERATE),
        (60, RiskLevel.HIGH),
        (100, RiskLevel.HIGH),
    ])
    def test_tier_boundaries(self, scorer, score, level):
        assert scorer.classify(score) == level

    def test_sixty_is_high(self, scorer):
        result = scorer.score(
            {
                "age": 70,
                "previousHospitalizations": [{}, {}, {}],
                "medicalHistory": {"conditions": ["diabetes"]},
            },
            now=NOW,
        )
        assert result.readmission_risk == 60
        assert result.risk_level == RiskLevel.HIGH

    def test_scoring_is_pure_for_fixed_now(self, scorer):
        first = scorer.score(MAXIMAL_INPUT, now=NOW)
        second = scorer.score(MAXIMAL_INPUT, now=NOW)
        assert first.to_dict() == second.to_dict()

    def test_to_dict_wire_format(self, scorer):
        payload = scorer.score({"age": 70}, now=NOW).to_dict()
        assert payload == {
            "readmissionRisk": 20,
            "riskLevel": "Low",
            "factors": ["Age over 65"],
            "notes": DISCLAIMER,
        }


class TestCustomRuleTables:
    """Rules are data: the scorer runs any table it is given."""

    def test_group_keeps_first_firing_rule(self):
        rules = [
            ScoringRule("X1", "Very old", 50, age_over(90), group="age"),
            ScoringRule("X2", "Old", 5, age_over(60), group="age"),
        ]
        scorer = RiskScorer(rules=rules)

        assert scorer.score({"age": 95}, now=NOW).factors == ["Very old"]
        assert scorer.score({"age": 70}, now=NOW).factors == ["Old"]

    def test_custom_ceiling_and_thresholds(self):
        scorer = RiskScorer(max_score=50, moderate_threshold=10, high_threshold=40)
        result = scorer.score(MAXIMAL_INPUT, now=NOW)
        assert result.readmission_risk == 50
        assert scorer.classify(10) == RiskLevel.MODERATE

    def test_describe_lists_every_rule(self, scorer):
        described = scorer.describe()
        assert [r["id"] for r in described] == [r.rule_id for r in DEFAULT_RULES]
        assert sum(r["weight"] for r in described) == 155
