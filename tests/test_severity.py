"""
Tests for discrepancy severity classification
"""

import pytest

from app.services.severity import (
    SeverityPolicy,
    default_field_classifier,
    field_tokens,
    max_severity,
)


class TestDefaultFieldClassifier:

    def test_case_and_whitespace_only_is_low(self):
        assert default_field_classifier("mentor_name", "Ahmad  Zaki", "ahmad zaki ") == "low"

    def test_financial_field_is_critical(self):
        assert default_field_classifier("payment_amount", "120", "100") == "critical"

    def test_identity_field_is_high(self):
        assert default_field_classifier("mentorEmail", "a@x.com", "b@x.com") == "high"

    def test_other_field_is_medium(self):
        assert default_field_classifier("notes", "met twice", "met once") == "medium"

    def test_blank_against_value_is_not_cosmetic(self):
        assert default_field_classifier("notes", "", "something") == "medium"


class TestFieldTokens:

    def test_splits_snake_camel_and_spaces(self):
        assert field_tokens("mentor_email") == {"mentor", "email"}
        assert field_tokens("mentorEmail") == {"mentor", "email"}
        assert field_tokens("Mentor Email") == {"mentor", "email"}


class TestMaxSeverity:

    def test_picks_highest(self):
        assert max_severity(["low", "critical", "medium"]) == "critical"

    def test_empty_uses_default(self):
        assert max_severity([]) == "low"


class TestSeverityPolicy:

    def test_absence_rules(self):
        policy = SeverityPolicy()
        assert policy.classify_absence("reports", "missing_in_supabase") == "high"
        assert policy.classify_absence("reports", "missing_in_sheets") == "medium"

    def test_table_override_only_applies_to_that_table(self):
        policy = SeverityPolicy()
        policy.register("sessions", lambda field, a, b: "critical")

        assert policy.classify_field("sessions", "notes", "a", "b") == "critical"
        assert policy.classify_field("reports", "notes", "a", "b") == "medium"

    def test_unknown_severity_from_classifier_rejected(self):
        policy = SeverityPolicy(overrides={"reports": lambda field, a, b: "urgent"})

        with pytest.raises(ValueError):
            policy.classify_field("reports", "notes", "a", "b")
