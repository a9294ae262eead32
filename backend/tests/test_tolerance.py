"""
Unit Tests for the Tolerance Policy

Run with: pytest tests/test_tolerance.py -v
"""

from decimal import Decimal

import pytest

from reconciliation.tolerance import TolerancePolicy, DateParsePolicy


class TestTolerancePolicyDefaults:
    """Default values and immutability."""

    def test_defaults(self):
        policy = TolerancePolicy()
        assert policy.amount_percentage_tolerance == 0.01
        assert policy.amount_absolute_tolerance == Decimal("0")
        assert policy.date_tolerance_days == 3
        assert policy.fuzzy_match_threshold == 80
        assert policy.date_parse_policy == DateParsePolicy.FAIL_OPEN
        assert policy.flag_amount_mismatches is False

    def test_policy_is_immutable(self):
        policy = TolerancePolicy()
        with pytest.raises(Exception):
            policy.date_tolerance_days = 10

    def test_updates_return_new_policy(self):
        policy = TolerancePolicy()
        updated = policy.with_date_tolerance_days(7)

        assert updated.date_tolerance_days == 7
        assert policy.date_tolerance_days == 3


class TestClamping:
    """Out-of-range values are clamped, never rejected."""

    def test_percentage_clamped_to_unit_interval(self):
        assert TolerancePolicy().with_amount_percentage_tolerance(-0.5).amount_percentage_tolerance == 0.0
        assert TolerancePolicy().with_amount_percentage_tolerance(3).amount_percentage_tolerance == 1.0

    def test_absolute_never_negative(self):
        policy = TolerancePolicy().with_amount_absolute_tolerance("-5")
        assert policy.amount_absolute_tolerance == Decimal("0")

    def test_days_never_negative(self):
        assert TolerancePolicy().with_date_tolerance_days(-2).date_tolerance_days == 0

    def test_fuzzy_threshold_clamped(self):
        assert TolerancePolicy().with_fuzzy_match_threshold(150).fuzzy_match_threshold == 100
        assert TolerancePolicy().with_fuzzy_match_threshold(-1).fuzzy_match_threshold == 0

    def test_string_values_converted(self):
        policy = TolerancePolicy().with_fuzzy_match_threshold("95").with_date_parse_policy(" FAIL_CLOSED ")

        assert policy.fuzzy_match_threshold == 95
        assert policy.date_parse_policy == DateParsePolicy.FAIL_CLOSED

    @pytest.mark.parametrize("setter, value", [
        ("with_amount_percentage_tolerance", "lots"),
        ("with_amount_percentage_tolerance", float("nan")),
        ("with_amount_absolute_tolerance", "abc"),
        ("with_amount_absolute_tolerance", None),
        ("with_date_tolerance_days", float("inf")),
        ("with_date_tolerance_days", []),
        ("with_fuzzy_match_threshold", "abc"),
        ("with_date_parse_policy", "bogus"),
        ("with_flag_amount_mismatches", "maybe"),
    ])
    def test_unusable_values_leave_policy_unchanged(self, setter, value, caplog):
        policy = TolerancePolicy()

        assert getattr(policy, setter)(value) == policy
        assert "Ignoring invalid tolerance value" in caplog.text


class TestApplyOverrides:
    """Merging per-run overrides."""

    def test_applies_known_keys(self):
        policy = TolerancePolicy().apply_overrides({
            "amount_percentage_tolerance": "0.05",
            "amount_absolute_tolerance": 2,
            "date_tolerance_days": "5",
            "fuzzy_match_threshold": 90,
        })

        assert policy.amount_percentage_tolerance == 0.05
        assert policy.amount_absolute_tolerance == Decimal("2")
        assert policy.date_tolerance_days == 5
        assert policy.fuzzy_match_threshold == 90

    def test_legacy_date_tolerance_alias(self):
        policy = TolerancePolicy().apply_overrides({"date_tolerance": 1})
        assert policy.date_tolerance_days == 1

    def test_invalid_values_are_ignored(self, caplog):
        policy = TolerancePolicy().apply_overrides({
            "amount_percentage_tolerance": "lots",
            "date_tolerance_days": None,
            "fuzzy_match_threshold": float("nan"),
        })

        assert policy == TolerancePolicy()
        assert "Ignoring invalid tolerance override" in caplog.text

    def test_unknown_keys_are_ignored(self, caplog):
        policy = TolerancePolicy().apply_overrides({"currency": "KES"})

        assert policy == TolerancePolicy()
        assert "unknown tolerance override" in caplog.text

    def test_none_overrides(self):
        assert TolerancePolicy().apply_overrides(None) == TolerancePolicy()

    def test_date_parse_policy_and_flag(self):
        policy = TolerancePolicy().apply_overrides({
            "date_parse_policy": "FAIL_CLOSED",
            "flag_amount_mismatches": "true",
        })

        assert policy.date_parse_policy == DateParsePolicy.FAIL_CLOSED
        assert policy.flag_amount_mismatches is True

    def test_from_settings(self, settings):
        settings.RECON_FUZZY_MATCH_THRESHOLD = 70
        settings.RECON_DATE_PARSE_POLICY = "fail_closed"

        policy = TolerancePolicy.from_settings(settings)

        assert policy.fuzzy_match_threshold == 70
        assert policy.date_parse_policy == DateParsePolicy.FAIL_CLOSED

    def test_to_dict(self):
        data = TolerancePolicy().to_dict()
        assert data == {
            "amount_percentage_tolerance": 0.01,
            "amount_absolute_tolerance": "0",
            "date_tolerance_days": 3,
            "fuzzy_match_threshold": 80,
            "date_parse_policy": "fail_open",
            "flag_amount_mismatches": False,
        }
