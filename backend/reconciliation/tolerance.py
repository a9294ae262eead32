"""
Tolerance Policy

Immutable value object holding the thresholds a matcher uses to decide
whether two transactions agree. Updates return a new policy with the value
clamped to its valid range; unusable override values are ignored.
"""

import logging
import math
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class DateParsePolicy(str, Enum):
    """
    How a date that cannot be parsed compares.
    """
    FAIL_OPEN = "fail_open"       # treated as agreeing
    FAIL_CLOSED = "fail_closed"   # treated as disagreeing


# Override keys accepted by apply_overrides, with legacy aliases
OVERRIDE_ALIASES = {
    "amount_percentage_tolerance": "amount_percentage_tolerance",
    "amount_absolute_tolerance": "amount_absolute_tolerance",
    "date_tolerance_days": "date_tolerance_days",
    "date_tolerance": "date_tolerance_days",
    "fuzzy_match_threshold": "fuzzy_match_threshold",
    "date_parse_policy": "date_parse_policy",
    "flag_amount_mismatches": "flag_amount_mismatches",
}


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    return None


def _as_parse_policy(value: Any) -> Optional[DateParsePolicy]:
    if isinstance(value, DateParsePolicy):
        return value
    try:
        return DateParsePolicy(str(value).strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class TolerancePolicy:
    """
    Matching thresholds.

    amount_percentage_tolerance is a fraction (0.01 = 1%) of the larger
    amount; amount_absolute_tolerance is in currency units and checked first.
    """
    amount_percentage_tolerance: float = 0.01
    amount_absolute_tolerance: Decimal = Decimal("0")
    date_tolerance_days: int = 3
    fuzzy_match_threshold: int = 80
    date_parse_policy: DateParsePolicy = DateParsePolicy.FAIL_OPEN
    flag_amount_mismatches: bool = False

    # ==================== CLAMPED UPDATES ====================
    # Values that cannot be converted leave the policy unchanged.

    def _updated(self, field_name: str, raw: Any) -> Optional["TolerancePolicy"]:
        """Copy with one field converted and clamped, or None if raw is unusable."""
        if field_name == "amount_percentage_tolerance":
            value = _as_float(raw)
            if value is not None:
                value = min(1.0, max(0.0, value))
        elif field_name == "amount_absolute_tolerance":
            value = _as_decimal(raw)
            if value is not None:
                value = max(Decimal("0"), value)
        elif field_name == "date_tolerance_days":
            value = _as_int(raw)
            if value is not None:
                value = max(0, value)
        elif field_name == "fuzzy_match_threshold":
            value = _as_int(raw)
            if value is not None:
                value = min(100, max(0, value))
        elif field_name == "date_parse_policy":
            value = _as_parse_policy(raw)
        else:
            value = _as_bool(raw)

        if value is None:
            return None
        return replace(self, **{field_name: value})

    def _with(self, field_name: str, raw: Any) -> "TolerancePolicy":
        policy = self._updated(field_name, raw)
        if policy is None:
            logger.warning(f"Ignoring invalid tolerance value {field_name}={raw!r}")
            return self
        return policy

    def with_amount_percentage_tolerance(self, value: float) -> "TolerancePolicy":
        return self._with("amount_percentage_tolerance", value)

    def with_amount_absolute_tolerance(self, value) -> "TolerancePolicy":
        return self._with("amount_absolute_tolerance", value)

    def with_date_tolerance_days(self, value: int) -> "TolerancePolicy":
        return self._with("date_tolerance_days", value)

    def with_fuzzy_match_threshold(self, value: int) -> "TolerancePolicy":
        return self._with("fuzzy_match_threshold", value)

    def with_date_parse_policy(self, value) -> "TolerancePolicy":
        return self._with("date_parse_policy", value)

    def with_flag_amount_mismatches(self, value: bool) -> "TolerancePolicy":
        return self._with("flag_amount_mismatches", value)

    def apply_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "TolerancePolicy":
        """
        Return a policy with every usable override applied.

        Unknown keys and values that cannot be converted are logged and
        skipped; this never raises.
        """
        policy = self
        for key, raw in (overrides or {}).items():
            field_name = OVERRIDE_ALIASES.get(key)
            if field_name is None:
                logger.warning(f"Ignoring unknown tolerance override: {key}")
                continue
            if raw is None:
                continue

            updated = policy._updated(field_name, raw)
            if updated is None:
                logger.warning(f"Ignoring invalid tolerance override {key}={raw!r}")
            else:
                policy = updated

        return policy

    @classmethod
    def from_settings(cls, settings) -> "TolerancePolicy":
        """Base policy from RECON_* configuration."""
        return cls().apply_overrides(settings.tolerance_defaults())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_percentage_tolerance": self.amount_percentage_tolerance,
            "amount_absolute_tolerance": str(self.amount_absolute_tolerance),
            "date_tolerance_days": self.date_tolerance_days,
            "fuzzy_match_threshold": self.fuzzy_match_threshold,
            "date_parse_policy": self.date_parse_policy.value,
            "flag_amount_mismatches": self.flag_amount_mismatches,
        }
