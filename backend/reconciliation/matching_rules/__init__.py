"""
Matching Rules Module
"""

from .ledger_rules import (
    LedgerMatchingRules,
    GatewayPool,
    MatchOutcome,
    reference_similarity
)

__all__ = ["LedgerMatchingRules", "GatewayPool", "MatchOutcome", "reference_similarity"]
