"""
Reconciliation Strategy Registry

Central registry of the matching strategies the engine tries for every
app transaction, in strict priority order:

- TRANSACTION_ID: same gateway transaction id, amounts agree
- REFERENCE: same reference string, amounts agree
- FUZZY_REFERENCE: similar references, amounts and dates agree
- AMOUNT_DATE: no reference on either side, amounts and dates agree

Also holds the status vocabularies shared by runs and items.
"""

from enum import Enum
from typing import Dict, Any, List, Optional
from dataclasses import dataclass


class TransactionSource(str, Enum):
    """
    The ledger a transaction comes from.
    """
    APP = "app"
    GATEWAY = "gateway"


class RunStatus(str, Enum):
    """
    Lifecycle of a reconciliation run.
    """
    RUNNING = "running"     # Created, engine not finished
    SUCCESS = "success"     # Completed, discrepancies within threshold
    PARTIAL = "partial"     # Completed, discrepancies above threshold
    FAILED = "failed"       # Unrecoverable processing error


class ItemStatus(str, Enum):
    """
    Outcome recorded for one transaction in a run.
    """
    MATCHED = "matched"
    UNMATCHED_APP = "unmatched_app"
    UNMATCHED_GATEWAY = "unmatched_gateway"
    AMOUNT_MISMATCH = "amount_mismatch"


class MatchStrategy(str, Enum):
    """
    Stages of the matching cascade.
    """
    TRANSACTION_ID = "transaction_id"
    REFERENCE = "reference"
    FUZZY_REFERENCE = "fuzzy_reference"
    AMOUNT_DATE = "amount_date"


@dataclass
class StrategyConfig:
    """
    Configuration for a matching strategy.
    """
    strategy: MatchStrategy
    display_name: str
    priority: int  # Lower = tried first
    enabled: bool
    checks_amount: bool
    checks_date: bool
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "display_name": self.display_name,
            "priority": self.priority,
            "enabled": self.enabled,
            "checks_amount": self.checks_amount,
            "checks_date": self.checks_date,
            "description": self.description
        }


class StrategyRegistry:
    """
    Central registry for matching strategies.

    Priorities are fixed; strategies can only be switched on or off, so the
    cascade order never changes implicitly.
    """

    @staticmethod
    def _defaults() -> Dict[MatchStrategy, StrategyConfig]:
        return {
            MatchStrategy.TRANSACTION_ID: StrategyConfig(
                strategy=MatchStrategy.TRANSACTION_ID,
                display_name="Gateway transaction id",
                priority=1,
                enabled=True,
                checks_amount=True,
                checks_date=False,
                description="Same non-empty transaction id on both sides"
            ),
            MatchStrategy.REFERENCE: StrategyConfig(
                strategy=MatchStrategy.REFERENCE,
                display_name="Exact reference",
                priority=2,
                enabled=True,
                checks_amount=True,
                checks_date=False,
                description="Same non-empty reference, first candidate in input order"
            ),
            MatchStrategy.FUZZY_REFERENCE: StrategyConfig(
                strategy=MatchStrategy.FUZZY_REFERENCE,
                display_name="Fuzzy reference",
                priority=3,
                enabled=True,
                checks_amount=True,
                checks_date=True,
                description="Reference similarity at or above the fuzzy threshold"
            ),
            MatchStrategy.AMOUNT_DATE: StrategyConfig(
                strategy=MatchStrategy.AMOUNT_DATE,
                display_name="Amount and date",
                priority=4,
                enabled=True,
                checks_amount=True,
                checks_date=True,
                description="Only for transactions without a reference on either side"
            ),
        }

    def __init__(self):
        self._configs = self._defaults()

    def get_config(self, strategy: MatchStrategy) -> Optional[StrategyConfig]:
        """Get configuration for a strategy."""
        return self._configs.get(strategy)

    def get_all_configs(self) -> List[StrategyConfig]:
        """Get all strategy configurations in priority order."""
        return sorted(self._configs.values(), key=lambda cfg: cfg.priority)

    def get_cascade(self) -> List[MatchStrategy]:
        """Enabled strategies in the order the matcher tries them."""
        return [cfg.strategy for cfg in self.get_all_configs() if cfg.enabled]

    def is_enabled(self, strategy: MatchStrategy) -> bool:
        cfg = self._configs.get(strategy)
        return cfg.enabled if cfg else False

    def set_enabled(self, strategy: MatchStrategy, enabled: bool):
        """Switch a strategy on or off."""
        cfg = self._configs.get(strategy)
        if cfg:
            cfg.enabled = enabled

    def reset(self):
        """Restore the default configuration."""
        self._configs = self._defaults()

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {
            cfg.strategy.value: cfg.to_dict()
            for cfg in self.get_all_configs()
        }


# Global registry instance
strategy_registry = StrategyRegistry()
