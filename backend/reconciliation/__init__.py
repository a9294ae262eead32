"""
Reconciliation Engine Module

Reconciles the application's transaction ledger against the payment
gateway's records:
- Multi-stage matching (transaction id, reference, fuzzy reference, amount/date)
- Configurable tolerances per run
- Run tracking with per-transaction items and aggregate discrepancy totals
- Order/donation to payment linkage reconciliation
- Audit trail for all runs
"""

from reconciliation.strategy_registry import (
    TransactionSource,
    RunStatus,
    ItemStatus,
    MatchStrategy,
    StrategyConfig,
    StrategyRegistry,
    strategy_registry
)
from reconciliation.errors import (
    ReconciliationError,
    InvalidTransactionError,
    ReconciliationCancelled,
    RunAlreadyCompletedError,
    RunNotFoundError,
    GatewayError
)
from reconciliation.tolerance import TolerancePolicy, DateParsePolicy
from reconciliation.records import TransactionRecord
from reconciliation.matching_rules.ledger_rules import (
    LedgerMatchingRules,
    GatewayPool,
    MatchOutcome
)
from reconciliation.engine import (
    ReconciliationEngine,
    ReconciliationOutcome,
    ItemDraft,
    RunTotals,
    determine_status,
    shard_by_county,
    shard_by_day
)
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Registry
    'TransactionSource',
    'RunStatus',
    'ItemStatus',
    'MatchStrategy',
    'StrategyConfig',
    'StrategyRegistry',
    'strategy_registry',
    # Errors
    'ReconciliationError',
    'InvalidTransactionError',
    'ReconciliationCancelled',
    'RunAlreadyCompletedError',
    'RunNotFoundError',
    'GatewayError',
    # Matching
    'TolerancePolicy',
    'DateParsePolicy',
    'TransactionRecord',
    'LedgerMatchingRules',
    'GatewayPool',
    'MatchOutcome',
    # Engine
    'ReconciliationEngine',
    'ReconciliationOutcome',
    'ItemDraft',
    'RunTotals',
    'determine_status',
    'shard_by_county',
    'shard_by_day',
    # Service
    'ReconciliationService',
    # Router
    'reconciliation_router'
]
