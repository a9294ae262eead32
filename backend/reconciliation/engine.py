"""
Reconciliation Engine

Pure, synchronous reconciliation of an app ledger against a gateway ledger.

For each app transaction in input order the matching cascade either finds a
gateway transaction (two items, linked to each other) or records the app
transaction as unmatched. Gateway transactions left over become
unmatched_gateway items in input order. Identical inputs and policy always
produce identical items and totals.

Large ledgers can be split into shards (by county or by day) that never
share transactions and are reconciled in an executor.
"""

import logging
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from reconciliation.errors import ReconciliationCancelled
from reconciliation.matching_rules.ledger_rules import GatewayPool, LedgerMatchingRules, MatchOutcome
from reconciliation.records import TransactionRecord, coerce_records
from reconciliation.strategy_registry import (
    ItemStatus,
    MatchStrategy,
    RunStatus,
    TransactionSource,
    strategy_registry
)
from reconciliation.tolerance import TolerancePolicy

logger = logging.getLogger(__name__)

TransactionInput = Union[TransactionRecord, Mapping[str, Any]]


@dataclass
class ItemDraft:
    """
    An item as produced by the engine, before it is persisted.
    """
    position: int
    transaction_id: Optional[str]
    reference: Optional[str]
    source: TransactionSource
    amount: Decimal
    reconciliation_status: ItemStatus
    transaction_date: Optional[datetime] = None
    county: Optional[str] = None
    linked_transaction_id: Optional[str] = None
    match_strategy: Optional[MatchStrategy] = None
    discrepancy_amount: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(
        cls,
        position: int,
        record: TransactionRecord,
        status: ItemStatus,
        linked: Optional[TransactionRecord] = None,
        outcome: Optional[MatchOutcome] = None,
        discrepancy: Optional[Decimal] = None
    ) -> "ItemDraft":
        metadata = dict(record.metadata)
        if outcome is not None and outcome.similarity is not None:
            metadata["match_similarity"] = outcome.similarity
        return cls(
            position=position,
            transaction_id=record.transaction_id,
            reference=record.reference,
            source=record.source,
            amount=record.amount,
            reconciliation_status=status,
            transaction_date=record.parsed_date(),
            county=record.county,
            linked_transaction_id=linked.transaction_id if linked is not None else None,
            match_strategy=outcome.strategy if outcome is not None else None,
            discrepancy_amount=discrepancy,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "source": self.source.value,
            "amount": str(self.amount),
            "reconciliation_status": self.reconciliation_status.value,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "county": self.county,
            "linked_transaction_id": self.linked_transaction_id,
            "match_strategy": self.match_strategy.value if self.match_strategy else None,
            "discrepancy_amount": str(self.discrepancy_amount) if self.discrepancy_amount is not None else None,
            "metadata": self.metadata,
        }


@dataclass
class RunTotals:
    """
    Aggregate counters of a run.
    """
    total_matched: int = 0
    total_unmatched_app: int = 0
    total_unmatched_gateway: int = 0
    total_amount_mismatch: int = 0
    total_app_amount: Decimal = Decimal("0")
    total_gateway_amount: Decimal = Decimal("0")

    @property
    def total_discrepancy(self) -> Decimal:
        return self.total_app_amount - self.total_gateway_amount

    @property
    def discrepancy_count(self) -> int:
        return self.total_unmatched_app + self.total_unmatched_gateway + self.total_amount_mismatch

    @classmethod
    def from_items(cls, items: Iterable[ItemDraft]) -> "RunTotals":
        counts = {status: 0 for status in ItemStatus}
        app_amount = Decimal("0")
        gateway_amount = Decimal("0")
        for item in items:
            counts[item.reconciliation_status] += 1
            if item.source == TransactionSource.APP:
                app_amount += item.amount
            else:
                gateway_amount += item.amount

        # Pairs are written as two items
        return cls(
            total_matched=counts[ItemStatus.MATCHED] // 2,
            total_unmatched_app=counts[ItemStatus.UNMATCHED_APP],
            total_unmatched_gateway=counts[ItemStatus.UNMATCHED_GATEWAY],
            total_amount_mismatch=counts[ItemStatus.AMOUNT_MISMATCH] // 2,
            total_app_amount=app_amount,
            total_gateway_amount=gateway_amount,
        )

    def merge(self, other: "RunTotals") -> "RunTotals":
        return RunTotals(
            total_matched=self.total_matched + other.total_matched,
            total_unmatched_app=self.total_unmatched_app + other.total_unmatched_app,
            total_unmatched_gateway=self.total_unmatched_gateway + other.total_unmatched_gateway,
            total_amount_mismatch=self.total_amount_mismatch + other.total_amount_mismatch,
            total_app_amount=self.total_app_amount + other.total_app_amount,
            total_gateway_amount=self.total_gateway_amount + other.total_gateway_amount,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_matched": self.total_matched,
            "total_unmatched_app": self.total_unmatched_app,
            "total_unmatched_gateway": self.total_unmatched_gateway,
            "total_amount_mismatch": self.total_amount_mismatch,
            "total_app_amount": str(self.total_app_amount),
            "total_gateway_amount": str(self.total_gateway_amount),
            "total_discrepancy": str(self.total_discrepancy),
        }


@dataclass
class ReconciliationOutcome:
    """
    Items and totals of one engine pass.
    """
    items: List[ItemDraft]
    totals: RunTotals
    policy: TolerancePolicy
    shards: List[str] = field(default_factory=list)

    def items_with_status(self, status: ItemStatus) -> List[ItemDraft]:
        return [item for item in self.items if item.reconciliation_status == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totals": self.totals.to_dict(),
            "policy": self.policy.to_dict(),
            "shards": self.shards,
            "items": [item.to_dict() for item in self.items],
        }


def determine_status(totals: RunTotals, partial_threshold: Optional[int] = None) -> RunStatus:
    """
    Completed run status: partial when discrepancies exceed the threshold.

    No threshold means a completed run is always a success.
    """
    if partial_threshold is not None and totals.discrepancy_count > partial_threshold:
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS


# ==================== SHARD KEYS ====================

def shard_by_county(record: TransactionRecord) -> str:
    return record.county or ""


def shard_by_day(record: TransactionRecord) -> str:
    parsed = record.parsed_date()
    return parsed.date().isoformat() if parsed else ""


SHARD_KEYS: Dict[str, Callable[[TransactionRecord], str]] = {
    "county": shard_by_county,
    "day": shard_by_day,
}


class ReconciliationEngine:
    """
    Reconciles two ledgers under one tolerance policy.

    The engine holds no per-run state and can be pickled into worker
    processes.
    """

    def __init__(
        self,
        policy: Optional[TolerancePolicy] = None,
        cascade: Optional[Iterable[MatchStrategy]] = None
    ):
        self.policy = policy or TolerancePolicy()
        self.cascade: List[MatchStrategy] = (
            list(cascade) if cascade is not None else strategy_registry.get_cascade()
        )

    def reconcile(
        self,
        app_transactions: Iterable[TransactionInput],
        gateway_transactions: Iterable[TransactionInput],
        should_cancel: Optional[Callable[[], bool]] = None
    ) -> ReconciliationOutcome:
        """
        Reconcile app transactions against gateway transactions.

        Args:
            app_transactions: Records or mappings from the application ledger
            gateway_transactions: Records or mappings from the gateway ledger
            should_cancel: Polled before each app transaction

        Returns:
            ReconciliationOutcome with items in emission order

        Raises:
            InvalidTransactionError: an input cannot be turned into a record
            ReconciliationCancelled: should_cancel returned True
        """
        app = coerce_records(app_transactions, TransactionSource.APP)
        gateway = coerce_records(gateway_transactions, TransactionSource.GATEWAY)

        rules = LedgerMatchingRules(self.policy, self.cascade)
        pool = GatewayPool(gateway)
        items: List[ItemDraft] = []

        for app_record in app:
            if should_cancel is not None and should_cancel():
                raise ReconciliationCancelled(
                    f"Reconciliation cancelled after {len(items)} items"
                )

            outcome = rules.find_match(app_record, pool)
            if outcome is not None:
                items.append(ItemDraft.from_record(
                    len(items), app_record, ItemStatus.MATCHED, outcome.gateway, outcome
                ))
                items.append(ItemDraft.from_record(
                    len(items), outcome.gateway, ItemStatus.MATCHED, app_record, outcome
                ))
                continue

            mismatch = rules.find_amount_mismatch(app_record, pool)
            if mismatch is not None:
                discrepancy = app_record.amount - mismatch.gateway.amount
                items.append(ItemDraft.from_record(
                    len(items), app_record, ItemStatus.AMOUNT_MISMATCH,
                    mismatch.gateway, mismatch, discrepancy
                ))
                items.append(ItemDraft.from_record(
                    len(items), mismatch.gateway, ItemStatus.AMOUNT_MISMATCH,
                    app_record, mismatch, discrepancy
                ))
                continue

            items.append(ItemDraft.from_record(len(items), app_record, ItemStatus.UNMATCHED_APP))

        for _, gateway_record in pool.unconsumed():
            items.append(ItemDraft.from_record(len(items), gateway_record, ItemStatus.UNMATCHED_GATEWAY))

        totals = RunTotals.from_items(items)
        logger.debug(
            f"Reconciled {len(app)} app / {len(gateway)} gateway transactions: "
            f"{totals.total_matched} matched, {totals.discrepancy_count} discrepancies"
        )
        return ReconciliationOutcome(items=items, totals=totals, policy=self.policy)

    def reconcile_sharded(
        self,
        app_transactions: Iterable[TransactionInput],
        gateway_transactions: Iterable[TransactionInput],
        shard_key: Union[str, Callable[[TransactionRecord], str]],
        executor: Optional[Executor] = None,
        max_workers: Optional[int] = None,
        should_cancel: Optional[Callable[[], bool]] = None
    ) -> ReconciliationOutcome:
        """
        Reconcile disjoint shards of both ledgers in an executor.

        Shards are merged in the order their keys first appear (app ledger
        first, then gateway). A process pool is used unless an executor is
        given; a given executor is not shut down.

        Raises:
            InvalidTransactionError: an input cannot be turned into a record
            ReconciliationCancelled: should_cancel returned True between shards
            KeyError: unknown shard key name
        """
        key_fn = SHARD_KEYS[shard_key] if isinstance(shard_key, str) else shard_key
        app = coerce_records(app_transactions, TransactionSource.APP)
        gateway = coerce_records(gateway_transactions, TransactionSource.GATEWAY)

        shards: Dict[str, tuple] = {}
        for record in app:
            shards.setdefault(key_fn(record), ([], []))[0].append(record)
        for record in gateway:
            shards.setdefault(key_fn(record), ([], []))[1].append(record)

        if not shards:
            return ReconciliationOutcome(items=[], totals=RunTotals(), policy=self.policy)

        if executor is None:
            with ProcessPoolExecutor(max_workers=max_workers) as pool_executor:
                results = self._run_shards(pool_executor, shards, should_cancel)
        else:
            results = self._run_shards(executor, shards, should_cancel)

        items: List[ItemDraft] = []
        totals = RunTotals()
        for shard_outcome in results:
            offset = len(items)
            for item in shard_outcome.items:
                item.position += offset
                items.append(item)
            totals = totals.merge(shard_outcome.totals)

        logger.info(f"Reconciled {len(shards)} shards: {totals.total_matched} matched")
        return ReconciliationOutcome(
            items=items,
            totals=totals,
            policy=self.policy,
            shards=list(shards.keys())
        )

    def _run_shards(
        self,
        executor: Executor,
        shards: Dict[str, tuple],
        should_cancel: Optional[Callable[[], bool]]
    ) -> List[ReconciliationOutcome]:
        futures = [
            executor.submit(_reconcile_shard, self, app, gateway)
            for app, gateway in shards.values()
        ]
        results = []
        for future in futures:
            if should_cancel is not None and should_cancel():
                for pending in futures:
                    pending.cancel()
                raise ReconciliationCancelled(
                    f"Reconciliation cancelled after {len(results)} of {len(futures)} shards"
                )
            results.append(future.result())
        return results


def _reconcile_shard(
    engine: ReconciliationEngine,
    app: List[TransactionRecord],
    gateway: List[TransactionRecord]
) -> ReconciliationOutcome:
    return engine.reconcile(app, gateway)
