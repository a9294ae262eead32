"""
Ledger Matching Rules

Finds the gateway transaction that settles an app transaction.

Cascade (first success wins, see strategy_registry):
1. transaction_id - same non-empty id, amounts agree
2. reference - same non-empty reference, first candidate in input order
   whose amount agrees
3. fuzzy_reference - reference similarity >= threshold, amounts and dates agree
4. amount_date - only when neither side has a reference

Comparators:
- amounts: absolute tolerance first, then percentage of the larger amount
- dates: whole-day distance; a missing date always agrees, an unparseable
  one follows the policy's date_parse_policy
- references: normalised Levenshtein similarity on 0-100

A matched gateway transaction is consumed and never offered again.
Nothing here raises.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from reconciliation.records import TransactionRecord, parse_date
from reconciliation.strategy_registry import MatchStrategy, strategy_registry
from reconciliation.tolerance import DateParsePolicy, TolerancePolicy


@dataclass
class MatchOutcome:
    """
    A gateway transaction selected for an app transaction.
    """
    strategy: MatchStrategy
    gateway_index: int
    gateway: TransactionRecord
    amounts_agree: bool = True
    similarity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "gateway_index": self.gateway_index,
            "gateway_transaction_id": self.gateway.transaction_id,
            "amounts_agree": self.amounts_agree,
            "similarity": self.similarity,
        }


class GatewayPool:
    """
    Gateway transactions of one run with their consumption state.

    Both indexes keep candidates in input order so that ties are broken by
    position.
    """

    def __init__(self, records: Iterable[TransactionRecord]):
        self.records: List[TransactionRecord] = list(records)
        self._consumed = [False] * len(self.records)
        self._by_transaction_id: Dict[str, List[int]] = {}
        self._by_reference: Dict[str, List[int]] = {}

        for index, record in enumerate(self.records):
            if record.transaction_id:
                self._by_transaction_id.setdefault(record.transaction_id, []).append(index)
            if record.reference:
                self._by_reference.setdefault(record.reference, []).append(index)

    def __len__(self) -> int:
        return len(self.records)

    def is_consumed(self, index: int) -> bool:
        return self._consumed[index]

    def consume(self, index: int):
        self._consumed[index] = True

    def by_transaction_id(self, transaction_id: Optional[str]) -> Iterator[Tuple[int, TransactionRecord]]:
        for index in self._by_transaction_id.get(transaction_id or "", []):
            if not self._consumed[index]:
                yield index, self.records[index]

    def by_reference(self, reference: Optional[str]) -> Iterator[Tuple[int, TransactionRecord]]:
        for index in self._by_reference.get(reference or "", []):
            if not self._consumed[index]:
                yield index, self.records[index]

    def unconsumed(self) -> Iterator[Tuple[int, TransactionRecord]]:
        for index, record in enumerate(self.records):
            if not self._consumed[index]:
                yield index, record

    @property
    def remaining(self) -> int:
        return self._consumed.count(False)


def reference_similarity(first: Optional[str], second: Optional[str]) -> int:
    """
    Similarity of two references on 0-100.

    int(100 * (maxLen - distance) / maxLen) over trimmed, lower-cased strings.
    """
    a = (first or "").strip().lower()
    b = (second or "").strip().lower()
    if a == b:
        return 100
    max_len = max(len(a), len(b))
    return int(100 * (max_len - Levenshtein.distance(a, b)) / max_len)


class LedgerMatchingRules:
    """
    Matching rules for app vs gateway ledgers.

    The cascade is read from the strategy registry when the rules are built,
    so a rules instance keeps one fixed order for its lifetime.
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

    # ==================== COMPARATORS ====================

    def amounts_match(self, first, second) -> bool:
        try:
            x = first if isinstance(first, Decimal) else Decimal(str(first))
            y = second if isinstance(second, Decimal) else Decimal(str(second))
        except (InvalidOperation, ValueError):
            return False
        if not (x.is_finite() and y.is_finite()):
            return False

        # Equal amounts, zeros included, always pass here
        difference = abs(x - y)
        if difference <= self.policy.amount_absolute_tolerance:
            return True

        largest = max(abs(x), abs(y))
        percentage = Decimal(str(self.policy.amount_percentage_tolerance)) * 100
        return difference / largest * 100 <= percentage

    def dates_match(self, first, second) -> bool:
        if first in (None, "") or second in (None, ""):
            return True
        try:
            a = parse_date(first)
            b = parse_date(second)
        except (ValueError, OverflowError, TypeError):
            return self.policy.date_parse_policy == DateParsePolicy.FAIL_OPEN

        if a is None or b is None:
            return True
        return abs(a - b).days <= self.policy.date_tolerance_days

    # ==================== CASCADE ====================

    def find_match(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        """
        Run the cascade for one app transaction.

        The returned gateway transaction is consumed from the pool.
        """
        for strategy in self.cascade:
            outcome = self._stages[strategy](self, app, pool)
            if outcome is not None:
                pool.consume(outcome.gateway_index)
                return outcome
        return None

    def find_amount_mismatch(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        """
        Gateway transaction sharing the app transaction id whose amount
        disagrees. Only used when flag_amount_mismatches is on; consumes.
        """
        if not self.policy.flag_amount_mismatches or not app.transaction_id:
            return None
        for index, candidate in pool.by_transaction_id(app.transaction_id):
            if not self.amounts_match(app.amount, candidate.amount):
                pool.consume(index)
                return MatchOutcome(
                    strategy=MatchStrategy.TRANSACTION_ID,
                    gateway_index=index,
                    gateway=candidate,
                    amounts_agree=False
                )
        return None

    def _match_transaction_id(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        if not app.transaction_id:
            return None
        for index, candidate in pool.by_transaction_id(app.transaction_id):
            if self.amounts_match(app.amount, candidate.amount):
                return MatchOutcome(MatchStrategy.TRANSACTION_ID, index, candidate)
        return None

    def _match_reference(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        if not app.reference:
            return None
        for index, candidate in pool.by_reference(app.reference):
            if self.amounts_match(app.amount, candidate.amount):
                return MatchOutcome(MatchStrategy.REFERENCE, index, candidate)
        return None

    def _match_fuzzy_reference(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        if not app.reference:
            return None
        threshold = self.policy.fuzzy_match_threshold
        for index, candidate in pool.unconsumed():
            if not candidate.reference:
                continue
            similarity = reference_similarity(app.reference, candidate.reference)
            if (
                similarity >= threshold
                and self.amounts_match(app.amount, candidate.amount)
                and self.dates_match(app.date, candidate.date)
            ):
                return MatchOutcome(MatchStrategy.FUZZY_REFERENCE, index, candidate, similarity=similarity)
        return None

    def _match_amount_date(self, app: TransactionRecord, pool: GatewayPool) -> Optional[MatchOutcome]:
        if app.reference:
            return None
        for index, candidate in pool.unconsumed():
            if candidate.reference:
                continue
            if self.amounts_match(app.amount, candidate.amount) and self.dates_match(app.date, candidate.date):
                return MatchOutcome(MatchStrategy.AMOUNT_DATE, index, candidate)
        return None

    _stages = {
        MatchStrategy.TRANSACTION_ID: _match_transaction_id,
        MatchStrategy.REFERENCE: _match_reference,
        MatchStrategy.FUZZY_REFERENCE: _match_fuzzy_reference,
        MatchStrategy.AMOUNT_DATE: _match_amount_date,
    }
