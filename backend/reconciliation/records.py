"""
Transaction Records

Normalised view of one money movement from either ledger. Records are built
from loosely-typed dictionaries (JSON payloads, CSV rows, gateway responses)
and validated on construction; dates are kept as given and parsed lazily so
a malformed date never rejects a record.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from dateutil.parser import parse as parse_datetime

from reconciliation.errors import InvalidTransactionError
from reconciliation.strategy_registry import TransactionSource

# Amounts are held at the scale and range they are stored with (Numeric(15, 2))
AMOUNT_QUANTUM = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999.99")

DATE_KEYS = ("date", "transaction_date", "created_at")


def normalize_identifier(value: Any) -> Optional[str]:
    """Strip identifiers; blank values become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_amount(value: Any) -> Decimal:
    """
    Parse a non-negative monetary amount, rounded half up to cents.

    Raises:
        InvalidTransactionError: missing, non-numeric, negative or too large
    """
    if value is None or isinstance(value, bool):
        raise InvalidTransactionError("Amount is required", field="amount", raw_value=value)
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        raise InvalidTransactionError(f"Amount is not numeric: {value!r}", field="amount", raw_value=value)
    if not amount.is_finite():
        raise InvalidTransactionError(f"Amount is not finite: {value!r}", field="amount", raw_value=value)
    if amount < 0:
        raise InvalidTransactionError(f"Amount cannot be negative: {value!r}", field="amount", raw_value=value)
    if amount > MAX_AMOUNT:
        raise InvalidTransactionError(f"Amount is too large: {value!r}", field="amount", raw_value=value)
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse a transaction date into a naive UTC datetime.

    Accepts datetimes, dates, epoch seconds and ISO or free-form strings.
    Returns None for a missing date.

    Raises:
        ValueError / OverflowError: the value cannot be read as a date
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time())
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        if not value.strip():
            return None
        parsed = parse_datetime(value.strip())
    else:
        raise ValueError(f"Unsupported date value: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class TransactionRecord:
    """
    One transaction from the app or gateway ledger.

    amount is always a non-negative Decimal; empty identifiers are None.
    """
    transaction_id: Optional[str]
    reference: Optional[str]
    amount: Decimal
    date: Any = None
    source: TransactionSource = TransactionSource.APP
    county: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not isinstance(self.amount, Decimal) or not self.amount.is_finite() or self.amount < 0:
            raise InvalidTransactionError(
                f"Amount must be a non-negative Decimal: {self.amount!r}",
                field="amount",
                raw_value=self.amount
            )

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        source: Union[TransactionSource, str] = TransactionSource.APP
    ) -> "TransactionRecord":
        """
        Build a record from a loosely-typed mapping.

        Raises:
            InvalidTransactionError: not a mapping or bad amount
        """
        if not isinstance(data, Mapping):
            raise InvalidTransactionError(f"Transaction must be an object, got {type(data).__name__}")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            metadata = {"value": metadata}

        raw_date = None
        for key in DATE_KEYS:
            if data.get(key) not in (None, ""):
                raw_date = data[key]
                break

        return cls(
            transaction_id=normalize_identifier(data.get("transaction_id")),
            reference=normalize_identifier(data.get("reference")),
            amount=parse_amount(data.get("amount")),
            date=raw_date,
            source=TransactionSource(source),
            county=normalize_identifier(data.get("county") or metadata.get("county")),
            metadata=dict(metadata),
        )

    def parsed_date(self) -> Optional[datetime]:
        """Parsed date, or None when missing or unreadable."""
        try:
            return parse_date(self.date)
        except (ValueError, OverflowError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        parsed = self.parsed_date()
        return {
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "amount": str(self.amount),
            "date": parsed.isoformat() if parsed else self.date,
            "source": self.source.value,
            "county": self.county,
            "metadata": self.metadata,
        }


def coerce_records(
    transactions: Iterable[Union[TransactionRecord, Mapping[str, Any]]],
    source: Union[TransactionSource, str]
) -> List[TransactionRecord]:
    """
    Turn a mixed list of records and mappings into records of one source.

    Raises:
        InvalidTransactionError: with the failing position in the message
    """
    source = TransactionSource(source)
    records = []
    for index, item in enumerate(transactions):
        if isinstance(item, TransactionRecord):
            records.append(item if item.source == source else _with_source(item, source))
            continue
        try:
            records.append(TransactionRecord.from_dict(item, source))
        except InvalidTransactionError as e:
            raise InvalidTransactionError(
                f"{source.value} transaction #{index}: {e.message}",
                field=e.field,
                raw_value=e.raw_value
            ) from e
    return records


def _with_source(record: TransactionRecord, source: TransactionSource) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=record.transaction_id,
        reference=record.reference,
        amount=record.amount,
        date=record.date,
        source=source,
        county=record.county,
        metadata=record.metadata,
    )
