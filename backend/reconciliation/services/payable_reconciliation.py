"""
Payable Reconciliation Service

Keeps local payables (event orders, donations) consistent with the payments
that settle them. Narrower than the ledger engine: linkage is 1:1 through
payable.payment_id, so there is no fuzzy matching.

Per pending payable:
- Linked payment paid -> payable paid; failed/refunded mirrored
- Amount differences are logged and reported, never blocking
- No linked payment -> relink an existing payment row for the payable, or
  synthesise the payment from a processed gateway notification

Every payable commits or rolls back on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.payment_models import (
    PaymentDB, EventOrderDB, DonationDB, WebhookEventDB,
    PayableStatus, PaymentStatus, WebhookEventStatus
)
from reconciliation.errors import GatewayError
from reconciliation.gateway.status_client import GatewayStatusClient
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class PayableReconciliationResult:
    """Result of reconciling all pending payables of one type."""
    payable_type: str
    total_checked: int = 0
    reconciled: int = 0
    marked_paid: int = 0
    marked_failed: int = 0
    marked_refunded: int = 0
    relinked: int = 0
    synthesized: int = 0
    amount_warnings: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payable_type": self.payable_type,
            "total_checked": self.total_checked,
            "reconciled": self.reconciled,
            "marked_paid": self.marked_paid,
            "marked_failed": self.marked_failed,
            "marked_refunded": self.marked_refunded,
            "relinked": self.relinked,
            "synthesized": self.synthesized,
            "amount_warnings": self.amount_warnings,
            "errors": self.errors,
        }


class PayableReconciliationService:
    """
    Reconciles one payable type against payments and gateway notifications.

    Subclasses name the model, the payable type stored on payments and the
    column holding the amount due.
    """

    model: Type = None
    payable_type: str = ""
    amount_attr: str = "amount"

    def __init__(self, db: AsyncSession):
        self.db = db

    def _amount(self, payable) -> Decimal:
        return Decimal(str(getattr(payable, self.amount_attr) or 0))

    async def _load(self, payable_id: str):
        result = await self.db.execute(
            select(self.model)
            .options(selectinload(self.model.payment))
            .where(self.model.id == payable_id)
        )
        return result.scalar_one_or_none()

    # ==================== RECONCILIATION ====================

    async def reconcile_all(self) -> PayableReconciliationResult:
        """Reconcile every pending payable. Failures are counted, not raised."""
        result = PayableReconciliationResult(payable_type=self.payable_type)

        pending = await self.db.execute(
            select(self.model.id)
            .where(self.model.status == PayableStatus.PENDING.value)
            .order_by(self.model.created_at)
        )
        payable_ids = list(pending.scalars().all())
        result.total_checked = len(payable_ids)

        for payable_id in payable_ids:
            try:
                payable = await self._load(payable_id)
                if payable is None:
                    continue
                # Counted into the result only once the commit succeeds
                changes = PayableReconciliationResult(payable_type=self.payable_type)
                action = await self._reconcile_payable(payable, changes)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error(f"{self.payable_type} {payable_id} reconciliation error: {e}")
                capture_exception(e, payable_type=self.payable_type, payable_id=payable_id)
                result.errors.append({"payable_id": payable_id, "error": str(e)})
                continue

            result.reconciled += 1
            result.relinked += changes.relinked
            result.synthesized += changes.synthesized
            result.amount_warnings.extend(changes.amount_warnings)
            if action == PayableStatus.PAID.value:
                result.marked_paid += 1
            elif action == PayableStatus.FAILED.value:
                result.marked_failed += 1
            elif action == PayableStatus.REFUNDED.value:
                result.marked_refunded += 1

        logger.info(
            f"Reconciled {result.reconciled}/{result.total_checked} pending {self.payable_type} payables "
            f"({len(result.errors)} errors)"
        )
        return result

    async def _reconcile_payable(self, payable, result: PayableReconciliationResult) -> Optional[str]:
        """Apply payment state to one payable. Returns the new status, if changed."""
        payment = payable.payment

        if payment is None:
            payment = await self._find_existing_payment(payable)
            if payment is not None:
                payable.payment_id = payment.id
                payable.payment = payment
                result.relinked += 1
                logger.info(f"Relinked {self.payable_type} {payable.id} to payment {payment.id}")

        if payment is None:
            event = await self._find_processed_webhook(payable)
            if event is None:
                return None
            payment = self._payment_from_webhook(payable, event)
            self.db.add(payment)
            await self.db.flush()
            payable.payment_id = payment.id
            payable.payment = payment
            payable.status = PayableStatus.PAID.value
            result.synthesized += 1
            logger.info(f"Created payment {payment.id} for {self.payable_type} {payable.id} from webhook {event.id}")
            return PayableStatus.PAID.value

        payable_amount = self._amount(payable)
        if Decimal(str(payment.amount)) != payable_amount:
            warning = {
                "payable_id": payable.id,
                "reference": payable.reference,
                "payable_amount": str(payable_amount),
                "payment_amount": str(payment.amount),
            }
            logger.warning(f"{self.payable_type} amount mismatch", extra={"details": warning})
            result.amount_warnings.append(warning)

        if payment.is_paid:
            payable.status = PayableStatus.PAID.value
        elif payment.status == PaymentStatus.FAILED.value:
            payable.status = PayableStatus.FAILED.value
        elif payment.status == PaymentStatus.REFUNDED.value:
            payable.status = PayableStatus.REFUNDED.value
        else:
            return None
        return payable.status

    async def _find_existing_payment(self, payable) -> Optional[PaymentDB]:
        """Latest payment row recorded for this payable, paid ones first."""
        result = await self.db.execute(
            select(PaymentDB)
            .where(
                PaymentDB.payable_type == self.payable_type,
                PaymentDB.payable_id == payable.id
            )
            .order_by(PaymentDB.created_at.desc())
        )
        payments = list(result.scalars().all())
        for payment in payments:
            if payment.is_paid:
                return payment
        return payments[0] if payments else None

    async def _find_processed_webhook(self, payable) -> Optional[WebhookEventDB]:
        result = await self.db.execute(
            select(WebhookEventDB)
            .where(
                WebhookEventDB.order_reference == payable.reference,
                WebhookEventDB.status == WebhookEventStatus.PROCESSED.value
            )
            .order_by(WebhookEventDB.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _payment_from_webhook(self, payable, event: WebhookEventDB) -> PaymentDB:
        payload = event.payload or {}
        return PaymentDB(
            payable_type=self.payable_type,
            payable_id=payable.id,
            gateway="pesapal",
            method=payload.get("payment_method"),
            status=PaymentStatus.PAID.value,
            amount=self._amount(payable),
            currency=payable.currency,
            external_reference=event.external_id,
            order_reference=event.order_reference,
            receipt_url=payload.get("receipt_url"),
            paid_at=event.processed_at or datetime.now(timezone.utc),
            meta={**payload, "webhook_event_id": event.id},
        )

    # ==================== DISCREPANCIES ====================

    async def detect_discrepancies(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Payables needing operator review:
        - missing_payments: marked paid with no linked payment
        - amount_mismatches: linked payment amount differs from amount due
        """
        discrepancies: Dict[str, List[Dict[str, Any]]] = {
            "missing_payments": [],
            "amount_mismatches": [],
        }

        missing = await self.db.execute(
            select(self.model)
            .where(
                self.model.status == PayableStatus.PAID.value,
                self.model.payment_id.is_(None)
            )
            .order_by(self.model.created_at)
        )
        for payable in missing.scalars().all():
            discrepancies["missing_payments"].append({
                "payable_id": payable.id,
                "reference": payable.reference,
                "amount": str(self._amount(payable)),
            })

        linked = await self.db.execute(
            select(self.model)
            .options(selectinload(self.model.payment))
            .where(self.model.payment_id.is_not(None))
            .order_by(self.model.created_at)
        )
        for payable in linked.scalars().all():
            payment = payable.payment
            if payment is None or payment.payable_type != self.payable_type:
                continue
            payable_amount = self._amount(payable)
            payment_amount = Decimal(str(payment.amount))
            if payable_amount != payment_amount:
                discrepancies["amount_mismatches"].append({
                    "payable_id": payable.id,
                    "reference": payable.reference,
                    "payable_amount": str(payable_amount),
                    "payment_amount": str(payment_amount),
                    "difference": str(payable_amount - payment_amount),
                })

        return discrepancies

    # ==================== SUMMARIES ====================

    async def get_summary(self) -> Dict[str, Any]:
        """Counts and amounts per status, and paid/pending totals per county."""
        amount_col = getattr(self.model, self.amount_attr)

        rows = await self.db.execute(
            select(self.model.status, func.count(self.model.id), func.coalesce(func.sum(amount_col), 0))
            .group_by(self.model.status)
        )
        by_status = {
            status.value: {"count": 0, "amount": "0"} for status in PayableStatus
        }
        total = 0
        for status, count, amount in rows.all():
            by_status[status] = {"count": count, "amount": str(Decimal(str(amount)))}
            total += count

        county_rows = await self.db.execute(
            select(
                self.model.county,
                func.count(self.model.id),
                func.sum(case((self.model.status == PayableStatus.PAID.value, amount_col), else_=0)),
                func.sum(case((self.model.status == PayableStatus.PENDING.value, amount_col), else_=0)),
            )
            .group_by(self.model.county)
            .order_by(self.model.county)
        )
        by_county = [
            {
                "county": county,
                "total": count,
                "total_paid": str(Decimal(str(paid or 0))),
                "total_pending": str(Decimal(str(pending or 0))),
            }
            for county, count, paid, pending in county_rows.all()
        ]

        return {
            "payable_type": self.payable_type,
            "total": total,
            "by_status": by_status,
            "paid_revenue": by_status[PayableStatus.PAID.value]["amount"],
            "by_county": by_county,
        }

    async def get_daily_summary(self, start: date, end: date) -> List[Dict[str, Any]]:
        """Paid counts and totals per creation day within [start, end]."""
        amount_col = getattr(self.model, self.amount_attr)
        day = func.date(self.model.created_at)
        rows = await self.db.execute(
            select(
                day,
                func.count(self.model.id),
                func.sum(case((self.model.status == PayableStatus.PAID.value, 1), else_=0)),
                func.sum(case((self.model.status == PayableStatus.PAID.value, amount_col), else_=0)),
            )
            .where(day >= start.isoformat(), day <= end.isoformat())
            .group_by(day)
            .order_by(day)
        )
        return [
            {
                "date": str(row_day),
                "total": count,
                "paid": int(paid or 0),
                "total_paid": str(Decimal(str(total_paid or 0))),
            }
            for row_day, count, paid, total_paid in rows.all()
        ]

    # ==================== GATEWAY SYNC ====================

    async def sync_payment_statuses(self, client: GatewayStatusClient) -> Dict[str, int]:
        """
        Refresh pending payments of this payable type from the gateway.

        Gateway errors are logged and counted per payment.
        """
        counts = {"checked": 0, "updated": 0, "errors": 0}
        result = await self.db.execute(
            select(PaymentDB.id, PaymentDB.external_reference)
            .where(
                PaymentDB.payable_type == self.payable_type,
                PaymentDB.status == PaymentStatus.PENDING.value,
                PaymentDB.external_reference.is_not(None)
            )
            .order_by(PaymentDB.created_at)
        )

        for payment_id, tracking_id in result.all():
            counts["checked"] += 1
            try:
                status = await client.get_transaction_status(tracking_id)
            except GatewayError as e:
                counts["errors"] += 1
                logger.warning(f"Gateway status query failed for payment {payment_id}: {e}")
                continue

            if status.is_completed:
                new_status = PaymentStatus.PAID.value
            elif status.is_failed:
                new_status = PaymentStatus.FAILED.value
            elif status.is_reversed:
                new_status = PaymentStatus.REFUNDED.value
            else:
                continue

            try:
                payment = await self.db.get(PaymentDB, payment_id)
                payment.status = new_status
                payment.method = payment.method or status.payment_method
                if new_status == PaymentStatus.PAID.value:
                    payment.paid_at = payment.paid_at or status.paid_at or datetime.now(timezone.utc)
                await self.db.commit()
                counts["updated"] += 1
            except Exception as e:
                await self.db.rollback()
                counts["errors"] += 1
                logger.error(f"Failed to update payment {payment_id}: {e}")

        logger.info(f"Synced {self.payable_type} payment statuses: {counts}")
        return counts


class EventOrderReconciliationService(PayableReconciliationService):
    """Event ticket orders."""
    model = EventOrderDB
    payable_type = "event_order"
    amount_attr = "total_amount"


class DonationReconciliationService(PayableReconciliationService):
    """Donations."""
    model = DonationDB
    payable_type = "donation"
    amount_attr = "amount"


PAYABLE_SERVICES: Dict[str, Type[PayableReconciliationService]] = {
    "event-orders": EventOrderReconciliationService,
    "donations": DonationReconciliationService,
}


def get_payable_service(name: str, db: AsyncSession) -> PayableReconciliationService:
    """
    Raises:
        KeyError: unknown payable name
    """
    return PAYABLE_SERVICES[name](db)
