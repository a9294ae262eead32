"""
Tests for Payable Reconciliation

Event orders and donations against their payments and gateway notifications.

Run with: pytest tests/test_payable_reconciliation.py -v
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from database.payment_models import (
    DonationDB,
    EventOrderDB,
    PaymentDB,
    WebhookEventDB,
)
from reconciliation.errors import GatewayError
from reconciliation.gateway.status_client import GatewayTransactionStatus
from reconciliation.services.payable_reconciliation import (
    DonationReconciliationService,
    EventOrderReconciliationService,
    get_payable_service,
)


async def add(session, *rows):
    session.add_all(rows)
    await session.commit()
    return rows


class FakeStatusClient:
    """Returns canned gateway statuses by tracking id."""

    def __init__(self, statuses):
        self.statuses = statuses
        self.queried = []

    async def get_transaction_status(self, tracking_id):
        self.queried.append(tracking_id)
        status = self.statuses[tracking_id]
        if isinstance(status, Exception):
            raise status
        return GatewayTransactionStatus(tracking_id=tracking_id, status=status, amount=Decimal("0"),
                                        payment_method="M-Pesa")


class TestReconcileAll:
    """Pending payables follow their payments."""

    @pytest.mark.asyncio
    async def test_linked_paid_payment_marks_order_paid(self, db_session):
        payment = PaymentDB(payable_type="event_order", payable_id="o1", status="completed", amount=Decimal("500"))
        await add(db_session, payment)
        await add(db_session, EventOrderDB(id="o1", reference="ORD-1", total_amount=Decimal("500"),
                                           payment_id=payment.id))

        result = await EventOrderReconciliationService(db_session).reconcile_all()

        assert result.total_checked == 1
        assert result.marked_paid == 1
        order = await db_session.get(EventOrderDB, "o1")
        assert order.status == "paid"

    @pytest.mark.asyncio
    async def test_failed_and_refunded_payments_mirrored(self, db_session):
        failed = PaymentDB(payable_type="donation", payable_id="d1", status="failed", amount=Decimal("10"))
        refunded = PaymentDB(payable_type="donation", payable_id="d2", status="refunded", amount=Decimal("20"))
        await add(db_session, failed, refunded)
        await add(
            db_session,
            DonationDB(id="d1", reference="DON-1", amount=Decimal("10"), payment_id=failed.id),
            DonationDB(id="d2", reference="DON-2", amount=Decimal("20"), payment_id=refunded.id),
        )

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.marked_failed == 1
        assert result.marked_refunded == 1
        assert (await db_session.get(DonationDB, "d1")).status == "failed"
        assert (await db_session.get(DonationDB, "d2")).status == "refunded"

    @pytest.mark.asyncio
    async def test_pending_payment_leaves_payable_pending(self, db_session):
        payment = PaymentDB(payable_type="donation", payable_id="d1", status="pending", amount=Decimal("10"))
        await add(db_session, payment)
        await add(db_session, DonationDB(id="d1", reference="DON-1", amount=Decimal("10"), payment_id=payment.id))

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.reconciled == 1
        assert result.marked_paid == 0
        assert (await db_session.get(DonationDB, "d1")).status == "pending"

    @pytest.mark.asyncio
    async def test_unlinked_payment_is_relinked(self, db_session):
        await add(db_session, DonationDB(id="d1", reference="DON-1", amount=Decimal("25")))
        await add(db_session, PaymentDB(id="p1", payable_type="donation", payable_id="d1",
                                        status="paid", amount=Decimal("25")))

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.relinked == 1
        assert result.marked_paid == 1
        donation = await db_session.get(DonationDB, "d1")
        assert donation.payment_id == "p1"
        assert donation.status == "paid"

    @pytest.mark.asyncio
    async def test_payment_synthesized_from_processed_webhook(self, db_session):
        await add(db_session, EventOrderDB(id="o1", reference="ORD-9", total_amount=Decimal("750"), currency="KES"))
        await add(db_session, WebhookEventDB(
            id="w1",
            external_id="track-9",
            order_reference="ORD-9",
            status="processed",
            payload={"payment_method": "Visa"},
            processed_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        ))

        result = await EventOrderReconciliationService(db_session).reconcile_all()

        assert result.synthesized == 1
        assert result.marked_paid == 1
        order = await db_session.get(EventOrderDB, "o1")
        assert order.status == "paid"
        payment = await db_session.get(PaymentDB, order.payment_id)
        assert payment.payable_id == "o1"
        assert payment.external_reference == "track-9"
        assert payment.amount == Decimal("750")
        assert payment.method == "Visa"
        assert payment.meta["webhook_event_id"] == "w1"

    @pytest.mark.asyncio
    async def test_unprocessed_webhook_is_ignored(self, db_session):
        await add(db_session, EventOrderDB(id="o1", reference="ORD-9", total_amount=Decimal("750")))
        await add(db_session, WebhookEventDB(order_reference="ORD-9", status="received"))

        result = await EventOrderReconciliationService(db_session).reconcile_all()

        assert result.synthesized == 0
        assert (await db_session.get(EventOrderDB, "o1")).status == "pending"

    @pytest.mark.asyncio
    async def test_amount_difference_is_warned_not_blocking(self, db_session):
        payment = PaymentDB(payable_type="donation", payable_id="d1", status="paid", amount=Decimal("90"))
        await add(db_session, payment)
        await add(db_session, DonationDB(id="d1", reference="DON-1", amount=Decimal("100"), payment_id=payment.id))

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.marked_paid == 1
        assert len(result.amount_warnings) == 1
        assert result.amount_warnings[0]["reference"] == "DON-1"

    @pytest.mark.asyncio
    async def test_failed_commit_reports_nothing_for_payable(self, db_session, monkeypatch):
        await add(db_session, DonationDB(id="d1", reference="DON-1", amount=Decimal("25")))
        await add(db_session, PaymentDB(id="p1", payable_type="donation", payable_id="d1",
                                        status="paid", amount=Decimal("20")))

        async def broken_commit():
            raise RuntimeError("deadlock detected")

        monkeypatch.setattr(db_session, "commit", broken_commit)

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.reconciled == 0
        assert result.relinked == 0
        assert result.marked_paid == 0
        assert result.amount_warnings == []
        assert result.errors == [{"payable_id": "d1", "error": "deadlock detected"}]

    @pytest.mark.asyncio
    async def test_non_pending_payables_are_skipped(self, db_session):
        await add(db_session, DonationDB(id="d1", reference="DON-1", amount=Decimal("5"), status="cancelled"))

        result = await DonationReconciliationService(db_session).reconcile_all()

        assert result.total_checked == 0


class TestDiscrepancies:
    """Payables needing review."""

    @pytest.mark.asyncio
    async def test_detect_discrepancies(self, db_session):
        payment = PaymentDB(payable_type="event_order", payable_id="o2", status="paid", amount=Decimal("80"))
        await add(db_session, payment)
        await add(
            db_session,
            EventOrderDB(id="o1", reference="ORD-1", total_amount=Decimal("50"), status="paid"),
            EventOrderDB(id="o2", reference="ORD-2", total_amount=Decimal("100"), status="paid",
                         payment_id=payment.id),
        )

        discrepancies = await EventOrderReconciliationService(db_session).detect_discrepancies()

        assert [d["reference"] for d in discrepancies["missing_payments"]] == ["ORD-1"]
        mismatch = discrepancies["amount_mismatches"][0]
        assert mismatch["reference"] == "ORD-2"
        assert Decimal(mismatch["difference"]) == Decimal("20")


class TestSummaries:
    """Status and county aggregates."""

    @pytest.mark.asyncio
    async def test_summary(self, db_session):
        await add(
            db_session,
            DonationDB(reference="DON-1", amount=Decimal("100"), status="paid", county="Nairobi"),
            DonationDB(reference="DON-2", amount=Decimal("50"), status="pending", county="Nairobi"),
            DonationDB(reference="DON-3", amount=Decimal("30"), status="paid", county="Kisumu"),
        )

        summary = await DonationReconciliationService(db_session).get_summary()

        assert summary["total"] == 3
        assert summary["by_status"]["paid"]["count"] == 2
        assert summary["by_status"]["refunded"]["count"] == 0
        assert Decimal(summary["paid_revenue"]) == Decimal("130")
        nairobi = next(row for row in summary["by_county"] if row["county"] == "Nairobi")
        assert Decimal(nairobi["total_paid"]) == Decimal("100")
        assert Decimal(nairobi["total_pending"]) == Decimal("50")

    @pytest.mark.asyncio
    async def test_daily_summary(self, db_session):
        await add(
            db_session,
            DonationDB(reference="DON-1", amount=Decimal("100"), status="paid",
                       created_at=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)),
            DonationDB(reference="DON-2", amount=Decimal("40"), status="pending",
                       created_at=datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)),
            DonationDB(reference="DON-3", amount=Decimal("70"), status="paid",
                       created_at=datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)),
        )

        days = await DonationReconciliationService(db_session).get_daily_summary(date(2024, 3, 1), date(2024, 3, 2))

        assert len(days) == 1
        assert days[0]["date"] == "2024-03-01"
        assert days[0]["total"] == 2
        assert days[0]["paid"] == 1
        assert Decimal(days[0]["total_paid"]) == Decimal("100")


class TestGatewaySync:
    """Pending payments refreshed from the gateway."""

    @pytest.mark.asyncio
    async def test_sync_updates_statuses(self, db_session):
        await add(
            db_session,
            PaymentDB(id="p1", payable_type="donation", payable_id="d1", amount=Decimal("1"),
                      external_reference="t1"),
            PaymentDB(id="p2", payable_type="donation", payable_id="d2", amount=Decimal("1"),
                      external_reference="t2"),
            PaymentDB(id="p3", payable_type="donation", payable_id="d3", amount=Decimal("1"),
                      external_reference="t3"),
            PaymentDB(id="p4", payable_type="event_order", payable_id="o1", amount=Decimal("1"),
                      external_reference="t4"),
        )
        client = FakeStatusClient({
            "t1": "completed",
            "t2": "failed",
            "t3": GatewayError("unavailable"),
        })

        counts = await DonationReconciliationService(db_session).sync_payment_statuses(client)

        assert counts == {"checked": 3, "updated": 2, "errors": 1}
        assert "t4" not in client.queried
        paid = await db_session.get(PaymentDB, "p1")
        assert paid.status == "paid"
        assert paid.method == "M-Pesa"
        assert paid.paid_at is not None
        assert (await db_session.get(PaymentDB, "p2")).status == "failed"
        assert (await db_session.get(PaymentDB, "p3")).status == "pending"


class TestServiceLookup:
    """Payable names used by the API."""

    def test_known_names(self, db_session):
        assert isinstance(get_payable_service("event-orders", db_session), EventOrderReconciliationService)
        assert isinstance(get_payable_service("donations", db_session), DonationReconciliationService)

    def test_unknown_name(self, db_session):
        with pytest.raises(KeyError):
            get_payable_service("invoices", db_session)
