"""
Ledger Reconciliation - Payable and Payment Database Models

Local entities reconciled by the order/payment linkage reconciler.

Tables:
- payments: Gateway payments settling a payable
- event_orders: Ticket orders for events
- donations: Donations, optionally scoped to a county
- webhook_events: Gateway notifications (IPN) as received
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Integer, DateTime,
    ForeignKey, JSON, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PayableStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WebhookEventStatus(str, PyEnum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


PAID_PAYMENT_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value)


class PaymentDB(Base):
    """A payment recorded against a payable (event order or donation)."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    payable_type = Column(String(30), nullable=False, index=True)
    payable_id = Column(String(36), nullable=False, index=True)

    gateway = Column(String(30), nullable=False, default="pesapal")
    method = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")

    # Gateway order tracking id
    external_reference = Column(String(100), nullable=True, index=True)
    order_reference = Column(String(100), nullable=True, index=True)
    receipt_url = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_PAYMENT_STATUSES


class EventOrderDB(Base):
    """Ticket order for an event."""
    __tablename__ = "event_orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    reference = Column(String(100), nullable=False, unique=True)
    event_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=PayableStatus.PENDING.value, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    county = Column(String(100), nullable=True)

    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    payment = relationship("PaymentDB", foreign_keys=[payment_id])

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class DonationDB(Base):
    """A donation, optionally attributed to a campaign and county."""
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    reference = Column(String(100), nullable=False, unique=True)
    campaign_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=PayableStatus.PENDING.value, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    county = Column(String(100), nullable=True, index=True)

    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    payment = relationship("PaymentDB", foreign_keys=[payment_id])

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class WebhookEventDB(Base):
    """Gateway notification as received, before and after processing."""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_id = Column(String(100), nullable=True, index=True)
    order_reference = Column(String(100), nullable=True, index=True)
    event_type = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.RECEIVED.value)
    payload = Column(JSON, nullable=True, default=dict)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
