"""
Ledger Reconciliation - Run Store Database Models

A run is the aggregate root of one reconciliation execution. Items are owned
by their run: they are keyed by (run_id, position), deleted with the run and
never shared between runs.

Tables:
- reconciliation_runs: One row per execution with aggregate counters
- reconciliation_items: One row per transaction considered in a run
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, Date, DateTime,
    ForeignKey, Index, JSON, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base

# Mirrors reconciliation.strategy_registry.RunStatus.RUNNING
RUN_STATUS_RUNNING = "running"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationRunDB(Base):
    """
    One execution of the reconciliation engine over two ledgers.

    Created in status `running`, completed exactly once with
    `success`, `partial` or `failed`, then never modified.
    """
    __tablename__ = "reconciliation_runs"

    run_id = Column(String(36), primary_key=True, default=generate_uuid)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default=RUN_STATUS_RUNNING, index=True)

    # Scope
    period_start = Column(Date, nullable=True, index=True)
    period_end = Column(Date, nullable=True)
    county = Column(String(100), nullable=True, index=True)

    # Aggregates
    total_matched = Column(Integer, nullable=False, default=0)
    total_unmatched_app = Column(Integer, nullable=False, default=0)
    total_unmatched_gateway = Column(Integer, nullable=False, default=0)
    total_amount_mismatch = Column(Integer, nullable=False, default=0)
    total_app_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_gateway_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_discrepancy = Column(Numeric(15, 2), nullable=False, default=0)

    notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    # Effective tolerance policy, shard info
    run_metadata = Column("metadata", JSON, nullable=True, default=dict)
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    items = relationship(
        "ReconciliationItemDB",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ReconciliationItemDB.position"
    )

    __table_args__ = (
        Index('ix_reconciliation_runs_status_period', 'status', 'period_start'),
    )

    @property
    def is_completed(self) -> bool:
        return self.status != RUN_STATUS_RUNNING

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "county": self.county,
            "total_matched": self.total_matched,
            "total_unmatched_app": self.total_unmatched_app,
            "total_unmatched_gateway": self.total_unmatched_gateway,
            "total_amount_mismatch": self.total_amount_mismatch,
            "total_app_amount": str(self.total_app_amount or 0),
            "total_gateway_amount": str(self.total_gateway_amount or 0),
            "total_discrepancy": str(self.total_discrepancy or 0),
            "notes": self.notes,
            "error_message": self.error_message,
            "metadata": self.run_metadata or {},
            "created_by": self.created_by,
        }


class ReconciliationItemDB(Base):
    """
    One transaction's recorded outcome within a run. Write-once.

    Matched and amount-mismatch items always come in app/gateway pairs whose
    linked_transaction_id points at each other.
    """
    __tablename__ = "reconciliation_items"

    run_id = Column(
        String(36),
        ForeignKey("reconciliation_runs.run_id", ondelete="CASCADE"),
        primary_key=True
    )
    position = Column(Integer, primary_key=True)

    transaction_id = Column(String(100), nullable=True, index=True)
    reference = Column(String(100), nullable=True, index=True)
    source = Column(String(10), nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Numeric(15, 2), nullable=False, default=0)
    county = Column(String(100), nullable=True)

    reconciliation_status = Column(String(20), nullable=False, index=True)
    linked_transaction_id = Column(String(100), nullable=True)
    match_strategy = Column(String(30), nullable=True)
    discrepancy_amount = Column(Numeric(15, 2), nullable=True)

    item_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    run = relationship("ReconciliationRunDB", back_populates="items")

    __table_args__ = (
        Index('ix_reconciliation_items_run_status', 'run_id', 'reconciliation_status'),
    )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "position": self.position,
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "source": self.source,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "amount": str(self.amount),
            "county": self.county,
            "reconciliation_status": self.reconciliation_status,
            "linked_transaction_id": self.linked_transaction_id,
            "match_strategy": self.match_strategy,
            "discrepancy_amount": str(self.discrepancy_amount) if self.discrepancy_amount is not None else None,
            "metadata": self.item_metadata or {},
        }
