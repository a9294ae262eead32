"""
Reconciliation Run Store

Persistence of runs and their items. A run is written twice: once when it
starts (status running) and once when it completes, with all of its items,
aggregates and final status in a single commit.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.reconciliation_models import ReconciliationRunDB, ReconciliationItemDB, generate_uuid
from reconciliation.engine import ItemDraft, ReconciliationOutcome
from reconciliation.errors import RunAlreadyCompletedError, RunNotFoundError
from reconciliation.strategy_registry import RunStatus

logger = logging.getLogger(__name__)


# ==================== CONVERSION HELPERS ====================

def draft_to_db(run_id: str, draft: ItemDraft) -> ReconciliationItemDB:
    """Convert an engine item to its database row"""
    transaction_date = draft.transaction_date
    if transaction_date is not None and transaction_date.tzinfo is None:
        transaction_date = transaction_date.replace(tzinfo=timezone.utc)
    return ReconciliationItemDB(
        run_id=run_id,
        position=draft.position,
        transaction_id=draft.transaction_id,
        reference=draft.reference,
        source=draft.source.value,
        transaction_date=transaction_date,
        amount=draft.amount,
        county=draft.county,
        reconciliation_status=draft.reconciliation_status.value,
        linked_transaction_id=draft.linked_transaction_id,
        match_strategy=draft.match_strategy.value if draft.match_strategy else None,
        discrepancy_amount=draft.discrepancy_amount,
        item_metadata=draft.metadata or None,
    )


# ==================== REPOSITORY ====================

class ReconciliationRunRepository:
    """Repository for reconciliation runs and items"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_run(
        self,
        run_id: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        county: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ReconciliationRunDB:
        """Create and commit a run in status running"""
        run = ReconciliationRunDB(
            run_id=run_id or generate_uuid(),
            status=RunStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
            period_start=period_start,
            period_end=period_end,
            county=county,
            created_by=created_by,
            notes=notes,
            run_metadata=metadata or {},
        )
        self.session.add(run)
        await self.session.commit()
        await self.session.refresh(run)
        return run

    async def complete_run(
        self,
        run: ReconciliationRunDB,
        outcome: ReconciliationOutcome,
        status: RunStatus,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ReconciliationRunDB:
        """
        Write items, aggregates and final status in one transaction.

        Raises:
            RunAlreadyCompletedError: run is not running
        """
        if run.status != RunStatus.RUNNING.value:
            raise RunAlreadyCompletedError(run.run_id, run.status)

        totals = outcome.totals
        try:
            self.session.add_all([draft_to_db(run.run_id, item) for item in outcome.items])

            run.total_matched = totals.total_matched
            run.total_unmatched_app = totals.total_unmatched_app
            run.total_unmatched_gateway = totals.total_unmatched_gateway
            run.total_amount_mismatch = totals.total_amount_mismatch
            run.total_app_amount = totals.total_app_amount
            run.total_gateway_amount = totals.total_gateway_amount
            run.total_discrepancy = totals.total_discrepancy
            run.status = status.value
            run.completed_at = datetime.now(timezone.utc)
            if metadata:
                run.run_metadata = {**(run.run_metadata or {}), **metadata}

            await self.session.commit()
        except Exception as e:
            logger.error(f"Failed to complete reconciliation run {run.run_id}: {e}")
            await self.session.rollback()
            raise

        return run

    async def mark_failed(self, run_id: str, message: str) -> ReconciliationRunDB:
        """
        Mark a running run as failed.

        Raises:
            RunNotFoundError: unknown run
            RunAlreadyCompletedError: run is not running
        """
        run = await self.require(run_id)
        if run.status != RunStatus.RUNNING.value:
            raise RunAlreadyCompletedError(run.run_id, run.status)

        run.status = RunStatus.FAILED.value
        run.error_message = message
        run.completed_at = datetime.now(timezone.utc)
        await self.session.commit()
        return run

    async def get(self, run_id: str, include_items: bool = False) -> Optional[ReconciliationRunDB]:
        """Get run by ID"""
        query = select(ReconciliationRunDB).where(ReconciliationRunDB.run_id == run_id)
        if include_items:
            query = query.options(selectinload(ReconciliationRunDB.items))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def require(self, run_id: str, include_items: bool = False) -> ReconciliationRunDB:
        """Get run by ID or raise RunNotFoundError"""
        run = await self.get(run_id, include_items=include_items)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(
        self,
        status: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        county: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[ReconciliationRunDB]:
        """List runs, newest first"""
        query = select(ReconciliationRunDB)
        if status:
            query = query.where(ReconciliationRunDB.status == status)
        if period_start:
            query = query.where(ReconciliationRunDB.period_start >= period_start)
        if period_end:
            query = query.where(ReconciliationRunDB.period_end <= period_end)
        if county:
            query = query.where(ReconciliationRunDB.county == county)

        result = await self.session.execute(
            query.order_by(ReconciliationRunDB.started_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def list_items(
        self,
        run_id: str,
        status: Optional[str] = None,
        source: Optional[str] = None
    ) -> List[ReconciliationItemDB]:
        """List a run's items in position order"""
        query = select(ReconciliationItemDB).where(ReconciliationItemDB.run_id == run_id)
        if status:
            query = query.where(ReconciliationItemDB.reconciliation_status == status)
        if source:
            query = query.where(ReconciliationItemDB.source == source)

        result = await self.session.execute(query.order_by(ReconciliationItemDB.position))
        return list(result.scalars().all())

    async def status_counts(self) -> Dict[str, int]:
        """Number of runs per status"""
        result = await self.session.execute(
            select(ReconciliationRunDB.status, func.count(ReconciliationRunDB.run_id))
            .group_by(ReconciliationRunDB.status)
        )
        counts = {status.value: 0 for status in RunStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def delete(self, run_id: str) -> bool:
        """Delete a run and its items"""
        run = await self.get(run_id, include_items=True)
        if run is None:
            return False
        await self.session.delete(run)
        await self.session.commit()
        return True
