"""
Reconciliation Service

Persistence boundary around the reconciliation engine:
- Creating the run record before matching starts
- Running the engine (inline or sharded) under the effective tolerance policy
- Writing items, aggregates and final status in one transaction
- Turning any failure into a failed run instead of an exception
- Audit logging of run lifecycle and discrepancies
"""

import asyncio
import logging
from concurrent.futures import Executor
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.reconciliation_models import ReconciliationRunDB, generate_uuid
from logging_config import set_run_context, clear_run_context
from reconciliation.engine import (
    ReconciliationEngine,
    ReconciliationOutcome,
    TransactionInput,
    determine_status
)
from reconciliation.errors import RunNotFoundError
from reconciliation.records import TransactionRecord
from reconciliation.services.run_store import ReconciliationRunRepository
from reconciliation.strategy_registry import ItemStatus, RunStatus
from reconciliation.tolerance import TolerancePolicy
from sentry_integration import capture_exception, capture_run_failure

logger = logging.getLogger(__name__)

# Discrepant transaction ids included in a single audit event
DISCREPANCY_SAMPLE_SIZE = 20


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_FAILED = "reconciliation.run_failed"
    DISCREPANCY_FOUND = "reconciliation.discrepancy_found"


def log_reconciliation_event(
    event_type: str,
    scope: Optional[str],
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "scope": scope,
        "run_id": run_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class ReconciliationService:
    """
    Runs reconciliations and records them.

    `run` never raises for problems while recording the run, matching or
    writing the result: the caller always gets a run back, failed if
    necessary.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.repository = ReconciliationRunRepository(db)
        self.base_policy = TolerancePolicy.from_settings(self.settings)
        self.partial_threshold = self.settings.RECON_PARTIAL_DISCREPANCY_THRESHOLD

    async def run(
        self,
        app_transactions: Iterable[TransactionInput],
        gateway_transactions: Iterable[TransactionInput],
        tolerance_overrides: Optional[Mapping[str, Any]] = None,
        *,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        county: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        shard_key: Optional[Union[str, Callable[[TransactionRecord], str]]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        executor: Optional[Executor] = None
    ) -> ReconciliationRunDB:
        """
        Reconcile two ledgers and persist the run.

        Args:
            app_transactions: Application ledger (records or mappings)
            gateway_transactions: Gateway ledger (records or mappings)
            tolerance_overrides: Per-run tolerance values merged over configuration
            period_start/period_end/county: Run scope, stored on the run
            created_by: Operator or process starting the run
            notes: Free text stored on the run
            shard_key: "county", "day" or a key function to reconcile in shards
            should_cancel: Polled between app transactions (or shards)
            executor: Executor for shards (process pool by default)

        Returns:
            The completed run: success, partial or failed
        """
        policy = self.base_policy.apply_overrides(tolerance_overrides)
        engine = ReconciliationEngine(policy)
        metadata: Dict[str, Any] = {
            "tolerance": policy.to_dict(),
            "cascade": [strategy.value for strategy in engine.cascade],
        }
        if shard_key is not None:
            metadata["shard_key"] = shard_key if isinstance(shard_key, str) else getattr(shard_key, "__name__", "custom")

        run_id = generate_uuid()
        set_run_context(run_id, county)

        try:
            try:
                run = await self.repository.create_run(
                    run_id=run_id,
                    period_start=period_start,
                    period_end=period_end,
                    county=county,
                    created_by=created_by,
                    notes=notes,
                    metadata=metadata
                )
            except Exception as e:
                return await self._fail_run(run_id, county, e, recorded=False)

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_STARTED,
                county,
                {
                    "period_start": period_start.isoformat() if period_start else None,
                    "period_end": period_end.isoformat() if period_end else None,
                    "tolerance": policy.to_dict(),
                },
                run_id=run_id,
                actor=created_by or "system"
            )

            try:
                if shard_key is not None:
                    outcome = await asyncio.to_thread(
                        engine.reconcile_sharded,
                        app_transactions,
                        gateway_transactions,
                        shard_key,
                        executor=executor,
                        should_cancel=should_cancel
                    )
                else:
                    outcome = await asyncio.to_thread(
                        engine.reconcile, app_transactions, gateway_transactions, should_cancel
                    )

                status = determine_status(outcome.totals, self.partial_threshold)
                run = await self.repository.complete_run(
                    run,
                    outcome,
                    status,
                    metadata={"shards": outcome.shards} if outcome.shards else None
                )
            except Exception as e:
                return await self._fail_run(run_id, county, e)

            if outcome.totals.discrepancy_count:
                self._log_discrepancies(run_id, county, outcome)

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_COMPLETED,
                county,
                {"status": run.status, **outcome.totals.to_dict()},
                run_id=run_id,
                actor=created_by or "system"
            )
            return run
        finally:
            clear_run_context()

    async def _fail_run(
        self,
        run_id: str,
        county: Optional[str],
        error: Exception,
        recorded: bool = True
    ) -> ReconciliationRunDB:
        """
        Record a failed run. Store problems here are logged, not raised.

        `recorded` is False when the running row was never written; the
        caller then gets an unsaved failed run carrying the same run id.
        """
        message = f"{type(error).__name__}: {error}"
        logger.error(f"Reconciliation run {run_id} failed: {message}", exc_info=error)
        capture_run_failure(error, run_id, county)

        run = None
        try:
            await self.db.rollback()
            if recorded:
                run = await self.repository.mark_failed(run_id, message)
        except Exception as store_error:
            logger.error(f"Could not mark reconciliation run {run_id} as failed: {store_error}")
            capture_exception(store_error, run_id=run_id)

        if run is None:
            run = ReconciliationRunDB(
                run_id=run_id,
                status=RunStatus.FAILED.value,
                county=county,
                error_message=message,
                total_matched=0,
                total_unmatched_app=0,
                total_unmatched_gateway=0,
                total_amount_mismatch=0,
                completed_at=datetime.now(timezone.utc),
            )

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_FAILED,
            county,
            {"error": message},
            run_id=run_id
        )
        return run

    def _log_discrepancies(self, run_id: str, county: Optional[str], outcome: ReconciliationOutcome):
        details: Dict[str, Any] = outcome.totals.to_dict()
        for status in (ItemStatus.UNMATCHED_APP, ItemStatus.UNMATCHED_GATEWAY, ItemStatus.AMOUNT_MISMATCH):
            ids = [
                item.transaction_id or item.reference
                for item in outcome.items_with_status(status)
            ]
            details[status.value] = ids[:DISCREPANCY_SAMPLE_SIZE]

        logger.warning(
            f"Reconciliation run {run_id}: {outcome.totals.discrepancy_count} discrepancies"
        )
        log_reconciliation_event(
            ReconciliationAuditEvent.DISCREPANCY_FOUND,
            county,
            details,
            run_id=run_id
        )

    # ==================== QUERIES ====================

    async def get_run(self, run_id: str, include_items: bool = False) -> ReconciliationRunDB:
        """
        Raises:
            RunNotFoundError: unknown run
        """
        return await self.repository.require(run_id, include_items=include_items)

    async def list_runs(self, **filters) -> List[ReconciliationRunDB]:
        return await self.repository.list_runs(**filters)

    async def delete_run(self, run_id: str):
        """
        Raises:
            RunNotFoundError: unknown run
        """
        if not await self.repository.delete(run_id):
            raise RunNotFoundError(run_id)
        logger.info(f"Deleted reconciliation run {run_id}")
