"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- GET /api/reconciliation/status - Module status
- GET /api/reconciliation/strategies - Matching cascade
- POST /api/reconciliation/runs - Reconcile two ledgers
- GET /api/reconciliation/runs - List runs
- GET /api/reconciliation/runs/{run_id} - Get a run (optionally with items)
- DELETE /api/reconciliation/runs/{run_id} - Delete a run and its items
- GET /api/reconciliation/runs/{run_id}/export - Export a run as CSV or JSON
- POST /api/reconciliation/payables/{payable}/reconcile - Reconcile pending payables
- GET /api/reconciliation/payables/{payable}/discrepancies - Payable discrepancies
- GET /api/reconciliation/payables/{payable}/summary - Payable summary
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db
from reconciliation.errors import RunNotFoundError
from reconciliation.gateway.status_client import GatewayStatusClient
from reconciliation.services.export_service import ReconciliationExportService
from reconciliation.services.payable_reconciliation import (
    PAYABLE_SERVICES,
    PayableReconciliationService,
    get_payable_service
)
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.run_store import ReconciliationRunRepository
from reconciliation.strategy_registry import RunStatus, strategy_registry
from reconciliation.tolerance import TolerancePolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class RunReconciliationRequest(BaseModel):
    """Request to reconcile two ledgers."""
    app_transactions: List[Dict[str, Any]] = Field(..., description="Application ledger transactions")
    gateway_transactions: List[Dict[str, Any]] = Field(..., description="Payment gateway transactions")
    tolerance_overrides: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Per-run tolerances (amount_percentage_tolerance, amount_absolute_tolerance, "
                    "date_tolerance_days, fuzzy_match_threshold)"
    )
    period_start: Optional[date] = Field(default=None, description="Start of the reconciled period")
    period_end: Optional[date] = Field(default=None, description="End of the reconciled period")
    county: Optional[str] = Field(default=None, description="Scope of the run")
    created_by: Optional[str] = Field(default=None, description="Operator starting the run")
    notes: Optional[str] = Field(default=None, description="Free text stored on the run")
    shard_key: Optional[Literal["county", "day"]] = Field(
        default=None, description="Reconcile in shards by county or day"
    )


class ReconciliationRunResponse(BaseModel):
    """Response for a reconciliation run."""
    run_id: str
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    period_start: Optional[str]
    period_end: Optional[str]
    county: Optional[str]
    total_matched: Optional[int]
    total_unmatched_app: Optional[int]
    total_unmatched_gateway: Optional[int]
    total_amount_mismatch: Optional[int]
    total_app_amount: str
    total_gateway_amount: str
    total_discrepancy: str
    notes: Optional[str]
    error_message: Optional[str]
    metadata: Dict[str, Any]
    created_by: Optional[str]
    items: Optional[List[Dict[str, Any]]] = None


class RunListResponse(BaseModel):
    """Response for a list of runs."""
    runs: List[ReconciliationRunResponse]
    count: int
    limit: int
    offset: int


def _run_response(run, items=None) -> ReconciliationRunResponse:
    payload = run.to_dict()
    if items is not None:
        payload["items"] = [item.to_dict() for item in items]
    return ReconciliationRunResponse(**payload)


def _payable_service(payable: str, db: AsyncSession) -> PayableReconciliationService:
    try:
        return get_payable_service(payable, db)
    except KeyError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown payable type. Valid values: {sorted(PAYABLE_SERVICES)}"
        )


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status(db: AsyncSession = Depends(get_db)):
    """
    Get reconciliation module status.

    Returns configuration, enabled strategies and run counts.
    """
    settings = get_settings()
    try:
        run_counts = await ReconciliationRunRepository(db).status_counts()
    except Exception as e:
        logger.error(f"Failed to count reconciliation runs: {e}")
        raise HTTPException(status_code=500, detail="Failed to get module status")

    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "sharding": True,
            "payable_reconciliation": True,
            "gateway_sync": settings.gateway_configured,
            "export_formats": ["csv", "json"]
        },
        "strategies_enabled": [s.value for s in strategy_registry.get_cascade()],
        "tolerance_defaults": TolerancePolicy.from_settings(settings).to_dict(),
        "runs": run_counts,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/strategies", summary="List matching strategies")
async def list_strategies():
    """
    List the matching cascade in the order it is tried.
    """
    configs = strategy_registry.get_all_configs()
    return {
        "strategies": [cfg.to_dict() for cfg in configs],
        "enabled_count": len(strategy_registry.get_cascade())
    }


@router.post(
    "/runs",
    response_model=ReconciliationRunResponse,
    status_code=201,
    summary="Run reconciliation"
)
async def create_run(
    request: RunReconciliationRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Reconcile an app ledger against a gateway ledger.

    This will:
    1. Record a new run as running
    2. Match transactions by id, reference, fuzzy reference, then amount and date
    3. Record every transaction as an item and store the aggregates

    Problems with the transactions produce a failed run, not an error response.
    """
    try:
        service = ReconciliationService(db)
        run = await service.run(
            request.app_transactions,
            request.gateway_transactions,
            request.tolerance_overrides,
            period_start=request.period_start,
            period_end=request.period_end,
            county=request.county,
            created_by=request.created_by,
            notes=request.notes,
            shard_key=request.shard_key
        )
        return _run_response(run)
    except Exception as e:
        logger.error(f"Reconciliation run could not be recorded: {e}")
        raise HTTPException(status_code=500, detail="Reconciliation run could not be recorded")


@router.get("/runs", response_model=RunListResponse, summary="List runs")
async def list_runs(
    status: Optional[RunStatus] = Query(None, description="Filter by run status"),
    period_start: Optional[date] = Query(None, description="Runs whose period starts on or after"),
    period_end: Optional[date] = Query(None, description="Runs whose period ends on or before"),
    county: Optional[str] = Query(None, description="Filter by scope"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    """
    List reconciliation runs, newest first.
    """
    try:
        runs = await ReconciliationRunRepository(db).list_runs(
            status=status.value if status else None,
            period_start=period_start,
            period_end=period_end,
            county=county,
            limit=limit,
            offset=offset
        )
        return RunListResponse(
            runs=[_run_response(run) for run in runs],
            count=len(runs),
            limit=limit,
            offset=offset
        )
    except Exception as e:
        logger.error(f"Failed to list runs: {e}")
        raise HTTPException(status_code=500, detail="Failed to list runs")


@router.get("/runs/{run_id}", response_model=ReconciliationRunResponse, summary="Get run")
async def get_run(
    run_id: str,
    include_items: bool = Query(False, description="Include the run's items"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get a reconciliation run, optionally with its items in position order.
    """
    try:
        repository = ReconciliationRunRepository(db)
        run = await repository.require(run_id)
        items = await repository.list_items(run_id) if include_items else None
        return _run_response(run, items)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        logger.error(f"Failed to get run {run_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get run")


@router.delete("/runs/{run_id}", summary="Delete run")
async def delete_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """
    Delete a run together with its items.
    """
    try:
        await ReconciliationService(db).delete_run(run_id)
        return {"run_id": run_id, "deleted": True}
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        logger.error(f"Failed to delete run {run_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete run")


@router.get("/runs/{run_id}/export", summary="Export run")
async def export_run(
    run_id: str,
    format: Literal["csv", "json"] = Query("csv", description="Export format"),
    include_header: bool = Query(True, description="Include the CSV header row"),
    db: AsyncSession = Depends(get_db)
):
    """
    Export a run's items.

    CSV is UTF-8 with BOM; JSON contains the run summary and items.
    """
    try:
        service = ReconciliationExportService(db)
        if format == "json":
            return await service.export_json(run_id)

        content = await service.export_csv(run_id, include_header=include_header)
        return Response(
            content=content.encode("utf-8"),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f"attachment; filename=reconciliation_{run_id}.csv"}
        )
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        logger.error(f"Failed to export run {run_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to export run")


@router.post("/payables/{payable}/reconcile", summary="Reconcile payables")
async def reconcile_payables(
    payable: str,
    sync_gateway: bool = Query(False, description="Refresh pending payments from the gateway first"),
    db: AsyncSession = Depends(get_db)
):
    """
    Reconcile pending event orders or donations with their payments.
    """
    service = _payable_service(payable, db)
    settings = get_settings()
    try:
        sync = None
        if sync_gateway:
            if not settings.gateway_configured:
                raise HTTPException(status_code=400, detail="Payment gateway is not configured")
            sync = await service.sync_payment_statuses(GatewayStatusClient.from_settings(settings))

        result = await service.reconcile_all()
        return {**result.to_dict(), "gateway_sync": sync}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Payable reconciliation failed for {payable}: {e}")
        raise HTTPException(status_code=500, detail="Payable reconciliation failed")


@router.get("/payables/{payable}/discrepancies", summary="Payable discrepancies")
async def get_payable_discrepancies(payable: str, db: AsyncSession = Depends(get_db)):
    """
    Paid payables without a payment, and linked payments with a different amount.
    """
    service = _payable_service(payable, db)
    try:
        return await service.detect_discrepancies()
    except Exception as e:
        logger.error(f"Failed to detect {payable} discrepancies: {e}")
        raise HTTPException(status_code=500, detail="Failed to detect discrepancies")


@router.get("/payables/{payable}/summary", summary="Payable summary")
async def get_payable_summary(payable: str, db: AsyncSession = Depends(get_db)):
    """
    Counts and amounts per status and per county.
    """
    service = _payable_service(payable, db)
    try:
        return await service.get_summary()
    except Exception as e:
        logger.error(f"Failed to summarise {payable}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get summary")
