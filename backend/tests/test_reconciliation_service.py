"""
Tests for the Reconciliation Service

Covers the run lifecycle around the engine:
- Successful and partial runs
- Failed runs (bad input, cancellation, store errors)
- Run metadata and queries

Run with: pytest tests/test_reconciliation_service.py -v
"""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from reconciliation.errors import RunNotFoundError
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.strategy_registry import RunStatus


APP = [
    {"transaction_id": "T1", "reference": "R1", "amount": "100.00", "county": "Nairobi"},
    {"transaction_id": "T2", "reference": "R2", "amount": "60.00", "county": "Mombasa"},
]
GATEWAY = [
    {"transaction_id": "T1", "reference": "R1", "amount": "100.00", "county": "Nairobi"},
    {"transaction_id": "G7", "reference": "XYZ-77", "amount": "12.00", "county": "Mombasa"},
]


@pytest.fixture
def service(db_session, settings):
    return ReconciliationService(db_session, settings)


class TestSuccessfulRuns:
    """Runs that complete."""

    @pytest.mark.asyncio
    async def test_clean_run_is_success(self, service):
        run = await service.run(APP[:1], GATEWAY[:1], created_by="ops")

        assert run.status == RunStatus.SUCCESS.value
        assert run.total_matched == 1
        assert run.total_discrepancy == Decimal("0")
        assert run.created_by == "ops"

    @pytest.mark.asyncio
    async def test_discrepancies_without_threshold_still_success(self, service):
        run = await service.run(APP, GATEWAY)

        assert run.status == RunStatus.SUCCESS.value
        assert run.total_unmatched_app == 1
        assert run.total_unmatched_gateway == 1

    @pytest.mark.asyncio
    async def test_partial_above_threshold(self, db_session, settings):
        settings.RECON_PARTIAL_DISCREPANCY_THRESHOLD = 1
        service = ReconciliationService(db_session, settings)

        run = await service.run(APP, GATEWAY)

        assert run.status == RunStatus.PARTIAL.value

    @pytest.mark.asyncio
    async def test_scope_and_metadata_recorded(self, service):
        run = await service.run(
            APP,
            GATEWAY,
            {"date_tolerance_days": 1, "not_a_setting": 5},
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 31),
            county="Nairobi",
            notes="January close"
        )

        stored = await service.get_run(run.run_id)
        assert stored.period_start == date(2024, 1, 1)
        assert stored.county == "Nairobi"
        assert stored.notes == "January close"
        assert stored.run_metadata["tolerance"]["date_tolerance_days"] == 1
        assert stored.run_metadata["cascade"][0] == "transaction_id"

    @pytest.mark.asyncio
    async def test_sharded_run(self, service):
        with ThreadPoolExecutor() as executor:
            run = await service.run(APP, GATEWAY, shard_key="county", executor=executor)

        assert run.status == RunStatus.SUCCESS.value
        assert run.run_metadata["shard_key"] == "county"
        assert run.run_metadata["shards"] == ["Nairobi", "Mombasa"]
        assert run.total_matched == 1

    @pytest.mark.asyncio
    async def test_items_persisted(self, service):
        run = await service.run(APP, GATEWAY)

        stored = await service.get_run(run.run_id, include_items=True)
        assert len(stored.items) == 4


class TestFailedRuns:
    """Failures become failed runs, never exceptions."""

    @pytest.mark.asyncio
    async def test_invalid_amount(self, service):
        run = await service.run([{"transaction_id": "T1", "amount": "-1"}], GATEWAY)

        assert run.status == RunStatus.FAILED.value
        assert run.error_message.startswith("InvalidTransactionError:")
        assert "app transaction #0" in run.error_message

        stored = await service.get_run(run.run_id, include_items=True)
        assert stored.status == RunStatus.FAILED.value
        assert stored.items == []

    @pytest.mark.asyncio
    async def test_cancelled(self, service):
        run = await service.run(APP, GATEWAY, should_cancel=lambda: True)

        assert run.status == RunStatus.FAILED.value
        assert run.error_message.startswith("ReconciliationCancelled:")

        stored = await service.get_run(run.run_id, include_items=True)
        assert stored.items == []

    @pytest.mark.asyncio
    async def test_store_error_while_completing(self, service, monkeypatch):
        async def broken_complete(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(service.repository, "complete_run", broken_complete)

        run = await service.run(APP, GATEWAY)

        assert run.status == RunStatus.FAILED.value
        assert run.error_message == "RuntimeError: disk full"
        stored = await service.get_run(run.run_id)
        assert stored.status == RunStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_failure_recorded_even_if_store_unavailable(self, service, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(service.repository, "complete_run", broken)
        monkeypatch.setattr(service.repository, "mark_failed", broken)

        run = await service.run(APP, GATEWAY)

        assert run.status == RunStatus.FAILED.value
        assert run.error_message == "RuntimeError: database gone"
        assert run.run_id

    @pytest.mark.asyncio
    async def test_store_error_while_creating(self, service, monkeypatch):
        async def broken_create(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(service.repository, "create_run", broken_create)

        run = await service.run([{"reference": "R9", "amount": 50}], [], county="Kisumu")

        assert run.status == RunStatus.FAILED.value
        assert run.error_message == "RuntimeError: db down"
        assert run.county == "Kisumu"
        assert run.total_matched == 0
        assert run.completed_at is not None
        assert len(run.run_id) == 36


class TestEventLoop:
    """Matching does not run on the event loop thread."""

    @pytest.mark.asyncio
    async def test_engine_runs_in_worker_thread(self, service):
        polled_from = []

        def should_cancel():
            polled_from.append(threading.current_thread() is threading.main_thread())
            return False

        run = await service.run(APP, GATEWAY, should_cancel=should_cancel)

        assert run.status != RunStatus.FAILED.value
        assert polled_from
        assert not any(polled_from)

    @pytest.mark.asyncio
    async def test_other_tasks_progress_during_run(self, service):
        ticks = []
        ticks_while_matching = []

        async def heartbeat():
            while True:
                ticks.append(1)
                await asyncio.sleep(0.001)

        def slow_cancel_check():
            before = len(ticks)
            time.sleep(0.05)
            ticks_while_matching.append(len(ticks) - before)
            return False

        task = asyncio.create_task(heartbeat())
        try:
            await service.run(APP, GATEWAY, should_cancel=slow_cancel_check)
        finally:
            task.cancel()

        assert ticks_while_matching
        assert min(ticks_while_matching) > 0


class TestStoredAmounts:
    """Stored items add up to the stored run totals."""

    @pytest.mark.asyncio
    async def test_sub_cent_amounts(self, service):
        app = [{"reference": f"R{i}", "amount": "0.005"} for i in range(3)]

        run = await service.run(app, [])

        stored = await service.get_run(run.run_id, include_items=True)
        assert sum(item.amount for item in stored.items) == stored.total_app_amount
        assert stored.total_app_amount == Decimal("0.03")


class TestQueries:
    """Lookup and deletion."""

    @pytest.mark.asyncio
    async def test_get_unknown_run(self, service):
        with pytest.raises(RunNotFoundError):
            await service.get_run("missing")

    @pytest.mark.asyncio
    async def test_list_runs(self, service):
        await service.run(APP, GATEWAY, county="Nairobi")
        await service.run(APP, GATEWAY, county="Mombasa")

        runs = await service.list_runs(county="Mombasa")
        assert len(runs) == 1
        assert runs[0].county == "Mombasa"

    @pytest.mark.asyncio
    async def test_delete_run(self, service):
        run = await service.run(APP, GATEWAY)

        await service.delete_run(run.run_id)

        with pytest.raises(RunNotFoundError):
            await service.get_run(run.run_id)
        with pytest.raises(RunNotFoundError):
            await service.delete_run(run.run_id)
