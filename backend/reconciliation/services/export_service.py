"""
Reconciliation Export Service

Renders runs and their items for audit consumption.

CSV format:
- UTF-8 with BOM, comma-delimited, header row optional
- One row per item, columns in EXPORT_COLUMNS order
"""

import csv
import io
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import ReconciliationRunDB
from reconciliation.services.run_store import ReconciliationRunRepository

logger = logging.getLogger(__name__)

UTF8_BOM = "\ufeff"

EXPORT_COLUMNS = [
    "run_id",
    "transaction_id",
    "reference",
    "source",
    "transaction_date",
    "amount",
    "reconciliation_status",
    "linked_transaction_id",
    "match_strategy",
    "discrepancy_amount",
]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def item_to_row(run_id: Optional[str], item: Any) -> Dict[str, str]:
    """Map a stored item (or an engine item draft) to an export row"""
    row = {"run_id": run_id or ""}
    for column in EXPORT_COLUMNS[1:]:
        row[column] = _cell(getattr(item, column, None))
    return row


def render_csv(run_id: Optional[str], items: Iterable[Any], include_header: bool = True) -> str:
    """Render items as CSV text starting with a UTF-8 BOM"""
    output = io.StringIO()
    output.write(UTF8_BOM)
    writer = csv.DictWriter(output, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
    if include_header:
        writer.writeheader()
    for item in items:
        writer.writerow(item_to_row(run_id, item))
    return output.getvalue()


def render_json(run: ReconciliationRunDB, items: Iterable[Any]) -> Dict[str, Any]:
    """Run summary with its items"""
    return {
        "run": run.to_dict(),
        "items": [item.to_dict() for item in items],
    }


class ReconciliationExportService:
    """Export of stored runs"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repository = ReconciliationRunRepository(db)

    async def export_csv(self, run_id: str, include_header: bool = True) -> str:
        """
        Raises:
            RunNotFoundError: unknown run
        """
        run = await self.repository.require(run_id)
        items = await self.repository.list_items(run_id)
        logger.info(f"Exporting {len(items)} items of run {run_id} as CSV")
        return render_csv(run.run_id, items, include_header=include_header)

    async def export_json(self, run_id: str) -> Dict[str, Any]:
        """
        Raises:
            RunNotFoundError: unknown run
        """
        run = await self.repository.require(run_id)
        items: List = await self.repository.list_items(run_id)
        logger.info(f"Exporting {len(items)} items of run {run_id} as JSON")
        return render_json(run, items)
