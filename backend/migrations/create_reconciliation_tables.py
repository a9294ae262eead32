"""
Database Migration: Create Reconciliation Tables

Creates the run store (reconciliation_runs, reconciliation_items) and the
payable tables (payments, event_orders, donations, webhook_events) from the
mapped models.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, create_tables, get_engine


async def main():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    await create_tables()
    for name in sorted(Base.metadata.tables):
        print(f"  ✓ {name}")

    await get_engine().dispose()
    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(main())
