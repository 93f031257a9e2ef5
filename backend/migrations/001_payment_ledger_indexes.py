#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Payment Ledger Indexes + Settlement Date Backfill

Creates:
1. transactions indexes (order_id / transaction_id unique, settlement sweep,
   payout reservation)
2. payouts indexes (payout_id unique, merchant listing)
3. processed_webhook_events unique event_id index

Then computes expected_settlement_date for every historical paid transaction
that lacks one.

Run: python migrations/001_payment_ledger_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

load_dotenv()

from core import idempotency
from core.settlement_clock import SettlementClock, DEFAULT_TIMEZONE, DEFAULT_CUTOFF_HOUR
from core.settlement_sweeper import SettlementSweeper
from core.stores import TransactionStore, PayoutStore


async def run_migration():
    """Execute the payment ledger migration."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'payment_gateway')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # =====================================================
        # 1. Indexes
        # =====================================================
        await TransactionStore(db).create_indexes()
        print("✓ Created transactions indexes")

        await PayoutStore(db).create_indexes()
        print("✓ Created payouts indexes")

        await idempotency.create_indexes(db)
        print("✓ Created processed_webhook_events index")

        # =====================================================
        # 2. Historical expected_settlement_date backfill
        # =====================================================
        settlement_clock = SettlementClock(
            os.environ.get('SETTLEMENT_TIMEZONE', DEFAULT_TIMEZONE),
            int(os.environ.get('SETTLEMENT_CUTOFF_HOUR', DEFAULT_CUTOFF_HOUR))
        )
        report = await SettlementSweeper(db, settlement_clock).backfill_all()
        print(f"✓ Backfilled expected settlement date: {report['backfilled']}/{report['scanned']}")
        if report['failed']:
            print(f"• {report['failed']} transactions could not be backfilled (see log)")

        migration_record = {
            "migration_id": "001_payment_ledger_indexes",
            "executed_at": datetime.utcnow(),
            "backfill": report,
            "status": "success"
        }

        await db.migrations.update_one(
            {"migration_id": "001_payment_ledger_indexes"},
            {"$set": migration_record},
            upsert=True
        )
        print("\n✓ Migration record saved")

        print("\n" + "="*50)
        print("MIGRATION COMPLETE: Payment Ledger Indexes")
        print("="*50)

        return {
            "status": "success",
            "collections": ["transactions", "payouts", "processed_webhook_events"],
            "backfilled": report['backfilled']
        }

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
