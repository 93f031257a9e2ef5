"""
LEDGER ENGINE: SETTLEMENT SWEEPER

Background job that promotes paid transactions from unsettled to settled once
SettlementClock says they are ready.

On each run:
1. Select transactions with status=paid and settlement_status=unsettled
2. Backfill any missing expected_settlement_date (self-healing, runs even on
   weekends)
3. Skip promotion entirely if now is Saturday/Sunday
4. Promote each ready transaction with a compare-and-set on
   (status=paid, settlement_status=unsettled)
5. A failure on one transaction is logged and the sweep continues

Overlapping runs are refused by a run-lock; the overlapping call returns a
report with status "skipped" and skipped_reason "already_running".

Usage:
    sweeper = SettlementSweeper(db)
    report = await sweeper.run_once()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging

from core.settlement_clock import SettlementClock, utcnow, to_storage
from core.stores import TransactionStore

logger = logging.getLogger(__name__)


SKIP_WEEKEND = "weekend"
SKIP_ALREADY_RUNNING = "already_running"


class SettlementSweeper:
    """
    Idempotent settlement promotion job.
    Safe to re-run: promotion only matches unsettled paid transactions.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settlement_clock: Optional[SettlementClock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.transactions = TransactionStore(db)
        self.settlement_clock = settlement_clock or SettlementClock()
        self.clock = clock
        self._run_lock = asyncio.Lock()
        self.last_report: Optional[Dict[str, Any]] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def run_once(self) -> Dict[str, Any]:
        """Run a single sweep and return its report."""
        if self._run_lock.locked():
            logger.warning("[SWEEPER] Previous sweep still running, skipping this run")
            now = self.clock()
            return self._report(now, now, skipped_reason=SKIP_ALREADY_RUNNING)

        async with self._run_lock:
            report = await self._sweep()
            self.last_report = report
            return report

    async def _sweep(self) -> Dict[str, Any]:
        started_at = self.clock()
        counts = {"scanned": 0, "backfilled": 0, "settled": 0, "not_ready": 0, "after_cutoff": 0, "failed": 0}
        failures: List[Dict[str, Any]] = []

        logger.info(f"[SWEEPER] Starting settlement sweep at {started_at.isoformat()}")

        candidates = await self.transactions.find_unsettled_paid()
        counts["scanned"] = len(candidates)

        # Backfill first; it is repair work and is not tied to business days
        for txn in candidates:
            if txn.get("expected_settlement_date") is not None or not txn.get("paid_at"):
                continue
            try:
                expected = self.settlement_clock.expected_settlement_date(txn["paid_at"])
                if await self.transactions.set_expected_settlement_date(
                    txn["transaction_id"], to_storage(expected)
                ):
                    counts["backfilled"] += 1
                txn["expected_settlement_date"] = expected
            except Exception as e:
                counts["failed"] += 1
                failures.append({"transaction_id": txn.get("transaction_id"), "error": str(e)})
                logger.exception(f"[SWEEPER] Backfill failed for {txn.get('transaction_id')}: {e}")

        if self.settlement_clock.is_weekend(started_at):
            logger.info(
                f"[SWEEPER] Weekend ({self.settlement_clock.localize(started_at).strftime('%A')}), "
                f"skipping settlement. Backfilled {counts['backfilled']}"
            )
            return self._report(started_at, self.clock(), skipped_reason=SKIP_WEEKEND,
                                failures=failures, **counts)

        for txn in candidates:
            transaction_id = txn.get("transaction_id")
            try:
                paid_at = txn.get("paid_at")
                if not paid_at:
                    counts["not_ready"] += 1
                    logger.warning(f"[SWEEPER] {transaction_id} is paid without paid_at, leaving unsettled")
                    continue

                if self.settlement_clock.is_after_cutoff(paid_at):
                    counts["after_cutoff"] += 1

                if not self.settlement_clock.is_ready_for_settlement(
                    paid_at, txn.get("expected_settlement_date"), started_at
                ):
                    counts["not_ready"] += 1
                    continue

                if await self.transactions.promote_to_settled(transaction_id, to_storage(self.clock())):
                    counts["settled"] += 1
                    logger.info(f"[SWEEPER] Settled {transaction_id} (₹{txn.get('amount')})")
            except Exception as e:
                counts["failed"] += 1
                failures.append({"transaction_id": transaction_id, "error": str(e)})
                logger.exception(f"[SWEEPER] Failed to settle {transaction_id}: {e}")

        completed_at = self.clock()
        logger.info(
            f"[SWEEPER] Completed: scanned={counts['scanned']} settled={counts['settled']} "
            f"not_ready={counts['not_ready']} after_cutoff={counts['after_cutoff']} "
            f"backfilled={counts['backfilled']} failed={counts['failed']}"
        )
        return self._report(started_at, completed_at, failures=failures, **counts)

    # =========================================================================
    # STANDALONE BACKFILL
    # =========================================================================

    async def backfill_all(self) -> Dict[str, Any]:
        """
        Compute expected_settlement_date for every paid-like transaction that
        lacks one, regardless of settlement status. One-time repair entry point.
        """
        started_at = self.clock()
        candidates = await self.transactions.find_missing_expected_settlement()
        updated = 0
        failed = 0

        logger.info(f"[SWEEPER] Backfill: {len(candidates)} transactions missing expected settlement date")

        for txn in candidates:
            try:
                expected = self.settlement_clock.expected_settlement_date(txn["paid_at"])
                if await self.transactions.set_expected_settlement_date(
                    txn["transaction_id"], to_storage(expected)
                ):
                    updated += 1
            except Exception as e:
                failed += 1
                logger.exception(f"[SWEEPER] Backfill failed for {txn.get('transaction_id')}: {e}")

        completed_at = self.clock()
        logger.info(f"[SWEEPER] Backfill complete: updated={updated} failed={failed}")

        return {
            "job_name": "SettlementBackfill",
            "status": "completed",
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "scanned": len(candidates),
            "backfilled": updated,
            "failed": failed,
        }

    # =========================================================================
    # REPORT
    # =========================================================================

    @staticmethod
    def _report(
        started_at: datetime,
        completed_at: datetime,
        skipped_reason: Optional[str] = None,
        failures: Optional[List[Dict[str, Any]]] = None,
        scanned: int = 0,
        backfilled: int = 0,
        settled: int = 0,
        not_ready: int = 0,
        after_cutoff: int = 0,
        failed: int = 0
    ) -> Dict[str, Any]:
        return {
            "job_name": "SettlementSweeper",
            "status": "skipped" if skipped_reason else "completed",
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "duration_ms": round((completed_at - started_at).total_seconds() * 1000, 2),
            "scanned": scanned,
            "backfilled": backfilled,
            "settled": settled,
            "not_ready": not_ready,
            "after_cutoff": after_cutoff,
            "failed": failed,
            "skipped_reason": skipped_reason,
            "failures": failures or [],
        }
