"""
LEDGER ENGINE: BALANCE LEDGER

Derives a merchant's balance from source records. Nothing here is stored or
cached: every balance query and every payout admission check recomputes from
the transactions and payouts collections.

    settled_net       = settled_revenue - total_refunded - settled_commission
    available_balance = settled_net - total_paid_out - total_pending

- The revenue base set is every transaction that was ever paid
  (paid, partial_refund, refunded). Revenue and commission are taken from the
  settled subset; refunds are charged against settled net regardless of
  which subset the refunded transaction belongs to.
- total_paid_out sums net_amount of completed payouts; total_pending sums
  net_amount of requested/pending/processing payouts.
- Unsettled funds are reported for information and are never withdrawable.

NO writes. Pure query projection.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from core.commission_engine import CommissionEngine
from core.financial_precision import ZERO, to_decimal, round_financial, to_float
from core.settlement_clock import SettlementClock, utcnow
from core.stores import (
    TransactionStore, PayoutStore, TransactionStatus, SettlementStatus, PayoutStatus
)

logger = logging.getLogger(__name__)


class BalanceLedger:
    """Read-only balance computation over TransactionStore and PayoutStore."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settlement_clock: Optional[SettlementClock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.transactions = TransactionStore(db)
        self.payouts = PayoutStore(db)
        self.settlement_clock = settlement_clock or SettlementClock()
        self.clock = clock

    # =========================================================================
    # CORE COMPUTATION
    # =========================================================================

    async def compute(self, merchant_id: str) -> Dict[str, Any]:
        """
        Compute the full balance breakdown for a merchant.
        All money values are Decimal rounded to 2 places.
        """
        transactions = await self.transactions.find_for_merchant(
            merchant_id, TransactionStatus.PAID_LIKE
        )
        payouts = await self.payouts.find_for_merchant(merchant_id)

        settled = [t for t in transactions if t.get("settlement_status") == SettlementStatus.SETTLED]
        unsettled = [t for t in transactions if t.get("settlement_status") != SettlementStatus.SETTLED]

        settled_revenue = self._sum_amounts(settled)
        settled_commission = self._sum_commission(settled)
        unsettled_revenue = self._sum_amounts(unsettled)
        unsettled_commission = self._sum_commission(unsettled)
        total_refunded = sum((to_decimal(t.get("refund_amount")) for t in transactions), ZERO)

        total_paid_out = ZERO
        total_pending = ZERO
        payout_counts = {status: 0 for status in PayoutStatus.ALL}
        for payout in payouts:
            status = payout.get("status")
            payout_counts[status] = payout_counts.get(status, 0) + 1
            if status == PayoutStatus.COMPLETED:
                total_paid_out += to_decimal(payout.get("net_amount"))
            elif status in PayoutStatus.IN_FLIGHT:
                total_pending += to_decimal(payout.get("net_amount"))

        settled_net = settled_revenue - total_refunded - settled_commission
        unsettled_net = unsettled_revenue - unsettled_commission
        available = settled_net - total_paid_out - total_pending

        result = {
            "merchant_id": merchant_id,
            "available_balance": round_financial(available),
            "settled_revenue": round_financial(settled_revenue),
            "settled_commission": round_financial(settled_commission),
            "total_refunded": round_financial(total_refunded),
            "settled_net": round_financial(settled_net),
            "unsettled_revenue": round_financial(unsettled_revenue),
            "unsettled_commission": round_financial(unsettled_commission),
            "unsettled_net": round_financial(unsettled_net),
            "total_revenue": round_financial(settled_revenue + unsettled_revenue),
            "total_commission": round_financial(settled_commission + unsettled_commission),
            "total_paid_out": round_financial(total_paid_out),
            "total_pending": round_financial(total_pending),
            "settled_count": len(settled),
            "unsettled_count": len(unsettled),
            "payout_counts": payout_counts,
            "next_settlement": self._next_settlement(unsettled),
        }

        logger.debug(
            f"[LEDGER] merchant={merchant_id} available={result['available_balance']} "
            f"settled_net={result['settled_net']} paid_out={result['total_paid_out']} "
            f"pending={result['total_pending']}"
        )

        return result

    async def available_balance(self, merchant_id: str) -> Decimal:
        return (await self.compute(merchant_id))["available_balance"]

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _sum_amounts(transactions: List[Dict[str, Any]]) -> Decimal:
        return sum((to_decimal(t.get("amount")) for t in transactions), ZERO)

    @staticmethod
    def _sum_commission(transactions: List[Dict[str, Any]]) -> Decimal:
        return sum(
            (CommissionEngine.payin_commission(t.get("amount"))["commission"] for t in transactions),
            ZERO
        )

    def _next_settlement(self, unsettled: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Earliest upcoming settlement among paid, unsettled transactions."""
        now = self.clock()
        candidates = []
        for txn in unsettled:
            if txn.get("status") != TransactionStatus.PAID or not txn.get("paid_at"):
                continue
            if txn.get("settlement_status") != SettlementStatus.UNSETTLED:
                continue
            expected = txn.get("expected_settlement_date") or \
                self.settlement_clock.expected_settlement_date(txn["paid_at"])
            candidates.append((self.settlement_clock.localize(expected), txn))

        if not candidates:
            return None

        expected, _ = min(candidates, key=lambda pair: pair[0])
        due = [txn for when, txn in candidates if when == expected]
        amount = self._sum_amounts(due) - self._sum_commission(due)

        return {
            "expected_settlement_date": expected,
            "label": self.settlement_clock.settlement_date_label(expected, now),
            "status_text": self.settlement_clock.settlement_status_text(
                expected, SettlementStatus.UNSETTLED, now
            ),
            "net_amount": round_financial(amount),
            "transaction_count": len(due),
        }

    # =========================================================================
    # RESPONSE PROJECTION
    # =========================================================================

    async def balance_view(self, merchant_id: str, policy: Dict[str, Any]) -> Dict[str, Any]:
        """Balance payload for the merchant API, including payout eligibility."""
        balance = await self.compute(merchant_id)
        minimum = to_decimal(policy["minimum_payout_amount"])
        maximum = to_decimal(policy["maximum_payout_amount"])
        if policy.get("below_minimum_policy") == "flat_fee":
            can_request = balance["available_balance"] > ZERO
        else:
            can_request = balance["available_balance"] >= minimum

        next_settlement = balance["next_settlement"]
        if next_settlement is not None:
            next_settlement = {
                **next_settlement,
                "net_amount": to_float(next_settlement["net_amount"]),
            }

        return {
            "merchant_id": merchant_id,
            "balance": {
                "available_balance": to_float(balance["available_balance"]),
                "settled_net": to_float(balance["settled_net"]),
                "unsettled_net": to_float(balance["unsettled_net"]),
                "total_refunded": to_float(balance["total_refunded"]),
                "total_paid_out": to_float(balance["total_paid_out"]),
                "pending_payouts": to_float(balance["total_pending"]),
            },
            "revenue": {
                "total_revenue": to_float(balance["total_revenue"]),
                "settled_revenue": to_float(balance["settled_revenue"]),
                "unsettled_revenue": to_float(balance["unsettled_revenue"]),
                "commission_deducted": to_float(balance["total_commission"]),
                "settled_commission": to_float(balance["settled_commission"]),
            },
            "settlement": {
                "settled_transactions": balance["settled_count"],
                "unsettled_transactions": balance["unsettled_count"],
                "next_settlement": next_settlement,
            },
            "payouts": balance["payout_counts"],
            "commission_structure": dict(CommissionEngine.STRUCTURE_TEXT),
            "payout_eligibility": {
                "can_request_payout": can_request,
                "minimum_payout_amount": to_float(minimum),
                "maximum_payout_amount": to_float(min(maximum, max(balance["available_balance"], ZERO))),
                "policy_maximum": to_float(maximum),
            },
        }
