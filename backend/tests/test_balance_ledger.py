"""
Balance ledger: available = settled net - paid out - pending, recomputed from source records.
"""
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from core.balance_ledger import BalanceLedger
from core.payout_policy import DEFAULT_PAYOUT_POLICY
from core.settlement_clock import to_storage

IST = ZoneInfo("Asia/Kolkata")


@pytest.fixture
def ledger(db, settlement_clock, clock):
    return BalanceLedger(db, settlement_clock, clock=clock)


async def insert_payout(db, merchant_id, status, net_amount):
    await db.payouts.insert_one({
        "payout_id": f"PAYOUT_{status}_{net_amount}",
        "merchant_id": merchant_id,
        "status": status,
        "amount": net_amount + 35.40,
        "net_amount": net_amount,
    })


class TestCompute:

    async def test_merchant_without_activity(self, ledger, make_merchant):
        merchant = await make_merchant()
        balance = await ledger.compute(merchant["merchant_id"])
        assert balance["available_balance"] == Decimal("0.00")
        assert balance["settled_count"] == 0
        assert balance["next_settlement"] is None

    async def test_only_settled_funds_are_available(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000, settlement_status="settled")
        await make_transaction(mid, 1000, settlement_status="unsettled")

        balance = await ledger.compute(mid)
        assert balance["settled_net"] == Decimal("955.16")
        assert balance["unsettled_net"] == Decimal("955.16")
        assert balance["available_balance"] == Decimal("955.16")
        assert balance["total_revenue"] == Decimal("2000.00")
        assert balance["total_commission"] == Decimal("89.68")

    async def test_payouts_reduce_available(self, db, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000)
        await insert_payout(db, mid, "completed", 200.0)
        await insert_payout(db, mid, "requested", 60.0)
        await insert_payout(db, mid, "processing", 40.0)
        await insert_payout(db, mid, "rejected", 500.0)
        await insert_payout(db, mid, "cancelled", 500.0)

        balance = await ledger.compute(mid)
        assert balance["total_paid_out"] == Decimal("200.00")
        assert balance["total_pending"] == Decimal("100.00")
        assert balance["available_balance"] == Decimal("655.16")
        assert balance["payout_counts"]["rejected"] == 1
        assert balance["payout_counts"]["requested"] == 1

    async def test_refunds_are_charged_against_settled_net(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000)
        await make_transaction(mid, 500, status="refunded", refund_amount=500.0)

        balance = await ledger.compute(mid)
        assert balance["settled_revenue"] == Decimal("1500.00")
        assert balance["settled_commission"] == Decimal("67.26")
        assert balance["total_refunded"] == Decimal("500.00")
        assert balance["available_balance"] == Decimal("932.74")

    async def test_partial_refund_on_unsettled_transaction(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000)
        await make_transaction(mid, 1000, status="partial_refund",
                               settlement_status="unsettled", refund_amount=100.0)

        balance = await ledger.compute(mid)
        assert balance["available_balance"] == Decimal("855.16")

    async def test_unpaid_transactions_and_other_merchants_ignored(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        other = await make_merchant(name="Other")
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000)
        await make_transaction(mid, 5000, status="failed", settlement_status="unsettled")
        await make_transaction(mid, 5000, status="created", settlement_status="unsettled")
        await make_transaction(other["merchant_id"], 9000)

        assert await ledger.available_balance(mid) == Decimal("955.16")

    async def test_next_settlement_picks_earliest(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        # Wednesday 09:00 -> Thursday 09:00; Tuesday 17:00 -> Thursday 17:00
        await make_transaction(mid, 1000, settlement_status="unsettled",
                               paid_at=datetime(2024, 1, 10, 9, 0, tzinfo=IST))
        await make_transaction(mid, 500, settlement_status="unsettled",
                               paid_at=datetime(2024, 1, 9, 17, 0, tzinfo=IST))

        upcoming = (await ledger.compute(mid))["next_settlement"]
        assert upcoming["expected_settlement_date"] == datetime(2024, 1, 11, 9, 0, tzinfo=IST)
        assert upcoming["transaction_count"] == 1
        assert upcoming["net_amount"] == Decimal("955.16")
        assert upcoming["label"] == "Tomorrow"
        assert upcoming["status_text"] == "Settles in 21 hours"

    async def test_stored_expected_date_wins(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        stored = datetime(2024, 1, 12, 10, 0, tzinfo=IST)
        await make_transaction(mid, 1000, settlement_status="unsettled",
                               paid_at=datetime(2024, 1, 10, 9, 0, tzinfo=IST),
                               expected_settlement_date=to_storage(stored))

        upcoming = (await ledger.compute(mid))["next_settlement"]
        assert upcoming["expected_settlement_date"] == stored
        assert upcoming["label"] == "Friday"


class TestBalanceView:

    async def test_eligibility_under_reject_policy(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 1000)

        view = await ledger.balance_view(mid, dict(DEFAULT_PAYOUT_POLICY))
        assert view["balance"]["available_balance"] == 955.16
        assert view["payout_eligibility"]["can_request_payout"] is True
        assert view["payout_eligibility"]["minimum_payout_amount"] == 500.0
        assert view["payout_eligibility"]["maximum_payout_amount"] == 955.16
        assert view["payout_eligibility"]["policy_maximum"] == 100000.0
        assert "payin" in view["commission_structure"]

    async def test_small_balance_only_eligible_under_flat_fee(self, ledger, make_merchant, make_transaction):
        merchant = await make_merchant()
        mid = merchant["merchant_id"]
        await make_transaction(mid, 300)

        reject = await ledger.balance_view(mid, dict(DEFAULT_PAYOUT_POLICY))
        flat_fee = await ledger.balance_view(mid, {**DEFAULT_PAYOUT_POLICY, "below_minimum_policy": "flat_fee"})
        assert reject["payout_eligibility"]["can_request_payout"] is False
        assert flat_fee["payout_eligibility"]["can_request_payout"] is True
