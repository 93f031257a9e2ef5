"""
Payout policy: defaults, persisted overrides, validation of updates.
"""
from decimal import Decimal

import pytest

from core.errors import LedgerValidationError
from core.payout_policy import PayoutPolicyService, DEFAULT_PAYOUT_POLICY


@pytest.fixture
def policy(db):
    return PayoutPolicyService(db)


class TestPayoutPolicy:

    async def test_defaults_without_settings(self, policy):
        assert await policy.get_policy() == DEFAULT_PAYOUT_POLICY
        assert await policy.minimum_amount() == Decimal("500")
        assert await policy.free_credits_enabled() is True

    async def test_stored_settings_merge_over_defaults(self, db, policy):
        await db.global_settings.insert_one({"key": "payout_policy", "settings": {"minimum_payout_amount": 100}})

        settings = await policy.get_policy()

        assert settings["minimum_payout_amount"] == 100
        assert settings["maximum_payout_amount"] == 100000

    async def test_update_persists_and_refreshes_cache(self, db, policy):
        await policy.get_policy()

        updated = await policy.update_policy("maximum_payout_amount", 50000)

        assert updated["maximum_payout_amount"] == 50000
        assert await policy.maximum_amount() == Decimal("50000")
        doc = await db.global_settings.find_one({"key": "payout_policy"})
        assert doc["settings"]["maximum_payout_amount"] == 50000

    @pytest.mark.parametrize("key,value", [
        ("minimum_payout_amount", -1),
        ("minimum_payout_amount", "500"),
        ("minimum_payout_amount", True),
        ("below_minimum_policy", "waive"),
        ("free_payout_credits_enabled", "yes"),
        ("unknown_key", 1),
    ])
    async def test_invalid_updates(self, policy, key, value):
        with pytest.raises(LedgerValidationError):
            await policy.update_policy(key, value)

    async def test_check_amount_limits(self, policy):
        await policy.check_amount(Decimal("500"))
        await policy.check_amount(Decimal("100000"))
        with pytest.raises(LedgerValidationError):
            await policy.check_amount(Decimal("499.99"))
        with pytest.raises(LedgerValidationError):
            await policy.check_amount(Decimal("100000.01"))

    async def test_flat_fee_policy_admits_small_amounts(self, policy):
        await policy.update_policy("below_minimum_policy", "flat_fee")
        await policy.check_amount(Decimal("50"))
