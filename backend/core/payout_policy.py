"""
LEDGER ENGINE: PAYOUT POLICY SERVICE

Business rules that have varied historically (minimum payout, what to do with
amounts below it, free payout credits) are explicit configuration here rather
than constants scattered across handlers. Values are read from the
global_settings collection and merged over DEFAULT_PAYOUT_POLICY.

Methods:
- get_policy(): Current merged policy dict
- check_amount(): Validate a requested gross payout amount against limits
- update_policy(): Admin update of a single key

Usage:
    policy = PayoutPolicyService(db)
    await policy.check_amount(Decimal("1200"))
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Optional, Dict, Any
from datetime import datetime
import logging

from core.errors import LedgerValidationError
from core.financial_precision import to_decimal, format_amount

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT POLICY VALUES
# =============================================================================

BELOW_MINIMUM_REJECT = "reject"
BELOW_MINIMUM_FLAT_FEE = "flat_fee"

DEFAULT_PAYOUT_POLICY = {
    "minimum_payout_amount": 500,            # Gross, in rupees
    "maximum_payout_amount": 100000,         # Gross, in rupees
    "below_minimum_policy": BELOW_MINIMUM_REJECT,
    "free_payout_credits_enabled": True,
}

_NUMERIC_KEYS = ("minimum_payout_amount", "maximum_payout_amount")


# =============================================================================
# POLICY SERVICE
# =============================================================================

class PayoutPolicyService:
    """
    Payout policy reader backed by global_settings, with a short TTL cache.
    """

    COLLECTION = "global_settings"
    SETTINGS_KEY = "payout_policy"

    def __init__(self, db: AsyncIOMotorDatabase, cache_ttl_seconds: int = 60):
        self.db = db
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: Optional[datetime] = None
        self._cache_ttl_seconds = cache_ttl_seconds

    # =========================================================================
    # INTERNAL: SETTINGS RETRIEVAL
    # =========================================================================

    async def _get_settings(self, force_refresh: bool = False) -> Dict[str, Any]:
        now = datetime.utcnow()

        if (
            not force_refresh
            and self._cache is not None
            and self._cache_timestamp is not None
            and (now - self._cache_timestamp).total_seconds() < self._cache_ttl_seconds
        ):
            return self._cache

        doc = await self.db[self.COLLECTION].find_one({"key": self.SETTINGS_KEY})

        if doc and "settings" in doc:
            settings = {**DEFAULT_PAYOUT_POLICY, **doc["settings"]}
            logger.debug(f"[POLICY] Loaded payout policy from DB: {settings}")
        else:
            settings = DEFAULT_PAYOUT_POLICY.copy()

        self._cache = settings
        self._cache_timestamp = now
        return settings

    def invalidate(self) -> None:
        self._cache = None
        self._cache_timestamp = None

    # =========================================================================
    # PUBLIC
    # =========================================================================

    async def get_policy(self) -> Dict[str, Any]:
        return dict(await self._get_settings())

    async def minimum_amount(self) -> Decimal:
        return to_decimal((await self._get_settings())["minimum_payout_amount"])

    async def maximum_amount(self) -> Decimal:
        return to_decimal((await self._get_settings())["maximum_payout_amount"])

    async def free_credits_enabled(self) -> bool:
        return bool((await self._get_settings())["free_payout_credits_enabled"])

    async def check_amount(self, amount: Decimal) -> None:
        """
        Validate a gross payout amount against the configured limits.

        Below the minimum, the request is rejected unless the policy is
        `flat_fee`, in which case it is admitted and charged the flat fee.
        Above the maximum it is always rejected.
        """
        settings = await self._get_settings()
        minimum = to_decimal(settings["minimum_payout_amount"])
        maximum = to_decimal(settings["maximum_payout_amount"])

        if amount < minimum and settings["below_minimum_policy"] != BELOW_MINIMUM_FLAT_FEE:
            raise LedgerValidationError(
                f"Minimum payout amount is ₹{format_amount(minimum)}",
                field="amount"
            )

        if amount > maximum:
            raise LedgerValidationError(
                f"Maximum payout amount is ₹{format_amount(maximum)}",
                field="amount"
            )

    # =========================================================================
    # ADMIN: SETTINGS MANAGEMENT
    # =========================================================================

    async def update_policy(self, key: str, value: Any) -> Dict[str, Any]:
        """Update a single policy key. Returns the fresh merged policy."""
        if key not in DEFAULT_PAYOUT_POLICY:
            raise LedgerValidationError(f"Unknown policy key: {key}", field="key")

        if key in _NUMERIC_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise LedgerValidationError(f"{key} must be a non-negative number", field=key)
        elif key == "below_minimum_policy":
            if value not in (BELOW_MINIMUM_REJECT, BELOW_MINIMUM_FLAT_FEE):
                raise LedgerValidationError(
                    f"below_minimum_policy must be '{BELOW_MINIMUM_REJECT}' or '{BELOW_MINIMUM_FLAT_FEE}'",
                    field=key
                )
        elif not isinstance(value, bool):
            raise LedgerValidationError(f"{key} must be a boolean", field=key)

        await self.db[self.COLLECTION].update_one(
            {"key": self.SETTINGS_KEY},
            {
                "$set": {
                    f"settings.{key}": value,
                    "updated_at": datetime.utcnow()
                },
                "$setOnInsert": {
                    "key": self.SETTINGS_KEY,
                    "created_at": datetime.utcnow()
                }
            },
            upsert=True
        )

        self.invalidate()
        logger.info(f"[POLICY] Updated {key} = {value}")

        return await self._get_settings(force_refresh=True)
