"""
LEDGER ENGINE: PERSISTENT STORES

Thin Motor repositories over the `transactions`, `payouts` and `users`
collections. Every mutation here is a single-document or filtered
multi-document compare-and-set: the filter carries the precondition, and the
caller checks matched/modified counts to learn whether it won.

No balance figure is ever stored. Balances are derived by BalanceLedger.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument, ASCENDING, DESCENDING
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from core.errors import LedgerValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS VOCABULARY
# =============================================================================

class TransactionStatus:
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"

    # Every status a transaction can hold once money has been received
    PAID_LIKE = (PAID, PARTIAL_REFUND, REFUNDED)
    ALL = (CREATED, PENDING, PAID, FAILED, CANCELLED, REFUNDED, PARTIAL_REFUND)


class SettlementStatus:
    UNSETTLED = "unsettled"
    SETTLED = "settled"
    ON_HOLD = "on_hold"

    ALL = (UNSETTLED, SETTLED, ON_HOLD)


class TransactionPayoutStatus:
    UNPAID = "unpaid"
    REQUESTED = "requested"
    PAID = "paid"

    ALL = (UNPAID, REQUESTED, PAID)


class PayoutStatus:
    REQUESTED = "requested"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    IN_FLIGHT = (REQUESTED, PENDING, PROCESSING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED, REJECTED)
    ALL = (REQUESTED, PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REJECTED)


# Missing field matches None in Mongo queries; legacy rows have no payout_status
UNRESERVED = {"$in": [TransactionPayoutStatus.UNPAID, None]}


def merchant_object_id(merchant_id: str) -> ObjectId:
    """Parse a merchant identifier, rejecting malformed ones as invalid input."""
    if isinstance(merchant_id, ObjectId):
        return merchant_id
    try:
        return ObjectId(merchant_id)
    except (InvalidId, TypeError):
        raise LedgerValidationError(f"Invalid merchant id: {merchant_id!r}", field="merchant_id")


def strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


# =============================================================================
# TRANSACTION STORE
# =============================================================================

class TransactionStore:
    """Repository for payin transactions."""

    COLLECTION = "transactions"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc.setdefault("status", TransactionStatus.CREATED)
        doc.setdefault("settlement_status", SettlementStatus.UNSETTLED)
        doc.setdefault("payout_status", TransactionPayoutStatus.UNPAID)
        doc.setdefault("payout_id", None)
        doc.setdefault("refund_amount", 0.0)
        doc.setdefault("settlement_date", None)
        doc.setdefault("expected_settlement_date", None)
        doc.setdefault("created_at", datetime.utcnow())
        doc.setdefault("updated_at", doc["created_at"])
        await self.collection.insert_one(doc)
        return strip_id(doc)

    async def get_by_order_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        return strip_id(await self.collection.find_one({"order_id": order_id}))

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return strip_id(await self.collection.find_one({"transaction_id": transaction_id}))

    async def find_by_gateway_reference(self, field: str, value: str) -> Optional[Dict[str, Any]]:
        return strip_id(await self.collection.find_one({field: value}))

    async def find_for_merchant(
        self,
        merchant_id: str,
        statuses: Sequence[str]
    ) -> List[Dict[str, Any]]:
        cursor = self.collection.find({
            "merchant_id": merchant_id,
            "status": {"$in": list(statuses)}
        })
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def find_unsettled_paid(self) -> List[Dict[str, Any]]:
        cursor = self.collection.find({
            "status": TransactionStatus.PAID,
            "settlement_status": SettlementStatus.UNSETTLED
        })
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def find_missing_expected_settlement(self) -> List[Dict[str, Any]]:
        cursor = self.collection.find({
            "status": {"$in": list(TransactionStatus.PAID_LIKE)},
            "paid_at": {"$ne": None},
            "expected_settlement_date": None
        })
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def set_expected_settlement_date(self, transaction_id: str, expected: datetime) -> bool:
        """Write expected_settlement_date only if still unset."""
        result = await self.collection.update_one(
            {"transaction_id": transaction_id, "expected_settlement_date": None},
            {"$set": {"expected_settlement_date": expected, "updated_at": datetime.utcnow()}}
        )
        return result.modified_count == 1

    async def promote_to_settled(self, transaction_id: str, settled_at: datetime) -> bool:
        """unsettled -> settled, only for paid transactions. Idempotent."""
        result = await self.collection.update_one(
            {
                "transaction_id": transaction_id,
                "status": TransactionStatus.PAID,
                "settlement_status": SettlementStatus.UNSETTLED
            },
            {"$set": {
                "settlement_status": SettlementStatus.SETTLED,
                "settlement_date": settled_at,
                "updated_at": settled_at
            }}
        )
        return result.modified_count == 1

    async def apply_status_transition(
        self,
        order_id: str,
        from_statuses: Iterable[str],
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Set fields only while the transaction is in one of `from_statuses`."""
        updates = {**updates, "updated_at": datetime.utcnow()}
        doc = await self.collection.find_one_and_update(
            {"order_id": order_id, "status": {"$in": list(from_statuses)}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        return strip_id(doc)

    async def apply_refund(
        self,
        order_id: str,
        refund_amount: float,
        expected_refunded: float,
        updates: Dict[str, Any],
        refund_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Add to refund_amount if nobody else refunded in between. A gateway
        refund id is written at most once: the update misses when
        `refund_id` is already in refund_ids.
        """
        updates = {**updates, "updated_at": datetime.utcnow()}
        refunded_filter: Any = expected_refunded
        if not expected_refunded:
            refunded_filter = {"$in": [0, None]}
        query: Dict[str, Any] = {
            "order_id": order_id,
            "status": {"$in": [TransactionStatus.PAID, TransactionStatus.PARTIAL_REFUND]},
            "refund_amount": refunded_filter
        }
        update: Dict[str, Any] = {"$set": {**updates, "refund_amount": refund_amount}}
        if refund_id:
            query["refund_ids"] = {"$ne": refund_id}
            update["$addToSet"] = {"refund_ids": refund_id}
        doc = await self.collection.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        return strip_id(doc)

    # -------------------------------------------------------------------------
    # Payout reservation
    # -------------------------------------------------------------------------

    async def find_eligible_for_payout(self, merchant_id: str) -> List[Dict[str, Any]]:
        """Settled, paid, not reserved by any payout. Oldest payment first."""
        cursor = self.collection.find({
            "merchant_id": merchant_id,
            "status": TransactionStatus.PAID,
            "settlement_status": SettlementStatus.SETTLED,
            "payout_status": UNRESERVED
        }).sort("paid_at", ASCENDING)
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def claim_for_payout(self, transaction_ids: Sequence[str], payout_id: str) -> int:
        """
        Atomically claim unreserved transactions for a payout.
        Returns the number claimed; the caller compares it with len(transaction_ids).
        """
        if not transaction_ids:
            return 0
        result = await self.collection.update_many(
            {
                "transaction_id": {"$in": list(transaction_ids)},
                "payout_status": UNRESERVED
            },
            {"$set": {
                "payout_status": TransactionPayoutStatus.REQUESTED,
                "payout_id": payout_id,
                "updated_at": datetime.utcnow()
            }}
        )
        return result.modified_count

    async def release_payout_reservation(self, payout_id: str) -> int:
        result = await self.collection.update_many(
            {"payout_id": payout_id, "payout_status": TransactionPayoutStatus.REQUESTED},
            {"$set": {
                "payout_status": TransactionPayoutStatus.UNPAID,
                "payout_id": None,
                "updated_at": datetime.utcnow()
            }}
        )
        return result.modified_count

    async def mark_payout_paid(self, payout_id: str) -> int:
        result = await self.collection.update_many(
            {"payout_id": payout_id, "payout_status": TransactionPayoutStatus.REQUESTED},
            {"$set": {
                "payout_status": TransactionPayoutStatus.PAID,
                "updated_at": datetime.utcnow()
            }}
        )
        return result.modified_count

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list(
        self,
        query: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[Dict[str, Any]], int]:
        total = await self.collection.count_documents(query)
        direction = ASCENDING if sort_order == "asc" else DESCENDING
        cursor = (
            self.collection.find(query, {"webhook_data": 0})
            .sort(sort_by, direction)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [strip_id(doc) for doc in docs], total

    async def find_amounts(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Money fields of every match, for totals over a whole filter."""
        cursor = self.collection.find(
            query, {"_id": 0, "merchant_id": 1, "status": 1, "amount": 1, "refund_amount": 1}
        )
        return await cursor.to_list(length=None)

    async def create_indexes(self):
        await self.collection.create_index("transaction_id", unique=True, name="txn_id_unique")
        await self.collection.create_index("order_id", unique=True, name="order_id_unique")
        await self.collection.create_index(
            [("merchant_id", 1), ("created_at", -1)], name="txn_merchant_created"
        )
        await self.collection.create_index(
            [("status", 1), ("settlement_status", 1)], name="txn_settlement_sweep"
        )
        await self.collection.create_index(
            [("merchant_id", 1), ("settlement_status", 1), ("payout_status", 1)],
            name="txn_payout_eligibility"
        )
        await self.collection.create_index("payout_id", name="txn_payout_id")


# =============================================================================
# PAYOUT STORE
# =============================================================================

class PayoutStore:
    """Repository for payout requests."""

    COLLECTION = "payouts"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        await self.collection.insert_one(doc)
        return strip_id(doc)

    async def delete_unreferenced(self, payout_id: str) -> None:
        """Remove a payout row whose admission failed before it was acknowledged."""
        await self.collection.delete_one({"payout_id": payout_id, "status": PayoutStatus.REQUESTED})

    async def get(self, payout_id: str, merchant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"payout_id": payout_id}
        if merchant_id is not None:
            query["merchant_id"] = merchant_id
        return strip_id(await self.collection.find_one(query))

    async def find_for_merchant(
        self,
        merchant_id: str,
        statuses: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"merchant_id": merchant_id}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        cursor = self.collection.find(query)
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def find_all(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        cursor = self.collection.find(query or {})
        return [strip_id(doc) for doc in await cursor.to_list(length=None)]

    async def transition(
        self,
        payout_id: str,
        from_states: Sequence[str],
        updates: Dict[str, Any],
        history_entry: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-set the status. Returns the updated doc or None if the state moved."""
        doc = await self.collection.find_one_and_update(
            {"payout_id": payout_id, "status": {"$in": list(from_states)}},
            {
                "$set": {**updates, "updated_at": datetime.utcnow()},
                "$push": {"state_history": history_entry}
            },
            return_document=ReturnDocument.AFTER
        )
        return strip_id(doc)

    async def list(
        self,
        query: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[Dict[str, Any]], int]:
        total = await self.collection.count_documents(query)
        direction = ASCENDING if sort_order == "asc" else DESCENDING
        cursor = (
            self.collection.find(query)
            .sort(sort_by, direction)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [strip_id(doc) for doc in docs], total

    async def create_indexes(self):
        await self.collection.create_index("payout_id", unique=True, name="payout_id_unique")
        await self.collection.create_index(
            [("merchant_id", 1), ("created_at", -1)], name="payout_merchant_created"
        )
        await self.collection.create_index("status", name="payout_status")


# =============================================================================
# MERCHANT STORE
# =============================================================================

class MerchantStore:
    """
    Merchant accounts live in `users`. The ledger only touches two fields:
    `payout_version` (optimistic admission counter) and `free_payout_credits`.
    """

    COLLECTION = "users"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def get(self, merchant_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": merchant_object_id(merchant_id)})

    async def bump_payout_version(self, merchant_id: str, expected_version: int) -> bool:
        """Claim the next admission slot; False means another admission won."""
        version_filter: Any = expected_version
        if expected_version == 0:
            version_filter = {"$in": [0, None]}
        result = await self.collection.update_one(
            {"_id": merchant_object_id(merchant_id), "payout_version": version_filter},
            {"$set": {"payout_version": expected_version + 1}}
        )
        return result.modified_count == 1

    async def consume_free_credit(self, merchant_id: str) -> bool:
        result = await self.collection.update_one(
            {"_id": merchant_object_id(merchant_id), "free_payout_credits": {"$gt": 0}},
            {"$inc": {"free_payout_credits": -1}}
        )
        return result.modified_count == 1

    async def restore_free_credit(self, merchant_id: str) -> None:
        await self.collection.update_one(
            {"_id": merchant_object_id(merchant_id)},
            {"$inc": {"free_payout_credits": 1}}
        )
