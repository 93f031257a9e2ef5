"""
LEDGER ENGINE: WEBHOOK IDEMPOTENCY

Gateways redeliver webhooks, sometimes concurrently. Before an event is
applied its id is claimed in `processed_webhook_events` with a single
atomic upsert on the unique event_id index, so two deliveries of the same
event can never both reach the transaction write. The claim is marked
applied after the write persists and released if the application fails,
which lets the next redelivery retry it.

A claim left behind by a crashed worker stops blocking redeliveries once
it is older than CLAIM_LEASE.

Usage:
    async with ProcessedWebhookEvent(db, event_id, "razorpay", order_id) as event:
        if event.is_duplicate:
            return event.previous_response

        result = await apply_event()
        await event.record_success(result)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from dataclasses import dataclass
import hashlib
import logging
import uuid

logger = logging.getLogger(__name__)

COLLECTION = "processed_webhook_events"

CLAIM_LEASE = timedelta(minutes=5)


@dataclass
class IdempotencyResult:
    """Result of claiming an event"""
    event_id: str
    is_duplicate: bool
    claim_token: Optional[str] = None
    previous_response: Optional[Dict[str, Any]] = None


def derive_event_id(gateway: str, raw_body: bytes) -> str:
    """Stable id for gateways that do not send one: hash of the exact payload."""
    return f"{gateway}:{hashlib.sha256(raw_body).hexdigest()}"


def _duplicate(event_id: str, gateway: str, order_id: Optional[str], existing: Dict[str, Any]) -> IdempotencyResult:
    in_progress = not existing.get("applied_flag", False)
    logger.info(
        f"[IDEMPOTENT] Duplicate webhook {event_id} from {gateway} for order {order_id}"
        f"{' (still in progress)' if in_progress else ''}"
    )
    created_at = existing.get("created_at")
    return IdempotencyResult(
        event_id=event_id,
        is_duplicate=True,
        previous_response={
            "status": "skipped",
            "reason": "duplicate_event",
            "event_id": event_id,
            "order_id": order_id,
            "in_progress": in_progress,
            "original_timestamp": created_at.isoformat() if created_at else None,
        }
    )


async def claim_event(
    db: AsyncIOMotorDatabase,
    event_id: str,
    gateway: str,
    order_id: Optional[str]
) -> IdempotencyResult:
    """
    Atomically claim `event_id`. Exactly one concurrent caller gets
    is_duplicate=False; every other caller sees the claim or the applied
    row and is told to skip.
    """
    now = datetime.utcnow()
    token = uuid.uuid4().hex
    collection = db[COLLECTION]

    try:
        existing = await collection.find_one_and_update(
            {"event_id": event_id},
            {
                "$setOnInsert": {
                    "event_id": event_id,
                    "gateway": gateway,
                    "order_id": order_id,
                    "applied_flag": False,
                    "claim_token": token,
                    "created_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.BEFORE
        )
    except DuplicateKeyError:
        # Lost the upsert race to another delivery of the same event
        existing = await collection.find_one({"event_id": event_id}) or {"applied_flag": False}

    if existing is None:
        return IdempotencyResult(event_id=event_id, is_duplicate=False, claim_token=token)

    claimed_at = existing.get("created_at")
    if not existing.get("applied_flag", False) and claimed_at and now - claimed_at > CLAIM_LEASE:
        taken = await collection.find_one_and_update(
            {"event_id": event_id, "applied_flag": False, "claim_token": existing.get("claim_token")},
            {"$set": {"claim_token": token, "created_at": now}}
        )
        if taken is not None:
            logger.warning(f"[IDEMPOTENT] Took over stale claim on webhook {event_id} from {claimed_at.isoformat()}")
            return IdempotencyResult(event_id=event_id, is_duplicate=False, claim_token=token)

    return _duplicate(event_id, gateway, order_id, existing)


class ProcessedWebhookEvent:
    """Context manager around a single webhook event application."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        event_id: str,
        gateway: str,
        order_id: Optional[str]
    ):
        self.db = db
        self.event_id = event_id
        self.gateway = gateway
        self.order_id = order_id
        self.is_duplicate = False
        self.previous_response = None
        self._claim_token: Optional[str] = None
        self._recorded = False

    async def __aenter__(self):
        result = await claim_event(self.db, self.event_id, self.gateway, self.order_id)
        self.is_duplicate = result.is_duplicate
        self.previous_response = result.previous_response
        self._claim_token = result.claim_token
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.is_duplicate or self._recorded or self._claim_token is None:
            return False
        await self.db[COLLECTION].delete_one(
            {"event_id": self.event_id, "claim_token": self._claim_token, "applied_flag": False}
        )
        logger.debug(f"[IDEMPOTENT] Released claim on webhook {self.event_id}")
        return False

    async def record_success(self, response: Dict[str, Any] = None):
        """Mark the event applied. Only called after the transaction write persisted."""
        if self.is_duplicate:
            return

        await self.db[COLLECTION].update_one(
            {"event_id": self.event_id, "claim_token": self._claim_token},
            {
                "$set": {
                    "applied_flag": True,
                    "outcome": response.get("status") if response else "success",
                    "applied_at": datetime.utcnow()
                }
            }
        )
        self._recorded = True
        logger.debug(f"[IDEMPOTENT] Recorded webhook {self.event_id} for order {self.order_id}")


async def create_indexes(db: AsyncIOMotorDatabase):
    await db[COLLECTION].create_index("event_id", unique=True, name="webhook_event_id_unique")
