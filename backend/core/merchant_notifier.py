"""
LEDGER ENGINE: MERCHANT NOTIFIER

Outbound merchant webhooks for transaction lifecycle events
(payment.paid, payment.failed, payment.cancelled, payment.expired).

Events are queued while a transaction is being mutated and emitted only after
the write has persisted. Delivery is fire-and-forget from the caller's point of
view: HTTP errors and timeouts are logged and recorded in
`merchant_webhook_deliveries`, and never propagate back into the transition.

Usage:
    queue = NotificationQueue(notifier)
    queue.queue_event("payment.paid", transaction)
    ... persist ...
    await queue.emit_pending()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional
import hashlib
import hmac
import json
import uuid
import logging

import httpx

from core.stores import MerchantStore

logger = logging.getLogger(__name__)

DELIVERY_COLLECTION = "merchant_webhook_deliveries"

EVENT_PAID = "payment.paid"
EVENT_FAILED = "payment.failed"
EVENT_CANCELLED = "payment.cancelled"
EVENT_EXPIRED = "payment.expired"

SNAPSHOT_FIELDS = (
    "transaction_id", "order_id", "merchant_id", "amount", "currency", "status",
    "payment_method", "paid_at", "failure_reason", "customer_name", "customer_email",
    "customer_phone", "expected_settlement_date", "settlement_status",
)


def transaction_snapshot(transaction: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a transaction for merchant webhooks."""
    snapshot = {}
    for field in SNAPSHOT_FIELDS:
        value = transaction.get(field)
        if isinstance(value, datetime):
            value = value.isoformat()
        snapshot[field] = value
    return snapshot


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class MerchantNotifier:
    """Delivers one event to the merchant's configured webhook_url."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.timeout = timeout
        self.transport = transport
        self.merchants = MerchantStore(db)

    async def deliver(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        POST the event to the merchant. Returns the delivery record, or None
        if the merchant has no webhook configured.
        """
        payload = event["payload"]
        merchant = await self.merchants.get(payload["merchant_id"])
        if not merchant or not merchant.get("webhook_url") or merchant.get("webhook_enabled") is False:
            return None

        body = json.dumps({
            "event": event["event_type"],
            "event_id": event["event_id"],
            "timestamp": event["timestamp"],
            "data": payload,
        }, separators=(",", ":")).encode()

        headers = {"Content-Type": "application/json", "X-Webhook-Event": event["event_type"]}
        if merchant.get("webhook_secret"):
            headers["X-Webhook-Signature"] = sign_payload(merchant["webhook_secret"], body)

        delivery = {
            "event_id": event["event_id"],
            "event_type": event["event_type"],
            "merchant_id": payload["merchant_id"],
            "transaction_id": payload.get("transaction_id"),
            "webhook_url": merchant["webhook_url"],
            "attempted_at": datetime.utcnow(),
            "status": "failed",
            "response_status": None,
            "error": None,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(merchant["webhook_url"], content=body, headers=headers)
            delivery["response_status"] = response.status_code
            response.raise_for_status()
            delivery["status"] = "success"
            logger.info(
                f"[NOTIFY] {event['event_type']} delivered to {merchant['webhook_url']} "
                f"({response.status_code})"
            )
        except httpx.TimeoutException:
            delivery["error"] = "timeout"
            logger.error(f"[NOTIFY] {event['event_type']} to {merchant['webhook_url']} timed out")
        except httpx.HTTPError as e:
            delivery["error"] = str(e)
            logger.error(f"[NOTIFY] {event['event_type']} to {merchant['webhook_url']} failed: {e}")

        await self.db[DELIVERY_COLLECTION].insert_one(dict(delivery))
        return delivery


class NotificationQueue:
    """Queue notifications during a mutation, emit them after it persisted."""

    def __init__(self, notifier: Optional[MerchantNotifier]):
        self.notifier = notifier
        self._pending_events: List[Dict[str, Any]] = []

    def queue_event(self, event_type: str, transaction: Dict[str, Any]) -> None:
        self._pending_events.append({
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "payload": transaction_snapshot(transaction),
            "timestamp": datetime.utcnow().isoformat(),
        })

    async def emit_pending(self) -> List[Dict[str, Any]]:
        """Emit all pending events. Delivery failures are logged, never raised."""
        events_to_emit = self._pending_events.copy()
        self._pending_events.clear()
        delivered = []

        if self.notifier is None:
            return delivered

        for event in events_to_emit:
            try:
                record = await self.notifier.deliver(event)
                if record is not None:
                    delivered.append(record)
            except Exception as e:
                logger.error(f"[NOTIFY] Event handler error: {event['event_type']} - {e}")

        return delivered

    def clear_pending(self) -> None:
        self._pending_events.clear()

    @property
    def pending(self) -> List[Dict[str, Any]]:
        return list(self._pending_events)
