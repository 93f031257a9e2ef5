"""
LEDGER ENGINE: WEBHOOK INGESTION

Maps Cashfree and Razorpay webhook payloads onto the internal transaction
lifecycle and applies them.

Rules:
- Only forward-moving status transitions are applied. A transition that is
  not allowed from the transaction's current status is acknowledged and
  ignored (e.g. "paid" for an already refunded transaction).
- A repeated "paid" event never re-stamps paid_at or recomputes the expected
  settlement date.
- Each applied event id is recorded; a redelivery is skipped outright.
- Merchant notifications go out only after the transaction write persisted.

Status vocabulary:
    Cashfree  PAYMENT_SUCCESS_WEBHOOK -> paid
              PAYMENT_FAILED_WEBHOOK -> failed
              PAYMENT_USER_DROPPED_WEBHOOK -> cancelled
              REFUND_STATUS_WEBHOOK (SUCCESS) -> refund
              order status PAID/ACTIVE/EXPIRED/CANCELLED -> paid/pending/failed/cancelled
    Razorpay  payment_link.paid, payment.captured -> paid
              payment_link.cancelled -> cancelled
              payment_link.expired -> failed (notified as expired)
              payment.failed -> failed
              refund.processed -> refund
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import base64
import hashlib
import hmac
import logging

from core.commission_engine import CommissionEngine
from core.financial_precision import ZERO, to_decimal, to_float, round_financial
from core.idempotency import ProcessedWebhookEvent, derive_event_id
from core.merchant_notifier import (
    MerchantNotifier, NotificationQueue,
    EVENT_PAID, EVENT_FAILED, EVENT_CANCELLED, EVENT_EXPIRED
)
from core.settlement_clock import SettlementClock, utcnow, to_storage
from core.stores import TransactionStore, TransactionStatus

logger = logging.getLogger(__name__)

GATEWAY_CASHFREE = "cashfree"
GATEWAY_RAZORPAY = "razorpay"

REFUND = "refund"

# Statuses a transaction may be in for each incoming target status
ALLOWED_SOURCES = {
    TransactionStatus.PENDING: (TransactionStatus.CREATED,),
    TransactionStatus.PAID: (
        TransactionStatus.CREATED, TransactionStatus.PENDING,
        TransactionStatus.FAILED, TransactionStatus.CANCELLED,
    ),
    TransactionStatus.FAILED: (TransactionStatus.CREATED, TransactionStatus.PENDING),
    TransactionStatus.CANCELLED: (TransactionStatus.CREATED, TransactionStatus.PENDING),
}

NOTIFY_ON = {
    TransactionStatus.PAID: EVENT_PAID,
    TransactionStatus.FAILED: EVENT_FAILED,
    TransactionStatus.CANCELLED: EVENT_CANCELLED,
}

CASHFREE_EVENTS = {
    "PAYMENT_SUCCESS_WEBHOOK": TransactionStatus.PAID,
    "PAYMENT_FAILED_WEBHOOK": TransactionStatus.FAILED,
    "PAYMENT_USER_DROPPED_WEBHOOK": TransactionStatus.CANCELLED,
}

CASHFREE_ORDER_STATUS = {
    "PAID": TransactionStatus.PAID,
    "ACTIVE": TransactionStatus.PENDING,
    "EXPIRED": TransactionStatus.FAILED,
    "CANCELLED": TransactionStatus.CANCELLED,
}

REFUND_MAX_ATTEMPTS = 3


@dataclass
class GatewayEvent:
    """A webhook payload normalized to the internal vocabulary."""
    gateway: str
    raw_event: str
    event_id: str
    lookup_field: str
    lookup_value: str
    target_status: str
    notify_event: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_id: Optional[str] = None
    gateway_fields: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# SIGNATURES
# =============================================================================

def verify_cashfree_signature(secret: str, signature: Optional[str], timestamp: Optional[str], raw_body: bytes) -> bool:
    """Cashfree: base64(HMAC_SHA256(timestamp + raw_body))."""
    if not secret or not signature or not timestamp:
        return False
    digest = hmac.new(secret.encode(), timestamp.encode() + raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature)


def verify_razorpay_signature(secret: str, signature: Optional[str], raw_body: bytes) -> bool:
    """Razorpay: hex(HMAC_SHA256(raw_body))."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


# =============================================================================
# PARSERS
# =============================================================================

def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"[WEBHOOK] Unparseable timestamp {value!r}, using receipt time")
        return None


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_cashfree_event(payload: Dict[str, Any], raw_body: bytes) -> Optional[GatewayEvent]:
    """Normalize a Cashfree webhook. Returns None for events we do not handle."""
    event_type = payload.get("type")
    data = payload.get("data") or {}
    order_id = (data.get("order") or {}).get("order_id")

    if event_type == "REFUND_STATUS_WEBHOOK":
        refund = data.get("refund") or {}
        if refund.get("refund_status") != "SUCCESS":
            return None
        order_id = refund.get("order_id") or order_id
        if not order_id:
            return None
        refund_id = refund.get("refund_id") or refund.get("cf_refund_id")
        return GatewayEvent(
            gateway=GATEWAY_CASHFREE,
            raw_event=event_type,
            event_id=f"cashfree:refund:{refund_id}" if refund_id else derive_event_id(GATEWAY_CASHFREE, raw_body),
            lookup_field="order_id",
            lookup_value=order_id,
            target_status=REFUND,
            refund_amount=to_decimal(refund.get("refund_amount")),
            refund_id=refund_id,
            raw=payload,
        )

    target = CASHFREE_EVENTS.get(event_type)
    if target is None or not order_id:
        return None

    payment = data.get("payment") or {}
    cf_payment_id = payment.get("cf_payment_id")
    event_id = (
        f"cashfree:{event_type}:{cf_payment_id}" if cf_payment_id
        else derive_event_id(GATEWAY_CASHFREE, raw_body)
    )

    return GatewayEvent(
        gateway=GATEWAY_CASHFREE,
        raw_event=event_type,
        event_id=event_id,
        lookup_field="order_id",
        lookup_value=order_id,
        target_status=target,
        notify_event=NOTIFY_ON.get(target),
        paid_at=_parse_iso(payment.get("payment_time")) if target == TransactionStatus.PAID else None,
        payment_method=payment.get("payment_group"),
        failure_reason=payment.get("payment_message") if target == TransactionStatus.FAILED else None,
        gateway_fields={"cashfree_payment_id": str(cf_payment_id)} if cf_payment_id else {},
        raw=payload,
    )


def parse_razorpay_event(
    payload: Dict[str, Any],
    raw_body: bytes,
    event_id: Optional[str] = None
) -> Optional[GatewayEvent]:
    """Normalize a Razorpay webhook. `event_id` is the x-razorpay-event-id header."""
    event = payload.get("event")
    body = payload.get("payload") or {}
    link = (body.get("payment_link") or {}).get("entity") or {}
    payment = (body.get("payment") or {}).get("entity") or {}
    event_id = f"razorpay:{event_id}" if event_id else derive_event_id(GATEWAY_RAZORPAY, raw_body)

    common = {"gateway": GATEWAY_RAZORPAY, "raw_event": event, "event_id": event_id, "raw": payload}

    if event == "payment_link.paid" and link.get("id"):
        return GatewayEvent(
            lookup_field="razorpay_payment_link_id",
            lookup_value=link["id"],
            target_status=TransactionStatus.PAID,
            notify_event=EVENT_PAID,
            paid_at=_from_epoch(payment.get("created_at")),
            payment_method=payment.get("method"),
            gateway_fields={
                k: v for k, v in {
                    "razorpay_payment_id": payment.get("id"),
                    "razorpay_order_id": payment.get("order_id"),
                }.items() if v
            },
            **common,
        )

    if event == "payment.captured" and payment.get("id"):
        return GatewayEvent(
            lookup_field="razorpay_payment_id",
            lookup_value=payment["id"],
            target_status=TransactionStatus.PAID,
            notify_event=EVENT_PAID,
            paid_at=_from_epoch(payment.get("created_at")),
            payment_method=payment.get("method"),
            **common,
        )

    if event == "payment_link.cancelled" and link.get("id"):
        return GatewayEvent(
            lookup_field="razorpay_payment_link_id",
            lookup_value=link["id"],
            target_status=TransactionStatus.CANCELLED,
            notify_event=EVENT_CANCELLED,
            **common,
        )

    if event == "payment_link.expired" and link.get("id"):
        return GatewayEvent(
            lookup_field="razorpay_payment_link_id",
            lookup_value=link["id"],
            target_status=TransactionStatus.FAILED,
            notify_event=EVENT_EXPIRED,
            failure_reason="Payment link expired",
            **common,
        )

    if event == "payment.failed" and payment.get("order_id"):
        return GatewayEvent(
            lookup_field="razorpay_order_id",
            lookup_value=payment["order_id"],
            target_status=TransactionStatus.FAILED,
            notify_event=EVENT_FAILED,
            failure_reason=payment.get("error_description"),
            **common,
        )

    if event == "refund.processed":
        refund = (body.get("refund") or {}).get("entity") or {}
        if not refund.get("payment_id"):
            return None
        return GatewayEvent(
            lookup_field="razorpay_payment_id",
            lookup_value=refund["payment_id"],
            target_status=REFUND,
            # Razorpay amounts are in paise
            refund_amount=to_decimal(refund.get("amount")) / Decimal("100"),
            refund_id=refund.get("id"),
            **common,
        )

    return None


# =============================================================================
# INGESTION
# =============================================================================

class WebhookIngestion:
    """Applies normalized gateway events to transactions."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        notifier: Optional[MerchantNotifier] = None,
        settlement_clock: Optional[SettlementClock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.transactions = TransactionStore(db)
        self.notifier = notifier
        self.settlement_clock = settlement_clock or SettlementClock()
        self.clock = clock

    async def ingest(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Apply one event. Returns an outcome dict:
        {"status": "applied" | "ignored" | "skipped", "reason": ..., ...}
        Never raises for business-level mismatches; those are "ignored".
        """
        queue = NotificationQueue(self.notifier)

        async with ProcessedWebhookEvent(self.db, event.event_id, event.gateway, event.lookup_value) as record:
            if record.is_duplicate:
                return record.previous_response

            txn = await self.transactions.find_by_gateway_reference(event.lookup_field, event.lookup_value)
            if txn is None:
                logger.warning(
                    f"[WEBHOOK] {event.gateway} {event.raw_event}: no transaction for "
                    f"{event.lookup_field}={event.lookup_value}"
                )
                return {"status": "ignored", "reason": "transaction_not_found", "event_id": event.event_id}

            if event.target_status == REFUND:
                outcome = await self._apply_refund(txn, event)
            else:
                outcome = await self._apply_status(txn, event, queue)

            await record.record_success(outcome)

        await queue.emit_pending()
        return outcome

    async def apply_order_status(self, order_id: str, order_status: str) -> Dict[str, Any]:
        """Reconcile from a polled Cashfree order status (PAID/ACTIVE/EXPIRED/CANCELLED)."""
        target = CASHFREE_ORDER_STATUS.get((order_status or "").upper())
        if target is None:
            return {"status": "ignored", "reason": "unknown_order_status", "order_status": order_status}

        event = GatewayEvent(
            gateway=GATEWAY_CASHFREE,
            raw_event=f"ORDER_STATUS_{order_status.upper()}",
            event_id=f"cashfree:order_status:{order_id}:{order_status.upper()}",
            lookup_field="order_id",
            lookup_value=order_id,
            target_status=target,
            notify_event=EVENT_EXPIRED if order_status.upper() == "EXPIRED" else NOTIFY_ON.get(target),
            failure_reason="Order expired" if order_status.upper() == "EXPIRED" else None,
        )
        return await self.ingest(event)

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    async def _apply_status(
        self,
        txn: Dict[str, Any],
        event: GatewayEvent,
        queue: NotificationQueue
    ) -> Dict[str, Any]:
        target = event.target_status
        allowed_from = ALLOWED_SOURCES[target]
        current = txn.get("status")

        if current not in allowed_from:
            logger.info(
                f"[WEBHOOK] Ignoring {event.raw_event} for {txn['transaction_id']}: "
                f"'{current}' -> '{target}' is not a forward transition"
            )
            return {
                "status": "ignored",
                "reason": "non_forward_transition",
                "transaction_id": txn["transaction_id"],
                "current_status": current,
                "event_status": target,
            }

        updates: Dict[str, Any] = {"status": target, **event.gateway_fields}
        if event.raw:
            updates["webhook_data"] = event.raw
        if event.payment_method:
            updates["payment_method"] = event.payment_method
        if event.failure_reason:
            updates["failure_reason"] = event.failure_reason

        if target == TransactionStatus.PAID:
            paid_at = event.paid_at or self.clock()
            commission = CommissionEngine.payin_commission(txn.get("amount"))["commission"]
            updates.update({
                "paid_at": to_storage(paid_at),
                "expected_settlement_date": to_storage(
                    self.settlement_clock.expected_settlement_date(paid_at)
                ),
                "settlement_status": txn.get("settlement_status") or "unsettled",
                "commission": to_float(commission),
                "net_amount": to_float(to_decimal(txn.get("amount")) - commission),
            })

        updated = await self.transactions.apply_status_transition(txn["order_id"], allowed_from, updates)
        if updated is None:
            # Another delivery moved the transaction first
            fresh = await self.transactions.get_by_order_id(txn["order_id"])
            logger.info(
                f"[WEBHOOK] {event.raw_event} for {txn['transaction_id']} lost the race "
                f"(now '{fresh.get('status') if fresh else None}')"
            )
            return {
                "status": "ignored",
                "reason": "concurrent_update",
                "transaction_id": txn["transaction_id"],
                "current_status": fresh.get("status") if fresh else None,
            }

        logger.info(f"[WEBHOOK] {txn['transaction_id']}: '{current}' -> '{target}' via {event.raw_event}")

        if event.notify_event:
            queue.queue_event(event.notify_event, updated)

        return {
            "status": "applied",
            "transaction_id": updated["transaction_id"],
            "previous_status": current,
            "new_status": target,
        }

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    async def _apply_refund(self, txn: Dict[str, Any], event: GatewayEvent) -> Dict[str, Any]:
        refund = round_financial(event.refund_amount or ZERO)
        if refund <= ZERO:
            return {"status": "ignored", "reason": "invalid_refund_amount", "transaction_id": txn["transaction_id"]}

        for _ in range(REFUND_MAX_ATTEMPTS):
            if txn.get("status") not in (TransactionStatus.PAID, TransactionStatus.PARTIAL_REFUND):
                return {
                    "status": "ignored",
                    "reason": "not_refundable",
                    "transaction_id": txn["transaction_id"],
                    "current_status": txn.get("status"),
                }

            if event.refund_id and event.refund_id in (txn.get("refund_ids") or []):
                logger.info(f"[WEBHOOK] Refund {event.refund_id} already applied to {txn['transaction_id']}")
                return {
                    "status": "ignored",
                    "reason": "duplicate_refund",
                    "transaction_id": txn["transaction_id"],
                    "refund_id": event.refund_id,
                }

            amount = to_decimal(txn.get("amount"))
            already = to_decimal(txn.get("refund_amount"))
            total = round_financial(already + refund)
            if total > amount:
                logger.warning(
                    f"[WEBHOOK] Refund of ₹{refund} on {txn['transaction_id']} would exceed "
                    f"amount ₹{amount} (already refunded ₹{already}), ignoring"
                )
                return {"status": "ignored", "reason": "refund_exceeds_amount", "transaction_id": txn["transaction_id"]}

            status = TransactionStatus.REFUNDED if total == amount else TransactionStatus.PARTIAL_REFUND
            updated = await self.transactions.apply_refund(
                txn["order_id"], to_float(total), txn.get("refund_amount") or 0.0,
                {"status": status, "refunded_at": to_storage(self.clock()), "last_refund_id": event.refund_id},
                refund_id=event.refund_id
            )
            if updated is not None:
                logger.info(f"[WEBHOOK] Refund ₹{refund} on {txn['transaction_id']}, total ₹{total} ({status})")
                return {
                    "status": "applied",
                    "transaction_id": txn["transaction_id"],
                    "new_status": status,
                    "refund_amount": to_float(total),
                }

            txn = await self.transactions.get_by_order_id(txn["order_id"])

        return {"status": "ignored", "reason": "concurrent_update", "transaction_id": txn["transaction_id"]}
