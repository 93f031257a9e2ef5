"""
PAYMENT API ROUTES

- Gateway webhooks (Cashfree, Razorpay): signature check on the raw body,
  then WebhookIngestion. Once the signature is valid the endpoint always
  answers 200 so the gateway does not retry a delivery we already judged.
- Merchant transaction listing with settlement ETA text.
- Super admin cross-merchant transaction listing with platform totals.
- Super admin order-status reconciliation.
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends, Query
from typing import Any, Dict, List, Optional
import json
import logging
import re

from auth import get_current_user
from models import OrderStatusReconcile, WebhookAck
from payout_routes import (
    serialize_doc, require_merchant, require_super_admin, parse_date_param, parse_status_param
)
from services import LedgerServices, get_services
from core.commission_engine import CommissionEngine
from core.financial_precision import ZERO, to_decimal, to_float
from core.settlement_clock import to_storage
from core.stores import TransactionStatus, SettlementStatus, TransactionPayoutStatus
from core.webhook_ingestion import (
    parse_cashfree_event, parse_razorpay_event,
    verify_cashfree_signature, verify_razorpay_signature
)

logger = logging.getLogger(__name__)

payment_router = APIRouter(prefix="/api/payments", tags=["Payments & Webhooks"])
admin_transactions_router = APIRouter(prefix="/api/admin", tags=["Super Admin - Transactions"])

MAX_PAGE_SIZE = 100
TRANSACTION_SORT_FIELDS = ("created_at", "paid_at", "amount", "status")
SEARCH_FIELDS = ("order_id", "transaction_id", "customer_name", "customer_email", "customer_phone")


def _load_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    return payload


# ============================================
# GATEWAY WEBHOOKS
# ============================================

@payment_router.post("/webhook/cashfree", response_model=WebhookAck)
async def cashfree_webhook(request: Request, services: LedgerServices = Depends(get_services)):
    raw_body = await request.body()
    signature = request.headers.get("x-webhook-signature")
    timestamp = request.headers.get("x-webhook-timestamp")

    if not verify_cashfree_signature(services.cashfree_webhook_secret, signature, timestamp, raw_body):
        logger.warning("[WEBHOOK] Cashfree signature verification failed")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    payload = _load_json(raw_body)
    event = parse_cashfree_event(payload, raw_body)
    if event is None:
        logger.info(f"[WEBHOOK] Unhandled Cashfree event: {payload.get('type')}")
        return WebhookAck(message="Event ignored", outcome={"status": "ignored", "reason": "unhandled_event"})

    try:
        outcome = await services.ingestion.ingest(event)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Cashfree {event.raw_event} for {event.lookup_value} failed: {e}")
        return WebhookAck(success=False, message="Webhook processing failed")

    return WebhookAck(message="Webhook received and processed", outcome=serialize_doc(outcome))


@payment_router.post("/webhook/razorpay", response_model=WebhookAck)
async def razorpay_webhook(request: Request, services: LedgerServices = Depends(get_services)):
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")

    if not verify_razorpay_signature(services.razorpay_webhook_secret, signature, raw_body):
        logger.warning("[WEBHOOK] Razorpay signature verification failed")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    payload = _load_json(raw_body)
    event = parse_razorpay_event(payload, raw_body, request.headers.get("x-razorpay-event-id"))
    if event is None:
        logger.info(f"[WEBHOOK] Unhandled Razorpay event: {payload.get('event')}")
        return WebhookAck(message="Event ignored", outcome={"status": "ignored", "reason": "unhandled_event"})

    try:
        outcome = await services.ingestion.ingest(event)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Razorpay {event.raw_event} for {event.lookup_value} failed: {e}")
        return WebhookAck(success=False, message="Webhook processing failed")

    return WebhookAck(message="Webhook processed", outcome=serialize_doc(outcome))


# ============================================
# MERCHANT: TRANSACTIONS
# ============================================

def _with_settlement_info(txn: dict, services: LedgerServices) -> dict:
    now = services.clock()
    expected = txn.get("expected_settlement_date")
    txn["settlement_status_text"] = services.settlement_clock.settlement_status_text(
        expected, txn.get("settlement_status"), now
    ) if txn.get("status") == TransactionStatus.PAID else None
    txn["settlement_date_label"] = (
        services.settlement_clock.settlement_date_label(expected, now)
        if expected and txn.get("settlement_status") != SettlementStatus.SETTLED else None
    )
    return txn


def _created_between(query: Dict[str, Any], start_date: Optional[str], end_date: Optional[str]) -> None:
    start = parse_date_param(start_date, "start_date")
    end = parse_date_param(end_date, "end_date")
    if start or end:
        query["created_at"] = {}
        if start:
            query["created_at"]["$gte"] = to_storage(start)
        if end:
            query["created_at"]["$lte"] = to_storage(end)


def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_count": total,
        "limit": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


@payment_router.get("/transactions")
async def list_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    settlement_status: Optional[str] = None,
    payout_status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    user = await require_merchant(current_user, services)

    query: Dict[str, Any] = {"merchant_id": user["user_id"]}
    filters = {
        "status": parse_status_param(status_filter, TransactionStatus.ALL, "status"),
        "settlement_status": parse_status_param(settlement_status, SettlementStatus.ALL, "settlement_status"),
        "payout_status": parse_status_param(payout_status, TransactionPayoutStatus.ALL, "payout_status"),
    }
    query.update({field: clause for field, clause in filters.items() if clause})
    _created_between(query, start_date, end_date)

    transactions, total = await services.workflow.transactions.list(query, page, limit)

    return {
        "transactions": [serialize_doc(_with_settlement_info(t, services)) for t in transactions],
        "pagination": _pagination(page, limit, total),
    }


@payment_router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    user = await require_merchant(current_user, services)
    txn = await services.workflow.transactions.get_by_transaction_id(transaction_id)
    if txn is None or txn.get("merchant_id") != user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": f"transaction not found: {transaction_id}"}
        )
    txn.pop("webhook_data", None)
    return serialize_doc(_with_settlement_info(txn, services))


# ============================================
# SUPER ADMIN: ALL TRANSACTIONS
# ============================================

def _platform_totals(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    counts = {status_value: 0 for status_value in TransactionStatus.ALL}
    merchants = set()
    collected = ZERO
    refunded = ZERO
    commission = ZERO

    for row in rows:
        txn_status = row.get("status")
        counts[txn_status] = counts.get(txn_status, 0) + 1
        merchants.add(row.get("merchant_id"))
        refunded += to_decimal(row.get("refund_amount"))
        if txn_status in TransactionStatus.PAID_LIKE:
            amount = to_decimal(row.get("amount"))
            collected += amount
            commission += CommissionEngine.payin_commission(amount)["commission"]

    successful = sum(counts[s] for s in TransactionStatus.PAID_LIKE)
    return {
        "total_transactions": len(rows),
        "successful_transactions": successful,
        "status_counts": counts,
        "merchant_count": len(merchants),
        "total_collected": to_float(collected),
        "total_refunded": to_float(refunded),
        "net_collected": to_float(collected - refunded),
        "total_commission": to_float(commission),
        "success_rate": round(successful * 100 / len(rows), 2) if rows else 0.0,
    }


@admin_transactions_router.get("/transactions")
async def list_all_transactions(
    merchant_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    settlement_status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    min_amount: Optional[float] = Query(None, ge=0),
    max_amount: Optional[float] = Query(None, ge=0),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Transactions across every merchant, with totals over the whole filter"""
    await require_super_admin(current_user, services)
    if sort_by not in TRANSACTION_SORT_FIELDS or sort_order not in ("asc", "desc"):
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_input", "message": f"Cannot sort by '{sort_by}' {sort_order}", "field": "sort_by"}
        )

    query: Dict[str, Any] = {}
    if merchant_id:
        query["merchant_id"] = merchant_id
    filters = {
        "status": parse_status_param(status_filter, TransactionStatus.ALL, "status"),
        "settlement_status": parse_status_param(settlement_status, SettlementStatus.ALL, "settlement_status"),
    }
    query.update({field: clause for field, clause in filters.items() if clause})
    _created_between(query, start_date, end_date)
    if min_amount is not None or max_amount is not None:
        query["amount"] = {}
        if min_amount is not None:
            query["amount"]["$gte"] = min_amount
        if max_amount is not None:
            query["amount"]["$lte"] = max_amount
    if search and search.strip():
        # User input is matched literally
        pattern = re.escape(search.strip())
        query["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]

    store = services.workflow.transactions
    transactions, total = await store.list(query, page, limit, sort_by, sort_order)
    totals = _platform_totals(await store.find_amounts(query))
    logger.info(f"[ADMIN] Transaction listing page {page}: {total} match(es)")

    return {
        "transactions": [serialize_doc(t) for t in transactions],
        "pagination": _pagination(page, limit, total),
        "totals": totals,
    }


# ============================================
# SUPER ADMIN: RECONCILIATION
# ============================================

@payment_router.post("/{order_id}/reconcile")
async def reconcile_order_status(
    order_id: str,
    reconcile_data: OrderStatusReconcile,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Apply an order status fetched from the gateway dashboard or API"""
    admin = await require_super_admin(current_user, services)
    outcome = await services.ingestion.apply_order_status(order_id, reconcile_data.order_status.value)

    if outcome.get("status") == "applied":
        await services.audit.log_action(
            module_name="PAYMENTS",
            entity_type="TRANSACTION",
            entity_id=outcome["transaction_id"],
            action_type="RECONCILE",
            user_id=admin["user_id"],
            new_value={"status": outcome["new_status"], "order_status": reconcile_data.order_status.value}
        )
    return serialize_doc(outcome)
