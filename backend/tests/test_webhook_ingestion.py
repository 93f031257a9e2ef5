"""
Gateway webhook ingestion: event mapping, forward-only transitions, redelivery,
refunds and merchant notifications.
"""
import asyncio
import base64
import hashlib
import hmac
import json
from datetime import datetime

import httpx
import pytest

from core.merchant_notifier import MerchantNotifier, DELIVERY_COLLECTION, sign_payload
from core.stores import TransactionStore
from core.webhook_ingestion import (
    WebhookIngestion, parse_cashfree_event, parse_razorpay_event,
    verify_cashfree_signature, verify_razorpay_signature
)

WEBHOOK_URL = "https://merchant.example/hooks/payments"


def body_of(payload):
    return json.dumps(payload).encode()


def cashfree_payment(event_type, order_id, cf_payment_id=1001, payment_time="2024-01-10T10:00:00+05:30",
                     message=None):
    return {
        "type": event_type,
        "data": {
            "order": {"order_id": order_id, "order_amount": 1000},
            "payment": {
                "cf_payment_id": cf_payment_id,
                "payment_time": payment_time,
                "payment_group": "upi",
                "payment_message": message,
            },
        },
    }


def cashfree_refund(order_id, amount, refund_id, refund_status="SUCCESS"):
    return {
        "type": "REFUND_STATUS_WEBHOOK",
        "data": {"refund": {
            "order_id": order_id,
            "refund_id": refund_id,
            "refund_amount": amount,
            "refund_status": refund_status,
        }},
    }


class Recorder:
    """httpx MockTransport handler that records requests."""

    def __init__(self, status_code=200, error=None):
        self.status_code = status_code
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error(f"simulated {self.error.__name__}", request=request)
        return httpx.Response(self.status_code, json={"ok": True})


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def ingestion(db, settlement_clock, clock, recorder):
    notifier = MerchantNotifier(db, timeout=2.0, transport=httpx.MockTransport(recorder))
    return WebhookIngestion(db, notifier, settlement_clock, clock=clock)


@pytest.fixture
def store(db):
    return TransactionStore(db)


@pytest.fixture
def pending_order(make_merchant, make_transaction):
    async def _order(amount=1000, status="created", **extra):
        merchant = await make_merchant(webhook_url=WEBHOOK_URL, webhook_secret="whsec_test")
        txn = await make_transaction(merchant["merchant_id"], amount, status=status,
                                     settlement_status="unsettled", **extra)
        return merchant, txn
    return _order


async def ingest_cashfree(ingestion, payload):
    return await ingestion.ingest(parse_cashfree_event(payload, body_of(payload)))


def razorpay_refund(payment_id, paise, refund_id):
    return {
        "event": "refund.processed",
        "payload": {"refund": {"entity": {"id": refund_id, "payment_id": payment_id, "amount": paise}}},
    }


def interleave_store_calls(monkeypatch, store):
    """Yield to the event loop before every store call so concurrent ingests overlap."""
    for name in ("find_by_gateway_reference", "get_by_order_id", "apply_refund"):
        original = getattr(store, name)

        async def yielding(*args, _original=original, **kwargs):
            await asyncio.sleep(0)
            return await _original(*args, **kwargs)

        monkeypatch.setattr(store, name, yielding)


class TestSignatures:

    def test_cashfree_signature(self):
        raw = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
        timestamp = "1704861000"
        signature = base64.b64encode(
            hmac.new(b"cf_secret", timestamp.encode() + raw, hashlib.sha256).digest()
        ).decode()

        assert verify_cashfree_signature("cf_secret", signature, timestamp, raw) is True
        assert verify_cashfree_signature("cf_secret", signature, "1704861001", raw) is False
        assert verify_cashfree_signature("", signature, timestamp, raw) is False
        assert verify_cashfree_signature("cf_secret", None, timestamp, raw) is False

    def test_razorpay_signature(self):
        raw = b'{"event":"payment.captured"}'
        signature = hmac.new(b"rzp_secret", raw, hashlib.sha256).hexdigest()

        assert verify_razorpay_signature("rzp_secret", signature, raw) is True
        assert verify_razorpay_signature("rzp_secret", signature, raw + b" ") is False
        assert verify_razorpay_signature("", signature, raw) is False


class TestParsing:

    def test_cashfree_vocabulary(self):
        assert parse_cashfree_event(cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", "o1"), b"{}").target_status == "paid"
        assert parse_cashfree_event(cashfree_payment("PAYMENT_FAILED_WEBHOOK", "o1"), b"{}").target_status == "failed"
        assert parse_cashfree_event(
            cashfree_payment("PAYMENT_USER_DROPPED_WEBHOOK", "o1"), b"{}"
        ).target_status == "cancelled"
        assert parse_cashfree_event({"type": "SETTLEMENT_WEBHOOK", "data": {}}, b"{}") is None

    def test_cashfree_event_id_is_stable(self):
        first = parse_cashfree_event(cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", "o1", 77), b"a")
        again = parse_cashfree_event(cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", "o1", 77), b"b")
        assert first.event_id == again.event_id == "cashfree:PAYMENT_SUCCESS_WEBHOOK:77"

    def test_event_id_falls_back_to_payload_hash(self):
        payload = cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", "o1", cf_payment_id=None)
        event = parse_cashfree_event(payload, b"raw-body")
        assert event.event_id == "cashfree:" + hashlib.sha256(b"raw-body").hexdigest()

    def test_cashfree_pending_refund_is_ignored(self):
        assert parse_cashfree_event(cashfree_refund("o1", 10, "r1", "PENDING"), b"{}") is None

    def test_razorpay_vocabulary(self):
        link = {"payment_link": {"entity": {"id": "plink_1"}}}
        expired = parse_razorpay_event({"event": "payment_link.expired", "payload": link}, b"{}", "evt_1")
        assert expired.target_status == "failed"
        assert expired.notify_event == "payment.expired"
        assert expired.event_id == "razorpay:evt_1"

        refund = parse_razorpay_event({
            "event": "refund.processed",
            "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1", "amount": 50000}}},
        }, b"{}")
        assert refund.target_status == "refund"
        assert refund.lookup_field == "razorpay_payment_id"
        assert str(refund.refund_amount) == "500"

        assert parse_razorpay_event({"event": "order.paid", "payload": {}}, b"{}") is None


class TestStatusTransitions:

    async def test_payment_success_stamps_settlement_fields(self, ingestion, store, pending_order):
        _, txn = await pending_order()

        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        assert outcome["status"] == "applied"
        assert outcome["previous_status"] == "created"
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["status"] == "paid"
        assert saved["paid_at"] == datetime(2024, 1, 10, 4, 30)
        assert saved["expected_settlement_date"] == datetime(2024, 1, 11, 4, 30)
        assert saved["settlement_status"] == "unsettled"
        assert saved["commission"] == 44.84
        assert saved["net_amount"] == 955.16
        assert saved["payment_method"] == "upi"
        assert saved["cashfree_payment_id"] == "1001"

    async def test_missing_payment_time_uses_receipt_time(self, ingestion, store, pending_order, clock):
        _, txn = await pending_order()

        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"],
                                                          payment_time=None))

        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["paid_at"] == clock().replace(tzinfo=None)

    async def test_redelivery_is_skipped(self, ingestion, pending_order):
        _, txn = await pending_order()
        payload = cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"])

        await ingest_cashfree(ingestion, payload)
        outcome = await ingest_cashfree(ingestion, payload)

        assert outcome["status"] == "skipped"
        assert outcome["reason"] == "duplicate_event"

    async def test_second_paid_event_does_not_restamp(self, ingestion, store, pending_order):
        _, txn = await pending_order()
        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"], 1))

        outcome = await ingest_cashfree(ingestion, cashfree_payment(
            "PAYMENT_SUCCESS_WEBHOOK", txn["order_id"], 2, payment_time="2024-01-12T10:00:00+05:30"
        ))

        assert outcome["status"] == "ignored"
        assert outcome["reason"] == "non_forward_transition"
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["paid_at"] == datetime(2024, 1, 10, 4, 30)

    async def test_failure_after_payment_is_ignored(self, ingestion, store, pending_order):
        _, txn = await pending_order()
        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_FAILED_WEBHOOK", txn["order_id"], 2))

        assert outcome["status"] == "ignored"
        assert (await store.get_by_order_id(txn["order_id"]))["status"] == "paid"

    async def test_payment_after_failure_is_applied(self, ingestion, store, pending_order):
        _, txn = await pending_order()
        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_FAILED_WEBHOOK", txn["order_id"], 1,
                                                          message="Insufficient funds"))
        failed = await store.get_by_order_id(txn["order_id"])
        assert failed["status"] == "failed"
        assert failed["failure_reason"] == "Insufficient funds"

        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"], 2))

        assert outcome["status"] == "applied"
        assert outcome["previous_status"] == "failed"

    async def test_unknown_order(self, ingestion):
        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", "order_missing"))
        assert outcome["status"] == "ignored"
        assert outcome["reason"] == "transaction_not_found"

    async def test_razorpay_link_paid(self, ingestion, store, pending_order):
        _, txn = await pending_order(razorpay_payment_link_id="plink_123")
        payload = {
            "event": "payment_link.paid",
            "payload": {
                "payment_link": {"entity": {"id": "plink_123"}},
                "payment": {"entity": {"id": "pay_1", "order_id": "order_rp_1",
                                       "created_at": 1704861000, "method": "card"}},
            },
        }

        outcome = await ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_paid_1"))

        assert outcome["status"] == "applied"
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["status"] == "paid"
        assert saved["paid_at"] == datetime(2024, 1, 10, 4, 30)
        assert saved["razorpay_payment_id"] == "pay_1"
        assert saved["payment_method"] == "card"

    async def test_order_status_reconciliation(self, ingestion, store, pending_order):
        _, txn = await pending_order()

        pending = await ingestion.apply_order_status(txn["order_id"], "ACTIVE")
        expired = await ingestion.apply_order_status(txn["order_id"], "EXPIRED")
        unknown = await ingestion.apply_order_status(txn["order_id"], "WHATEVER")

        assert pending["new_status"] == "pending"
        assert expired["new_status"] == "failed"
        assert unknown["reason"] == "unknown_order_status"
        assert (await store.get_by_order_id(txn["order_id"]))["failure_reason"] == "Order expired"


class TestRefunds:

    async def test_partial_then_full_refund(self, ingestion, store, pending_order):
        _, txn = await pending_order(status="paid")

        first = await ingest_cashfree(ingestion, cashfree_refund(txn["order_id"], 400, "rf_1"))
        second = await ingest_cashfree(ingestion, cashfree_refund(txn["order_id"], 600, "rf_2"))
        third = await ingest_cashfree(ingestion, cashfree_refund(txn["order_id"], 1, "rf_3"))

        assert first["new_status"] == "partial_refund"
        assert first["refund_amount"] == 400.0
        assert second["new_status"] == "refunded"
        assert second["refund_amount"] == 1000.0
        assert third["reason"] == "not_refundable"
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["status"] == "refunded"
        assert saved["refund_amount"] == 1000.0
        assert saved["last_refund_id"] == "rf_2"

    async def test_refund_beyond_amount_is_ignored(self, ingestion, store, pending_order):
        _, txn = await pending_order(status="paid")

        outcome = await ingest_cashfree(ingestion, cashfree_refund(txn["order_id"], 1200, "rf_big"))

        assert outcome["reason"] == "refund_exceeds_amount"
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["status"] == "paid"
        assert saved["refund_amount"] == 0.0

    async def test_refund_redelivery_is_skipped(self, ingestion, store, pending_order):
        _, txn = await pending_order(status="paid")
        payload = cashfree_refund(txn["order_id"], 100, "rf_dup")

        await ingest_cashfree(ingestion, payload)
        outcome = await ingest_cashfree(ingestion, payload)

        assert outcome["status"] == "skipped"
        assert (await store.get_by_order_id(txn["order_id"]))["refund_amount"] == 100.0

    async def test_concurrent_refund_deliveries_apply_once(self, ingestion, store, pending_order, monkeypatch):
        _, txn = await pending_order(status="paid")
        interleave_store_calls(monkeypatch, ingestion.transactions)
        payload = cashfree_refund(txn["order_id"], 100, "rf_dup")

        outcomes = await asyncio.gather(ingest_cashfree(ingestion, payload), ingest_cashfree(ingestion, payload))

        assert sorted(o["status"] for o in outcomes) == ["applied", "skipped"]
        saved = await store.get_by_order_id(txn["order_id"])
        assert saved["refund_amount"] == 100.0
        assert saved["refund_ids"] == ["rf_dup"]

    async def test_same_refund_under_new_event_id_is_ignored(self, ingestion, store, pending_order):
        _, txn = await pending_order(status="paid", razorpay_payment_id="pay_7")
        payload = razorpay_refund("pay_7", 10000, "rfnd_7")

        first = await ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_rf_a"))
        second = await ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_rf_b"))

        assert first["status"] == "applied"
        assert second["reason"] == "duplicate_refund"
        assert (await store.get_by_order_id(txn["order_id"]))["refund_amount"] == 100.0

    async def test_concurrent_refund_under_new_event_ids_applies_once(self, ingestion, store, pending_order,
                                                                     monkeypatch):
        _, txn = await pending_order(status="paid", razorpay_payment_id="pay_8")
        interleave_store_calls(monkeypatch, ingestion.transactions)
        payload = razorpay_refund("pay_8", 10000, "rfnd_8")

        outcomes = await asyncio.gather(
            ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_rf_c")),
            ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_rf_d")),
        )

        assert sorted(o["status"] for o in outcomes) == ["applied", "ignored"]
        assert (await store.get_by_order_id(txn["order_id"]))["refund_amount"] == 100.0

    async def test_failed_application_can_be_redelivered(self, ingestion, store, db, pending_order, monkeypatch):
        _, txn = await pending_order(status="paid")
        payload = cashfree_refund(txn["order_id"], 100, "rf_retry")
        original = ingestion.transactions.apply_refund

        async def unavailable(*args, **kwargs):
            raise RuntimeError("primary stepped down")

        monkeypatch.setattr(ingestion.transactions, "apply_refund", unavailable)
        with pytest.raises(RuntimeError):
            await ingest_cashfree(ingestion, payload)
        assert await db.processed_webhook_events.count_documents({}) == 0

        monkeypatch.setattr(ingestion.transactions, "apply_refund", original)
        outcome = await ingest_cashfree(ingestion, payload)

        assert outcome["status"] == "applied"
        assert (await store.get_by_order_id(txn["order_id"]))["refund_amount"] == 100.0

    async def test_unknown_order_leaves_no_claim(self, ingestion, db):
        payload = cashfree_refund("order_missing", 100, "rf_x")

        outcome = await ingest_cashfree(ingestion, payload)

        assert outcome["reason"] == "transaction_not_found"
        assert await db.processed_webhook_events.count_documents({}) == 0

    async def test_razorpay_refund_in_paise(self, ingestion, store, pending_order):
        _, txn = await pending_order(status="paid", razorpay_payment_id="pay_9")
        payload = razorpay_refund("pay_9", 25050, "rfnd_9")

        outcome = await ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_rf_9"))

        assert outcome["new_status"] == "partial_refund"
        assert (await store.get_by_order_id(txn["order_id"]))["refund_amount"] == 250.5


class TestMerchantNotifications:

    async def test_paid_event_is_signed_and_delivered(self, ingestion, db, recorder, pending_order):
        merchant, txn = await pending_order()

        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        assert len(recorder.requests) == 1
        sent = recorder.requests[0]
        assert str(sent.url) == WEBHOOK_URL
        assert sent.headers["X-Webhook-Event"] == "payment.paid"
        assert sent.headers["X-Webhook-Signature"] == sign_payload("whsec_test", sent.content)
        body = json.loads(sent.content)
        assert body["event"] == "payment.paid"
        assert body["data"]["transaction_id"] == txn["transaction_id"]
        assert body["data"]["status"] == "paid"

        delivery = await db[DELIVERY_COLLECTION].find_one({"transaction_id": txn["transaction_id"]})
        assert delivery["status"] == "success"
        assert delivery["response_status"] == 200

    async def test_ignored_events_notify_nobody(self, ingestion, recorder, pending_order):
        _, txn = await pending_order()
        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"], 1))
        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_FAILED_WEBHOOK", txn["order_id"], 2))

        assert [r.headers["X-Webhook-Event"] for r in recorder.requests] == ["payment.paid"]

    async def test_expired_link_notifies_expired(self, ingestion, recorder, pending_order):
        _, txn = await pending_order(razorpay_payment_link_id="plink_exp")
        payload = {"event": "payment_link.expired", "payload": {"payment_link": {"entity": {"id": "plink_exp"}}}}

        await ingestion.ingest(parse_razorpay_event(payload, body_of(payload), "evt_exp"))

        assert recorder.requests[0].headers["X-Webhook-Event"] == "payment.expired"

    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
    async def test_delivery_failure_does_not_undo_the_update(self, db, settlement_clock, clock, store,
                                                             pending_order, error):
        failing = Recorder(error=error)
        notifier = MerchantNotifier(db, timeout=2.0, transport=httpx.MockTransport(failing))
        ingestion = WebhookIngestion(db, notifier, settlement_clock, clock=clock)
        _, txn = await pending_order()

        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        assert outcome["status"] == "applied"
        assert (await store.get_by_order_id(txn["order_id"]))["status"] == "paid"
        delivery = await db[DELIVERY_COLLECTION].find_one({"transaction_id": txn["transaction_id"]})
        assert delivery["status"] == "failed"
        assert delivery["error"] is not None

    async def test_merchant_error_response_is_recorded(self, db, settlement_clock, clock, pending_order):
        notifier = MerchantNotifier(db, timeout=2.0, transport=httpx.MockTransport(Recorder(status_code=500)))
        ingestion = WebhookIngestion(db, notifier, settlement_clock, clock=clock)
        _, txn = await pending_order()

        await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        delivery = await db[DELIVERY_COLLECTION].find_one({"transaction_id": txn["transaction_id"]})
        assert delivery["status"] == "failed"
        assert delivery["response_status"] == 500

    async def test_merchant_without_webhook_is_skipped(self, ingestion, recorder, make_merchant, make_transaction):
        merchant = await make_merchant()
        txn = await make_transaction(merchant["merchant_id"], 1000, status="created", settlement_status="unsettled")

        outcome = await ingest_cashfree(ingestion, cashfree_payment("PAYMENT_SUCCESS_WEBHOOK", txn["order_id"]))

        assert outcome["status"] == "applied"
        assert recorder.requests == []
