"""
Shared fixtures for the ledger test suite.

- `db`: fresh in-memory Motor-compatible database (mongomock-motor) per test
- `clock`: frozen, advanceable UTC clock injected into every engine component
- `make_merchant` / `make_transaction`: document factories
- `services`: LedgerServices bound to the mock database and frozen clock
- `api`: httpx AsyncClient over the FastAPI app; `auth_headers` mints bearer tokens
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
import pytest
import pytest_asyncio
from bson import ObjectId
from fastapi import FastAPI
from mongomock_motor import AsyncMongoMockClient

from auth import create_access_token
from payment_routes import payment_router, admin_transactions_router
from payout_routes import payout_router, admin_router
from services import LedgerServices
from core.settlement_clock import SettlementClock, to_storage
from core.stores import TransactionStore

# Wednesday 2024-01-10 12:00 IST
FIXED_NOW = datetime(2024, 1, 10, 6, 30, tzinfo=timezone.utc)

BANK_BENEFICIARY = {
    "account_number": "123456789012",
    "ifsc_code": "HDFC0001234",
    "account_holder_name": "Acme Stores",
    "bank_name": "HDFC Bank",
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def settlement_clock():
    return SettlementClock("Asia/Kolkata", 16)


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"ledger_test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def make_merchant(db):
    async def _make(
        name: str = "Acme Stores",
        role: str = "admin",
        free_payout_credits: int = 0,
        **extra: Any
    ) -> Dict[str, Any]:
        doc = {
            "_id": ObjectId(),
            "name": name,
            "email": f"{uuid.uuid4().hex[:8]}@example.com",
            "role": role,
            "active_status": True,
            "payout_version": 0,
            "free_payout_credits": free_payout_credits,
            **extra,
        }
        await db.users.insert_one(doc)
        doc["merchant_id"] = str(doc["_id"])
        return doc
    return _make


@pytest.fixture
def make_transaction(db, clock):
    store = TransactionStore(db)

    async def _make(
        merchant_id: str,
        amount: float,
        status: str = "paid",
        settlement_status: str = "settled",
        paid_at: Optional[datetime] = None,
        **extra: Any
    ) -> Dict[str, Any]:
        suffix = uuid.uuid4().hex[:12]
        if paid_at is None and status in ("paid", "partial_refund", "refunded"):
            paid_at = clock() - timedelta(days=3)
        doc = {
            "transaction_id": f"txn_{suffix}",
            "order_id": f"order_{suffix}",
            "merchant_id": merchant_id,
            "amount": amount,
            "currency": "INR",
            "status": status,
            "settlement_status": settlement_status,
            "paid_at": to_storage(paid_at),
            "created_at": to_storage(paid_at or clock()),
            **extra,
        }
        return await store.insert(doc)
    return _make


@pytest.fixture
def services(db, clock):
    return LedgerServices(
        db,
        clock=clock,
        timezone="Asia/Kolkata",
        cutoff_hour=16,
        webhook_timeout=2.0,
    )


@pytest.fixture
def app(services):
    application = FastAPI()
    application.include_router(payout_router)
    application.include_router(admin_router)
    application.include_router(payment_router)
    application.include_router(admin_transactions_router)
    application.state.services = services
    return application


@pytest_asyncio.fixture
async def api(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def auth_headers():
    def _headers(user: Dict[str, Any]) -> Dict[str, str]:
        token = create_access_token({"user_id": str(user["_id"]), "role": user["role"]})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def bank_beneficiary():
    return dict(BANK_BENEFICIARY)
