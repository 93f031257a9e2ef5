"""
Service wiring for the ledger API.

One LedgerServices instance per process, built at startup and stored on
`app.state.services`. Routes get it through the `get_services` dependency,
which tests override with an instance bound to a mock database.
"""

from fastapi import HTTPException, Request, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Callable, Optional
import os
import logging

import httpx

from audit_service import AuditService
from permissions import PermissionChecker
from core.balance_ledger import BalanceLedger
from core.errors import PaymentLedgerError
from core.merchant_notifier import MerchantNotifier
from core.payout_policy import PayoutPolicyService
from core.payout_workflow import PayoutWorkflow
from core.scheduler import SettlementScheduler
from core.settlement_clock import SettlementClock, utcnow, DEFAULT_TIMEZONE, DEFAULT_CUTOFF_HOUR
from core.settlement_sweeper import SettlementSweeper
from core.webhook_ingestion import WebhookIngestion

logger = logging.getLogger(__name__)


ERROR_STATUS = {
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "insufficient_balance": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "reservation_conflict": status.HTTP_409_CONFLICT,
    "concurrent_modification": status.HTTP_409_CONFLICT,
}


def ledger_http_error(error: PaymentLedgerError) -> HTTPException:
    """Translate a ledger error into the HTTPException the API returns."""
    return HTTPException(
        status_code=ERROR_STATUS.get(error.code, status.HTTP_400_BAD_REQUEST),
        detail=error.to_dict()
    )


class LedgerServices:
    """Everything a request handler needs, bound to one database."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        clock: Callable[[], datetime] = utcnow,
        timezone: Optional[str] = None,
        cutoff_hour: Optional[int] = None,
        webhook_timeout: Optional[float] = None,
        notifier_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        timezone = timezone or os.environ.get("SETTLEMENT_TIMEZONE", DEFAULT_TIMEZONE)
        if cutoff_hour is None:
            cutoff_hour = int(os.environ.get("SETTLEMENT_CUTOFF_HOUR", DEFAULT_CUTOFF_HOUR))
        if webhook_timeout is None:
            webhook_timeout = float(os.environ.get("MERCHANT_WEBHOOK_TIMEOUT", "10"))

        self.db = db
        self.clock = clock
        self.settlement_clock = SettlementClock(timezone, cutoff_hour)
        self.policy = PayoutPolicyService(db)
        self.ledger = BalanceLedger(db, self.settlement_clock, clock=clock)
        self.workflow = PayoutWorkflow(db, ledger=self.ledger, policy=self.policy, clock=clock)
        self.sweeper = SettlementSweeper(db, self.settlement_clock, clock=clock)
        self.scheduler = SettlementScheduler(self.sweeper, timezone=timezone, hour=cutoff_hour)
        self.notifier = MerchantNotifier(db, timeout=webhook_timeout, transport=notifier_transport)
        self.ingestion = WebhookIngestion(db, self.notifier, self.settlement_clock, clock=clock)
        self.audit = AuditService(db, clock=clock)
        self.permissions = PermissionChecker(db)

        self.cashfree_webhook_secret = os.environ.get("CASHFREE_WEBHOOK_SECRET", "")
        self.razorpay_webhook_secret = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")


def get_services(request: Request) -> LedgerServices:
    return request.app.state.services
