from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from decimal import Decimal
from enum import Enum

from core.payout_workflow import TRANSFER_MODE_BANK


# ============================================
# ENUMS
# ============================================
class CashfreeOrderStatus(str, Enum):
    PAID = "PAID"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


# ============================================
# PAYOUT REQUEST MODELS
# ============================================
class BeneficiaryDetails(BaseModel):
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    upi_id: Optional[str] = None


class PayoutRequestCreate(BaseModel):
    amount: Decimal
    # Validated by the workflow so unknown modes get the ledger's invalid_input error
    transfer_mode: str = TRANSFER_MODE_BANK
    beneficiary_details: Optional[BeneficiaryDetails] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class PayoutCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PayoutApprove(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class PayoutReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PayoutComplete(BaseModel):
    utr: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=500)


class PayoutFail(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PayoutPolicyUpdate(BaseModel):
    key: str
    value: Any


class OrderStatusReconcile(BaseModel):
    order_status: CashfreeOrderStatus


# ============================================
# RESPONSE MODELS
# ============================================
class SweepFailure(BaseModel):
    transaction_id: Optional[str] = None
    error: str


class SweepReport(BaseModel):
    job_name: str
    status: str
    started_at: str
    completed_at: str
    duration_ms: float
    scanned: int
    backfilled: int
    settled: int
    not_ready: int
    after_cutoff: int
    failed: int
    skipped_reason: Optional[str] = None
    failures: List[SweepFailure] = []


class BackfillReport(BaseModel):
    job_name: str
    status: str
    started_at: str
    completed_at: str
    scanned: int
    backfilled: int
    failed: int


class WebhookAck(BaseModel):
    success: bool = True
    message: str = "Webhook received"
    outcome: Optional[Dict[str, Any]] = None
