"""
PAYOUT & SETTLEMENT API ROUTES

Merchant endpoints (/api/payouts): balance view, payout request, listing,
cancellation.

Super admin endpoints (/api/admin): payout administration (approve, reject,
process, complete, fail), merchant balance lookup, settlement sweep and
backfill triggers, payout policy.

All balance figures come from BalanceLedger; nothing here computes money.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from bson import ObjectId
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Sequence
import logging

from auth import get_current_user
from models import (
    PayoutRequestCreate, PayoutCancel, PayoutApprove, PayoutReject,
    PayoutComplete, PayoutFail, PayoutPolicyUpdate, SweepReport, BackfillReport
)
from services import LedgerServices, get_services, ledger_http_error
from core.errors import PaymentLedgerError

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


# Create routers
payout_router = APIRouter(prefix="/api/payouts", tags=["Merchant Payouts"])
admin_router = APIRouter(prefix="/api/admin", tags=["Super Admin - Payouts & Settlement"])


async def require_merchant(current_user: dict, services: LedgerServices) -> dict:
    user = await services.permissions.get_authenticated_user(current_user)
    await services.permissions.check_merchant_role(user)
    return user


async def require_super_admin(current_user: dict, services: LedgerServices) -> dict:
    user = await services.permissions.get_authenticated_user(current_user)
    await services.permissions.check_super_admin_role(user)
    return user


def parse_date_param(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_input", "message": f"Invalid {field}: {value}", "field": field}
        )


def parse_status_param(value: Optional[str], allowed: Sequence[str], field: str) -> Optional[Dict[str, Any]]:
    """Comma-separated status filter as a Mongo $in clause."""
    if not value:
        return None
    statuses = [s.strip() for s in value.split(",") if s.strip()]
    unknown = [s for s in statuses if s not in allowed]
    if unknown or not statuses:
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_input", "message": f"Unknown {field}: {value}", "field": field}
        )
    return {"$in": statuses}


# ============================================
# MERCHANT: BALANCE & PAYOUTS
# ============================================

@payout_router.get("/balance")
async def get_my_balance(
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Available, unsettled and paid-out figures, recomputed on every call"""
    user = await require_merchant(current_user, services)
    policy = await services.policy.get_policy()
    view = await services.ledger.balance_view(user["user_id"], policy)
    view["free_payout_credits"] = user.get("free_payout_credits", 0)
    return serialize_doc(view)


@payout_router.post("/request", status_code=status.HTTP_201_CREATED)
async def request_payout(
    payout_data: PayoutRequestCreate,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Request a payout of settled balance"""
    user = await require_merchant(current_user, services)

    beneficiary = payout_data.beneficiary_details.model_dump() if payout_data.beneficiary_details else None

    try:
        result = await services.workflow.create_payout(
            merchant_id=user["user_id"],
            amount=payout_data.amount,
            transfer_mode=payout_data.transfer_mode,
            beneficiary_details=beneficiary,
            requested_by=user["user_id"],
            notes=payout_data.notes
        )
    except PaymentLedgerError as e:
        raise ledger_http_error(e)

    payout = result["payout"]
    await services.audit.log_action(
        module_name="PAYOUTS",
        entity_type="PAYOUT",
        entity_id=payout["payout_id"],
        action_type="CREATE",
        user_id=user["user_id"],
        merchant_id=user["user_id"],
        new_value={"amount": payout["amount"], "net_amount": payout["net_amount"], "status": payout["status"]}
    )

    return {
        "success": True,
        "message": "Payout request submitted successfully",
        "payout": serialize_doc(payout),
        "balance_info": result["balance_info"],
    }


@payout_router.get("")
async def list_my_payouts(
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    user = await require_merchant(current_user, services)
    try:
        result = await services.workflow.list_payouts(
            merchant_id=user["user_id"],
            status=status_filter,
            start_date=parse_date_param(start_date, "start_date"),
            end_date=parse_date_param(end_date, "end_date"),
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order
        )
    except PaymentLedgerError as e:
        raise ledger_http_error(e)
    return serialize_doc(result)


@payout_router.get("/{payout_id}")
async def get_my_payout(
    payout_id: str,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    user = await require_merchant(current_user, services)
    try:
        payout = await services.workflow.get_payout(payout_id, merchant_id=user["user_id"])
    except PaymentLedgerError as e:
        raise ledger_http_error(e)
    return serialize_doc(payout)


@payout_router.post("/{payout_id}/cancel")
async def cancel_payout(
    payout_id: str,
    cancel_data: Optional[PayoutCancel] = None,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Cancel a payout that has not been approved yet"""
    user = await require_merchant(current_user, services)
    reason = cancel_data.reason if cancel_data else None

    try:
        payout = await services.workflow.cancel(payout_id, user["user_id"], reason)
    except PaymentLedgerError as e:
        raise ledger_http_error(e)

    await services.audit.log_action(
        module_name="PAYOUTS",
        entity_type="PAYOUT",
        entity_id=payout_id,
        action_type="CANCEL",
        user_id=user["user_id"],
        merchant_id=user["user_id"],
        new_value={"status": payout["status"], "reason": payout.get("cancellation_reason")}
    )

    return {"success": True, "message": "Payout request cancelled", "payout": serialize_doc(payout)}


# ============================================
# SUPER ADMIN: PAYOUT ADMINISTRATION
# ============================================

@admin_router.get("/payouts")
async def list_all_payouts(
    status_filter: Optional[str] = Query(None, alias="status"),
    merchant_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    try:
        result = await services.workflow.list_payouts(
            merchant_id=merchant_id,
            status=status_filter,
            start_date=parse_date_param(start_date, "start_date"),
            end_date=parse_date_param(end_date, "end_date"),
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order
        )
    except PaymentLedgerError as e:
        raise ledger_http_error(e)
    return serialize_doc(result)


@admin_router.get("/payouts/{payout_id}")
async def get_payout(
    payout_id: str,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    try:
        payout = await services.workflow.get_payout(payout_id)
    except PaymentLedgerError as e:
        raise ledger_http_error(e)
    return serialize_doc(payout)


async def _admin_transition(
    services: LedgerServices,
    admin: dict,
    payout_id: str,
    action: str,
    operation
) -> Dict[str, Any]:
    try:
        payout = await operation
    except PaymentLedgerError as e:
        raise ledger_http_error(e)

    await services.audit.log_action(
        module_name="PAYOUTS",
        entity_type="PAYOUT",
        entity_id=payout_id,
        action_type=action,
        user_id=admin["user_id"],
        merchant_id=payout.get("merchant_id"),
        new_value={"status": payout["status"]}
    )
    return {"success": True, "payout": serialize_doc(payout)}


@admin_router.post("/payouts/{payout_id}/approve")
async def approve_payout(
    payout_id: str,
    approve_data: Optional[PayoutApprove] = None,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    notes = approve_data.notes if approve_data else None
    return await _admin_transition(
        services, admin, payout_id, "APPROVE",
        services.workflow.approve(payout_id, admin["user_id"], notes)
    )


@admin_router.post("/payouts/{payout_id}/reject")
async def reject_payout(
    payout_id: str,
    reject_data: PayoutReject,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    return await _admin_transition(
        services, admin, payout_id, "REJECT",
        services.workflow.reject(payout_id, admin["user_id"], reject_data.reason)
    )


@admin_router.post("/payouts/{payout_id}/process")
async def start_processing_payout(
    payout_id: str,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    return await _admin_transition(
        services, admin, payout_id, "PROCESS",
        services.workflow.start_processing(payout_id, admin["user_id"])
    )


@admin_router.post("/payouts/{payout_id}/complete")
async def complete_payout(
    payout_id: str,
    complete_data: PayoutComplete,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    return await _admin_transition(
        services, admin, payout_id, "COMPLETE",
        services.workflow.complete(payout_id, admin["user_id"], complete_data.utr, complete_data.notes)
    )


@admin_router.post("/payouts/{payout_id}/fail")
async def fail_payout(
    payout_id: str,
    fail_data: Optional[PayoutFail] = None,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    reason = fail_data.reason if fail_data else None
    return await _admin_transition(
        services, admin, payout_id, "FAIL",
        services.workflow.fail(payout_id, admin["user_id"], reason)
    )


@admin_router.get("/merchants/{merchant_id}/balance")
async def get_merchant_balance(
    merchant_id: str,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    try:
        merchant = await services.workflow.merchants.get(merchant_id)
    except PaymentLedgerError as e:
        raise ledger_http_error(e)
    if merchant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": f"merchant not found: {merchant_id}"}
        )
    policy = await services.policy.get_policy()
    return serialize_doc(await services.ledger.balance_view(merchant_id, policy))


# ============================================
# SUPER ADMIN: SETTLEMENT
# ============================================

@admin_router.post("/settlement/run", response_model=SweepReport)
async def run_settlement(
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Run the settlement sweep now (same code path as the daily job)"""
    admin = await require_super_admin(current_user, services)
    report = await services.scheduler.run_now()
    await services.audit.log_action(
        module_name="SETTLEMENT",
        entity_type="SETTLEMENT",
        entity_id=report["started_at"],
        action_type="RUN",
        user_id=admin["user_id"],
        new_value={"settled": report["settled"], "status": report["status"]}
    )
    return report


@admin_router.post("/settlement/backfill", response_model=BackfillReport)
async def backfill_settlement_dates(
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    """Compute missing expected settlement dates across all paid transactions"""
    admin = await require_super_admin(current_user, services)
    report = await services.sweeper.backfill_all()
    await services.audit.log_action(
        module_name="SETTLEMENT",
        entity_type="SETTLEMENT",
        entity_id=report["started_at"],
        action_type="BACKFILL",
        user_id=admin["user_id"],
        new_value={"backfilled": report["backfilled"]}
    )
    return report


@admin_router.get("/settlement/status")
async def settlement_status(
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    return {
        "scheduler_running": services.scheduler.running,
        "next_run_time": services.scheduler.next_run_time(),
        "sweep_in_progress": services.sweeper.is_running,
        "last_report": services.sweeper.last_report,
        "timezone": services.scheduler.timezone,
        "cutoff_hour": services.settlement_clock.cutoff_hour,
    }


# ============================================
# SUPER ADMIN: PAYOUT POLICY
# ============================================

@admin_router.get("/payout-policy")
async def get_payout_policy(
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    return await services.policy.get_policy()


@admin_router.put("/payout-policy")
async def update_payout_policy(
    policy_data: PayoutPolicyUpdate,
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    admin = await require_super_admin(current_user, services)
    try:
        policy = await services.policy.update_policy(policy_data.key, policy_data.value)
    except PaymentLedgerError as e:
        raise ledger_http_error(e)

    await services.audit.log_action(
        module_name="SETTINGS",
        entity_type="PAYOUT_POLICY",
        entity_id=policy_data.key,
        action_type="UPDATE",
        user_id=admin["user_id"],
        new_value={policy_data.key: policy_data.value}
    )
    return policy


# ============================================
# SUPER ADMIN: AUDIT TRAIL
# ============================================

@admin_router.get("/audit-logs")
async def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    merchant_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    services: LedgerServices = Depends(get_services)
):
    await require_super_admin(current_user, services)
    logs = await services.audit.get_audit_logs(entity_type, entity_id, merchant_id, limit)
    return {"logs": [serialize_doc(log) for log in logs], "count": len(logs)}
