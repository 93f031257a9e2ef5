"""
LEDGER ENGINE: PAYOUT WORKFLOW

Drives a payout request from creation to a terminal state.

States:
    requested -> pending (approve) | rejected | cancelled
    pending   -> processing | completed | rejected
    processing -> completed | failed

Terminal: completed, rejected, cancelled, failed.

ADMISSION (create):
1. Validate amount, beneficiary and policy limits (no mutation yet)
2. Per-merchant asyncio lock: serializes admission within this process
3. Read merchant payout_version, consume a free credit if one applies
4. Recompute the balance via BalanceLedger and check net_amount against it
5. Claim covering settled transactions (unpaid -> requested) as one CAS
6. Insert the payout, then CAS-bump payout_version; losing that race
   compensates everything and raises ConcurrentModificationError

ROLLBACK (reject, cancel, fail):
- Reserved transactions go back to payout_status=unpaid, payout_id=None
- A consumed free credit is restored to the merchant

Every transition is a compare-and-set on the source state and appends to
state_history.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal, InvalidOperation
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from contextlib import asynccontextmanager
import asyncio
import copy
import re
import secrets
import logging

from core.balance_ledger import BalanceLedger
from core.commission_engine import CommissionEngine
from core.errors import (
    LedgerValidationError, NotFoundError, InvalidStateError,
    InsufficientBalanceError, ReservationConflictError, ConcurrentModificationError
)
from core.financial_precision import (
    ZERO, FinancialPrecisionError, to_decimal, round_financial, to_float, format_amount
)
from core.payout_policy import PayoutPolicyService
from core.settlement_clock import utcnow, to_storage
from core.state_machine import StateMachine, InvalidTransitionError, GuardConditionError
from core.stores import (
    TransactionStore, PayoutStore, MerchantStore, PayoutStatus, merchant_object_id
)

logger = logging.getLogger(__name__)


# =============================================================================
# BENEFICIARY VALIDATION
# =============================================================================

TRANSFER_MODE_BANK = "bank_transfer"
TRANSFER_MODE_UPI = "upi"
TRANSFER_MODES = (TRANSFER_MODE_BANK, TRANSFER_MODE_UPI)

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{9,18}$")
UPI_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z]+$")

SORTABLE_FIELDS = ("created_at", "requested_at", "amount", "net_amount", "status", "completed_at")
MAX_PAGE_SIZE = 100


def validate_beneficiary(transfer_mode: str, beneficiary: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return normalized beneficiary details or raise LedgerValidationError."""
    if transfer_mode not in TRANSFER_MODES:
        raise LedgerValidationError(
            f"Invalid transfer mode '{transfer_mode}'. Use {' or '.join(TRANSFER_MODES)}",
            field="transfer_mode"
        )

    beneficiary = beneficiary or {}

    if transfer_mode == TRANSFER_MODE_BANK:
        account_number = str(beneficiary.get("account_number") or "").replace(" ", "")
        ifsc_code = str(beneficiary.get("ifsc_code") or "").strip().upper()
        holder = str(beneficiary.get("account_holder_name") or "").strip()

        if not account_number or not ifsc_code or not holder:
            raise LedgerValidationError(
                "Bank transfer requires account_number, ifsc_code and account_holder_name",
                field="beneficiary_details"
            )
        if not ACCOUNT_NUMBER_PATTERN.match(account_number):
            raise LedgerValidationError("Account number must be 9 to 18 digits", field="account_number")
        if not IFSC_PATTERN.match(ifsc_code):
            raise LedgerValidationError("Invalid IFSC code format", field="ifsc_code")

        return {
            "account_number": account_number,
            "ifsc_code": ifsc_code,
            "account_holder_name": holder,
            "bank_name": (beneficiary.get("bank_name") or "").strip() or None,
        }

    upi_id = str(beneficiary.get("upi_id") or "").strip()
    if not upi_id:
        raise LedgerValidationError("UPI transfer requires upi_id", field="upi_id")
    if not UPI_PATTERN.match(upi_id):
        raise LedgerValidationError("Invalid UPI ID format", field="upi_id")

    return {
        "upi_id": upi_id,
        "account_holder_name": (beneficiary.get("account_holder_name") or "").strip() or None,
    }


def mask_account_number(account_number: Optional[str]) -> Optional[str]:
    if not account_number:
        return account_number
    return "XXXX" + str(account_number)[-4:]


def mask_payout(payout: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a payout safe for read paths: only last 4 account digits survive."""
    masked = copy.deepcopy(payout)
    masked.pop("_id", None)
    details = masked.get("beneficiary_details")
    if details and details.get("account_number"):
        details["account_number"] = mask_account_number(details["account_number"])
    return masked


def parse_amount(value: Any) -> Decimal:
    """Parse a requested payout amount; must be a finite number > 0."""
    if value is None or isinstance(value, bool):
        raise LedgerValidationError("Amount is required", field="amount")
    try:
        amount = to_decimal(value)
    except (FinancialPrecisionError, InvalidOperation):
        raise LedgerValidationError(f"Invalid amount: {value!r}", field="amount")
    if not amount.is_finite() or amount <= ZERO:
        raise LedgerValidationError("Amount must be greater than zero", field="amount")
    if amount != round_financial(amount):
        raise LedgerValidationError("Amount cannot have more than 2 decimal places", field="amount")
    return amount


def generate_payout_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"PAYOUT_REQ_{millis}_{secrets.token_hex(4).upper()}"


# =============================================================================
# PAYOUT WORKFLOW
# =============================================================================

class PayoutWorkflow:
    """
    Payout admission and lifecycle.

    One instance per process: the per-merchant admission locks live on it.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        ledger: Optional[BalanceLedger] = None,
        policy: Optional[PayoutPolicyService] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.clock = clock
        self.ledger = ledger or BalanceLedger(db, clock=clock)
        self.policy = policy or PayoutPolicyService(db)
        self.transactions = TransactionStore(db)
        self.payouts = PayoutStore(db)
        self.merchants = MerchantStore(db)
        # Per-merchant admission lock and the number of callers holding or awaiting it
        self._merchant_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

        self.machine = StateMachine("payout", clock=clock)
        self.machine.register(PayoutStatus.REQUESTED, PayoutStatus.PENDING, self._handle_approve,
                              description="Super admin approval")
        self.machine.register(PayoutStatus.REQUESTED, PayoutStatus.REJECTED, self._handle_reject,
                              guard=self._require_reason)
        self.machine.register(PayoutStatus.PENDING, PayoutStatus.REJECTED, self._handle_reject,
                              guard=self._require_reason)
        self.machine.register(PayoutStatus.REQUESTED, PayoutStatus.CANCELLED, self._handle_cancel,
                              description="Merchant cancellation")
        self.machine.register(PayoutStatus.PENDING, PayoutStatus.PROCESSING, self._handle_start_processing)
        self.machine.register(PayoutStatus.PENDING, PayoutStatus.COMPLETED, self._handle_complete,
                              guard=self._require_utr)
        self.machine.register(PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, self._handle_complete,
                              guard=self._require_utr)
        self.machine.register(PayoutStatus.PROCESSING, PayoutStatus.FAILED, self._handle_fail)

    # =========================================================================
    # CREATE
    # =========================================================================

    @asynccontextmanager
    async def _merchant_lock(self, merchant_id: str):
        lock = self._merchant_locks.setdefault(merchant_id, asyncio.Lock())
        self._lock_users[merchant_id] = self._lock_users.get(merchant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[merchant_id] -= 1
            if not self._lock_users[merchant_id]:
                del self._lock_users[merchant_id]
                del self._merchant_locks[merchant_id]

    async def create_payout(
        self,
        merchant_id: str,
        amount: Any,
        transfer_mode: str,
        beneficiary_details: Optional[Dict[str, Any]],
        requested_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Admit a payout request. Returns {"payout": <masked doc>, "balance_info": {...}}.

        Raises LedgerValidationError, NotFoundError, InsufficientBalanceError,
        ReservationConflictError or ConcurrentModificationError. Nothing is
        left mutated when any of them is raised.
        """
        gross = parse_amount(amount)
        merchant_object_id(merchant_id)
        beneficiary = validate_beneficiary(transfer_mode, beneficiary_details)
        await self.policy.check_amount(gross)

        async with self._merchant_lock(merchant_id):
            merchant = await self.merchants.get(merchant_id)
            if merchant is None:
                raise NotFoundError("merchant", merchant_id)
            seen_version = merchant.get("payout_version") or 0

            used_free_credit = False
            if await self.policy.free_credits_enabled() and (merchant.get("free_payout_credits") or 0) > 0:
                used_free_credit = await self.merchants.consume_free_credit(merchant_id)

            try:
                return await self._admit(merchant, merchant_id, gross, transfer_mode, beneficiary,
                                         used_free_credit, seen_version, requested_by, notes)
            except Exception:
                if used_free_credit:
                    await self.merchants.restore_free_credit(merchant_id)
                raise

    async def _admit(
        self,
        merchant: Dict[str, Any],
        merchant_id: str,
        gross: Decimal,
        transfer_mode: str,
        beneficiary: Dict[str, Any],
        used_free_credit: bool,
        seen_version: int,
        requested_by: Optional[str],
        notes: Optional[str]
    ) -> Dict[str, Any]:
        if used_free_credit:
            commission_info = CommissionEngine.free_payout_commission(gross)
        else:
            commission_info = CommissionEngine.payout_commission(gross)

        if commission_info["exceeds_amount"]:
            raise LedgerValidationError(
                f"Payout commission ₹{format_amount(commission_info['commission'])} "
                f"exceeds the requested amount",
                field="amount"
            )

        commission = commission_info["commission"]
        net_amount = commission_info["net_amount"]

        available = await self.ledger.available_balance(merchant_id)
        if net_amount > available:
            logger.info(
                f"[PAYOUT] Rejected for {merchant_id}: net ₹{net_amount} > available ₹{available}"
            )
            raise InsufficientBalanceError(available, gross, commission, net_amount)

        now = self.clock()
        payout_id = generate_payout_id(now)

        reserved_ids = await self._reserve_transactions(merchant_id, payout_id, net_amount)

        stored_now = to_storage(now)
        payout = {
            "payout_id": payout_id,
            "merchant_id": merchant_id,
            "merchant_name": merchant.get("name") or merchant.get("business_name"),
            "amount": to_float(gross),
            "commission": to_float(commission),
            "net_amount": to_float(net_amount),
            "commission_type": commission_info["commission_type"],
            "commission_breakdown": commission_info["breakdown"],
            "used_free_credit": used_free_credit,
            "transfer_mode": transfer_mode,
            "beneficiary_details": beneficiary,
            "status": PayoutStatus.REQUESTED,
            "notes": notes,
            "requested_by": requested_by,
            "requested_at": stored_now,
            "approved_by": None,
            "approved_at": None,
            "rejected_by": None,
            "rejected_at": None,
            "rejection_reason": None,
            "processed_by": None,
            "processed_at": None,
            "completed_at": None,
            "failed_at": None,
            "failure_reason": None,
            "utr": None,
            "related_transactions": reserved_ids,
            "state_history": [
                self.machine.get_history_entry(None, PayoutStatus.REQUESTED, requested_by)
            ],
            "created_at": stored_now,
            "updated_at": stored_now,
        }

        try:
            await self.payouts.insert(payout)
        except Exception:
            await self.transactions.release_payout_reservation(payout_id)
            raise

        if not await self.merchants.bump_payout_version(merchant_id, seen_version):
            # Another process admitted a payout against the same balance snapshot
            await self.payouts.delete_unreferenced(payout_id)
            await self.transactions.release_payout_reservation(payout_id)
            logger.warning(f"[PAYOUT] Version race lost for {merchant_id}, {payout_id} withdrawn")
            raise ConcurrentModificationError("merchant", merchant_id)

        logger.info(
            f"[PAYOUT] Created {payout_id} for {merchant_id}: gross ₹{gross} "
            f"commission ₹{commission} ({commission_info['commission_type']}) net ₹{net_amount}, "
            f"reserved {len(reserved_ids)} transactions"
        )

        return {
            "payout": mask_payout(payout),
            "balance_info": {
                "previous_available_balance": to_float(available),
                "new_available_balance": to_float(available - net_amount),
                "reserved_transactions": len(reserved_ids),
            },
        }

    async def _reserve_transactions(self, merchant_id: str, payout_id: str, net_amount: Decimal) -> List[str]:
        """
        Claim settled, unreserved transactions oldest-first until their net
        covers the payout. The balance check is authoritative; this only links
        the covering transactions to the payout and blocks double reservation.
        """
        eligible = await self.transactions.find_eligible_for_payout(merchant_id)

        selected: List[str] = []
        covered = ZERO
        for txn in eligible:
            if covered >= net_amount:
                break
            txn_net = (
                to_decimal(txn.get("amount"))
                - to_decimal(txn.get("refund_amount"))
                - CommissionEngine.payin_commission(txn.get("amount"))["commission"]
            )
            selected.append(txn["transaction_id"])
            covered += txn_net

        claimed = await self.transactions.claim_for_payout(selected, payout_id)
        if claimed != len(selected):
            lost = []
            for transaction_id in selected:
                txn = await self.transactions.get_by_transaction_id(transaction_id)
                if txn is None or txn.get("payout_id") != payout_id:
                    lost.append(transaction_id)
            await self.transactions.release_payout_reservation(payout_id)
            logger.warning(f"[PAYOUT] Reservation conflict for {payout_id}: {lost}")
            raise ReservationConflictError(payout_id, lost)

        return selected

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def approve(self, payout_id: str, actor_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.PENDING, "approve", {"actor_id": actor_id, "notes": notes}
        )

    async def reject(self, payout_id: str, actor_id: str, reason: Optional[str]) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.REJECTED, "reject", {"actor_id": actor_id, "reason": reason}
        )

    async def cancel(self, payout_id: str, merchant_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.CANCELLED, "cancel",
            {"actor_id": merchant_id, "reason": reason or "Cancelled by merchant"},
            merchant_id=merchant_id
        )

    async def start_processing(self, payout_id: str, actor_id: str) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.PROCESSING, "process", {"actor_id": actor_id}
        )

    async def complete(
        self,
        payout_id: str,
        actor_id: str,
        utr: Optional[str],
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.COMPLETED, "complete",
            {"actor_id": actor_id, "utr": utr, "notes": notes}
        )

    async def fail(self, payout_id: str, actor_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._run_transition(
            payout_id, PayoutStatus.FAILED, "fail",
            {"actor_id": actor_id, "reason": reason or "Transfer failed"}
        )

    async def _run_transition(
        self,
        payout_id: str,
        to_state: str,
        action: str,
        context: Dict[str, Any],
        merchant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        payout = await self.payouts.get(payout_id, merchant_id=merchant_id)
        if payout is None:
            raise NotFoundError("payout", payout_id)

        try:
            result = await self.machine.transition(payout, to_state, context=context)
        except InvalidTransitionError as e:
            raise InvalidStateError(
                "payout", e.from_state, self.machine.get_source_states(to_state), action
            )
        except GuardConditionError as e:
            raise LedgerValidationError(e.reason, field=context.get("field"))

        return mask_payout(result["handler_result"])

    async def _persist_transition(
        self,
        payout: Dict[str, Any],
        to_state: str,
        updates: Dict[str, Any],
        context: Dict[str, Any],
        action: str
    ) -> Dict[str, Any]:
        """CAS the status from the payout's current state. Lost race -> InvalidStateError."""
        from_state = payout["status"]
        history = self.machine.get_history_entry(
            from_state, to_state, context.get("actor_id"),
            {k: v for k, v in context.items() if k != "actor_id" and v is not None}
        )
        updated = await self.payouts.transition(
            payout["payout_id"], [from_state], {"status": to_state, **updates}, history
        )
        if updated is None:
            current = await self.payouts.get(payout["payout_id"])
            raise InvalidStateError(
                "payout",
                current["status"] if current else "missing",
                self.machine.get_source_states(to_state),
                action
            )
        logger.info(f"[PAYOUT] {payout['payout_id']}: {from_state} -> {to_state} by {context.get('actor_id')}")
        return updated

    async def _rollback(self, payout: Dict[str, Any]) -> None:
        released = await self.transactions.release_payout_reservation(payout["payout_id"])
        if payout.get("used_free_credit"):
            await self.merchants.restore_free_credit(payout["merchant_id"])
        logger.info(
            f"[PAYOUT] Rolled back {payout['payout_id']}: released {released} transactions"
            f"{', restored free credit' if payout.get('used_free_credit') else ''}"
        )

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    async def _require_reason(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
        if not (context.get("reason") or "").strip():
            context["field"] = "reason"
            return False, "Rejection reason is required"
        return True, ""

    async def _require_utr(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
        if not (context.get("utr") or "").strip():
            context["field"] = "utr"
            return False, "UTR (bank reference) is required to complete a payout"
        return True, ""

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _handle_approve(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        updates = {"approved_by": context["actor_id"], "approved_at": to_storage(self.clock())}
        if context.get("notes"):
            updates["admin_notes"] = context["notes"]
        return await self._persist_transition(payout, PayoutStatus.PENDING, updates, context, "approve")

    async def _handle_reject(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self._persist_transition(payout, PayoutStatus.REJECTED, {
            "rejected_by": context["actor_id"],
            "rejected_at": to_storage(self.clock()),
            "rejection_reason": context["reason"].strip(),
        }, context, "reject")
        await self._rollback(updated)
        return updated

    async def _handle_cancel(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self._persist_transition(payout, PayoutStatus.CANCELLED, {
            "cancelled_by": context["actor_id"],
            "cancelled_at": to_storage(self.clock()),
            "cancellation_reason": context["reason"],
        }, context, "cancel")
        await self._rollback(updated)
        return updated

    async def _handle_start_processing(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        return await self._persist_transition(payout, PayoutStatus.PROCESSING, {
            "processed_by": context["actor_id"],
            "processed_at": to_storage(self.clock()),
        }, context, "process")

    async def _handle_complete(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        now = to_storage(self.clock())
        updates = {
            "utr": context["utr"].strip(),
            "completed_at": now,
            "processed_by": payout.get("processed_by") or context["actor_id"],
            "processed_at": payout.get("processed_at") or now,
        }
        if context.get("notes"):
            updates["admin_notes"] = context["notes"]
        updated = await self._persist_transition(payout, PayoutStatus.COMPLETED, updates, context, "complete")
        marked = await self.transactions.mark_payout_paid(payout["payout_id"])
        logger.info(f"[PAYOUT] {payout['payout_id']} completed with UTR {updates['utr']}, {marked} transactions paid out")
        return updated

    async def _handle_fail(self, payout: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self._persist_transition(payout, PayoutStatus.FAILED, {
            "failed_at": to_storage(self.clock()),
            "failure_reason": context["reason"],
        }, context, "fail")
        await self._rollback(updated)
        return updated

    # =========================================================================
    # READS
    # =========================================================================

    async def get_payout(self, payout_id: str, merchant_id: Optional[str] = None) -> Dict[str, Any]:
        payout = await self.payouts.get(payout_id, merchant_id=merchant_id)
        if payout is None:
            raise NotFoundError("payout", payout_id)
        return mask_payout(payout)

    async def list_payouts(
        self,
        merchant_id: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Dict[str, Any]:
        """Paginated payouts with a per-status summary over the whole filter."""
        if page < 1:
            raise LedgerValidationError("page must be >= 1", field="page")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise LedgerValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if sort_by not in SORTABLE_FIELDS:
            raise LedgerValidationError(f"Cannot sort by '{sort_by}'", field="sort_by")
        if sort_order not in ("asc", "desc"):
            raise LedgerValidationError("sort_order must be 'asc' or 'desc'", field="sort_order")

        query: Dict[str, Any] = {}
        if merchant_id:
            query["merchant_id"] = merchant_id
        if status:
            statuses = [s.strip() for s in status.split(",") if s.strip()]
            unknown = [s for s in statuses if s not in PayoutStatus.ALL]
            if unknown:
                raise LedgerValidationError(f"Unknown payout status: {', '.join(unknown)}", field="status")
            query["status"] = {"$in": statuses}
        if start_date or end_date:
            query["created_at"] = {}
            if start_date:
                query["created_at"]["$gte"] = to_storage(start_date)
            if end_date:
                query["created_at"]["$lte"] = to_storage(end_date)

        payouts, total = await self.payouts.list(query, page, limit, sort_by, sort_order)
        total_pages = (total + limit - 1) // limit if total else 0

        return {
            "payouts": [mask_payout(p) for p in payouts],
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_count": total,
                "limit": limit,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
            "summary": self._summarize(await self.payouts.find_all(query)),
        }

    @staticmethod
    def _summarize(payouts: List[Dict[str, Any]]) -> Dict[str, Any]:
        counts = {status: 0 for status in PayoutStatus.ALL}
        total_requested = ZERO
        total_completed = ZERO
        total_pending = ZERO
        total_commission = ZERO

        for payout in payouts:
            status = payout.get("status")
            counts[status] = counts.get(status, 0) + 1
            total_requested += to_decimal(payout.get("amount"))
            if status == PayoutStatus.COMPLETED:
                total_completed += to_decimal(payout.get("net_amount"))
                total_commission += to_decimal(payout.get("commission"))
            elif status in PayoutStatus.IN_FLIGHT:
                total_pending += to_decimal(payout.get("net_amount"))

        return {
            "total_payouts": len(payouts),
            "status_counts": counts,
            "total_requested_amount": to_float(total_requested),
            "total_completed_net": to_float(total_completed),
            "total_pending_net": to_float(total_pending),
            "total_commission_paid": to_float(total_commission),
        }
