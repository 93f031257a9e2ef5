"""
LEDGER ENGINE - ERROR TAXONOMY

Every rejected operation raises one of these. Each carries a machine-readable
`code` and a `details` dict that the API layer returns verbatim.

- invalid_input            validation failed before any mutation
- not_found                entity does not exist (or is not visible to caller)
- invalid_state            wrong lifecycle state for the requested transition
- insufficient_balance     payout net amount exceeds available balance
- reservation_conflict     a transaction was claimed by another payout
- concurrent_modification  optimistic version check lost a race
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence


class PaymentLedgerError(Exception):
    """Base exception for ledger engine errors."""

    code = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class LedgerValidationError(PaymentLedgerError):
    """Malformed amount, missing beneficiary fields, bad identifier."""

    code = "invalid_input"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class NotFoundError(PaymentLedgerError):
    code = "not_found"

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} not found: {identifier}",
            {"entity": entity, "id": identifier}
        )


class InvalidStateError(PaymentLedgerError):
    """Raised when an entity is not in a state that permits the operation."""

    code = "invalid_state"

    def __init__(self, entity: str, current: str, required: Sequence[str], action: str = ""):
        self.entity = entity
        self.current = current
        self.required: List[str] = list(required)
        self.action = action
        verb = f" {action}" if action else ""
        super().__init__(
            f"Cannot{verb} {entity} with status '{current}'. "
            f"Required status: {', '.join(self.required)}",
            {"entity": entity, "current_state": current, "required_states": self.required}
        )


class InsufficientBalanceError(PaymentLedgerError):
    code = "insufficient_balance"

    def __init__(
        self,
        available: Decimal,
        requested_gross: Decimal,
        commission: Decimal,
        requested_net: Decimal
    ):
        self.available = available
        self.requested_net = requested_net
        self.shortfall = requested_net - available
        super().__init__(
            "Insufficient balance for this payout request",
            {
                "available_balance": f"{available:.2f}",
                "requested_gross_amount": f"{requested_gross:.2f}",
                "payout_commission": f"{commission:.2f}",
                "requested_net_amount": f"{requested_net:.2f}",
                "shortfall": f"{self.shortfall:.2f}",
            }
        )


class ReservationConflictError(PaymentLedgerError):
    code = "reservation_conflict"

    def __init__(self, payout_id: str, conflicting: Sequence[str]):
        self.payout_id = payout_id
        self.conflicting = list(conflicting)
        super().__init__(
            f"Transactions already reserved by another payout: {', '.join(self.conflicting)}",
            {"payout_id": payout_id, "conflicting_transactions": self.conflicting}
        )


class ConcurrentModificationError(PaymentLedgerError):
    code = "concurrent_modification"

    def __init__(self, entity: str, identifier: str):
        super().__init__(
            f"{entity} {identifier} was modified concurrently, retry the request",
            {"entity": entity, "id": identifier}
        )
