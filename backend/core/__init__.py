"""
Settlement and Payout Ledger Engine
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    format_amount,
    FinancialPrecisionError
)

from .errors import (
    PaymentLedgerError,
    LedgerValidationError,
    NotFoundError,
    InvalidStateError,
    InsufficientBalanceError,
    ReservationConflictError,
    ConcurrentModificationError
)

from .commission_engine import CommissionEngine, CommissionType
from .settlement_clock import SettlementClock
from .balance_ledger import BalanceLedger
from .settlement_sweeper import SettlementSweeper
from .payout_workflow import PayoutWorkflow
from .webhook_ingestion import WebhookIngestion

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'format_amount',
    'FinancialPrecisionError',

    # Errors
    'PaymentLedgerError',
    'LedgerValidationError',
    'NotFoundError',
    'InvalidStateError',
    'InsufficientBalanceError',
    'ReservationConflictError',
    'ConcurrentModificationError',

    # Engine
    'CommissionEngine',
    'CommissionType',
    'SettlementClock',
    'BalanceLedger',
    'SettlementSweeper',
    'PayoutWorkflow',
    'WebhookIngestion',
]
