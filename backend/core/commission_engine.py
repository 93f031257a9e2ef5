"""
LEDGER ENGINE: COMMISSION ENGINE

Pure, stateless commission calculation for payins and payouts.
All rates are GST-inclusive: the 18% GST multiplier is applied to both the
percentage and the flat floor.

LOCKED FORMULAS:
- payin:  commission = max(amount * 3.8% * 1.18, 18 * 1.18)
- payout: amount <  500          -> 30 * 1.18 (flat, below-minimum band)
          500 <= amount <= 1000  -> 30 * 1.18 (flat)
          amount >  1000         -> amount * 1.50% * 1.18
          net_amount = amount - commission (never below zero)

Callers validate amount > 0 before calling. Whether the below-minimum band is
admissible at all is a PayoutPolicyService decision, not a commission one.

Usage:
    info = CommissionEngine.payin_commission(Decimal("1000"))
    info["commission"]  # Decimal("44.84")
"""

from decimal import Decimal
from typing import Any, Dict

from core.financial_precision import (
    Numeric, ZERO, to_decimal, round_financial, format_amount
)


GST_MULTIPLIER = Decimal('1.18')

PAYIN_BASE_RATE_PCT = Decimal('3.8')
PAYIN_MINIMUM_FEE = Decimal('18')

PAYOUT_FLAT_FEE = Decimal('30')
PAYOUT_BASE_RATE_PCT = Decimal('1.50')
PAYOUT_FLAT_BAND_MIN = Decimal('500')
PAYOUT_FLAT_BAND_MAX = Decimal('1000')


class CommissionType:
    FLAT = "flat"
    PERCENTAGE = "percentage"
    FREE_CREDIT = "free_credit"


class CommissionEngine:
    """Commission calculator. All methods are static and side-effect free."""

    PAYIN_EFFECTIVE_RATE = PAYIN_BASE_RATE_PCT * GST_MULTIPLIER / Decimal('100')
    PAYIN_MINIMUM_COMMISSION = PAYIN_MINIMUM_FEE * GST_MULTIPLIER
    PAYOUT_FLAT_COMMISSION = PAYOUT_FLAT_FEE * GST_MULTIPLIER
    PAYOUT_EFFECTIVE_RATE = PAYOUT_BASE_RATE_PCT * GST_MULTIPLIER / Decimal('100')

    STRUCTURE_TEXT = {
        "payin": "3.8% + 18% GST (Effective: 4.484%)",
        "minimum_charge": "₹18 + 18% GST (₹21.24)",
        "payout_500_to_1000": "₹30 + 18% GST (₹35.40)",
        "payout_above_1000": "1.50% + 18% GST (1.77%)",
    }

    @classmethod
    def payin_commission(cls, amount: Numeric) -> Dict[str, Any]:
        """
        Commission charged on an inbound payment.

        Returns:
            commission: Decimal rounded half-up to 2 places
            commission_rate: effective GST-inclusive rate (fraction)
            is_minimum_charge: True when the flat floor applied
            breakdown: audit strings
        """
        base_amount = to_decimal(amount)
        calculated = base_amount * cls.PAYIN_EFFECTIVE_RATE
        minimum = cls.PAYIN_MINIMUM_COMMISSION

        applied = max(calculated, minimum)
        commission = round_financial(applied)

        return {
            "commission": commission,
            "commission_rate": cls.PAYIN_EFFECTIVE_RATE,
            "is_minimum_charge": calculated <= minimum,
            "breakdown": {
                "base_amount": format_amount(base_amount),
                "base_rate": f"{PAYIN_BASE_RATE_PCT}%",
                "gst": "18%",
                "effective_rate": f"{cls.PAYIN_EFFECTIVE_RATE * 100:.3f}%",
                "calculated_commission": format_amount(calculated),
                "minimum_commission": format_amount(minimum),
                "applied_commission": format_amount(commission),
            },
        }

    @classmethod
    def payout_commission(cls, amount: Numeric) -> Dict[str, Any]:
        """
        Commission charged on an outbound payout, banded by gross amount.

        net_amount is clamped at zero; `exceeds_amount` tells the caller the
        fee swallowed the whole payout so the request must be rejected.
        """
        base_amount = to_decimal(amount)

        if PAYOUT_FLAT_BAND_MIN <= base_amount <= PAYOUT_FLAT_BAND_MAX:
            commission = round_financial(cls.PAYOUT_FLAT_COMMISSION)
            commission_type = CommissionType.FLAT
            breakdown = {
                "base_amount": format_amount(base_amount),
                "flat_fee": f"₹{PAYOUT_FLAT_FEE}",
                "gst": "18%",
                "total_commission": format_amount(commission),
            }
        elif base_amount > PAYOUT_FLAT_BAND_MAX:
            commission = round_financial(base_amount * cls.PAYOUT_EFFECTIVE_RATE)
            commission_type = CommissionType.PERCENTAGE
            breakdown = {
                "base_amount": format_amount(base_amount),
                "base_rate": f"{PAYOUT_BASE_RATE_PCT}%",
                "gst": "18%",
                "effective_rate": f"{cls.PAYOUT_EFFECTIVE_RATE * 100:.2f}%",
                "total_commission": format_amount(commission),
            }
        else:
            commission = round_financial(cls.PAYOUT_FLAT_COMMISSION)
            commission_type = CommissionType.FLAT
            breakdown = {
                "base_amount": format_amount(base_amount),
                "note": "Below minimum payout amount, using flat fee",
                "flat_fee": f"₹{PAYOUT_FLAT_FEE}",
                "gst": "18%",
                "total_commission": format_amount(commission),
            }

        return cls._payout_result(base_amount, commission, commission_type, breakdown)

    @classmethod
    def free_payout_commission(cls, amount: Numeric) -> Dict[str, Any]:
        """Zero-commission result for a payout paid for with a promotional credit."""
        base_amount = to_decimal(amount)
        breakdown = {
            "base_amount": format_amount(base_amount),
            "note": "Free payout credit applied",
            "total_commission": "0.00",
        }
        return cls._payout_result(base_amount, ZERO, CommissionType.FREE_CREDIT, breakdown)

    @staticmethod
    def _payout_result(
        base_amount: Decimal,
        commission: Decimal,
        commission_type: str,
        breakdown: Dict[str, str]
    ) -> Dict[str, Any]:
        raw_net = round_financial(base_amount - commission)
        return {
            "commission": round_financial(commission),
            "commission_type": commission_type,
            "breakdown": breakdown,
            "net_amount": max(raw_net, ZERO),
            "exceeds_amount": raw_net <= ZERO,
        }
