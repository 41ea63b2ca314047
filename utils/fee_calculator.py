"""Fee calculation for escrow transactions"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from config import Config
from utils.currency_validation import validate_currency_code, quantum_for, to_decimal
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeSchedule:
    """Rates and rounding applied by FeeCalculator. Passed explicitly to every call."""

    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal
    rounding: str = ROUND_HALF_UP

    @classmethod
    def from_config(cls) -> "FeeSchedule":
        return cls(
            buyer_fee_rate=Config.BUYER_FEE_RATE,
            seller_fee_rate=Config.SELLER_FEE_RATE,
            rounding=Config.FEE_ROUNDING,
        )


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    currency: str
    buyer_fee: Decimal
    seller_fee: Decimal
    buyer_total: Decimal
    seller_net: Decimal
    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal

    @property
    def platform_fee(self) -> Decimal:
        return self.buyer_fee + self.seller_fee

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": str(self.subtotal),
            "currency": self.currency,
            "buyer_fee": str(self.buyer_fee),
            "seller_fee": str(self.seller_fee),
            "buyer_total": str(self.buyer_total),
            "seller_net": str(self.seller_net),
            "platform_fee": str(self.platform_fee),
        }


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    @classmethod
    def validate_amount(cls, subtotal, currency: str) -> Decimal:
        """
        Validate a transaction subtotal for its currency.

        Raises:
            ValidationError: non-numeric, non-finite, non-positive, too many
                decimal places, or unsupported currency
        """
        code = validate_currency_code(currency)
        amount = to_decimal(subtotal)
        if not amount.is_finite():
            raise ValidationError("Amount must be a finite number")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        quantum = quantum_for(code)
        if amount != amount.quantize(quantum):
            raise ValidationError(
                f"Amount {amount} has more precision than {code} allows"
            )
        return amount.quantize(quantum)

    @classmethod
    def calculate(cls, subtotal, currency: str, schedule: FeeSchedule) -> FeeBreakdown:
        """
        Compute buyer fee, seller fee, buyer total and seller net.

        Pure: no I/O and no configuration lookups, every rate comes from ``schedule``.
        Fees are rounded once to the currency's minor unit using ``schedule.rounding``.

        Example:
            >>> FeeCalculator.calculate(Decimal("100.00"), "USD", FeeSchedule(Decimal("0.03"), Decimal("0.05"))).buyer_total
            Decimal('103.00')
        """
        code = validate_currency_code(currency)
        amount = cls.validate_amount(subtotal, code)
        quantum = quantum_for(code)

        buyer_fee = (amount * schedule.buyer_fee_rate).quantize(quantum, rounding=schedule.rounding)
        seller_fee = (amount * schedule.seller_fee_rate).quantize(quantum, rounding=schedule.rounding)

        breakdown = FeeBreakdown(
            subtotal=amount,
            currency=code,
            buyer_fee=buyer_fee,
            seller_fee=seller_fee,
            buyer_total=amount + buyer_fee,
            seller_net=amount - seller_fee,
            buyer_fee_rate=schedule.buyer_fee_rate,
            seller_fee_rate=schedule.seller_fee_rate,
        )
        logger.debug(
            f"💰 FEE_CALCULATED: subtotal={amount} {code} buyer_fee={buyer_fee} "
            f"seller_fee={seller_fee} buyer_total={breakdown.buyer_total} seller_net={breakdown.seller_net}"
        )
        return breakdown
