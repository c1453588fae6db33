"""Financial calculation utilities with mathematical precision"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


class FinancialCalculator:
    """Handles all financial calculations with precision to prevent rounding errors"""

    # Precision settings
    CURRENCY_PRECISION = Decimal("0.01")  # 2 decimal places for MAD
    MINOR_UNITS = Decimal("100")  # Gateway amounts are expressed in cents

    @classmethod
    def to_money(cls, value: Any, field_name: str = "amount") -> Decimal:
        """Parse user or database input into a 2-place Decimal"""
        if value is None or isinstance(value, bool):
            raise ValidationError(f"{field_name} is required")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number")
        if not amount.is_finite():
            raise ValidationError(f"{field_name} must be a finite number")
        return cls.quantize(amount)

    @classmethod
    def quantize(cls, amount: Decimal) -> Decimal:
        return amount.quantize(cls.CURRENCY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def calculate_fee(cls, amount: Decimal, rate: Decimal) -> Decimal:
        """Fee for a fractional rate (0.05 = 5%), rounded half-up to 2 places"""
        return cls.quantize(amount * rate)

    @classmethod
    def calculate_order_totals(cls, amount: Decimal, gateway_rate: Decimal) -> Dict[str, Decimal]:
        """Brand-side totals: the gateway fee is charged on top of the creator amount"""
        gateway_fee = cls.calculate_fee(amount, gateway_rate)
        return {
            "amount": cls.quantize(amount),
            "gateway_fee": gateway_fee,
            "total_charged": cls.quantize(amount + gateway_fee),
        }

    @classmethod
    def calculate_release_split(cls, amount: Decimal, platform_rate: Decimal) -> Dict[str, Decimal]:
        """Creator-side split at escrow release: platform commission and creator net"""
        platform_fee = cls.calculate_fee(amount, platform_rate)
        return {
            "platform_fee": platform_fee,
            "net_amount": cls.quantize(amount - platform_fee),
        }

    @classmethod
    def to_minor_units(cls, amount: Decimal) -> int:
        """Convert a currency amount into integer minor units for the gateway"""
        return int((amount * cls.MINOR_UNITS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def from_minor_units(cls, minor: int) -> Decimal:
        return cls.quantize(Decimal(minor) / cls.MINOR_UNITS)
