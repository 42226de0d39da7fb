"""
Decimal Precision Utilities for Settlement Calculations
Every monetary amount in the settlement path goes through these helpers
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with cent precision"""

    MONEY_PRECISION = Decimal("0.01")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert a value to Decimal, refusing floats and unparseable input"""
        if isinstance(value, Decimal):
            return value

        if isinstance(value, float):
            # Floats never enter the settlement path
            raise TypeError(f"Float value {value!r} rejected in context {context}; pass str or Decimal")

        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise ValueError(f"Invalid monetary value {value!r}") from e

    @classmethod
    def quantize(cls, amount: Numeric) -> Decimal:
        """Quantize amount to cents"""
        return cls.to_decimal(amount).quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def multiply_precise(cls, amount: Numeric, rate: Numeric) -> Decimal:
        """Multiply and round to cents"""
        result = cls.to_decimal(amount, "multiply_amount") * cls.to_decimal(rate, "multiply_rate")
        return result.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def subtract_precise(cls, minuend: Numeric, subtrahend: Numeric) -> Decimal:
        result = cls.to_decimal(minuend, "subtraction_minuend") - cls.to_decimal(subtrahend, "subtraction_subtrahend")
        return result.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Numeric, percentage: Numeric) -> Decimal:
        """``percentage`` percent of ``amount``, e.g. 30 -> 30%"""
        return cls.multiply_precise(amount, cls.to_decimal(percentage, "percentage") / Decimal("100"))

    @classmethod
    def format_money(cls, amount: Numeric) -> str:
        """Format amount as a dollar string, e.g. ``$98,000.00``"""
        return f"${cls.quantize(amount):,.2f}"
