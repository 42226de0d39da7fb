"""Configuration management for the transaction settlement service"""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    @staticmethod
    def _validate_percentage(env_var: str, default: str, min_val: float, max_val: float) -> Decimal:
        """Validate percentage with bounds checking"""
        try:
            value_str = os.getenv(env_var, default)
            percentage = Decimal(value_str)

            if percentage < Decimal(str(min_val)):
                logger.error(f"❌ {env_var}={percentage}% is below minimum {min_val}%. Using default {default}%")
                return Decimal(default)

            if percentage > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={percentage}% exceeds maximum {max_val}%. Using default {default}%")
                return Decimal(default)

            return percentage

        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    # Settlement policy
    PLATFORM_FEE_PERCENTAGE = _validate_percentage(
        "PLATFORM_FEE_PERCENTAGE", "2.0", 0.01, 20.0
    )  # 2% platform fee deducted from supplier payout
    DEFAULT_ADVANCE_PERCENTAGE = _validate_percentage(
        "DEFAULT_ADVANCE_PERCENTAGE", "30", 0.0, 100.0
    )  # 30% advance, remainder on delivery
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

    # Escrow timing
    ESCROW_AUTO_RELEASE_DAYS = int(os.getenv("ESCROW_AUTO_RELEASE_DAYS", "30"))
    AUTO_COMPLETE_HOURS = int(os.getenv("AUTO_COMPLETE_HOURS", "48"))
    QUALITY_REMINDER_DAYS = int(os.getenv("QUALITY_REMINDER_DAYS", "7"))

    # Background sweeps
    AUTO_RELEASE_ENABLED = os.getenv("AUTO_RELEASE_ENABLED", "True").lower() == "true"
    SETTLEMENT_SWEEP_INTERVAL_MINUTES = int(os.getenv("SETTLEMENT_SWEEP_INTERVAL_MINUTES", "15"))
    SETTLEMENT_SWEEP_BATCH_SIZE = int(os.getenv("SETTLEMENT_SWEEP_BATCH_SIZE", "100"))

    # Payment gateway
    PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")
    PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")
    PAYMENT_GATEWAY_TIMEOUT = int(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "15"))


@dataclass(frozen=True)
class SettlementPolicy:
    """Money and timing rules applied by the settlement services.

    Built from :class:`Config` in production and constructed directly in tests
    so that the fee rate and deadlines can be changed without touching code.
    """
    platform_fee_rate: Decimal = Decimal("0.02")
    advance_percentage: Decimal = Decimal("30")
    auto_release_days: int = 30
    auto_complete_hours: int = 48
    quality_reminder_days: int = 7
    default_currency: str = "USD"

    @classmethod
    def from_config(cls) -> "SettlementPolicy":
        return cls(
            platform_fee_rate=Config.PLATFORM_FEE_PERCENTAGE / Decimal("100"),
            advance_percentage=Config.DEFAULT_ADVANCE_PERCENTAGE,
            auto_release_days=Config.ESCROW_AUTO_RELEASE_DAYS,
            auto_complete_hours=Config.AUTO_COMPLETE_HOURS,
            quality_reminder_days=Config.QUALITY_REMINDER_DAYS,
            default_currency=Config.DEFAULT_CURRENCY,
        )

    @property
    def platform_fee_percent_display(self) -> str:
        """Fee rate formatted for milestone text, e.g. ``2%``"""
        percent = (self.platform_fee_rate * 100).normalize()
        return f"{percent:f}%"
