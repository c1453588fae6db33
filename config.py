"""Configuration management for the creator settlement service"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./settlement.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

    # Stripe gateway configuration
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2024-12-18.acacia")
    STRIPE_PROVIDER_NAME = "stripe"
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "MAD").upper()

    # Bearer token authentication
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-settlement-secret-change-me")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

    @staticmethod
    def _validate_fee_percentage(env_var: str, default: str, max_val: str = "100") -> Decimal:
        """Validate fee percentage with bounds checking, falling back to the default"""
        value_str = os.getenv(env_var, default)
        try:
            percentage = Decimal(value_str)
        except ArithmeticError:
            logger.error(f"❌ Invalid {env_var} value '{value_str}'. Using default {default}%")
            return Decimal(default)

        if percentage < Decimal("0") or percentage >= Decimal(max_val):
            logger.error(f"❌ {env_var}={percentage}% is outside [0, {max_val}). Using default {default}%")
            return Decimal(default)

        return percentage

    # Fee configuration (percentages, converted to rates at call time)
    GATEWAY_FEE_PERCENTAGE = _validate_fee_percentage("GATEWAY_FEE_PERCENTAGE", "5")
    PLATFORM_FEE_PERCENTAGE = _validate_fee_percentage("PLATFORM_FEE_PERCENTAGE", "15")

    # Withdrawal configuration
    MIN_WITHDRAWAL_AMOUNT = Decimal(os.getenv("MIN_WITHDRAWAL_AMOUNT", "200"))
    BANK_WITHDRAWAL_FEE = Decimal(os.getenv("BANK_WITHDRAWAL_FEE", "17"))

    @classmethod
    def gateway_fee_rate(cls) -> Decimal:
        """Fractional gateway fee rate charged to the brand on top of the order amount"""
        return cls.GATEWAY_FEE_PERCENTAGE / Decimal("100")

    @classmethod
    def platform_fee_rate(cls) -> Decimal:
        """Fractional platform commission withheld from the creator at escrow release"""
        return cls.PLATFORM_FEE_PERCENTAGE / Decimal("100")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Settlement Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://', 1)[0]}")
        logger.info(f"   Currency: {Config.DEFAULT_CURRENCY}")
        logger.info(
            f"   Fees: gateway={Config.GATEWAY_FEE_PERCENTAGE}% "
            f"platform={Config.PLATFORM_FEE_PERCENTAGE}% bank={Config.BANK_WITHDRAWAL_FEE}"
        )
        if not Config.STRIPE_SECRET_KEY:
            logger.warning("⚠️ STRIPE_SECRET_KEY not configured - gateway calls will fail")
        if not Config.STRIPE_WEBHOOK_SECRET:
            logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not configured - every webhook will be rejected")
