"""Configuration management for the charging wallet payment service"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payments.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Wallet / ledger
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "TWD")
    # Starting balance of lazily created wallets
    WALLET_INITIAL_BALANCE = Decimal(os.getenv("WALLET_INITIAL_BALANCE", "0"))
    LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "5"))
    LEDGER_RETRY_DELAY_SECONDS = float(os.getenv("LEDGER_RETRY_DELAY_SECONDS", "0.05"))
    LEDGER_RETRY_BACKOFF_FACTOR = float(os.getenv("LEDGER_RETRY_BACKOFF_FACTOR", "2.0"))
    LEDGER_RETRY_MAX_DELAY_SECONDS = float(os.getenv("LEDGER_RETRY_MAX_DELAY_SECONDS", "1.0"))

    # Provider HTTP
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    # Shared secret for the wallet adjustment routes; empty disables them
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # TapPay (credit card, Pay by Prime)
    TAPPAY_API_URL = os.getenv(
        "TAPPAY_API_URL", "https://sandbox.tappaysdk.com/tpc/payment/pay-by-prime"
    )
    TAPPAY_PARTNER_KEY = os.getenv("TAPPAY_PARTNER_KEY", "")
    TAPPAY_MERCHANT_ID = os.getenv("TAPPAY_MERCHANT_ID", "")

    # LINE Pay (direct v3 API)
    LINE_PAY_API_URL = os.getenv("LINE_PAY_API_URL", "https://sandbox-api-pay.line.me")
    LINE_PAY_CHANNEL_ID = os.getenv("LINE_PAY_CHANNEL_ID", "")
    LINE_PAY_CHANNEL_SECRET = os.getenv("LINE_PAY_CHANNEL_SECRET", "")
    LINE_PAY_CONFIRM_URL = os.getenv(
        "LINE_PAY_CONFIRM_URL", f"{PUBLIC_BASE_URL}/api/payment/linepay-confirm"
    )
    LINE_PAY_CANCEL_URL = os.getenv(
        "LINE_PAY_CANCEL_URL", f"{PUBLIC_BASE_URL}/api/payment/linepay-cancel"
    )
    LINE_PAY_FRONTEND_REDIRECT_URL = os.getenv("LINE_PAY_FRONTEND_REDIRECT_URL", "")

    # EasyCard
    EASYCARD_API_URL = os.getenv(
        "EASYCARD_API_URL", "https://sandbox.easycard.com.tw/api/payment/create"
    )
    EASYCARD_MERCHANT_ID = os.getenv("EASYCARD_MERCHANT_ID", "")
    EASYCARD_API_KEY = os.getenv("EASYCARD_API_KEY", "")
    EASYCARD_SUCCESS_URL = os.getenv(
        "EASYCARD_SUCCESS_URL", f"{PUBLIC_BASE_URL}/payment/easycard-success"
    )
    EASYCARD_CANCEL_URL = os.getenv(
        "EASYCARD_CANCEL_URL", f"{PUBLIC_BASE_URL}/payment/easycard-cancel"
    )
    EASYCARD_CALLBACK_URL = os.getenv(
        "EASYCARD_CALLBACK_URL", f"{PUBLIC_BASE_URL}/api/payment/easycard-callback"
    )

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging (secrets omitted)"""
        logger.info("🔧 Payment Service Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Currency: {Config.DEFAULT_CURRENCY}")
        logger.info(f"   Wallet initial balance: {Config.WALLET_INITIAL_BALANCE}")
        logger.info(f"   Ledger max retries: {Config.LEDGER_MAX_RETRIES}")
        logger.info(f"   TapPay configured: {bool(Config.TAPPAY_PARTNER_KEY)}")
        logger.info(
            f"   LINE Pay configured: "
            f"{bool(Config.LINE_PAY_CHANNEL_ID and Config.LINE_PAY_CHANNEL_SECRET)}"
        )
        logger.info(f"   EasyCard configured: {bool(Config.EASYCARD_API_KEY)}")
        logger.info(f"   Admin wallet routes enabled: {bool(Config.ADMIN_API_KEY)}")


def setup_logging():
    """Configure logging settings"""
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
