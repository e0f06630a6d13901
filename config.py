"""Configuration management for the CinemaRwa monetization core"""

import os
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _load_json_mapping(env_name: str, default: Dict) -> Dict:
    """Read a JSON object from the environment, falling back to the default"""
    raw = os.getenv(env_name)
    if not raw:
        return dict(default)
    try:
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError("expected a JSON object")
        return value
    except (ValueError, TypeError) as e:
        logger.warning(f"⚠️ CONFIG: Invalid JSON in {env_name} ({e}) - using defaults")
        return dict(default)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # HTTP surface
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@cinemarwa.com")
    JWT_SECRET = os.getenv("JWT_SECRET")  # Verified by the auth layer in front of this service
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Revenue distribution
    FILMMAKER_SHARE_PERCENTAGE = int(os.getenv("FILMMAKER_SHARE_PERCENTAGE", "70"))
    ADMIN_SHARE_PERCENTAGE = int(os.getenv("ADMIN_SHARE_PERCENTAGE", "30"))
    # Subscriptions are platform revenue unless configured otherwise
    SUBSCRIPTION_CREATOR_PERCENTAGE = int(os.getenv("SUBSCRIPTION_CREATOR_PERCENTAGE", "0"))
    SUBSCRIPTION_PLATFORM_PERCENTAGE = int(os.getenv("SUBSCRIPTION_PLATFORM_PERCENTAGE", "100"))
    ADMIN_MOMO_NUMBER = os.getenv("ADMIN_MOMO_NUMBER", "0790019543")

    # Withdrawals
    MINIMUM_WITHDRAWAL = Decimal(os.getenv("MINIMUM_WITHDRAWAL", "500"))

    # Currency conversion: RWF per unit of foreign currency
    EXCHANGE_RATE_USD = Decimal(os.getenv("EXCHANGE_RATE_USD", "1200"))
    EXCHANGE_RATE_EUR = Decimal(os.getenv("EXCHANGE_RATE_EUR", "1300"))
    EXCHANGE_RATE_GHS = Decimal(os.getenv("EXCHANGE_RATE_GHS", "100"))
    EXCHANGE_RATE_XOF = Decimal(os.getenv("EXCHANGE_RATE_XOF", "2"))

    # Series purchases: requested amount may differ from the tier price by less than this
    SERIES_PRICE_TOLERANCE = Decimal(os.getenv("SERIES_PRICE_TOLERANCE", "1"))

    # Access windows
    WATCH_WINDOW_HOURS = int(os.getenv("WATCH_WINDOW_HOURS", "48"))

    # Subscription plan catalogue: plan id -> device limit
    SUBSCRIPTION_PLAN_DEVICES = _load_json_mapping(
        "SUBSCRIPTION_PLAN_DEVICES",
        {"basic": 1, "standard": 2, "pro": 4, "premium": 4, "family": 5},
    )

    # Lanari Pay (mobile money collection and disbursement)
    LANARI_PAY_API_KEY = os.getenv("LANARI_PAY_API_KEY")
    LANARI_PAY_API_SECRET = os.getenv("LANARI_PAY_API_SECRET")
    LANARI_PAY_PROCESS_URL = os.getenv(
        "LANARI_PAY_PROCESS_URL", "https://www.lanari.rw/lanari_pay/api/payment/process.php"
    )
    LANARI_PAY_STATUS_URL = os.getenv(
        "LANARI_PAY_STATUS_URL", "https://www.lanari.rw/lanari_pay/api/payment/status.php"
    )
    LANARI_PAY_PAYOUT_URL = os.getenv(
        "LANARI_PAY_PAYOUT_URL", "https://www.lanari.rw/lanari_pay/api/payment/payout.php"
    )
    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

    # Stripe (card payments)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Email (Brevo)
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@cinemarwa.com")
    FROM_NAME = os.getenv("FROM_NAME", "CinemaRwa")

    # Background jobs
    ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"
    OUTBOX_PROCESSING_INTERVAL = int(os.getenv("OUTBOX_PROCESSING_INTERVAL", "30"))
    OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "5"))
    PENDING_PAYMENT_POLL_INTERVAL = int(os.getenv("PENDING_PAYMENT_POLL_INTERVAL", "120"))
    PENDING_PAYMENT_MIN_AGE_SECONDS = int(os.getenv("PENDING_PAYMENT_MIN_AGE_SECONDS", "60"))
    PENDING_PAYMENT_MAX_AGE_HOURS = int(os.getenv("PENDING_PAYMENT_MAX_AGE_HOURS", "24"))
    WITHDRAWAL_RECONCILE_INTERVAL = int(os.getenv("WITHDRAWAL_RECONCILE_INTERVAL", "300"))
    # Approval claims older than this are treated as payouts of unknown outcome
    WITHDRAWAL_CLAIM_TIMEOUT_MINUTES = int(os.getenv("WITHDRAWAL_CLAIM_TIMEOUT_MINUTES", "10"))

    # Localised form of the gateway's "Check users Balance" failure
    INSUFFICIENT_BALANCE_MESSAGES = _load_json_mapping(
        "INSUFFICIENT_BALANCE_MESSAGES",
        {
            "en": "Insufficient mobile money balance. Please top up your account and try again.",
            "rw": "Nta mafaranga ahagije kuri konti yawe ya Mobile Money. Ongeramo amafaranga wongere ugerageze.",
            "fr": "Solde Mobile Money insuffisant. Veuillez recharger votre compte et réessayer.",
        },
    )

    @classmethod
    def validate(cls) -> bool:
        """Log the configuration state and flag missing credentials"""
        ok = True
        if not cls.DATABASE_URL:
            logger.error("❌ CONFIG: DATABASE_URL is not configured")
            ok = False
        if cls.FILMMAKER_SHARE_PERCENTAGE + cls.ADMIN_SHARE_PERCENTAGE != 100:
            logger.error(
                f"❌ CONFIG: Share percentages must sum to 100 "
                f"(got {cls.FILMMAKER_SHARE_PERCENTAGE} + {cls.ADMIN_SHARE_PERCENTAGE})"
            )
            ok = False
        if cls.SUBSCRIPTION_CREATOR_PERCENTAGE + cls.SUBSCRIPTION_PLATFORM_PERCENTAGE != 100:
            logger.error(
                f"❌ CONFIG: Subscription percentages must sum to 100 "
                f"(got {cls.SUBSCRIPTION_CREATOR_PERCENTAGE} + {cls.SUBSCRIPTION_PLATFORM_PERCENTAGE})"
            )
            ok = False
        if not (cls.LANARI_PAY_API_KEY and cls.LANARI_PAY_API_SECRET):
            logger.warning("⚠️ CONFIG: Lanari Pay credentials missing - mobile money disabled")
        if not cls.STRIPE_SECRET_KEY:
            logger.warning("⚠️ CONFIG: STRIPE_SECRET_KEY missing - card payments disabled")
        if not cls.BREVO_API_KEY:
            logger.warning("⚠️ CONFIG: BREVO_API_KEY missing - confirmation emails will be skipped")
        if cls.IS_PRODUCTION and not cls.STRIPE_WEBHOOK_SECRET:
            logger.critical("🚨 CONFIG: STRIPE_WEBHOOK_SECRET not configured in production")
        return ok


@dataclass(frozen=True)
class MonetizationSettings:
    """Immutable snapshot of the knobs the orchestrators depend on, built once at startup"""

    creator_percentage: int = 70
    platform_percentage: int = 30
    subscription_creator_percentage: int = 0
    subscription_platform_percentage: int = 100
    admin_momo_number: str = "0790019543"
    minimum_withdrawal: Decimal = Decimal("500")
    exchange_rates: Dict[str, Decimal] = field(
        default_factory=lambda: {
            "RWF": Decimal("1"),
            "USD": Decimal("1200"),
            "EUR": Decimal("1300"),
            "GHS": Decimal("100"),
            "XOF": Decimal("2"),
        }
    )
    series_price_tolerance: Decimal = Decimal("1")
    watch_window_hours: int = 48
    plan_devices: Dict[str, int] = field(default_factory=lambda: {"basic": 1, "pro": 4})
    gateway_timeout_seconds: int = 30
    insufficient_balance_messages: Dict[str, str] = field(
        default_factory=lambda: {"en": "Insufficient mobile money balance."}
    )
    support_email: str = "support@cinemarwa.com"
    frontend_url: str = "http://localhost:3000"

    @classmethod
    def from_config(cls) -> "MonetizationSettings":
        return cls(
            creator_percentage=Config.FILMMAKER_SHARE_PERCENTAGE,
            platform_percentage=Config.ADMIN_SHARE_PERCENTAGE,
            subscription_creator_percentage=Config.SUBSCRIPTION_CREATOR_PERCENTAGE,
            subscription_platform_percentage=Config.SUBSCRIPTION_PLATFORM_PERCENTAGE,
            admin_momo_number=Config.ADMIN_MOMO_NUMBER,
            minimum_withdrawal=Config.MINIMUM_WITHDRAWAL,
            exchange_rates={
                "RWF": Decimal("1"),
                "USD": Config.EXCHANGE_RATE_USD,
                "EUR": Config.EXCHANGE_RATE_EUR,
                "GHS": Config.EXCHANGE_RATE_GHS,
                "XOF": Config.EXCHANGE_RATE_XOF,
            },
            series_price_tolerance=Config.SERIES_PRICE_TOLERANCE,
            watch_window_hours=Config.WATCH_WINDOW_HOURS,
            plan_devices={str(k): int(v) for k, v in Config.SUBSCRIPTION_PLAN_DEVICES.items()},
            gateway_timeout_seconds=Config.GATEWAY_TIMEOUT_SECONDS,
            insufficient_balance_messages=dict(Config.INSUFFICIENT_BALANCE_MESSAGES),
            support_email=Config.SUPPORT_EMAIL,
            frontend_url=Config.FRONTEND_URL,
        )

    def insufficient_balance_message(self, language: Optional[str]) -> str:
        """Localised text for a gateway balance failure, English when unknown"""
        if language and language in self.insufficient_balance_messages:
            return self.insufficient_balance_messages[language]
        return self.insufficient_balance_messages.get(
            "en", "Insufficient mobile money balance."
        )


_settings: Optional[MonetizationSettings] = None


def get_settings() -> MonetizationSettings:
    """Get or create the shared settings snapshot"""
    global _settings
    if _settings is None:
        _settings = MonetizationSettings.from_config()
    return _settings
