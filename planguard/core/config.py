import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    AUTO_CREATE_TABLES: bool = False  # create missing tables on startup (dev only)
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None  # unset = in-process cache

    # Auth
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ADMIN_KEY: Optional[str] = None  # Legacy X-Admin-Key header

    # Paystack
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 15.0
    WEBHOOK_SIGNATURE_HEADER: str = "x-paystack-signature"

    # Billing
    BILLING_CURRENCY: str = "NGN"
    PAYMENT_CHANNELS: str = "card,bank,ussd,qr,mobile_money,bank_transfer"  # comma-separated
    FREE_PLAN_ID: str = "free-plan-id"
    ABANDONED_PAYMENT_HOURS: int = 24

    # Plan config cache TTLs (seconds)
    PLAN_CACHE_TTL_SECONDS: int = 3600
    USER_PLAN_CACHE_TTL_SECONDS: int = 300
    USER_PLAN_NULL_CACHE_TTL_SECONDS: int = 60
    ENTITLEMENT_CACHE_TTL_SECONDS: int = 86400

    # Webhooks
    WEBHOOK_MAX_EVENT_AGE_MINUTES: int = 60
    WEBHOOK_PROCESSING_TTL_SECONDS: int = 300
    WEBHOOK_COMPLETED_TTL_SECONDS: int = 86400

    # Jobs & activation timeouts
    JOB_LOCK_TTL_SECONDS: int = 600
    ACTIVATION_LOCK_TIMEOUT_MS: int = 10000
    ACTIVATION_STATEMENT_TIMEOUT_MS: int = 15000

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def payment_channels(self) -> list[str]:
        return [c.strip() for c in self.PAYMENT_CHANNELS.split(",") if c.strip()]

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("planguard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "PAYSTACK_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
