from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from typing import List, Optional


MOMO_SANDBOX_ENDPOINT = "https://test-payment.momo.vn"


class Settings(BaseSettings):
    # Project Info
    PROJECT_NAME: str = "Storefront Checkout API"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_STATEMENT_TIMEOUT_MS: int = 15000

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # MoMo gateway
    MOMO_PARTNER_CODE: str
    MOMO_ACCESS_KEY: str
    MOMO_SECRET_KEY: str
    MOMO_ENDPOINT: str = MOMO_SANDBOX_ENDPOINT
    MOMO_REQUEST_TYPE: str = "captureWallet"
    MOMO_LANG: str = "vi"
    MOMO_REDIRECT_URL: str = "http://localhost:3000/xac-nhan-don-hang"
    MOMO_IPN_URL: str = "http://localhost:8000/api/v1/checkout/payment/callback"
    MOMO_TIMEOUT_SECONDS: float = 30.0

    # Checkout pricing (VND)
    SHIPPING_FEE: int = 30000
    FREE_SHIPPING_THRESHOLD: Optional[int] = None

    # Pending payment attempts older than this are re-checked with the gateway
    PAYMENT_RECONCILE_AFTER_MINUTES: int = 15

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Email
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    EMAILS_FROM_EMAIL: str = ""
    EMAILS_FROM_NAME: str = "Storefront"
    EMAILS_FROM_ORDERS: str = ""

    # Environment
    ENVIRONMENT: str = "development"

    DEBUG: bool = False

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"
    ORDER_LOOKUP_PATH: str = "/tra-cuu-don-hang"

    # Monitoring
    SENTRY_DSN: str = ""

    # Celery & Redis (Task Queue)
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        return value.lower().strip()

    @field_validator("MOMO_ENDPOINT")
    @classmethod
    def strip_endpoint(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @model_validator(mode="after")
    def validate_production_settings(self):
        if self.ENVIRONMENT == "production":
            normalized_secret = (self.SECRET_KEY or "").strip()
            if len(normalized_secret) < 32 or "your-secret-key-here" in normalized_secret.lower():
                raise ValueError("SECRET_KEY must be at least 32 chars and not use placeholders in production")
            if self.MOMO_ENDPOINT == MOMO_SANDBOX_ENDPOINT:
                raise ValueError("MOMO_ENDPOINT must point at the live gateway in production")
            if not self.MOMO_IPN_URL.startswith("https://"):
                raise ValueError("MOMO_IPN_URL must be an https URL in production")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
