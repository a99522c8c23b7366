from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from decimal import Decimal
from typing import List


class Settings(BaseSettings):
    # Project Info
    PROJECT_NAME: str = "Back Office Commerce API"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str = "sqlite:///./backoffice.db"

    # Security
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Tenancy
    DEFAULT_TENANT_ID: str = "default"

    # Razorpay
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""

    # Payments
    PAYMENT_CURRENCY: str = "USD"
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_INTENT_TTL_MINUTES: int = 30

    # Pricing rules
    TAX_RATE: Decimal = Decimal("0.08")
    SHIPPING_FLAT_RATE: Decimal = Decimal("0.00")

    # Cart holds
    CART_HOLD_HOURS: int = 24

    # Credits
    CREDIT_ALLOW_NEGATIVE_ADJUSTMENTS: bool = False

    # Feature flags
    FEATURE_FLAG_CACHE_TTL_SECONDS: int = 300

    # Plugins
    PLUGIN_WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    PLUGIN_MAX_RETRIES: int = 3
    PLUGIN_EVENTS_DISPATCH: bool = True

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Environment
    ENVIRONMENT: str = "development"

    DEBUG: bool = False

    # Celery (task queue)
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        return value.lower().strip()

    @field_validator("PAYMENT_CURRENCY")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.upper().strip()

    @field_validator("TAX_RATE")
    @classmethod
    def validate_tax_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("TAX_RATE must be a fraction between 0 and 1")
        return value

    @model_validator(mode="after")
    def validate_production_secrets(self):
        if self.ENVIRONMENT == "production":
            normalized_secret = (self.SECRET_KEY or "").strip()
            if len(normalized_secret) < 32 or "change-me" in normalized_secret.lower():
                raise ValueError("SECRET_KEY must be at least 32 chars and not use placeholders in production")
            if (self.RAZORPAY_KEY_ID or "").startswith("rzp_test_"):
                raise ValueError("RAZORPAY_KEY_ID must use live key in production")
            if not self.RAZORPAY_KEY_SECRET:
                raise ValueError("RAZORPAY_KEY_SECRET must be set in production")
        return self

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
