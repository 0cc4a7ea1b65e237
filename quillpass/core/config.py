import logging
from typing import List, Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

# Needed for billing to work end to end; missing ones are reported at startup
BILLING_KEYS = (
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_PREMIUM",
    "STRIPE_PRICE_PRO",
    "AUTH_JWT_SECRET",
)


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Storage
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Payment gateway
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CURRENCY: str = "usd"

    # Front end
    CLIENT_URL: str = "http://localhost:5173"
    CORS_ORIGINS: str = "http://localhost:5173"

    # Identity is issued elsewhere; tokens are only verified here
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHM: str = "HS256"
    ALLOW_USER_ID_HEADER: bool = True

    FREE_AI_SUMMARY_LIMIT: int = Field(default=5, ge=0)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ENV", "CURRENCY")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("CLIENT_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing billing configuration.

    Strict mode raises RuntimeError; otherwise only a warning is logged.
    Only key names are logged, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quillpass")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = [key for key in BILLING_KEYS if not getattr(cfg, key, None)]
    if not missing:
        return True
    message = f"Missing billing configuration: {', '.join(missing)}"
    if strict_mode:
        raise RuntimeError(message)
    log.warning(message)
    return True
