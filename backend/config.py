"""
Settings - Storefront Configuration
===================================
Every tunable of the storefront backend, read from the environment.

The module-level ``settings`` instance is what the application uses;
tests build their own ``Settings(...)`` with explicit values.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Storefront settings (environment-backed)"""

    # Server
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Storage (None -> in-memory store)
    database_url: Optional[str] = None
    db_min_pool_size: int = 5
    db_max_pool_size: int = 20

    # Auth (token verification only; issuance lives elsewhere)
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Payment gateway (Khalti ePayment v2)
    khalti_base_url: str = "https://dev.khalti.com/api/v2"
    khalti_secret_key: str = ""
    khalti_min_amount: int = 1000  # paisa, i.e. Rs. 10
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 2
    gateway_backoff_seconds: float = 0.5
    verify_payment_on_order: bool = False

    # Cart
    cart_max_line_quantity: int = 100
    cart_placeholder_image: str = "/images/placeholder.jpg"

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL") or None
        return cls(
            env=os.getenv("ENV", "development"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            database_url=database_url,
            db_min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            db_max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            khalti_base_url=os.getenv("KHALTI_BASE_URL", "https://dev.khalti.com/api/v2"),
            khalti_secret_key=os.getenv("KHALTI_SECRET_KEY", ""),
            khalti_min_amount=int(os.getenv("KHALTI_MIN_AMOUNT", "1000")),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10.0")),
            gateway_max_retries=int(os.getenv("GATEWAY_MAX_RETRIES", "2")),
            gateway_backoff_seconds=float(os.getenv("GATEWAY_BACKOFF_SECONDS", "0.5")),
            verify_payment_on_order=_env_bool("VERIFY_PAYMENT_ON_ORDER"),
            cart_max_line_quantity=int(os.getenv("CART_MAX_LINE_QUANTITY", "100")),
            cart_placeholder_image=os.getenv("CART_PLACEHOLDER_IMAGE", "/images/placeholder.jpg"),
        )


settings = Settings.from_env()
