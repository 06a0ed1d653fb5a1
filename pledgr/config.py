# pledgr/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ─────────────────────────────────────────────────────────────────────────────
# Env helpers
# ─────────────────────────────────────────────────────────────────────────────

DEV_JWT_SECRET = "dev-secret"


def _truthy(name: str, default: str = "") -> bool:
    v = os.getenv(name, default)
    return v not in ("", "0", "false", "False", "no", "No")


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _is_prod() -> bool:
    return (
        os.getenv("ENV", "").lower() in {"prod", "production"}
        or _truthy("RENDER")
        or bool(os.getenv("RENDER_EXTERNAL_URL"))
    )


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_url: str = ""
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_timeout_seconds: int = 30

    jwt_secret: str = DEV_JWT_SECRET
    jwt_alg: str = "HS256"
    # default ~30 days (in minutes)
    jwt_expire_min: int = 43200
    bcrypt_rounds: int = 12

    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_digit: bool = True
    password_require_special: bool = True

    login_max_attempts: int = 5
    login_lockout_minutes: int = 15

    rate_limit_window_minutes: int = 15
    rate_limit_general: int = 100
    rate_limit_auth: int = 5
    # honour X-Forwarded-For only behind a proxy that overwrites it
    trust_proxy: bool = False

    platform_fee_percent: Decimal = Decimal("5")
    campaign_duration_days: int = 30

    payment_provider: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_mode: str = "sandbox"

    frontend_origin: Optional[str] = None
    log_level: str = "INFO"
    cors_origins: tuple = field(default=("http://localhost:5173", "http://localhost:3000"))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"prod", "production"}

    def allowed_origins(self) -> list:
        if self.is_production:
            origins = {"https://pledgr.art", "https://www.pledgr.art"}
        else:
            origins = set(self.cors_origins)
        if self.frontend_origin and self.frontend_origin != "*":
            origins.add(self.frontend_origin)
        return sorted(origins)


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Build Settings from the process environment (and a .env file if present).

    In production JWT_SECRET must be supplied; the dev default is refused.
    """
    load_dotenv(dotenv_path=env_file or Path(__file__).parent / ".env", override=False)

    environment = "production" if _is_prod() else os.getenv("ENV", "development")
    jwt_secret = os.getenv("JWT_SECRET", "")
    if not jwt_secret:
        if environment == "production":
            raise RuntimeError("JWT_SECRET must be set in production")
        jwt_secret = DEV_JWT_SECRET

    return Settings(
        environment=environment,
        database_url=os.getenv("DATABASE_URL", ""),
        db_pool_size=_int("DB_POOL_SIZE", 5),
        db_max_overflow=_int("DB_MAX_OVERFLOW", 5),
        db_timeout_seconds=_int("DB_TIMEOUT_SECONDS", 30),
        jwt_secret=jwt_secret,
        jwt_expire_min=_int("JWT_EXPIRE_MIN", 43200),
        bcrypt_rounds=_int("BCRYPT_ROUNDS", 12),
        password_min_length=_int("PASSWORD_MIN_LENGTH", 8),
        password_require_uppercase=_truthy("PASSWORD_REQUIRE_UPPERCASE", "1"),
        password_require_digit=_truthy("PASSWORD_REQUIRE_DIGIT", "1"),
        password_require_special=_truthy("PASSWORD_REQUIRE_SPECIAL", "1"),
        login_max_attempts=_int("LOGIN_MAX_ATTEMPTS", 5),
        login_lockout_minutes=_int("LOGIN_LOCKOUT_MINUTES", 15),
        rate_limit_window_minutes=_int("RATE_LIMIT_WINDOW_MINUTES", 15),
        rate_limit_general=_int("RATE_LIMIT_GENERAL", 100),
        rate_limit_auth=_int("RATE_LIMIT_AUTH", 5),
        trust_proxy=_truthy("TRUST_PROXY"),
        platform_fee_percent=Decimal(os.getenv("PLATFORM_FEE_PERCENT", "5")),
        campaign_duration_days=_int("CAMPAIGN_DURATION_DAYS", 30),
        payment_provider=os.getenv("PAYMENT_PROVIDER", "").strip().lower(),
        paypal_client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
        paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
        paypal_mode=os.getenv("PAYPAL_MODE", "sandbox"),
        frontend_origin=os.getenv("FRONTEND_ORIGIN"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
