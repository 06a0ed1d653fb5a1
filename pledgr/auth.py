# pledgr/auth.py
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Tuple
from urllib.parse import quote

import bcrypt
from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, Header, Request
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .db import atomic, get_db
from .errors import (
    AuthenticationError, ConflictError, NotFoundError, RateLimitedError, ValidationError,
)
from .models import LoginAttempt, User
from .schemas import AuthOut, LoginIn, ProfileIn, RegisterIn, UserOut

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
# bcrypt only looks at the first 72 bytes and newer releases refuse longer input
BCRYPT_MAX_BYTES = 72
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\]\\/;'`~]")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# ─────────────────────────────────────────────────────────────────────────────
# Passwords
# ─────────────────────────────────────────────────────────────────────────────

def check_password_policy(password: str, settings: Settings) -> None:
    """Raise ValidationError listing every rule the password breaks."""
    errors = []
    if not password or len(password) < settings.password_min_length:
        errors.append(f"Password must be at least {settings.password_min_length} characters")
    if password and len(password.encode()) > BCRYPT_MAX_BYTES:
        errors.append(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    if settings.password_require_uppercase and not re.search(r"[A-Z]", password or ""):
        errors.append("Password must contain at least one uppercase letter")
    if settings.password_require_digit and not re.search(r"\d", password or ""):
        errors.append("Password must contain at least one number")
    if settings.password_require_special and not _SPECIAL_RE.search(password or ""):
        errors.append("Password must contain at least one special character")
    if errors:
        raise ValidationError(", ".join(errors))


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check of ``password`` against a stored bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # malformed hash or over-long password
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("pledgr-timing-equalizer", rounds)


# ─────────────────────────────────────────────────────────────────────────────
# JWT helpers
# ─────────────────────────────────────────────────────────────────────────────

def create_token(user: User, settings: Settings) -> str:
    """Create a signed JWT for ``user``."""
    iat = _now_utc()
    exp = iat + timedelta(minutes=settings.jwt_expire_min)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "iat": int(iat.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def verify(token: str, settings: Settings) -> dict:
    """Decode and validate a bearer token, returning its claims."""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError as e:
        raise AuthenticationError("Invalid or expired token") from e
    sub = claims.get("sub")
    if not sub or not str(sub).isdigit() or "exp" not in claims:
        raise AuthenticationError("Invalid or expired token")
    claims["user_id"] = int(sub)
    return claims


# ─────────────────────────────────────────────────────────────────────────────
# Login lockout (persisted per email)
# ─────────────────────────────────────────────────────────────────────────────

def _window_open(attempt: LoginAttempt, settings: Settings, now: datetime) -> bool:
    window = timedelta(minutes=settings.login_lockout_minutes)
    return now - _as_utc(attempt.window_started_at) < window


def _ensure_not_locked(db: Session, identifier: str, settings: Settings) -> None:
    attempt = db.get(LoginAttempt, identifier)
    if attempt is None:
        return
    if attempt.failures >= settings.login_max_attempts and _window_open(attempt, settings, _now_utc()):
        logger.warning("Login locked out for %s", identifier)
        raise RateLimitedError("Too many login attempts. Please try again later.")


def _bump(attempt: LoginAttempt, settings: Settings, now: datetime) -> None:
    if not _window_open(attempt, settings, now):
        attempt.failures = 1
        attempt.window_started_at = now
    else:
        attempt.failures += 1


def _record_failure(db: Session, identifier: str, settings: Settings) -> None:
    now = _now_utc()
    try:
        with atomic(db):
            attempt = db.get(LoginAttempt, identifier)
            if attempt is None:
                db.add(LoginAttempt(identifier=identifier, failures=1, window_started_at=now))
            else:
                _bump(attempt, settings, now)
    except IntegrityError:
        # a concurrent first failure inserted the row; count on top of it
        with atomic(db):
            _bump(db.get(LoginAttempt, identifier), settings, now)


def _clear_failures(db: Session, identifier: str) -> None:
    attempt = db.get(LoginAttempt, identifier)
    if attempt is not None:
        with atomic(db):
            db.delete(attempt)


# ─────────────────────────────────────────────────────────────────────────────
# Service
# ─────────────────────────────────────────────────────────────────────────────

def register(db: Session, settings: Settings, name: str, email: str, password: str) -> Tuple[User, str]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required")
    try:
        validate_email(email or "", check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}") from e
    email = normalize_email(email)
    check_password_policy(password, settings)

    if db.execute(select(User.id).where(User.email == email)).first():
        raise ConflictError("Email already registered")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password, settings.bcrypt_rounds),
        avatar=f"https://ui-avatars.com/api/?name={quote(name)}&background=random",
        is_creator=False,
    )
    try:
        with atomic(db):
            db.add(user)
    except IntegrityError as e:
        # lost a race with a concurrent registration
        raise ConflictError("Email already registered") from e
    db.refresh(user)
    logger.info("Registered user %s", user.id)
    return user, create_token(user, settings)


def login(db: Session, settings: Settings, email: str, password: str) -> Tuple[User, str]:
    identifier = normalize_email(email)
    _ensure_not_locked(db, identifier, settings)

    user = db.execute(select(User).where(User.email == identifier)).scalar_one_or_none()
    if user is None:
        verify_password(password or "", _dummy_hash(settings.bcrypt_rounds))
        ok = False
    else:
        ok = verify_password(password or "", user.password_hash)

    if not ok:
        _record_failure(db, identifier, settings)
        logger.warning("Failed login for %s", identifier)
        raise AuthenticationError(INVALID_CREDENTIALS)

    _clear_failures(db, identifier)
    return user, create_token(user, settings)


def get_profile(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def update_profile(db: Session, user_id: int, name: Optional[str] = None, bio: Optional[str] = None,
                   website: Optional[str] = None, social: Optional[dict] = None) -> User:
    user = get_profile(db, user_id)
    with atomic(db):
        if name is not None:
            if not name.strip():
                raise ValidationError("Name cannot be empty")
            user.name = name.strip()
        if bio is not None:
            user.bio = bio
        if website is not None:
            user.website = website
        if social is not None:
            user.social_twitter = social.get("twitter") or ""
            user.social_instagram = social.get("instagram") or ""
            user.social_youtube = social.get("youtube") or ""
    db.refresh(user)
    return user


# ─────────────────────────────────────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────────────────────────────────────

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_auth(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> User:
    """
    Validate ``Authorization: Bearer <jwt>`` and load the caller.
    Raises AuthenticationError (401) on any failure.
    """
    token = None
    if authorization:
        parts = authorization.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1]
    if not token:
        raise AuthenticationError("Access token required")

    claims = verify(token, settings)
    user = db.get(User, claims["user_id"])
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    return user


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AuthOut)
def register_route(payload: RegisterIn, db: Session = Depends(get_db),
                   settings: Settings = Depends(get_settings)):
    user, token = register(db, settings, payload.name, payload.email, payload.password)
    return AuthOut(token=token, user=UserOut.model_validate(user))


@router.post("/login", response_model=AuthOut)
def login_route(payload: LoginIn, db: Session = Depends(get_db),
                settings: Settings = Depends(get_settings)):
    user, token = login(db, settings, payload.email, payload.password)
    return AuthOut(token=token, user=UserOut.model_validate(user))


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(require_auth)):
    return user


@router.put("/profile", response_model=UserOut)
def update_profile_route(payload: ProfileIn, user: User = Depends(require_auth),
                         db: Session = Depends(get_db)):
    social = payload.social.model_dump() if payload.social else None
    return update_profile(db, user.id, name=payload.name, bio=payload.bio,
                          website=payload.website, social=social)
