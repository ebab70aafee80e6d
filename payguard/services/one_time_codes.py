from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from payguard.clock import ensure_utc, utc_now
from payguard.errors import ExpiredError, ValidationError
from payguard.security import ONE_TIME_CODE_DIGITS, generate_one_time_code, hash_secret, verify_secret
from payguard.settings import get_settings


@dataclass(frozen=True, slots=True)
class IssuedCode:
    plain_code: str
    code_hash: str
    expires_at: datetime


def normalize_code(value: str | None) -> str:
    cleaned = "".join((value or "").split())
    if not cleaned:
        raise ValidationError("Verification code is required.")
    if not cleaned.isdigit() or len(cleaned) != ONE_TIME_CODE_DIGITS:
        raise ValidationError(f"Verification code must be {ONE_TIME_CODE_DIGITS} digits.")
    return cleaned


def issue_code(*, now_utc: datetime | None = None, expire_minutes: int | None = None) -> IssuedCode:
    """Generate a fresh code. Only the hash and expiry are meant to be persisted."""
    now = ensure_utc(now_utc or utc_now())
    minutes = expire_minutes if expire_minutes is not None else get_settings().otp_expire_minutes
    plain_code = generate_one_time_code()
    return IssuedCode(
        plain_code=plain_code,
        code_hash=hash_secret(plain_code),
        expires_at=now + timedelta(minutes=max(1, int(minutes))),
    )


def is_code_expired(expires_at: datetime | None, *, now_utc: datetime) -> bool:
    if expires_at is None:
        return True
    return ensure_utc(now_utc) > ensure_utc(expires_at)


def check_code(
    code: str,
    *,
    code_hash: str | None,
    expires_at: datetime | None,
    now_utc: datetime | None = None,
) -> bool:
    """Return whether ``code`` matches. Raises ``ExpiredError`` once past expiry.

    A code presented exactly at ``expires_at`` is still accepted.
    """
    now = ensure_utc(now_utc or utc_now())
    if is_code_expired(expires_at, now_utc=now):
        raise ExpiredError()
    return verify_secret(normalize_code(code), code_hash)
