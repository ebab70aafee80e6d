from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from payguard.errors import ApiError, ForbiddenError
from payguard.models import EmployeeRole
from payguard.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

ONE_TIME_CODE_DIGITS = 6
TOKEN_ALGORITHM = "HS256"
APPROVER_ROLES = frozenset({EmployeeRole.MANAGER.value, EmployeeRole.ADMIN.value})


def _invalid_token(message: str) -> ApiError:
    return ApiError(status_code=401, code="INVALID_TOKEN", message=message)


def generate_one_time_code(digits: int = ONE_TIME_CODE_DIGITS) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(digits))


def hash_secret(value: str) -> str:
    return pwd_context.hash(value)


def verify_secret(value: str, secret_hash: str | None) -> bool:
    # bcrypt verification compares digests in constant time.
    if not secret_hash:
        return False
    try:
        return pwd_context.verify(value, secret_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def create_access_token(
    *,
    employee_id: int,
    role: str = EmployeeRole.EMPLOYEE.value,
    full_name: str | None = None,
    auth_time: datetime | None = None,
    expires_minutes: int | None = None,
) -> tuple[str, dict[str, Any]]:
    """Issue an access token.

    `auth_time` is when the employee actually logged in. A refreshed token keeps
    the original value so the rapid-change-after-login signal still sees the
    real login moment; it defaults to the issue time.
    """
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes if expires_minutes is not None else settings.access_token_minutes)
    claims = {
        "sub": str(employee_id),
        "role": role,
        "full_name": full_name,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(issued_at.timestamp()),
        "auth_time": int((auth_time or issued_at).timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=TOKEN_ALGORITHM), claims


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[TOKEN_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise _invalid_token("Token is invalid.") from exc

    if claims.get("typ") != "access":
        raise _invalid_token("Token type is invalid.")
    if not str(claims.get("sub") or "").isdigit():
        raise _invalid_token("Token subject is invalid.")
    if claims.get("role") not in {item.value for item in EmployeeRole}:
        raise _invalid_token("Token role is invalid.")
    return claims


def require_employee(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _invalid_token("Missing bearer token.")

    claims = decode_token(credentials.credentials)
    claims["employee_id"] = int(claims["sub"])

    request.state.actor = claims["role"].lower()
    request.state.actor_id = claims["sub"]
    request.state.employee_id = claims["employee_id"]
    return claims


def require_roles(*roles: str) -> Callable[..., dict[str, Any]]:
    allowed = frozenset(roles)

    def _dependency(claims: dict[str, Any] = Depends(require_employee)) -> dict[str, Any]:
        if claims["role"] not in allowed:
            raise ForbiddenError()
        return claims

    return _dependency


require_approver = require_roles(*APPROVER_ROLES)
require_admin = require_roles(EmployeeRole.ADMIN.value)
