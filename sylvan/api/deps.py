"""
sylvan.api.deps — FastAPI dependency injection
================================================

Tokens are minted by the external identity provider with the shared
``JWT_SECRET``; claims used here are ``sub`` (user id), ``email`` and
``role``.
"""

from __future__ import annotations

import hmac
import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from sylvan.config import SylvanConfig, load_config
from sylvan.database.engine import create_db_engine
from sylvan.database.models import UserRole
from sylvan.services.audit_service import get_ip_address, get_user_agent

_WEAK_SECRETS = frozenset({
    "sylvan-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "It must match the secret used by the identity provider that issues tokens."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> SylvanConfig:
    return load_config(os.getenv("SYLVAN_CONFIG", "config.yaml"))


def request_meta(request: Request) -> dict[str, str | None]:
    """Client IP and user agent, for audit entries."""
    return {
        "ip_address": get_ip_address(request.headers),
        "user_agent": get_user_agent(request.headers),
    }


def _bearer(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return authorization.split(" ", 1)[1]


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the JWT and return its payload. Raises 401 if invalid."""
    token = _bearer(authorization)
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def get_current_admin(user: dict = Depends(get_current_user)) -> dict:
    """Like :func:`get_current_user` but requires ``role == ADMIN`` (403)."""
    if user.get("role") != UserRole.ADMIN.value:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user


def verify_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for scheduler-invoked endpoints (``Bearer $CRON_SECRET``)."""
    expected = os.getenv("CRON_SECRET", "")
    if not expected:
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "CRON_SECRET is not configured",
        )
    supplied = authorization.split(" ", 1)[1] if authorization and authorization.startswith("Bearer ") else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
