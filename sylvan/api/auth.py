"""
sylvan.api.auth — Token identity & first-login provisioning
=============================================================

Login itself happens at the identity provider; this router only reads
the bearer token and creates the matching ``users`` row on first call
to ``/auth/register``, crediting the referrer when an invite code is
given.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from sylvan.api.deps import get_config, get_current_user, get_engine
from sylvan.config import SylvanConfig
from sylvan.database.engine import get_session, run_db
from sylvan.database.models import User, UserRole
from sylvan.errors import ValidationFailed
from sylvan.services.email_service import queue_email
from sylvan.services.email_templates import build_welcome_email
from sylvan.services.filter_service import user_to_dict
from sylvan.services.user_service import (
    find_referrer,
    generate_unique_referral_code,
    process_referral_completion,
)
from sylvan.services.workflow_service import trigger_user_registered

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterBody(BaseModel):
    username: str | None = None
    wallet_address: str | None = None
    referral_code: str | None = None


def _complete_referral(engine: Engine, referral_code: str, new_user_id: str) -> None:
    with get_session(engine) as session:
        referrer = find_referrer(session, referral_code)
        if referrer is not None:
            process_referral_completion(session, referrer, new_user_id)


def _provision(engine: Engine, claims: dict, body: RegisterBody, cfg: SylvanConfig) -> tuple[dict, bool]:
    """Create the user row if missing. Returns ``(user, created)``."""
    with get_session(engine) as session:
        user = session.get(User, claims["sub"])
        if user is not None:
            return user_to_dict(user), False

        email = claims.get("email")
        if not email:
            raise ValidationFailed("Token has no email claim")
        referrer = find_referrer(session, body.referral_code)
        if body.referral_code and referrer is None:
            logger.info("Unknown referral code %r at registration of %s", body.referral_code, claims["sub"])
        user = User(
            id=claims["sub"],
            email=email,
            username=body.username or claims.get("username") or email.split("@", 1)[0],
            wallet_address=body.wallet_address,
            role=UserRole.USER,
            referral_code=generate_unique_referral_code(session),
            invited_by=referrer.referral_code if referrer else None,
        )
        session.add(user)
        session.flush()
        queue_email(
            session,
            to=user.email,
            email=build_welcome_email(cfg, user.username),
            max_attempts=cfg.email_max_attempts,
        )
        return user_to_dict(user), True


@router.get("/me")
def me(user: dict = Depends(get_current_user), engine: Engine = Depends(get_engine)):
    """Token claims plus the stored profile, if any."""
    with Session(engine) as session:
        row = session.get(User, user["sub"])
        profile = user_to_dict(row) if row else None
    return {
        "id": user["sub"],
        "email": user.get("email"),
        "role": user.get("role", UserRole.USER.value),
        "is_admin": user.get("role") == UserRole.ADMIN.value,
        "profile": profile,
    }


@router.post("/register")
async def register(
    body: RegisterBody,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    profile, created = await run_db(_provision, engine, user, body, cfg)
    if created:
        logger.info("Registered user %s", profile["id"])
        try:
            await run_db(trigger_user_registered, engine, profile["id"], cfg=cfg)
        except Exception:
            logger.exception("user_registered workflows failed for %s", profile["id"])
        if profile["invited_by"]:
            # The user row is already committed
            try:
                await run_db(_complete_referral, engine, profile["invited_by"], profile["id"])
            except Exception:
                logger.exception("Referral completion failed for %s", profile["id"])
    return {"user": profile, "created": created}
