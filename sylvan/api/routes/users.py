"""
sylvan.api.routes.users — Preferences, notifications, referrals & leaderboard
=============================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from sylvan.api.deps import get_current_user, get_engine
from sylvan.services import email_service, notification_service, user_service

router = APIRouter(tags=["users"])


class EmailPreferencesUpdate(BaseModel):
    task_completions: bool | None = None
    wallet_verifications: bool | None = None
    admin_notifications: bool | None = None
    marketing_emails: bool | None = None
    unsubscribed: bool | None = None


@router.get("/users/email-preferences")
def get_email_preferences(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return {"preferences": email_service.get_preferences(engine, user["sub"])}


@router.put("/users/email-preferences")
def update_email_preferences(
    body: EmailPreferencesUpdate,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    return {"preferences": email_service.update_preferences(engine, user["sub"], **changes)}


@router.get("/users/referrals")
def referral_stats(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """The caller's invite code and the users who joined with it."""
    return user_service.get_referral_stats(engine, user["sub"])


@router.get("/leaderboard")
def leaderboard(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return user_service.get_leaderboard(engine, page=page, limit=limit)


@router.get("/notifications")
def list_notifications(
    unread: bool = False,
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return {
        "notifications": notification_service.list_notifications(
            engine, user["sub"], unread_only=unread, limit=limit
        ),
    }


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    if not notification_service.mark_read(engine, user["sub"], notification_id):
        raise HTTPException(404, "Unread notification not found")
    return {"ok": True}
