"""
sylvan.services.user_service — Referral codes & the leaderboard
=================================================================

Every user gets an invite code at registration.  A newcomer who signs up
with someone's code completes that referrer's oldest pending REFERRAL
task::

    register(referral_code) → normalize → find referrer
        → oldest PENDING referral completion → APPROVED (+ points)
        → audit ``referral_completed``

The leaderboard ranks active non-admin users by points.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from sylvan.constants import SYSTEM_ACTOR_EMAIL, SYSTEM_ACTOR_ID
from sylvan.database.models import (
    Completion,
    CompletionStatus,
    Task,
    TaskType,
    User,
    UserRole,
    UserStatus,
    VerificationStatus,
)
from sylvan.errors import NotFoundError
from sylvan.services.audit_service import log_audit_event

logger = logging.getLogger(__name__)

# No 0/O or 1/I
REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 8
_LONG_CODE_LENGTH = 12
_CODE_RE = re.compile(r"^[A-Z0-9]{6,12}$")


@dataclass(frozen=True, slots=True)
class ReferralCompletion:
    completion_id: int
    referrer_id: str
    points_awarded: int


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------
def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(length))


def generate_unique_referral_code(session: Session, attempts: int = 10) -> str:
    """Draw codes until one is unused; falls back to a longer code."""
    for _ in range(attempts):
        code = generate_referral_code()
        taken = session.scalar(select(User.id).where(User.referral_code == code))
        if taken is None:
            return code
    return generate_referral_code(_LONG_CODE_LENGTH)


def normalize_referral_code(code: str | None) -> str | None:
    """Strip dashes and spaces and upper-case.  ``None`` if malformed."""
    if not code:
        return None
    cleaned = re.sub(r"[-\s]", "", code).upper()
    return cleaned if _CODE_RE.match(cleaned) else None


def find_referrer(session: Session, code: str | None) -> User | None:
    code = normalize_referral_code(code)
    if code is None:
        return None
    return session.scalar(select(User).where(User.referral_code == code))


# ---------------------------------------------------------------------------
# Referral task completion
# ---------------------------------------------------------------------------
def process_referral_completion(
    session: Session,
    referrer: User,
    new_user_id: str,
    now: datetime | None = None,
) -> ReferralCompletion | None:
    """Approve *referrer*'s oldest pending completion of an active REFERRAL
    task and award its points.  Runs in the caller's transaction.

    Returns ``None`` when there is nothing to complete (self-referral, or
    no pending referral task).
    """
    if referrer.id == new_user_id:
        logger.warning("Ignoring self-referral by %s", new_user_id)
        return None

    now = now or datetime.now(UTC)
    row = session.execute(
        select(Completion, Task)
        .join(Task, Task.id == Completion.task_id)
        .where(
            Completion.user_id == referrer.id,
            Completion.status == CompletionStatus.PENDING,
            Task.task_type == TaskType.REFERRAL,
            Task.is_active.is_(True),
        )
        .order_by(Completion.completed_at.asc(), Completion.id.asc())
        .limit(1)
    ).first()
    if row is None:
        logger.info("No pending referral task for %s", referrer.id)
        return None

    completion, task = row
    points = task.points or 0
    completion.status = CompletionStatus.APPROVED
    completion.verification_status = VerificationStatus.VERIFIED
    completion.points_awarded = points
    completion.completed_at = now
    completion.needs_review = False
    referrer.total_points = (referrer.total_points or 0) + points

    log_audit_event(
        session,
        action="referral_completed",
        actor_id=SYSTEM_ACTOR_ID,
        actor_email=SYSTEM_ACTOR_EMAIL,
        affected_model="Completion",
        affected_id=completion.id,
        before={"status": CompletionStatus.PENDING.value},
        after={
            "status": CompletionStatus.APPROVED.value,
            "referrer_id": referrer.id,
            "referee_id": new_user_id,
            "points_awarded": points,
        },
    )
    session.flush()
    logger.info(
        "Referral by %s completed task %s for %s (+%d points)",
        new_user_id, task.id, referrer.id, points,
    )
    return ReferralCompletion(completion_id=completion.id, referrer_id=referrer.id, points_awarded=points)


def get_referral_stats(engine: Engine, user_id: str) -> dict:
    """The user's code and everyone who signed up with it (newest first)."""
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.referral_code:
            return {"referral_code": None, "total_referrals": 0, "referrals": []}
        invited = session.scalars(
            select(User)
            .where(User.invited_by == user.referral_code)
            .order_by(User.created_at.desc(), User.id)
        ).all()
        return {
            "referral_code": user.referral_code,
            "total_referrals": len(invited),
            "referrals": [
                {
                    "id": u.id,
                    "username": u.username,
                    "total_points": u.total_points,
                    "created_at": u.created_at.isoformat() if u.created_at else None,
                }
                for u in invited
            ],
        }


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
def get_leaderboard(engine: Engine, *, page: int = 1, limit: int = 50) -> dict:
    """Active users (admins excluded) ranked by points, earliest sign-up
    first on ties.  ``completion_count`` counts approved completions.
    """
    offset = (page - 1) * limit
    ranked = (User.status == UserStatus.ACTIVE, User.role == UserRole.USER)
    approved = (
        select(func.count(Completion.id))
        .where(
            Completion.user_id == User.id,
            Completion.status.in_((CompletionStatus.APPROVED, CompletionStatus.AUTO_APPROVED)),
        )
        .correlate(User)
        .scalar_subquery()
    )
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(User).where(*ranked)) or 0
        rows = session.execute(
            select(User.id, User.username, User.total_points, approved.label("completion_count"))
            .where(*ranked)
            .order_by(User.total_points.desc(), User.created_at.asc(), User.id)
            .offset(offset)
            .limit(limit)
        ).all()

    entries = [
        {
            "rank": offset + i + 1,
            "id": r.id,
            "username": r.username,
            "total_points": r.total_points or 0,
            "completion_count": r.completion_count,
        }
        for i, r in enumerate(rows)
    ]
    has_more = offset + len(entries) < total
    return {
        "leaderboard": entries,
        "pagination": {
            "page": page,
            "limit": limit,
            "total_count": total,
            "total_pages": math.ceil(total / limit),
            "has_more": has_more,
        },
    }
