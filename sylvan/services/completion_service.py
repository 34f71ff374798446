"""
sylvan.services.completion_service — Task completion pipeline & sweeps
========================================================================

User-facing path (:func:`complete_task`)::

    user checks → task checks → expiry → duplicate checks
        → fraud scoring → completion row (+ points) → emails
        → task_completed workflows

Background sweeps (run by the worker or the cron endpoints):

* :func:`mark_expired_tasks` — record a missed completion for every
  active user who never completed an expired task.
* :func:`auto_reject_pending` — reject completions pending longer than
  the review window.
* :func:`auto_approve_pending` — approve low-risk completions whose
  ``auto_approve_at`` has passed.

Read side: :func:`get_organized_tasks` and :func:`list_user_tasks` feed
the task organizer with rows loaded here.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, distinct, func, select
from sqlalchemy.orm import Session

from sylvan.config import SylvanConfig
from sylvan.constants import (
    AUTO_REJECT_REASON,
    FRAUD_FLAG_THRESHOLD,
    PENDING_REVIEW_WINDOW,
    SYSTEM_ACTOR_EMAIL,
    SYSTEM_ACTOR_ID,
)
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
from sylvan.engine.expiration import can_complete_task, ensure_utc, is_task_expired
from sylvan.engine.fraud import FraudAssessment, FraudSignals, assess_completion
from sylvan.engine.organizer import (
    CategorizedTasks,
    OrganizedTasks,
    OrganizerConfig,
    TaskView,
    organize_tasks,
    organize_tasks_for_time_limited,
)
from sylvan.errors import ConflictError, ForbiddenError, NotFoundError, SylvanError, TaskExpiredError
from sylvan.services.audit_service import log_audit_event
from sylvan.services.email_service import is_email_enabled, queue_email
from sylvan.services.email_templates import (
    build_admin_review_email,
    build_task_completion_email,
)

logger = logging.getLogger(__name__)

_APPROVED = (CompletionStatus.APPROVED, CompletionStatus.AUTO_APPROVED)


@dataclass(slots=True)
class CompletionOutcome:
    completion_id: int
    task_id: int
    status: CompletionStatus
    points_awarded: int
    total_points: int
    needs_review: bool
    fraud_score: int
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "completion_id": self.completion_id,
            "task_id": self.task_id,
            "status": self.status.value,
            "points_awarded": self.points_awarded,
            "total_points": self.total_points,
            "needs_review": self.needs_review,
            "fraud_score": self.fraud_score,
        }


# ---------------------------------------------------------------------------
# Fraud signal collection
# ---------------------------------------------------------------------------
def _utc_day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _collect_signals(
    session: Session, user: User, task_id: int, ip_address: str | None, now: datetime
) -> FraudSignals:
    def count(*where) -> int:
        return session.scalar(select(func.count()).select_from(Completion).where(*where)) or 0

    same_ip_users = 0
    if ip_address:
        same_ip_users = session.scalar(
            select(func.count(distinct(Completion.user_id))).where(
                Completion.ip_address == ip_address,
                Completion.user_id != user.id,
                Completion.completed_at >= now - timedelta(hours=24),
            )
        ) or 0

    created_at = ensure_utc(user.created_at) or now
    return FraudSignals(
        account_age=now - created_at,
        wallet_verified=bool(user.wallet_verified),
        twitter_verified=bool(user.twitter_verified),
        telegram_verified=bool(user.telegram_verified),
        completions_last_minute=count(
            Completion.user_id == user.id,
            Completion.completed_at >= now - timedelta(minutes=1),
        ),
        completions_today=count(
            Completion.user_id == user.id,
            Completion.completed_at >= _utc_day_start(now),
        ),
        same_ip_users=same_ip_users,
        previous_attempts=count(Completion.user_id == user.id, Completion.task_id == task_id),
    )


def _queue_admin_review(
    session: Session,
    cfg: SylvanConfig,
    *,
    user: User,
    completion: Completion,
    assessment: FraudAssessment,
) -> None:
    admins = session.scalars(select(User).where(User.role == UserRole.ADMIN)).all()
    email = build_admin_review_email(
        cfg,
        review_type="completion",
        item_id=str(completion.id),
        user_email=user.email,
        fraud_score=assessment.score,
        reasons=assessment.reasons,
    )
    for admin in admins:
        if is_email_enabled(session, admin.id, "admin_notifications"):
            queue_email(session, to=admin.email, email=email, max_attempts=cfg.email_max_attempts)


# ---------------------------------------------------------------------------
# Completing a task
# ---------------------------------------------------------------------------
def complete_task(
    engine: Engine,
    *,
    user_id: str,
    task_id: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
    cfg: SylvanConfig | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> CompletionOutcome:
    """Record a completion of *task_id* by *user_id*.

    Raises :class:`~sylvan.errors.SylvanError` subclasses for every
    refusal (unknown user/task, blocked user, unverified wallet, inactive
    or expired task, duplicate completion).
    """
    now = now or datetime.now(UTC)

    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.status in (UserStatus.BLOCKED, UserStatus.DELETED):
            raise ForbiddenError("Your account cannot complete tasks", title="Account Restricted")
        if not user.wallet_verified:
            raise ForbiddenError(
                "Please verify your wallet address before completing tasks",
                title="Wallet Not Verified",
            )

        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if not task.is_active:
            raise SylvanError("This task is no longer active", title="Task Inactive")

        check = can_complete_task(task.expires_at, now)
        if not check.can_complete:
            raise TaskExpiredError(check.reason)

        if task.task_type == TaskType.REFERRAL:
            outcome = _record_referral(session, user, task, ip_address, user_agent, now)
            session.commit()
            return outcome

        already_today = session.scalar(
            select(Completion.id).where(
                Completion.user_id == user.id,
                Completion.task_id == task.id,
                Completion.completed_at >= _utc_day_start(now),
                Completion.status != CompletionStatus.EXPIRED,
            ).limit(1)
        )
        if already_today is not None:
            raise ConflictError("You have already completed this task today", title="Already Completed")

        signals = _collect_signals(session, user, task.id, ip_address, now)
        assessment = assess_completion(signals, now, rng)
        flagged = assessment.score >= FRAUD_FLAG_THRESHOLD

        completion = Completion(
            user_id=user.id,
            task_id=task.id,
            completed_at=now,
            status=CompletionStatus.PENDING if flagged else CompletionStatus.AUTO_APPROVED,
            verification_status=(
                VerificationStatus.FLAGGED if flagged else VerificationStatus.VERIFIED
            ),
            points_awarded=0 if flagged else task.points,
            fraud_score=assessment.score,
            needs_review=assessment.needs_review,
            auto_approve_at=assessment.auto_approve_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.add(completion)
        if not flagged:
            user.total_points = (user.total_points or 0) + task.points
        user.last_active = now
        session.flush()

        if cfg is not None:
            if is_email_enabled(session, user.id, "task_completions"):
                queue_email(
                    session,
                    to=user.email,
                    email=build_task_completion_email(
                        cfg,
                        user.username,
                        task.title,
                        completion.points_awarded,
                        user.total_points,
                        pending=flagged,
                    ),
                    max_attempts=cfg.email_max_attempts,
                )
            if assessment.needs_review:
                _queue_admin_review(session, cfg, user=user, completion=completion, assessment=assessment)

        outcome = CompletionOutcome(
            completion_id=completion.id,
            task_id=task.id,
            status=completion.status,
            points_awarded=completion.points_awarded,
            total_points=user.total_points,
            needs_review=assessment.needs_review,
            fraud_score=assessment.score,
            reasons=assessment.reasons,
        )
        session.commit()

    if flagged:
        logger.warning(
            "Completion %s by %s flagged (score=%d: %s)",
            outcome.completion_id, user_id, outcome.fraud_score, ", ".join(outcome.reasons),
        )

    from sylvan.services.workflow_service import trigger_task_completed

    try:
        trigger_task_completed(
            engine, user_id, task_id,
            {"completion_status": outcome.status.value, "points_awarded": outcome.points_awarded},
            cfg=cfg,
        )
    except Exception:
        logger.exception("task_completed workflows failed for completion %s", outcome.completion_id)

    return outcome


def _record_referral(
    session: Session,
    user: User,
    task: Task,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime,
) -> CompletionOutcome:
    """Referral tasks complete when the referred user joins, so the
    submission is parked as pending with no points.
    """
    existing = session.scalar(
        select(Completion.id).where(
            Completion.user_id == user.id,
            Completion.task_id == task.id,
            Completion.status.in_((CompletionStatus.PENDING, *_APPROVED)),
        ).limit(1)
    )
    if existing is not None:
        raise ConflictError("Referral task already submitted", title="Already Completed")

    completion = Completion(
        user_id=user.id,
        task_id=task.id,
        completed_at=now,
        status=CompletionStatus.PENDING,
        verification_status=VerificationStatus.UNVERIFIED,
        points_awarded=0,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(completion)
    session.flush()
    return CompletionOutcome(
        completion_id=completion.id,
        task_id=task.id,
        status=CompletionStatus.PENDING,
        points_awarded=0,
        total_points=user.total_points or 0,
        needs_review=False,
        fraud_score=0,
    )


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------
def mark_expired_tasks(engine: Engine, now: datetime | None = None) -> dict[str, int]:
    """Create ``EXPIRED`` completions (``missed_at = expires_at``) for active
    users who have no completion of an expired task.  Idempotent.
    """
    now = now or datetime.now(UTC)
    created = 0
    with Session(engine) as session:
        tasks = session.scalars(
            select(Task).where(
                Task.is_active.is_(True),
                Task.expires_at.is_not(None),
                Task.expires_at <= now,
            )
        ).all()

        for task in tasks:
            missing = session.scalars(
                select(User.id).where(
                    User.status == UserStatus.ACTIVE,
                    ~select(Completion.id)
                    .where(Completion.user_id == User.id, Completion.task_id == task.id)
                    .exists(),
                )
            ).all()
            for user_id in missing:
                session.add(Completion(
                    user_id=user_id,
                    task_id=task.id,
                    completed_at=None,
                    missed_at=ensure_utc(task.expires_at),
                    status=CompletionStatus.EXPIRED,
                    verification_status=VerificationStatus.UNVERIFIED,
                    points_awarded=0,
                ))
            created += len(missing)

        if created:
            log_audit_event(
                session,
                action="tasks_mark_expired",
                actor_id=SYSTEM_ACTOR_ID,
                actor_email=SYSTEM_ACTOR_EMAIL,
                affected_model="Completion",
                affected_count=created,
                after={"task_ids": [t.id for t in tasks]},
            )
        session.commit()

    if created:
        logger.info("Marked %d missed completion(s) across %d expired task(s)", created, len(tasks))
    return {"tasks_processed": len(tasks), "completions_created": created}


def auto_reject_pending(
    engine: Engine,
    now: datetime | None = None,
    window: timedelta = PENDING_REVIEW_WINDOW,
) -> int:
    """Reject completions still pending after *window*."""
    now = now or datetime.now(UTC)
    cutoff = now - window
    reason = AUTO_REJECT_REASON.format(hours=int(window.total_seconds() // 3600))
    with Session(engine) as session:
        stale = session.scalars(
            select(Completion).where(
                Completion.status == CompletionStatus.PENDING,
                Completion.completed_at < cutoff,
            )
        ).all()
        for completion in stale:
            completion.status = CompletionStatus.REJECTED
            completion.verification_status = VerificationStatus.REJECTED
            completion.rejection_reason = reason
            completion.missed_at = now
            completion.needs_review = False
        if stale:
            log_audit_event(
                session,
                action="completions_auto_reject",
                actor_id=SYSTEM_ACTOR_ID,
                actor_email=SYSTEM_ACTOR_EMAIL,
                affected_model="Completion",
                affected_count=len(stale),
                after={"ids": [c.id for c in stale], "reason": reason},
            )
        session.commit()
        count = len(stale)

    if count:
        logger.info("Auto-rejected %d pending completion(s)", count)
    return count


def auto_approve_pending(engine: Engine, now: datetime | None = None) -> int:
    """Approve pending completions that don't need review once their
    ``auto_approve_at`` passes.  Points are awarded only if none were.
    """
    now = now or datetime.now(UTC)
    with Session(engine) as session:
        due = session.scalars(
            select(Completion).where(
                Completion.status == CompletionStatus.PENDING,
                Completion.needs_review.is_(False),
                Completion.auto_approve_at.is_not(None),
                Completion.auto_approve_at <= now,
            )
        ).all()
        for completion in due:
            completion.status = CompletionStatus.AUTO_APPROVED
            completion.verification_status = VerificationStatus.VERIFIED
            if not completion.points_awarded:
                task = session.get(Task, completion.task_id)
                user = session.get(User, completion.user_id)
                points = task.points if task else 0
                completion.points_awarded = points
                if user is not None:
                    user.total_points = (user.total_points or 0) + points
        session.commit()
        count = len(due)

    if count:
        logger.info("Auto-approved %d completion(s)", count)
    return count


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------
def _user_completions(session: Session, user_id: str) -> list[Completion]:
    return list(session.scalars(
        select(Completion).where(Completion.user_id == user_id).order_by(Completion.id)
    ).all())


def get_organized_tasks(
    engine: Engine,
    user_id: str,
    now: datetime | None = None,
    pending_window: timedelta = PENDING_REVIEW_WINDOW,
) -> CategorizedTasks:
    """Active tasks (newest first) bucketed against the user's completions."""
    with Session(engine) as session:
        tasks = session.scalars(
            select(Task).where(Task.is_active.is_(True)).order_by(Task.created_at.desc(), Task.id.desc())
        ).all()
        views = [TaskView.from_task(t) for t in tasks]
        completions = _user_completions(session, user_id)
        return organize_tasks_for_time_limited(views, completions, now, pending_window)


def list_user_tasks(
    engine: Engine,
    user_id: str,
    config: OrganizerConfig | None = None,
    now: datetime | None = None,
) -> OrganizedTasks:
    """Box/list view of active tasks annotated with the user's progress."""
    now = now or datetime.now(UTC)
    today = _utc_day_start(now)
    with Session(engine) as session:
        tasks = session.scalars(select(Task).where(Task.is_active.is_(True))).all()
        latest: dict[int, datetime] = {}
        for c in _user_completions(session, user_id):
            if c.status in _APPROVED and c.completed_at is not None:
                ts = ensure_utc(c.completed_at)
                if c.task_id not in latest or ts > latest[c.task_id]:
                    latest[c.task_id] = ts

        views = []
        for task in tasks:
            last = latest.get(task.id)
            views.append(TaskView.from_task(
                task,
                is_completed=last is not None,
                completed_today=last is not None and last >= today,
                last_completed_at=last,
            ))
    return organize_tasks(views, config, now)


def check_task_expiration(engine: Engine, task_id: int, now: datetime | None = None) -> dict:
    with Session(engine) as session:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        expires_at = ensure_utc(task.expires_at)
        return {
            "task_id": task.id,
            "is_expired": is_task_expired(expires_at, now),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "duration": task.duration,
            "is_active": task.is_active,
        }
