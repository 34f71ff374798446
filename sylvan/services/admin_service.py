"""
sylvan.services.admin_service — Admin Mutation Service Layer
==============================================================

Every admin write follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write audit_log with before/after JSON
  5. Commit

Covers tasks (including time-limit changes, which get their own
``TaskDuration`` audit rows), campaigns, user status and manual review
of pending completions, plus bulk user operations (status, soft delete,
point grants) that write one audit row per user and a ``bulk_*`` summary.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from sylvan.database.models import (
    Campaign,
    Completion,
    CompletionStatus,
    Task,
    TaskType,
    User,
    UserStatus,
    VerificationStatus,
)
from sylvan.engine.expiration import calculate_expiration
from sylvan.errors import ConflictError, NotFoundError, ValidationFailed
from sylvan.services.audit_service import (
    log_audit_event,
    log_bulk_operation,
    log_crud_operation,
    log_duration_change,
    row_to_dict,
)

logger = logging.getLogger(__name__)

_FROZEN_KEYS = ("id", "created_at", "updated_at")


# ---------------------------------------------------------------------------
# Generic audited helpers
# ---------------------------------------------------------------------------
def _audited_create(
    engine: Engine,
    row: Any,
    *,
    model_name: str,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> Any:
    """add → flush → log → commit → return (detached)."""
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.flush()
        log_crud_operation(
            session,
            operation="create",
            model=model_name,
            record_id=row.id,
            actor_id=actor_id,
            actor_email=actor_email,
            after=row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)
        return row


def _audited_update(
    engine: Engine,
    model_cls: type,
    pk: Any,
    *,
    model_name: str,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
    **changes: Any,
) -> Any | None:
    """get → before → apply → log → commit.  ``None`` if the row is missing."""
    with Session(engine, expire_on_commit=False) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return None
        before = row_to_dict(obj)
        for key, value in changes.items():
            if hasattr(obj, key) and key not in _FROZEN_KEYS:
                setattr(obj, key, value)
        session.flush()
        log_crud_operation(
            session,
            operation="update",
            model=model_name,
            record_id=pk,
            actor_id=actor_id,
            actor_email=actor_email,
            before=before,
            after=row_to_dict(obj),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(obj)
        session.expunge(obj)
        return obj


def _audited_delete(
    engine: Engine,
    model_cls: type,
    pk: Any,
    *,
    model_name: str,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> bool:
    with Session(engine) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return False
        before = row_to_dict(obj)
        session.delete(obj)
        log_crud_operation(
            session,
            operation="delete",
            model=model_name,
            record_id=pk,
            actor_id=actor_id,
            actor_email=actor_email,
            before=before,
            ip_address=ip_address,
        )
        session.commit()
        return True


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
def _expiry_for(duration: int | None, now: datetime) -> datetime | None:
    if duration is None:
        return None
    try:
        return calculate_expiration(duration, now)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from None


def create_task(
    engine: Engine,
    *,
    title: str,
    actor_id: str,
    actor_email: str,
    points: int = 0,
    task_type: TaskType = TaskType.CUSTOM,
    description: str | None = None,
    task_url: str | None = None,
    campaign_id: int | None = None,
    is_active: bool = True,
    is_time_sensitive: bool = False,
    scheduled_deadline: datetime | None = None,
    estimated_duration: int | None = None,
    duration: int | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> Task:
    """Create a task.  A ``duration`` (hours) makes it time-limited and
    starts its expiry clock now.
    """
    if not title or not title.strip():
        raise ValidationFailed("Task title is required")
    if points < 0:
        raise ValidationFailed("Points must be zero or positive")
    now = now or datetime.now(UTC)
    expires_at = _expiry_for(duration, now)

    with Session(engine, expire_on_commit=False) as session:
        if campaign_id is not None and session.get(Campaign, campaign_id) is None:
            raise NotFoundError("Campaign not found")
        task = Task(
            title=title.strip(),
            description=description,
            points=points,
            task_type=TaskType(task_type),
            task_url=task_url,
            campaign_id=campaign_id,
            is_active=is_active,
            is_time_sensitive=is_time_sensitive,
            scheduled_deadline=scheduled_deadline,
            estimated_duration=estimated_duration,
            duration=duration,
            expires_at=expires_at,
            created_at=now,
        )
        session.add(task)
        session.flush()
        log_crud_operation(
            session,
            operation="create",
            model="Task",
            record_id=task.id,
            actor_id=actor_id,
            actor_email=actor_email,
            after=row_to_dict(task),
            ip_address=ip_address,
        )
        log_duration_change(
            session,
            task_id=task.id,
            task_title=task.title,
            old_duration=None,
            new_duration=duration,
            old_expires_at=None,
            new_expires_at=expires_at,
            actor_id=actor_id,
            actor_email=actor_email,
            created=True,
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(task)
        session.expunge(task)
        return task


def update_task(
    engine: Engine,
    task_id: int,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
    now: datetime | None = None,
    **changes: Any,
) -> Task:
    """Apply *changes* to a task.

    Passing ``duration`` restarts the expiry clock (``duration=None``
    removes the time limit).  Omit it to leave the limit untouched.
    """
    now = now or datetime.now(UTC)
    if "points" in changes and changes["points"] is not None and changes["points"] < 0:
        raise ValidationFailed("Points must be zero or positive")
    if "task_type" in changes and changes["task_type"] is not None:
        changes["task_type"] = TaskType(changes["task_type"])

    with Session(engine, expire_on_commit=False) as session:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        before = row_to_dict(task)
        old_duration, old_expires = task.duration, task.expires_at

        if "duration" in changes:
            new_duration = changes.pop("duration")
            task.duration = new_duration
            task.expires_at = _expiry_for(new_duration, now)

        for key, value in changes.items():
            if value is not None and hasattr(task, key) and key not in _FROZEN_KEYS:
                setattr(task, key, value)
        session.flush()

        log_crud_operation(
            session,
            operation="update",
            model="Task",
            record_id=task.id,
            actor_id=actor_id,
            actor_email=actor_email,
            before=before,
            after=row_to_dict(task),
            ip_address=ip_address,
        )
        log_duration_change(
            session,
            task_id=task.id,
            task_title=task.title,
            old_duration=old_duration,
            new_duration=task.duration,
            old_expires_at=old_expires,
            new_expires_at=task.expires_at,
            actor_id=actor_id,
            actor_email=actor_email,
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(task)
        session.expunge(task)
        return task


def delete_task(engine: Engine, task_id: int, *, actor_id: str, actor_email: str,
                ip_address: str | None = None) -> None:
    if not _audited_delete(
        engine, Task, task_id,
        model_name="Task", actor_id=actor_id, actor_email=actor_email, ip_address=ip_address,
    ):
        raise NotFoundError("Task not found")


def list_tasks(engine: Engine, *, include_inactive: bool = True) -> list[Task]:
    with Session(engine, expire_on_commit=False) as session:
        stmt = select(Task).order_by(Task.created_at.desc(), Task.id.desc())
        if not include_inactive:
            stmt = stmt.where(Task.is_active.is_(True))
        rows = session.scalars(stmt).all()
        session.expunge_all()
        return list(rows)


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------
def create_campaign(
    engine: Engine,
    *,
    title: str,
    actor_id: str,
    actor_email: str,
    description: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    is_active: bool = True,
    ip_address: str | None = None,
) -> Campaign:
    if not title or not title.strip():
        raise ValidationFailed("Campaign title is required")
    if start_date and end_date and end_date < start_date:
        raise ValidationFailed("Campaign end date must be after its start date")
    return _audited_create(
        engine,
        Campaign(
            title=title.strip(),
            description=description,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
        ),
        model_name="Campaign",
        actor_id=actor_id,
        actor_email=actor_email,
        ip_address=ip_address,
    )


def update_campaign(
    engine: Engine,
    campaign_id: int,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
    **changes: Any,
) -> Campaign:
    campaign = _audited_update(
        engine, Campaign, campaign_id,
        model_name="Campaign", actor_id=actor_id, actor_email=actor_email,
        ip_address=ip_address,
        **{k: v for k, v in changes.items() if v is not None},
    )
    if campaign is None:
        raise NotFoundError("Campaign not found")
    return campaign


def delete_campaign(engine: Engine, campaign_id: int, *, actor_id: str, actor_email: str,
                    ip_address: str | None = None) -> None:
    if not _audited_delete(
        engine, Campaign, campaign_id,
        model_name="Campaign", actor_id=actor_id, actor_email=actor_email, ip_address=ip_address,
    ):
        raise NotFoundError("Campaign not found")


def list_campaigns(engine: Engine) -> list[Campaign]:
    with Session(engine, expire_on_commit=False) as session:
        rows = session.scalars(
            select(Campaign).order_by(Campaign.created_at.desc(), Campaign.id.desc())
        ).all()
        session.expunge_all()
        return list(rows)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def set_user_status(
    engine: Engine,
    user_id: str,
    status: UserStatus | str,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> User:
    """Block, unblock or soft-delete a user.  Admins cannot change their own status."""
    status = UserStatus(status)
    if user_id == actor_id:
        raise ConflictError("You cannot change your own status")

    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        before = {"status": user.status.value}
        user.status = status
        action = "user_delete" if status is UserStatus.DELETED else "user_status_change"
        log_audit_event(
            session,
            action=action,
            actor_id=actor_id,
            actor_email=actor_email,
            affected_model="User",
            affected_id=user_id,
            before=before,
            after={"status": status.value},
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(user)
        session.expunge(user)
        return user


# ---------------------------------------------------------------------------
# Bulk user operations
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class BulkResult:
    successful_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": len(self.successful_ids),
            "failed": len(self.failed_ids),
            "errors": self.errors,
            "successful_ids": self.successful_ids,
            "failed_ids": self.failed_ids,
        }


def _bulk_users(
    engine: Engine,
    user_ids: list[str],
    *,
    operation: str,
    apply: Callable[[User], tuple[str, dict, dict]],
    actor_id: str,
    actor_email: str,
    details: dict | None = None,
    ip_address: str | None = None,
) -> BulkResult:
    """Run *apply* on each user in one transaction.

    *apply* mutates the user and returns ``(action, before, after)`` for
    its audit row, or raises ``ValueError`` to fail that user only.
    Missing users and the acting admin are reported as failures.  One
    ``bulk_<operation>`` summary row is written for the whole batch.
    """
    if not user_ids:
        raise ValidationFailed("No user IDs provided")
    result = BulkResult()

    with Session(engine) as session:
        for user_id in dict.fromkeys(user_ids):
            user = session.get(User, user_id)
            if user is None:
                reason = "User not found"
            elif user_id == actor_id:
                reason = "You cannot apply bulk operations to yourself"
            else:
                try:
                    action, before, after = apply(user)
                except ValueError as exc:
                    reason = str(exc)
                else:
                    log_audit_event(
                        session,
                        action=action,
                        actor_id=actor_id,
                        actor_email=actor_email,
                        affected_model="User",
                        affected_id=user_id,
                        before=before,
                        after=after,
                        ip_address=ip_address,
                    )
                    result.successful_ids.append(user_id)
                    continue
            result.failed_ids.append(user_id)
            result.errors.append(f"User {user_id}: {reason}")

        log_bulk_operation(
            session,
            operation=operation,
            model="User",
            record_ids=result.successful_ids,
            actor_id=actor_id,
            actor_email=actor_email,
            details={"failed_ids": result.failed_ids, **(details or {})},
            ip_address=ip_address,
        )
        session.commit()

    logger.info(
        "Bulk %s by %s: %d succeeded, %d failed",
        operation, actor_id, len(result.successful_ids), len(result.failed_ids),
    )
    return result


def bulk_update_status(
    engine: Engine,
    user_ids: list[str],
    status: UserStatus | str,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> BulkResult:
    status = UserStatus(status)

    def apply(user: User) -> tuple[str, dict, dict]:
        before = {"status": user.status.value}
        user.status = status
        action = "user_delete" if status is UserStatus.DELETED else "user_status_change"
        return action, before, {"status": status.value}

    return _bulk_users(
        engine, user_ids, operation="update_status", apply=apply,
        actor_id=actor_id, actor_email=actor_email,
        details={"status": status.value}, ip_address=ip_address,
    )


def bulk_delete_users(
    engine: Engine,
    user_ids: list[str],
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> BulkResult:
    """Soft delete: users move to ``DELETED`` and keep their history."""

    def apply(user: User) -> tuple[str, dict, dict]:
        if user.status is UserStatus.DELETED:
            raise ValueError("User is already deleted")
        before = {"status": user.status.value}
        user.status = UserStatus.DELETED
        return "user_delete", before, {"status": UserStatus.DELETED.value}

    return _bulk_users(
        engine, user_ids, operation="delete", apply=apply,
        actor_id=actor_id, actor_email=actor_email, ip_address=ip_address,
    )


def bulk_assign_points(
    engine: Engine,
    user_ids: list[str],
    points: int,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> BulkResult:
    """Add *points* (may be negative) to each user's total.  A user whose
    total would drop below zero is skipped.
    """
    if points == 0:
        raise ValidationFailed("Points must be non-zero")

    def apply(user: User) -> tuple[str, dict, dict]:
        current = user.total_points or 0
        if current + points < 0:
            raise ValueError(f"Total points cannot go below zero (has {current})")
        user.total_points = current + points
        return "points_assigned", {"total_points": current}, {"total_points": user.total_points}

    return _bulk_users(
        engine, user_ids, operation="assign_points", apply=apply,
        actor_id=actor_id, actor_email=actor_email,
        details={"points": points}, ip_address=ip_address,
    )


# ---------------------------------------------------------------------------
# Completion review
# ---------------------------------------------------------------------------
def review_completion(
    engine: Engine,
    completion_id: int,
    *,
    approve: bool,
    actor_id: str,
    actor_email: str,
    reason: str | None = None,
    ip_address: str | None = None,
) -> Completion:
    """Approve or reject a pending completion.  Approval awards the task's
    points exactly once.
    """
    with Session(engine, expire_on_commit=False) as session:
        completion = session.get(Completion, completion_id)
        if completion is None:
            raise NotFoundError("Completion not found")
        if completion.status != CompletionStatus.PENDING:
            raise ConflictError(f"Completion is already {completion.status.value}")

        before = row_to_dict(completion)
        if approve:
            completion.status = CompletionStatus.APPROVED
            completion.verification_status = VerificationStatus.VERIFIED
            completion.needs_review = False
            if not completion.points_awarded:
                task = session.get(Task, completion.task_id)
                user = session.get(User, completion.user_id)
                points = task.points if task else 0
                completion.points_awarded = points
                if user is not None:
                    user.total_points = (user.total_points or 0) + points
        else:
            completion.status = CompletionStatus.REJECTED
            completion.verification_status = VerificationStatus.REJECTED
            completion.needs_review = False
            completion.rejection_reason = reason or "Rejected by administrator"

        log_audit_event(
            session,
            action="completion_approve" if approve else "completion_reject",
            actor_id=actor_id,
            actor_email=actor_email,
            affected_model="Completion",
            affected_id=completion.id,
            before=before,
            after=row_to_dict(completion),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(completion)
        session.expunge(completion)
        return completion


def list_completions(
    engine: Engine,
    *,
    status: CompletionStatus | str | None = None,
    needs_review: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Review queue, newest first."""
    clauses = []
    if status is not None:
        clauses.append(Completion.status == CompletionStatus(status))
    if needs_review is not None:
        clauses.append(Completion.needs_review.is_(needs_review))

    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(Completion).where(*clauses)) or 0
        rows = session.execute(
            select(Completion, User.email, Task.title)
            .join(User, User.id == Completion.user_id)
            .join(Task, Task.id == Completion.task_id)
            .where(*clauses)
            .order_by(Completion.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        items = [
            row_to_dict(completion) | {"user_email": email, "task_title": title}
            for completion, email, title in rows
        ]
    return items, total
