"""
sylvan.services.audit_service — Audit trail writes & queries
==============================================================

Every admin mutation and every system action (workflows, cron sweeps)
lands in ``audit_log`` with before/after JSON snapshots.

Two ways to write:

* :func:`log_audit_event` — adds the row to the caller's session so it
  commits (or rolls back) together with the change it describes.
* :func:`record_audit_event` — own transaction, **never raises**.  Used
  where auditing is a side channel and must not break the main
  operation.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sylvan.constants import (
    DEFAULT_AUDIT_LIMIT,
    SECURITY_EVENT_ACTIONS,
    SECURITY_STAT_KEYWORDS,
)
from sylvan.database.models import AuditLog

logger = logging.getLogger(__name__)

DURATION_MODEL = "TaskDuration"


# ---------------------------------------------------------------------------
# Snapshot helper
# ---------------------------------------------------------------------------
def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif isinstance(val, enum.Enum):
            val = val.value
        result[col.name] = val
    return result


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def log_audit_event(
    session: Session,
    *,
    action: str,
    actor_id: str,
    actor_email: str,
    affected_model: str | None = None,
    affected_id: str | int | None = None,
    affected_count: int | None = None,
    before: dict | None = None,
    after: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """Insert an audit row within the current transaction."""
    entry = AuditLog(
        action=action,
        actor_id=actor_id,
        actor_email=actor_email,
        affected_model=affected_model,
        affected_id=str(affected_id) if affected_id is not None else None,
        affected_count=affected_count,
        before_data=before,
        after_data=after,
        ip_address=ip_address,
        user_agent=user_agent,
        timestamp=datetime.now(UTC),
    )
    session.add(entry)
    return entry


def record_audit_event(engine: Engine, **kwargs: Any) -> None:
    """Write an audit row in its own transaction; failures are logged only."""
    try:
        with Session(engine) as session:
            log_audit_event(session, **kwargs)
            session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to write audit event %r", kwargs.get("action"))


def log_crud_operation(
    session: Session,
    *,
    operation: str,
    model: str,
    record_id: str | int,
    actor_id: str,
    actor_email: str,
    before: dict | None = None,
    after: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """``operation`` is ``create`` / ``update`` / ``delete``; the action
    becomes ``{model}_{operation}`` (``task_create``, ``user_delete`` …).
    """
    return log_audit_event(
        session,
        action=f"{model.lower()}_{operation}",
        actor_id=actor_id,
        actor_email=actor_email,
        affected_model=model,
        affected_id=record_id,
        before=before,
        after=after,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def log_bulk_operation(
    session: Session,
    *,
    operation: str,
    model: str,
    record_ids: list[str | int],
    actor_id: str,
    actor_email: str,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    return log_audit_event(
        session,
        action=f"bulk_{operation}",
        actor_id=actor_id,
        actor_email=actor_email,
        affected_model=model,
        affected_count=len(record_ids),
        after={"ids": [str(i) for i in record_ids], **(details or {})},
        ip_address=ip_address,
        user_agent=user_agent,
    )


# ---------------------------------------------------------------------------
# Request metadata
# ---------------------------------------------------------------------------
def get_ip_address(headers: Mapping[str, str]) -> str | None:
    """Client IP from proxy headers: first ``x-forwarded-for`` hop, then
    ``x-real-ip``, then ``x-client-ip``.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or headers.get("x-client-ip") or None


def get_user_agent(headers: Mapping[str, str]) -> str | None:
    return headers.get("user-agent") or None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class AuditFilters:
    actor_id: str | None = None
    action: str | None = None
    affected_model: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None
    limit: int = DEFAULT_AUDIT_LIMIT
    offset: int = 0


def _where(filters: AuditFilters) -> list:
    clauses = []
    if filters.actor_id:
        clauses.append(AuditLog.actor_id == filters.actor_id)
    if filters.action:
        clauses.append(AuditLog.action == filters.action)
    if filters.affected_model:
        clauses.append(AuditLog.affected_model == filters.affected_model)
    if filters.start_date:
        clauses.append(AuditLog.timestamp >= filters.start_date)
    if filters.end_date:
        clauses.append(AuditLog.timestamp <= filters.end_date)
    if filters.search:
        pattern = f"%{filters.search}%"
        clauses.append(or_(
            AuditLog.action.ilike(pattern),
            AuditLog.actor_email.ilike(pattern),
            AuditLog.affected_model.ilike(pattern),
            AuditLog.affected_id.ilike(pattern),
        ))
    return clauses


def get_audit_logs(engine: Engine, filters: AuditFilters | None = None) -> tuple[list[AuditLog], int]:
    """Return ``(rows, total)`` newest first."""
    filters = filters or AuditFilters()
    clauses = _where(filters)
    with Session(engine, expire_on_commit=False) as session:
        total = session.scalar(
            select(func.count()).select_from(AuditLog).where(*clauses)
        ) or 0
        rows = session.scalars(
            select(AuditLog)
            .where(*clauses)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        ).all()
        session.expunge_all()
    return list(rows), total


def get_audit_log_by_id(engine: Engine, log_id: int) -> AuditLog | None:
    with Session(engine, expire_on_commit=False) as session:
        row = session.get(AuditLog, log_id)
        if row is not None:
            session.expunge(row)
        return row


def is_security_event(action: str) -> bool:
    return any(keyword in action for keyword in SECURITY_EVENT_ACTIONS)


def _security_clause():
    return or_(*(AuditLog.action.contains(a) for a in SECURITY_EVENT_ACTIONS))


def get_security_events(
    engine: Engine, filters: AuditFilters | None = None
) -> tuple[list[AuditLog], int]:
    filters = filters or AuditFilters()
    clauses = [*_where(filters), _security_clause()]
    with Session(engine, expire_on_commit=False) as session:
        total = session.scalar(
            select(func.count()).select_from(AuditLog).where(*clauses)
        ) or 0
        rows = session.scalars(
            select(AuditLog)
            .where(*clauses)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        ).all()
        session.expunge_all()
    return list(rows), total


def get_audit_stats(
    engine: Engine,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict:
    """Totals, the ten most frequent actions and actors, and a count of
    security-relevant rows.
    """
    clauses = _where(AuditFilters(start_date=start_date, end_date=end_date))
    with Session(engine) as session:
        total = session.scalar(
            select(func.count()).select_from(AuditLog).where(*clauses)
        ) or 0

        by_action = session.execute(
            select(AuditLog.action, func.count().label("n"))
            .where(*clauses)
            .group_by(AuditLog.action)
            .order_by(func.count().desc(), AuditLog.action)
            .limit(10)
        ).all()

        by_actor = session.execute(
            select(AuditLog.actor_email, func.count().label("n"))
            .where(*clauses)
            .group_by(AuditLog.actor_email)
            .order_by(func.count().desc(), AuditLog.actor_email)
            .limit(10)
        ).all()

        security = session.scalar(
            select(func.count())
            .select_from(AuditLog)
            .where(
                *clauses,
                or_(*(AuditLog.action.contains(k) for k in SECURITY_STAT_KEYWORDS)),
            )
        ) or 0

    return {
        "total_actions": total,
        "actions_by_type": [{"action": a, "count": n} for a, n in by_action],
        "actions_by_admin": [{"admin_email": e, "count": n} for e, n in by_actor],
        "security_events": security,
    }


def audit_to_dict(row: AuditLog) -> dict:
    return {
        "id": row.id,
        "action": row.action,
        "actor_id": row.actor_id,
        "actor_email": row.actor_email,
        "affected_model": row.affected_model,
        "affected_id": row.affected_id,
        "affected_count": row.affected_count,
        "before_data": row.before_data,
        "after_data": row.after_data,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
    }


# ---------------------------------------------------------------------------
# Task duration changes
# ---------------------------------------------------------------------------
class DurationChange(enum.StrEnum):
    CREATED_WITH_TIME_LIMIT = "CREATED_WITH_TIME_LIMIT"
    ADDED_TIME_LIMIT = "ADDED_TIME_LIMIT"
    REMOVED_TIME_LIMIT = "REMOVED_TIME_LIMIT"
    INCREASED_DURATION = "INCREASED_DURATION"
    DECREASED_DURATION = "DECREASED_DURATION"


def classify_duration_change(
    old: int | None, new: int | None, *, created: bool = False
) -> DurationChange | None:
    """``None`` when nothing about the time limit changed."""
    if created:
        return DurationChange.CREATED_WITH_TIME_LIMIT if new else None
    if old == new:
        return None
    if old is None:
        return DurationChange.ADDED_TIME_LIMIT
    if new is None:
        return DurationChange.REMOVED_TIME_LIMIT
    if new > old:
        return DurationChange.INCREASED_DURATION
    return DurationChange.DECREASED_DURATION


def log_duration_change(
    session: Session,
    *,
    task_id: int,
    task_title: str,
    old_duration: int | None,
    new_duration: int | None,
    old_expires_at: datetime | None,
    new_expires_at: datetime | None,
    actor_id: str,
    actor_email: str,
    created: bool = False,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog | None:
    change = classify_duration_change(old_duration, new_duration, created=created)
    if change is None:
        return None
    return log_audit_event(
        session,
        action=f"task_duration_{change.value.lower()}",
        actor_id=actor_id,
        actor_email=actor_email,
        affected_model=DURATION_MODEL,
        affected_id=task_id,
        before=None if created else {
            "duration": old_duration,
            "expires_at": old_expires_at.isoformat() if old_expires_at else None,
        },
        after={
            "change_type": change.value,
            "task_title": task_title,
            "duration": new_duration,
            "expires_at": new_expires_at.isoformat() if new_expires_at else None,
        },
        ip_address=ip_address,
        user_agent=user_agent,
    )


def get_duration_change_logs(
    engine: Engine,
    *,
    task_id: int | None = None,
    actor_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    clauses = [AuditLog.affected_model == DURATION_MODEL]
    if task_id is not None:
        clauses.append(AuditLog.affected_id == str(task_id))
    if actor_id:
        clauses.append(AuditLog.actor_id == actor_id)
    with Session(engine, expire_on_commit=False) as session:
        total = session.scalar(
            select(func.count()).select_from(AuditLog).where(*clauses)
        ) or 0
        rows = session.scalars(
            select(AuditLog)
            .where(*clauses)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        session.expunge_all()
    return list(rows), total
