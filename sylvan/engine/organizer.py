"""
sylvan.engine.organizer — Task sorting, filtering & categorisation
====================================================================

Pure in-memory logic over task snapshots already loaded by the service
layer.  Two entry points:

* :func:`organize_tasks` — filter, sort, then split the result into a
  *box* view (the first N tasks, rendered as cards) and a *list* view
  (everything else).
* :func:`organize_tasks_for_time_limited` — bucket tasks into active,
  pending, completed and missed using the user's completion records.

Tasks are represented by :class:`TaskView`, a frozen snapshot that also
carries the per-user completion annotations.  Completion records may be
ORM rows or any object exposing ``task_id``, ``completed_at``,
``missed_at`` and ``status``.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from sylvan.constants import DEFAULT_BOX_COUNT, PENDING_REVIEW_WINDOW, SECTION_BOX_LIMIT
from sylvan.engine.expiration import ensure_utc, is_task_expired, utcnow

_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)
_WEEK = timedelta(weeks=1)

# Priority score components
TIME_SENSITIVE_BONUS = 1000
DEADLINE_PASSED_PENALTY = -500
DEADLINE_HOUR_BONUS = 500
DEADLINE_DAY_BONUS = 300
DEADLINE_WEEK_BONUS = 100


class SortBy(enum.StrEnum):
    PRIORITY = "priority"
    DEADLINE = "deadline"
    POINTS = "points"
    CREATED = "created"


class Urgency(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CompletionLike(Protocol):
    task_id: int
    completed_at: datetime | None
    missed_at: datetime | None
    status: Any


# ---------------------------------------------------------------------------
# Data shapes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TaskView:
    """Snapshot of a task plus the current user's completion state."""

    id: int
    title: str
    points: int = 0
    task_type: str = "CUSTOM"
    description: str | None = None
    task_url: str | None = None
    campaign_id: int | None = None
    is_active: bool = True
    is_time_sensitive: bool = False
    scheduled_deadline: datetime | None = None
    estimated_duration: int | None = None
    duration: int | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None

    # Per-user annotations
    is_completed: bool = False
    completed_today: bool = False
    last_completed_at: datetime | None = None
    completion_status: str | None = None

    @classmethod
    def from_task(cls, task: Any, **annotations: Any) -> TaskView:
        """Build a view from a :class:`~sylvan.database.models.Task` row."""
        return cls(
            id=task.id,
            title=task.title,
            points=task.points or 0,
            task_type=str(task.task_type),
            description=task.description,
            task_url=task.task_url,
            campaign_id=task.campaign_id,
            is_active=bool(task.is_active),
            is_time_sensitive=bool(task.is_time_sensitive),
            scheduled_deadline=ensure_utc(task.scheduled_deadline),
            estimated_duration=task.estimated_duration,
            duration=task.duration,
            expires_at=ensure_utc(task.expires_at),
            created_at=ensure_utc(task.created_at),
            **annotations,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass(frozen=True, slots=True)
class TaskFilter:
    status: str | None = None  # "active" | "completed" | "expired"
    task_type: str | None = None
    is_time_sensitive: bool | None = None


@dataclass(frozen=True, slots=True)
class OrganizerConfig:
    box_count: int = DEFAULT_BOX_COUNT
    sort_by: SortBy = SortBy.PRIORITY
    filter_by: TaskFilter | None = None


@dataclass(slots=True)
class OrganizedTasks:
    box_tasks: list[TaskView]
    list_tasks: list[TaskView]
    total_count: int

    def to_dict(self) -> dict:
        return {
            "box_tasks": [t.to_dict() for t in self.box_tasks],
            "list_tasks": [t.to_dict() for t in self.list_tasks],
            "total_count": self.total_count,
        }


@dataclass(slots=True)
class CategorizedTasks:
    active_tasks: list[TaskView] = field(default_factory=list)
    pending_tasks: list[TaskView] = field(default_factory=list)
    pending_list: list[TaskView] = field(default_factory=list)
    completed_tasks: list[TaskView] = field(default_factory=list)
    completed_list: list[TaskView] = field(default_factory=list)
    missed_tasks: list[TaskView] = field(default_factory=list)
    missed_list: list[TaskView] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {name: [t.to_dict() for t in getattr(self, name)] for name in self.__slots__}


# ---------------------------------------------------------------------------
# Scoring & urgency
# ---------------------------------------------------------------------------
def calculate_priority(task: TaskView, now: datetime | None = None) -> int:
    """Higher is more urgent.  Time-sensitivity dominates, then deadline
    proximity, then points.
    """
    now = ensure_utc(now) or utcnow()
    score = 0
    if task.is_time_sensitive:
        score += TIME_SENSITIVE_BONUS

    if task.scheduled_deadline is not None:
        remaining = task.scheduled_deadline - now
        if remaining < timedelta(0):
            score += DEADLINE_PASSED_PENALTY
        elif remaining < _HOUR:
            score += DEADLINE_HOUR_BONUS
        elif remaining < _DAY:
            score += DEADLINE_DAY_BONUS
        elif remaining < _WEEK:
            score += DEADLINE_WEEK_BONUS

    return score + task.points


def is_deadline_passed(task: TaskView, now: datetime | None = None) -> bool:
    if task.scheduled_deadline is None:
        return False
    now = ensure_utc(now) or utcnow()
    return task.scheduled_deadline < now


def get_task_urgency(task: TaskView, now: datetime | None = None) -> Urgency | None:
    """Coarse urgency bucket; ``None`` without a deadline or once it passed."""
    if task.scheduled_deadline is None:
        return None
    now = ensure_utc(now) or utcnow()
    remaining = task.scheduled_deadline - now
    if remaining < timedelta(0):
        return None
    if remaining < _HOUR:
        return Urgency.CRITICAL
    if remaining < _DAY:
        return Urgency.HIGH
    if remaining < _WEEK:
        return Urgency.MEDIUM
    return Urgency.LOW


# ---------------------------------------------------------------------------
# Sort / filter
# ---------------------------------------------------------------------------
def sort_tasks(
    tasks: Iterable[TaskView],
    sort_by: SortBy | str = SortBy.PRIORITY,
    now: datetime | None = None,
) -> list[TaskView]:
    """Return a new sorted list.  Sorting is stable."""
    sort_by = SortBy(sort_by)
    items = list(tasks)

    if sort_by is SortBy.PRIORITY:
        now = ensure_utc(now) or utcnow()
        return sorted(items, key=lambda t: calculate_priority(t, now), reverse=True)
    if sort_by is SortBy.DEADLINE:
        # Tasks without a deadline sink to the end
        return sorted(
            items,
            key=lambda t: (t.scheduled_deadline is None, t.scheduled_deadline or datetime.min),
        )
    if sort_by is SortBy.POINTS:
        return sorted(items, key=lambda t: t.points, reverse=True)
    return sorted(
        items,
        key=lambda t: t.created_at.timestamp() if t.created_at else 0.0,
        reverse=True,
    )


def filter_tasks(
    tasks: Iterable[TaskView],
    filter_by: TaskFilter | None,
    now: datetime | None = None,
) -> list[TaskView]:
    items = list(tasks)
    if filter_by is None:
        return items
    now = ensure_utc(now) or utcnow()

    if filter_by.status == "active":
        items = [t for t in items if t.is_active and not t.is_completed]
    elif filter_by.status == "completed":
        items = [t for t in items if t.is_completed]
    elif filter_by.status == "expired":
        items = [t for t in items if is_deadline_passed(t, now)]

    if filter_by.task_type:
        items = [t for t in items if t.task_type == filter_by.task_type]

    if filter_by.is_time_sensitive is not None:
        items = [t for t in items if t.is_time_sensitive == filter_by.is_time_sensitive]

    return items


def organize_tasks(
    tasks: Iterable[TaskView],
    config: OrganizerConfig | None = None,
    now: datetime | None = None,
) -> OrganizedTasks:
    """Filter → sort → split into box and list views."""
    config = config or OrganizerConfig()
    if config.box_count < 0:
        raise ValueError("box_count must be >= 0")
    now = ensure_utc(now) or utcnow()

    filtered = filter_tasks(tasks, config.filter_by, now)
    ordered = sort_tasks(filtered, config.sort_by, now)
    return OrganizedTasks(
        box_tasks=ordered[: config.box_count],
        list_tasks=ordered[config.box_count:],
        total_count=len(ordered),
    )


# ---------------------------------------------------------------------------
# Time-limited categorisation
# ---------------------------------------------------------------------------
def _completion_time(completion: CompletionLike) -> datetime | None:
    return ensure_utc(completion.completed_at) or ensure_utc(completion.missed_at)


def _latest_by_task(completions: Iterable[CompletionLike]) -> dict[int, CompletionLike]:
    latest: dict[int, CompletionLike] = {}
    for completion in completions:
        current = latest.get(completion.task_id)
        if current is None:
            latest[completion.task_id] = completion
            continue
        ts = _completion_time(completion)
        current_ts = _completion_time(current)
        if ts is not None and (current_ts is None or ts >= current_ts):
            latest[completion.task_id] = completion
    return latest


def _split(items: Sequence[TaskView]) -> tuple[list[TaskView], list[TaskView]]:
    return list(items[:SECTION_BOX_LIMIT]), list(items[SECTION_BOX_LIMIT:])


def _ts(value: datetime | None) -> float:
    return value.timestamp() if value else 0.0


def organize_tasks_for_time_limited(
    tasks: Iterable[TaskView],
    completions: Iterable[CompletionLike],
    now: datetime | None = None,
    pending_window: timedelta = PENDING_REVIEW_WINDOW,
) -> CategorizedTasks:
    """Bucket tasks for the user task page.

    A pending completion older than *pending_window* is shown as missed
    (with status ``REJECTED``), mirroring the auto-reject sweep.
    Inactive tasks without a completion are dropped.
    """
    now = ensure_utc(now) or utcnow()
    stale_before = now - pending_window
    by_task = _latest_by_task(completions)

    active: list[TaskView] = []
    pending: list[TaskView] = []
    completed: list[TaskView] = []
    missed: list[TaskView] = []

    for task in tasks:
        completion = by_task.get(task.id)
        expired = is_task_expired(task.expires_at, now)

        if completion is None:
            if task.is_active and not expired:
                active.append(replace(task, is_completed=False, completed_today=False))
            elif task.is_active:
                missed.append(replace(task, is_completed=False, completed_today=False))
            continue

        completed_at = ensure_utc(completion.completed_at)
        status = str(completion.status or "PENDING")

        if completion.missed_at is not None or completed_at is None:
            missed.append(replace(
                task, is_completed=False, completed_today=False,
                last_completed_at=None, completion_status=status,
            ))
        elif status == "PENDING":
            if completed_at < stale_before:
                missed.append(replace(
                    task, is_completed=False, completed_today=False,
                    last_completed_at=completed_at, completion_status="REJECTED",
                ))
            else:
                pending.append(replace(
                    task, is_completed=False, completed_today=False,
                    last_completed_at=completed_at, completion_status="PENDING",
                ))
        elif status in ("APPROVED", "AUTO_APPROVED"):
            completed.append(replace(
                task, is_completed=True, completed_today=True,
                last_completed_at=completed_at, completion_status=status,
            ))
        else:
            # REJECTED, or EXPIRED without a missed_at stamp
            missed.append(replace(
                task, is_completed=False, completed_today=False,
                last_completed_at=completed_at, completion_status=status,
            ))

    pending.sort(key=lambda t: _ts(t.last_completed_at))
    completed.sort(key=lambda t: _ts(t.last_completed_at), reverse=True)
    missed.sort(key=lambda t: _ts(t.last_completed_at or t.expires_at), reverse=True)

    pending_tasks, pending_list = _split(pending)
    completed_tasks, completed_list = _split(completed)
    missed_tasks, missed_list = _split(missed)

    return CategorizedTasks(
        active_tasks=active[:SECTION_BOX_LIMIT],
        pending_tasks=pending_tasks,
        pending_list=pending_list,
        completed_tasks=completed_tasks,
        completed_list=completed_list,
        missed_tasks=missed_tasks,
        missed_list=missed_list,
    )
