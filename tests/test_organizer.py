"""
tests/test_organizer.py — Task sorting, filtering & categorisation
====================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from sylvan.engine.organizer import (
    OrganizerConfig,
    SortBy,
    TaskFilter,
    TaskView,
    Urgency,
    calculate_priority,
    filter_tasks,
    get_task_urgency,
    is_deadline_passed,
    organize_tasks,
    organize_tasks_for_time_limited,
    sort_tasks,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@dataclass
class FakeCompletion:
    task_id: int
    status: str
    completed_at: datetime | None = None
    missed_at: datetime | None = None


def _task(task_id: int, **kw) -> TaskView:
    kw.setdefault("title", f"Task {task_id}")
    kw.setdefault("created_at", NOW - timedelta(hours=task_id))
    return TaskView(id=task_id, **kw)


# ---------------------------------------------------------------------------
# Priority & urgency
# ---------------------------------------------------------------------------
class TestPriority:
    def test_points_only(self):
        assert calculate_priority(_task(1, points=40), NOW) == 40

    def test_time_sensitive_dominates(self):
        assert calculate_priority(_task(1, points=5, is_time_sensitive=True), NOW) == 1005

    @pytest.mark.parametrize(
        ("offset", "bonus"),
        [
            (timedelta(minutes=30), 500),
            (timedelta(hours=5), 300),
            (timedelta(days=3), 100),
            (timedelta(days=30), 0),
            (timedelta(minutes=-1), -500),
        ],
    )
    def test_deadline_bonus(self, offset, bonus):
        task = _task(1, points=10, scheduled_deadline=NOW + offset)
        assert calculate_priority(task, NOW) == 10 + bonus


class TestUrgency:
    def test_none_without_deadline(self):
        assert get_task_urgency(_task(1), NOW) is None

    def test_none_after_deadline(self):
        assert get_task_urgency(_task(1, scheduled_deadline=NOW - timedelta(seconds=1)), NOW) is None

    @pytest.mark.parametrize(
        ("offset", "expected"),
        [
            (timedelta(minutes=10), Urgency.CRITICAL),
            (timedelta(hours=10), Urgency.HIGH),
            (timedelta(days=2), Urgency.MEDIUM),
            (timedelta(days=10), Urgency.LOW),
        ],
    )
    def test_buckets(self, offset, expected):
        assert get_task_urgency(_task(1, scheduled_deadline=NOW + offset), NOW) is expected

    def test_deadline_passed(self):
        assert is_deadline_passed(_task(1, scheduled_deadline=NOW - timedelta(hours=1)), NOW)
        assert not is_deadline_passed(_task(1), NOW)


# ---------------------------------------------------------------------------
# Sorting & filtering
# ---------------------------------------------------------------------------
class TestSortTasks:
    def test_priority_descending(self):
        tasks = [_task(1, points=10), _task(2, points=90), _task(3, is_time_sensitive=True)]
        assert [t.id for t in sort_tasks(tasks, SortBy.PRIORITY, NOW)] == [3, 2, 1]

    def test_deadline_puts_missing_last(self):
        tasks = [
            _task(1),
            _task(2, scheduled_deadline=NOW + timedelta(days=2)),
            _task(3, scheduled_deadline=NOW + timedelta(hours=1)),
        ]
        assert [t.id for t in sort_tasks(tasks, "deadline", NOW)] == [3, 2, 1]

    def test_points(self):
        tasks = [_task(1, points=5), _task(2, points=50), _task(3, points=20)]
        assert [t.id for t in sort_tasks(tasks, SortBy.POINTS)] == [2, 3, 1]

    def test_created_newest_first(self):
        tasks = [_task(3), _task(1), _task(2)]
        assert [t.id for t in sort_tasks(tasks, SortBy.CREATED)] == [1, 2, 3]

    def test_unknown_sort_key(self):
        with pytest.raises(ValueError):
            sort_tasks([], "alphabetical")


class TestFilterTasks:
    def test_no_filter_keeps_everything(self):
        tasks = [_task(1), _task(2)]
        assert filter_tasks(tasks, None) == tasks

    def test_status_completed(self):
        tasks = [_task(1, is_completed=True), _task(2)]
        assert [t.id for t in filter_tasks(tasks, TaskFilter(status="completed"), NOW)] == [1]

    def test_status_active_excludes_completed_and_inactive(self):
        tasks = [_task(1, is_completed=True), _task(2), _task(3, is_active=False)]
        assert [t.id for t in filter_tasks(tasks, TaskFilter(status="active"), NOW)] == [2]

    def test_status_expired_uses_deadline(self):
        tasks = [_task(1, scheduled_deadline=NOW - timedelta(hours=1)), _task(2)]
        assert [t.id for t in filter_tasks(tasks, TaskFilter(status="expired"), NOW)] == [1]

    def test_type_and_time_sensitive(self):
        tasks = [
            _task(1, task_type="REFERRAL", is_time_sensitive=True),
            _task(2, task_type="REFERRAL"),
            _task(3, task_type="CUSTOM", is_time_sensitive=True),
        ]
        result = filter_tasks(tasks, TaskFilter(task_type="REFERRAL", is_time_sensitive=True), NOW)
        assert [t.id for t in result] == [1]


class TestOrganizeTasks:
    def test_splits_box_and_list(self):
        tasks = [_task(i, points=i) for i in range(1, 8)]
        result = organize_tasks(tasks, OrganizerConfig(box_count=3, sort_by=SortBy.POINTS), NOW)
        assert [t.id for t in result.box_tasks] == [7, 6, 5]
        assert [t.id for t in result.list_tasks] == [4, 3, 2, 1]
        assert result.total_count == 7

    def test_zero_box_count(self):
        result = organize_tasks([_task(1), _task(2)], OrganizerConfig(box_count=0), NOW)
        assert result.box_tasks == []
        assert len(result.list_tasks) == 2

    def test_negative_box_count_rejected(self):
        with pytest.raises(ValueError):
            organize_tasks([], OrganizerConfig(box_count=-1), NOW)

    def test_total_count_after_filter(self):
        tasks = [_task(1, is_completed=True), _task(2), _task(3)]
        result = organize_tasks(tasks, OrganizerConfig(filter_by=TaskFilter(status="completed")), NOW)
        assert result.total_count == 1

    def test_to_dict_serialises_datetimes(self):
        data = organize_tasks([_task(1)], None, NOW).to_dict()
        assert data["box_tasks"][0]["created_at"] == (NOW - timedelta(hours=1)).isoformat()


# ---------------------------------------------------------------------------
# Time-limited categorisation
# ---------------------------------------------------------------------------
class TestOrganizeForTimeLimited:
    def test_uncompleted_open_task_is_active(self):
        result = organize_tasks_for_time_limited([_task(1, expires_at=NOW + timedelta(hours=2))], [], NOW)
        assert [t.id for t in result.active_tasks] == [1]

    def test_uncompleted_expired_task_is_missed(self):
        result = organize_tasks_for_time_limited([_task(1, expires_at=NOW - timedelta(hours=2))], [], NOW)
        assert result.active_tasks == []
        assert [t.id for t in result.missed_tasks] == [1]

    def test_inactive_without_completion_is_dropped(self):
        result = organize_tasks_for_time_limited([_task(1, is_active=False)], [], NOW)
        assert all(not getattr(result, name) for name in result.__slots__)

    def test_approved_is_completed(self):
        done = FakeCompletion(1, "AUTO_APPROVED", completed_at=NOW - timedelta(hours=1))
        result = organize_tasks_for_time_limited([_task(1)], [done], NOW)
        assert [t.id for t in result.completed_tasks] == [1]
        assert result.completed_tasks[0].is_completed
        assert result.completed_tasks[0].completion_status == "AUTO_APPROVED"

    def test_recent_pending(self):
        pending = FakeCompletion(1, "PENDING", completed_at=NOW - timedelta(hours=3))
        result = organize_tasks_for_time_limited([_task(1)], [pending], NOW)
        assert [t.id for t in result.pending_tasks] == [1]

    def test_stale_pending_shows_as_rejected_miss(self):
        stale = FakeCompletion(1, "PENDING", completed_at=NOW - timedelta(hours=49))
        result = organize_tasks_for_time_limited([_task(1)], [stale], NOW)
        assert result.pending_tasks == []
        assert result.missed_tasks[0].completion_status == "REJECTED"

    def test_missed_at_wins_over_status(self):
        expired = FakeCompletion(1, "EXPIRED", missed_at=NOW - timedelta(hours=1))
        result = organize_tasks_for_time_limited([_task(1)], [expired], NOW)
        assert [t.id for t in result.missed_tasks] == [1]
        assert result.missed_tasks[0].last_completed_at is None

    def test_latest_completion_wins(self):
        older = FakeCompletion(1, "REJECTED", completed_at=NOW - timedelta(days=2))
        newer = FakeCompletion(1, "APPROVED", completed_at=NOW - timedelta(hours=1))
        result = organize_tasks_for_time_limited([_task(1)], [newer, older], NOW)
        assert [t.id for t in result.completed_tasks] == [1]

    def test_sections_cap_at_five(self):
        tasks = [_task(i) for i in range(1, 9)]
        done = [
            FakeCompletion(i, "APPROVED", completed_at=NOW - timedelta(minutes=i)) for i in range(1, 9)
        ]
        result = organize_tasks_for_time_limited(tasks, done, NOW)
        assert [t.id for t in result.completed_tasks] == [1, 2, 3, 4, 5]
        assert [t.id for t in result.completed_list] == [6, 7, 8]

    def test_active_capped_at_five(self):
        tasks = [_task(i) for i in range(1, 9)]
        result = organize_tasks_for_time_limited(tasks, [], NOW)
        assert len(result.active_tasks) == 5

    def test_to_dict_has_all_sections(self):
        data = organize_tasks_for_time_limited([], [], NOW).to_dict()
        assert set(data) == {
            "active_tasks", "pending_tasks", "pending_list",
            "completed_tasks", "completed_list", "missed_tasks", "missed_list",
        }
