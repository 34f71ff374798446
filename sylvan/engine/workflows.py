"""
sylvan.engine.workflows — Workflow definitions, conditions & validation
=========================================================================

Pure logic, no DB access.  A workflow is::

    trigger  (user_registered | task_completed | schedule)
      └─ conditions  [{field, operator, value, logic}]
    actions  [{type, config}, ...]

Conditions are evaluated against a flat-ish context dict; ``field`` may be
a dotted path (``"task.points"``).  The combining operator stored on a
condition joins it to the *next* condition, folding left to right, so
``A(OR) B(AND) C`` evaluates as ``(A or B) and C``.

Execution (side effects, audit, notifications) lives in
:mod:`sylvan.services.workflow_service`.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sylvan.engine.expiration import ensure_utc


class ConditionOperator(enum.StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"


class ActionType(enum.StrEnum):
    SEND_EMAIL = "send_email"
    UPDATE_STATUS = "update_status"
    ASSIGN_POINTS = "assign_points"
    CREATE_NOTIFICATION = "create_notification"


VALID_TRIGGER_TYPES = ("user_registered", "task_completed", "schedule")
VALID_ACTION_TYPES = tuple(a.value for a in ActionType)
VALID_OPERATORS = tuple(o.value for o in ConditionOperator)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WorkflowCondition:
    field: str
    operator: str
    value: Any
    logic: str = "AND"

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowCondition:
        return cls(
            field=data.get("field") or "",
            operator=data.get("operator") or "",
            value=data.get("value"),
            logic=(data.get("logic") or "AND").upper(),
        )

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "logic": self.logic,
        }


@dataclass(frozen=True, slots=True)
class WorkflowAction:
    type: str
    config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowAction:
        return cls(type=data.get("type") or "", config=dict(data.get("config") or {}))

    def to_dict(self) -> dict:
        return {"type": self.type, "config": dict(self.config)}


@dataclass(frozen=True, slots=True)
class WorkflowTrigger:
    type: str
    conditions: list[WorkflowCondition] = field(default_factory=list)
    # {"interval": minutes} and/or {"cron": "..."}
    schedule_config: dict | None = None

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowTrigger:
        return cls(
            type=data.get("type") or "",
            conditions=[WorkflowCondition.from_dict(c) for c in data.get("conditions") or []],
            schedule_config=data.get("schedule_config") or None,
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "conditions": [c.to_dict() for c in self.conditions],
            "schedule_config": self.schedule_config,
        }


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    name: str
    trigger: WorkflowTrigger
    actions: list[WorkflowAction]
    is_active: bool = True
    id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowDefinition:
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            trigger=WorkflowTrigger.from_dict(data.get("trigger") or {}),
            actions=[WorkflowAction.from_dict(a) for a in data.get("actions") or []],
            is_active=bool(data.get("is_active", True)),
        )

    @classmethod
    def from_row(cls, row: Any) -> WorkflowDefinition:
        """Build from a :class:`~sylvan.database.models.Workflow` row."""
        trigger = dict(row.trigger or {})
        trigger["type"] = row.trigger_type
        return cls(
            id=row.id,
            name=row.name,
            trigger=WorkflowTrigger.from_dict(trigger),
            actions=[WorkflowAction.from_dict(a) for a in row.actions or []],
            is_active=bool(row.is_active),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
            "is_active": self.is_active,
        }


# ---------------------------------------------------------------------------
# Condition evaluation
# ---------------------------------------------------------------------------
def get_nested_value(context: dict, path: str) -> Any:
    """Resolve ``"a.b.c"`` against nested dicts; missing keys yield ``None``."""
    current: Any = context
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _to_number(value: Any) -> float:
    """Numeric coercion; unparseable values become NaN (every comparison false)."""
    if isinstance(value, bool):
        return float(value)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def evaluate_single_condition(condition: WorkflowCondition, context: dict) -> bool:
    actual = get_nested_value(context, condition.field)
    expected = condition.value

    match condition.operator:
        case "equals":
            return actual == expected
        case "not_equals":
            return actual != expected
        case "greater_than":
            return _to_number(actual) > _to_number(expected)
        case "less_than":
            return _to_number(actual) < _to_number(expected)
        case "contains":
            if isinstance(actual, str):
                return str(expected) in actual
            if isinstance(actual, list):
                return expected in actual
            return False
        case "in":
            return isinstance(expected, list) and actual in expected
        case "not_in":
            if isinstance(expected, list):
                return actual not in expected
            return True
        case _:
            return False


def evaluate_conditions(conditions: list[WorkflowCondition], context: dict) -> bool:
    """Left fold.  Each condition's ``logic`` joins it to the next one."""
    result = True
    pending_logic = "AND"
    for condition in conditions:
        outcome = evaluate_single_condition(condition, context)
        if pending_logic == "OR":
            result = result or outcome
        else:
            result = result and outcome
        pending_logic = (condition.logic or "AND").upper()
    return result


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _valid_points(value: Any) -> bool:
    points = _to_number(value) if value is not None else math.nan
    return not math.isnan(points) and points != 0


def validate_workflow(definition: WorkflowDefinition) -> list[str]:
    """Return a list of human-readable problems; empty means valid.

    Action and condition indices are zero-based.
    """
    errors: list[str] = []

    if not definition.name or not definition.name.strip():
        errors.append("Workflow name is required")

    trigger = definition.trigger
    if not trigger.type:
        errors.append("Workflow trigger type is required")
    elif trigger.type not in VALID_TRIGGER_TYPES:
        errors.append(f"Invalid trigger type: {trigger.type}")

    if trigger.type == "schedule" and not trigger.schedule_config:
        errors.append("Schedule configuration is required for scheduled workflows")

    if not definition.actions:
        errors.append("At least one action is required")

    for i, action in enumerate(definition.actions):
        if not action.type:
            errors.append(f"Action {i}: type is required")
        elif action.type not in VALID_ACTION_TYPES:
            errors.append(f"Action {i}: invalid type {action.type}")

        if not action.config:
            errors.append(f"Action {i}: config is required")

        if action.type == "update_status" and not action.config.get("status"):
            errors.append(f"Action {i}: status is required for update_status action")
        if action.type == "assign_points" and not _valid_points(action.config.get("points")):
            errors.append(
                f"Action {i}: valid points value is required for assign_points action"
            )
        if (
            action.type == "send_email"
            and not action.config.get("template")
            and not action.config.get("subject")
        ):
            errors.append(f"Action {i}: template or subject is required for send_email action")

    for i, condition in enumerate(trigger.conditions):
        if not condition.field:
            errors.append(f"Condition {i}: field is required")
        if not condition.operator:
            errors.append(f"Condition {i}: operator is required")
        elif condition.operator not in VALID_OPERATORS:
            errors.append(f"Condition {i}: invalid operator {condition.operator}")
        if condition.value is None:
            errors.append(f"Condition {i}: value is required")
        if condition.logic not in ("AND", "OR"):
            errors.append(f"Condition {i}: logic must be AND or OR")

    return errors


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------
def should_run_scheduled(
    trigger: WorkflowTrigger,
    last_run_at: datetime | None,
    now: datetime,
) -> bool:
    """Decide whether a scheduled workflow is due on this tick.

    ``interval`` (minutes) is honoured against ``last_run_at``.  A config
    with only a ``cron`` expression runs on every tick.
    """
    config = trigger.schedule_config
    if not config:
        return False

    interval = config.get("interval")
    if interval:
        if last_run_at is None:
            return True
        return now - ensure_utc(last_run_at) >= timedelta(minutes=float(interval))
    return True
