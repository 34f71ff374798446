"""
sylvan.services.workflow_service — Workflow execution, triggers & CRUD
========================================================================

Runs workflows built by :mod:`sylvan.engine.workflows`:

1. Inactive workflows are refused.
2. ``workflow_started`` is audited.
3. Trigger conditions are evaluated against the context; if they fail the
   run stops with ``workflow_conditions_not_met``.
4. Actions run **in order, one transaction each**.  A failing action is
   recorded (result errors, ``workflow_action_failed`` audit row, admin
   notification) and the remaining actions still run.  Nothing is rolled
   back or compensated.
5. ``workflow_completed`` is audited with the counts.

All audit rows use the ``system`` actor and ``affected_model="Workflow"``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from sylvan.config import SylvanConfig
from sylvan.constants import SYSTEM_ACTOR_EMAIL, SYSTEM_ACTOR_ID
from sylvan.database.models import AuditLog, Task, User, UserStatus, Workflow
from sylvan.engine.workflows import (
    WorkflowAction,
    WorkflowDefinition,
    WorkflowTrigger,
    evaluate_conditions,
    should_run_scheduled,
    validate_workflow,
)
from sylvan.errors import NotFoundError, ValidationFailed
from sylvan.services.audit_service import log_audit_event, record_audit_event, row_to_dict
from sylvan.services.email_service import queue_email
from sylvan.services.email_templates import build_custom_email, build_welcome_email
from sylvan.services.notification_service import create_notification, notify_admins

logger = logging.getLogger(__name__)

WORKFLOW_MODEL = "Workflow"


class WorkflowActionError(Exception):
    """An action could not be carried out with the given config/context."""


@dataclass(slots=True)
class WorkflowExecutionResult:
    success: bool = True
    actions_executed: int = 0
    actions_failed: int = 0
    errors: list[str] = field(default_factory=list)
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "actions_executed": self.actions_executed,
            "actions_failed": self.actions_failed,
            "errors": list(self.errors),
            "execution_time_ms": round(self.execution_time_ms, 2),
        }


def _audit(engine: Engine, workflow_id: int | None, action: str, data: dict) -> None:
    record_audit_event(
        engine,
        action=action,
        actor_id=SYSTEM_ACTOR_ID,
        actor_email=SYSTEM_ACTOR_EMAIL,
        affected_model=WORKFLOW_MODEL,
        affected_id=workflow_id,
        after=data,
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------
def _send_email(session: Session, action: WorkflowAction, context: dict, cfg: SylvanConfig | None) -> None:
    to = context.get("user_email") or action.config.get("to")
    if not to:
        raise WorkflowActionError("recipient is required for send_email action")
    if cfg is None:
        raise WorkflowActionError("email configuration is not loaded")

    template = action.config.get("template")
    if template == "welcome":
        email = build_welcome_email(cfg, context.get("username"))
        if action.config.get("subject"):
            email = replace(email, subject=action.config["subject"])
    else:
        email = build_custom_email(
            cfg,
            subject=action.config.get("subject") or str(template),
            message=str(action.config.get("message") or ""),
            template=template or "custom",
        )
    queue_email(session, to=to, email=email, max_attempts=cfg.email_max_attempts)


def _update_status(session: Session, action: WorkflowAction, context: dict, workflow_id: int | None) -> None:
    user_id = context.get("user_id")
    if not user_id:
        raise WorkflowActionError("user_id is required for update_status action")
    try:
        new_status = UserStatus(str(action.config.get("status")).upper())
    except ValueError:
        raise WorkflowActionError(f"Invalid status: {action.config.get('status')}") from None

    user = session.get(User, user_id)
    if user is None:
        raise WorkflowActionError(f"User {user_id} not found")
    before = user.status.value
    user.status = new_status
    log_audit_event(
        session,
        action="workflow_user_status_updated",
        actor_id=SYSTEM_ACTOR_ID,
        actor_email=SYSTEM_ACTOR_EMAIL,
        affected_model="User",
        affected_id=user_id,
        before={"status": before},
        after={"status": new_status.value, "workflow_id": workflow_id},
    )


def _assign_points(session: Session, action: WorkflowAction, context: dict, workflow_id: int | None) -> None:
    user_id = context.get("user_id")
    if not user_id:
        raise WorkflowActionError("user_id is required for assign_points action")
    try:
        points = int(float(action.config.get("points")))
    except (TypeError, ValueError):
        raise WorkflowActionError("Invalid points value") from None
    if points == 0:
        raise WorkflowActionError("Invalid points value")

    user = session.get(User, user_id)
    if user is None:
        raise WorkflowActionError(f"User {user_id} not found")
    user.total_points = (user.total_points or 0) + points
    log_audit_event(
        session,
        action="workflow_points_assigned",
        actor_id=SYSTEM_ACTOR_ID,
        actor_email=SYSTEM_ACTOR_EMAIL,
        affected_model="User",
        affected_id=user_id,
        after={"points_assigned": points, "workflow_id": workflow_id},
    )


def _create_notification(session: Session, action: WorkflowAction, context: dict) -> None:
    user_id = context.get("user_id")
    if not user_id:
        raise WorkflowActionError("user_id is required for create_notification action")
    message = action.config.get("message")
    if not message:
        raise WorkflowActionError("message is required for create_notification action")
    create_notification(
        session,
        user_id=user_id,
        type=action.config.get("type") or "info",
        message=str(message),
        data={"event_type": context.get("event_type")},
    )


def execute_action(
    engine: Engine,
    action: WorkflowAction,
    context: dict,
    *,
    workflow_id: int | None = None,
    cfg: SylvanConfig | None = None,
) -> None:
    """Run one action in its own transaction."""
    with Session(engine) as session:
        match action.type:
            case "send_email":
                _send_email(session, action, context, cfg)
            case "update_status":
                _update_status(session, action, context, workflow_id)
            case "assign_points":
                _assign_points(session, action, context, workflow_id)
            case "create_notification":
                _create_notification(session, action, context)
            case _:
                raise WorkflowActionError(f"Unknown action type: {action.type}")
        session.commit()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
def execute_workflow(
    engine: Engine,
    workflow: WorkflowDefinition,
    context: dict,
    *,
    cfg: SylvanConfig | None = None,
) -> WorkflowExecutionResult:
    started = time.perf_counter()
    result = WorkflowExecutionResult()

    try:
        if not workflow.is_active:
            result.success = False
            result.errors.append("Workflow is not active")
            return result

        _audit(engine, workflow.id, "workflow_started", {"context": context})

        conditions = workflow.trigger.conditions
        if conditions and not evaluate_conditions(conditions, context):
            _audit(engine, workflow.id, "workflow_conditions_not_met", {
                "context": context,
                "conditions": [c.to_dict() for c in conditions],
            })
            result.success = False
            result.errors.append("Workflow conditions not met")
            return result

        for i, action in enumerate(workflow.actions):
            try:
                execute_action(engine, action, context, workflow_id=workflow.id, cfg=cfg)
            except Exception as exc:
                result.actions_failed += 1
                result.errors.append(f"Action {i} ({action.type}): {exc}")
                logger.exception("Workflow %s action %d (%s) failed", workflow.id, i, action.type)
                _audit(engine, workflow.id, "workflow_action_failed", {
                    "workflow_id": workflow.id,
                    "action_index": i,
                    "action_type": action.type,
                    "error": str(exc),
                    "context": context,
                })
                notify_admins(
                    engine,
                    type="workflow_failure",
                    message=f"Workflow '{workflow.name}' action {i} ({action.type}) failed: {exc}",
                    data={"workflow_id": workflow.id, "action": action.type, "error": str(exc)},
                )
                continue

            result.actions_executed += 1
            _audit(engine, workflow.id, "workflow_action_executed", {
                "action_index": i,
                "action_type": action.type,
                "context": context,
            })

        _audit(engine, workflow.id, "workflow_completed", {
            "context": context,
            "actions_executed": result.actions_executed,
            "actions_failed": result.actions_failed,
        })
        result.success = result.actions_failed == 0
    except Exception as exc:
        result.success = False
        result.errors.append(f"Workflow execution failed: {exc}")
        logger.exception("Workflow %s execution failed", workflow.id)
        _audit(engine, workflow.id, "workflow_execution_failed", {
            "workflow_id": workflow.id,
            "error": str(exc),
            "context": context,
        })
        notify_admins(
            engine,
            type="workflow_failure",
            message=f"Workflow '{workflow.name}' failed: {exc}",
            data={"workflow_id": workflow.id, "error": str(exc)},
        )
    finally:
        result.execution_time_ms = (time.perf_counter() - started) * 1000

    return result


def _active_workflows(engine: Engine, trigger_type: str) -> list[WorkflowDefinition]:
    with Session(engine) as session:
        rows = session.scalars(
            select(Workflow)
            .where(Workflow.trigger_type == trigger_type, Workflow.is_active.is_(True))
            .order_by(Workflow.id)
        ).all()
        return [WorkflowDefinition.from_row(r) for r in rows]


def _run_all(
    engine: Engine, workflows: list[WorkflowDefinition], context: dict, cfg: SylvanConfig | None
) -> dict[int, WorkflowExecutionResult]:
    results: dict[int, WorkflowExecutionResult] = {}
    for workflow in workflows:
        results[workflow.id] = execute_workflow(engine, workflow, context, cfg=cfg)
    return results


def _user_context(user: User) -> dict:
    return {
        "user_id": user.id,
        "user_email": user.email,
        "username": user.username,
        "user_total_points": user.total_points or 0,
        "user_status": user.status.value,
        "user_role": user.role.value,
    }


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
def trigger_user_registered(
    engine: Engine, user_id: str, *, cfg: SylvanConfig | None = None
) -> dict[int, WorkflowExecutionResult]:
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            logger.warning("user_registered trigger for unknown user %s", user_id)
            return {}
        context = _user_context(user)
    context |= {"event_type": "user_registered", "timestamp": datetime.now(UTC).isoformat()}
    return _run_all(engine, _active_workflows(engine, "user_registered"), context, cfg)


def trigger_task_completed(
    engine: Engine,
    user_id: str,
    task_id: int,
    completion_data: dict | None = None,
    *,
    cfg: SylvanConfig | None = None,
) -> dict[int, WorkflowExecutionResult]:
    with Session(engine) as session:
        user = session.get(User, user_id)
        task = session.get(Task, task_id)
        if user is None or task is None:
            logger.warning("task_completed trigger for unknown user/task %s/%s", user_id, task_id)
            return {}
        context = _user_context(user) | {
            "task_id": task.id,
            "task_title": task.title,
            "task_points": task.points,
            "task_type": task.task_type.value,
        }
    context |= (completion_data or {})
    context |= {"event_type": "task_completed", "timestamp": datetime.now(UTC).isoformat()}
    return _run_all(engine, _active_workflows(engine, "task_completed"), context, cfg)


def run_scheduled_workflows(
    engine: Engine, *, cfg: SylvanConfig | None = None, now: datetime | None = None
) -> dict[int, WorkflowExecutionResult]:
    """Execute every due scheduled workflow and stamp ``last_run_at``."""
    now = now or datetime.now(UTC)
    results: dict[int, WorkflowExecutionResult] = {}
    with Session(engine) as session:
        rows = session.scalars(
            select(Workflow)
            .where(Workflow.trigger_type == "schedule", Workflow.is_active.is_(True))
            .order_by(Workflow.id)
        ).all()
        due = [
            WorkflowDefinition.from_row(r)
            for r in rows
            if should_run_scheduled(WorkflowTrigger.from_dict(r.trigger or {}), r.last_run_at, now)
        ]

    for workflow in due:
        context = {
            "event_type": "schedule",
            "workflow_id": workflow.id,
            "timestamp": now.isoformat(),
        }
        results[workflow.id] = execute_workflow(engine, workflow, context, cfg=cfg)
        with Session(engine) as session:
            row = session.get(Workflow, workflow.id)
            if row is not None:
                row.last_run_at = now
                session.commit()

    if due:
        logger.info("Ran %d scheduled workflow(s)", len(due))
    return results


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def workflow_to_dict(row: Workflow) -> dict:
    definition = WorkflowDefinition.from_row(row)
    return definition.to_dict() | {
        "description": row.description,
        "created_by": row.created_by,
        "last_run_at": row.last_run_at.isoformat() if row.last_run_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def _validated(definition: WorkflowDefinition) -> None:
    errors = validate_workflow(definition)
    if errors:
        raise ValidationFailed("Invalid workflow", errors=errors)


def list_workflows(engine: Engine) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(select(Workflow).order_by(Workflow.created_at.desc(), Workflow.id.desc())).all()
        return [workflow_to_dict(r) for r in rows]


def get_workflow(engine: Engine, workflow_id: int) -> dict:
    with Session(engine) as session:
        row = session.get(Workflow, workflow_id)
        if row is None:
            raise NotFoundError("Workflow not found")
        return workflow_to_dict(row)


def create_workflow(
    engine: Engine,
    definition: WorkflowDefinition,
    *,
    actor_id: str,
    actor_email: str,
    description: str | None = None,
    ip_address: str | None = None,
) -> dict:
    _validated(definition)
    trigger = definition.trigger.to_dict()
    with Session(engine) as session:
        row = Workflow(
            name=definition.name.strip(),
            description=description,
            trigger_type=trigger.pop("type"),
            trigger=trigger,
            actions=[a.to_dict() for a in definition.actions],
            is_active=definition.is_active,
            created_by=actor_id,
        )
        session.add(row)
        session.flush()
        log_audit_event(
            session,
            action="workflow_create",
            actor_id=actor_id,
            actor_email=actor_email,
            affected_model=WORKFLOW_MODEL,
            affected_id=row.id,
            after=row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        return workflow_to_dict(row)


def update_workflow(
    engine: Engine,
    workflow_id: int,
    *,
    actor_id: str,
    actor_email: str,
    name: str | None = None,
    description: str | None = None,
    trigger: dict | None = None,
    actions: list[dict] | None = None,
    is_active: bool | None = None,
    ip_address: str | None = None,
) -> dict:
    with Session(engine) as session:
        row = session.get(Workflow, workflow_id)
        if row is None:
            raise NotFoundError("Workflow not found")
        before = row_to_dict(row)

        current = WorkflowDefinition.from_row(row)
        merged = WorkflowDefinition(
            id=row.id,
            name=name if name is not None else current.name,
            trigger=WorkflowTrigger.from_dict(trigger) if trigger is not None else current.trigger,
            actions=(
                [WorkflowAction.from_dict(a) for a in actions]
                if actions is not None else current.actions
            ),
            is_active=is_active if is_active is not None else current.is_active,
        )
        _validated(merged)

        trigger_data = merged.trigger.to_dict()
        row.name = merged.name.strip()
        row.trigger_type = trigger_data.pop("type")
        row.trigger = trigger_data
        row.actions = [a.to_dict() for a in merged.actions]
        row.is_active = merged.is_active
        if description is not None:
            row.description = description
        session.flush()

        log_audit_event(
            session,
            action="workflow_update",
            actor_id=actor_id,
            actor_email=actor_email,
            affected_model=WORKFLOW_MODEL,
            affected_id=row.id,
            before=before,
            after=row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        return workflow_to_dict(row)


def delete_workflow(
    engine: Engine,
    workflow_id: int,
    *,
    actor_id: str,
    actor_email: str,
    ip_address: str | None = None,
) -> None:
    with Session(engine) as session:
        row = session.get(Workflow, workflow_id)
        if row is None:
            raise NotFoundError("Workflow not found")
        before = row_to_dict(row)
        session.delete(row)
        log_audit_event(
            session,
            action="workflow_delete",
            actor_id=actor_id,
            actor_email=actor_email,
            affected_model=WORKFLOW_MODEL,
            affected_id=workflow_id,
            before=before,
            ip_address=ip_address,
        )
        session.commit()


def run_workflow_test(
    engine: Engine,
    workflow_id: int,
    context: dict[str, Any],
    *,
    actor_id: str,
    cfg: SylvanConfig | None = None,
) -> WorkflowExecutionResult:
    """Dry-fire a workflow on demand, even if it is switched off."""
    with Session(engine) as session:
        row = session.get(Workflow, workflow_id)
        if row is None:
            raise NotFoundError("Workflow not found")
        definition = replace(WorkflowDefinition.from_row(row), is_active=True)

    test_context = dict(context) | {
        "is_test": True,
        "test_executed_by": actor_id,
        "test_executed_at": datetime.now(UTC).isoformat(),
    }
    return execute_workflow(engine, definition, test_context, cfg=cfg)


def get_workflow_stats(engine: Engine, workflow_id: int) -> dict:
    with Session(engine) as session:
        base = select(func.count()).select_from(AuditLog).where(
            AuditLog.affected_model == WORKFLOW_MODEL,
            AuditLog.affected_id == str(workflow_id),
        )
        successful = session.scalar(base.where(AuditLog.action == "workflow_completed")) or 0
        failed = session.scalar(base.where(AuditLog.action == "workflow_execution_failed")) or 0
        last = session.scalar(
            select(func.max(AuditLog.timestamp)).where(
                AuditLog.affected_model == WORKFLOW_MODEL,
                AuditLog.affected_id == str(workflow_id),
                AuditLog.action.in_(("workflow_completed", "workflow_execution_failed")),
            )
        )
    return {
        "total_executions": successful + failed,
        "successful_executions": successful,
        "failed_executions": failed,
        "last_execution": last.isoformat() if last else None,
    }
