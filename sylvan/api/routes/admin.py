"""
sylvan.api.routes.admin — Admin CRUD endpoints (JWT-protected)
================================================================

Tasks, campaigns, user moderation, completion review and the email
outbox.  Writes depend on :func:`rate_limited_admin` and are throttled
per admin; the user search is a read sent as POST and only checks the
admin token.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from sylvan.api.deps import get_current_admin, get_engine, request_meta
from sylvan.api.rate_limit import rate_limited_admin
from sylvan.database.models import CompletionStatus, TaskType, UserStatus
from sylvan.errors import ValidationFailed
from sylvan.services import admin_service, email_service, filter_service
from sylvan.services.audit_service import row_to_dict

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    points: int = Field(0, ge=0)
    task_type: TaskType = TaskType.CUSTOM
    task_url: str | None = None
    campaign_id: int | None = None
    is_active: bool = True
    is_time_sensitive: bool = False
    scheduled_deadline: datetime | None = None
    estimated_duration: int | None = None
    duration: int | None = Field(None, description="Hours until expiry (1-24)")


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    points: int | None = Field(None, ge=0)
    task_type: TaskType | None = None
    task_url: str | None = None
    campaign_id: int | None = None
    is_active: bool | None = None
    is_time_sensitive: bool | None = None
    scheduled_deadline: datetime | None = None
    estimated_duration: int | None = None
    duration: int | None = None


class CampaignCreate(BaseModel):
    title: str
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True


class CampaignUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool | None = None


class UserSearch(BaseModel):
    criteria: list[dict] = Field(default_factory=list)
    preset_id: int | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class UserStatusUpdate(BaseModel):
    status: UserStatus


class BulkUserOperation(BaseModel):
    operation: Literal["update_status", "delete", "assign_points"]
    user_ids: list[str] = Field(min_length=1, max_length=500)
    status: UserStatus | None = None
    points: int | None = None


class CompletionReview(BaseModel):
    approve: bool
    reason: str | None = None


def _actor(admin: dict) -> dict:
    return {"actor_id": admin["sub"], "actor_email": admin.get("email") or admin["sub"]}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
@router.get("/tasks")
def list_tasks(
    include_inactive: bool = True,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    tasks = admin_service.list_tasks(engine, include_inactive=include_inactive)
    return {"tasks": [row_to_dict(t) for t in tasks]}


@router.post("/tasks", status_code=201)
def create_task(
    body: TaskCreate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    task = admin_service.create_task(
        engine,
        **body.model_dump(),
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"task": row_to_dict(task)}


@router.patch("/tasks/{task_id}")
def update_task(
    task_id: int,
    body: TaskUpdate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    # ``duration`` is passed through even when null so it can clear the limit
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    task = admin_service.update_task(
        engine,
        task_id,
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
        **changes,
    )
    return {"task": row_to_dict(task)}


@router.delete("/tasks/{task_id}")
def delete_task(
    task_id: int,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    admin_service.delete_task(
        engine, task_id, **_actor(admin), ip_address=request_meta(request)["ip_address"],
    )
    return {"ok": True}


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------
@router.get("/campaigns")
def list_campaigns(
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    return {"campaigns": [row_to_dict(c) for c in admin_service.list_campaigns(engine)]}


@router.post("/campaigns", status_code=201)
def create_campaign(
    body: CampaignCreate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    campaign = admin_service.create_campaign(
        engine,
        **body.model_dump(),
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"campaign": row_to_dict(campaign)}


@router.patch("/campaigns/{campaign_id}")
def update_campaign(
    campaign_id: int,
    body: CampaignUpdate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    campaign = admin_service.update_campaign(
        engine,
        campaign_id,
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
        **changes,
    )
    return {"campaign": row_to_dict(campaign)}


@router.delete("/campaigns/{campaign_id}")
def delete_campaign(
    campaign_id: int,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    admin_service.delete_campaign(
        engine, campaign_id, **_actor(admin), ip_address=request_meta(request)["ip_address"],
    )
    return {"ok": True}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.post("/users/search")
def search_users(
    body: UserSearch,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    """Filter users by ad-hoc criteria or by one of the admin's saved presets."""
    criteria = body.criteria
    if body.preset_id is not None:
        preset = filter_service.get_filter_preset(engine, body.preset_id, admin["sub"])
        if preset is None:
            raise HTTPException(404, "Filter preset not found")
        criteria = preset["criteria"]
    users, total = filter_service.search_users(
        engine, criteria, limit=body.limit, offset=body.offset,
    )
    return {"users": users, "total": total}


@router.put("/users/{user_id}/status")
def set_user_status(
    user_id: str,
    body: UserStatusUpdate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    user = admin_service.set_user_status(
        engine, user_id, body.status, **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"user": filter_service.user_to_dict(user)}


@router.post("/users/bulk")
def bulk_users(
    body: BulkUserOperation,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    """Status change, soft delete or point grant across many users.

    Per-user failures are reported in the result; the rest still apply.
    """
    ip_address = request_meta(request)["ip_address"]
    match body.operation:
        case "update_status":
            if body.status is None:
                raise ValidationFailed("status is required for update_status")
            result = admin_service.bulk_update_status(
                engine, body.user_ids, body.status, **_actor(admin), ip_address=ip_address,
            )
        case "delete":
            result = admin_service.bulk_delete_users(
                engine, body.user_ids, **_actor(admin), ip_address=ip_address,
            )
        case "assign_points":
            if body.points is None:
                raise ValidationFailed("points is required for assign_points")
            result = admin_service.bulk_assign_points(
                engine, body.user_ids, body.points, **_actor(admin), ip_address=ip_address,
            )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Completion review
# ---------------------------------------------------------------------------
@router.get("/completions")
def list_completions(
    status: CompletionStatus | None = None,
    needs_review: bool | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    items, total = admin_service.list_completions(
        engine, status=status, needs_review=needs_review, limit=limit, offset=offset,
    )
    return {"completions": items, "total": total}


@router.post("/completions/{completion_id}/review")
def review_completion(
    completion_id: int,
    body: CompletionReview,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    completion = admin_service.review_completion(
        engine,
        completion_id,
        approve=body.approve,
        reason=body.reason,
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"completion": row_to_dict(completion)}


# ---------------------------------------------------------------------------
# Email outbox
# ---------------------------------------------------------------------------
@router.get("/email/queue")
def email_queue_stats(
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    return {"queue": email_service.get_queue_stats(engine)}
