"""
sylvan.api.routes.tasks — User task views & completion submission
===================================================================
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import Engine

from sylvan.api.deps import get_config, get_current_user, get_engine, request_meta
from sylvan.api.rate_limit import rate_limited_completion
from sylvan.config import SylvanConfig
from sylvan.database.engine import run_db
from sylvan.engine.organizer import OrganizerConfig, SortBy, TaskFilter
from sylvan.services import completion_service

router = APIRouter(tags=["tasks"])


class CheckExpirationBody(BaseModel):
    task_id: int


class CompletionBody(BaseModel):
    task_id: int


@router.get("/tasks")
def list_tasks(
    box_count: int | None = Query(None, ge=0),
    sort_by: SortBy = SortBy.PRIORITY,
    status: str | None = Query(None, pattern="^(active|completed|expired)$"),
    task_type: str | None = None,
    time_sensitive: bool | None = None,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    """Box + list layout for the dashboard."""
    task_filter = None
    if status or task_type or time_sensitive is not None:
        task_filter = TaskFilter(status=status, task_type=task_type, is_time_sensitive=time_sensitive)
    config = OrganizerConfig(
        box_count=cfg.task_box_count if box_count is None else box_count,
        sort_by=sort_by,
        filter_by=task_filter,
    )
    organized = completion_service.list_user_tasks(engine, user["sub"], config)
    return organized.to_dict()


@router.get("/tasks/organized")
def organized_tasks(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    """Active / completed / missed sections for time-limited tasks."""
    window = timedelta(hours=cfg.pending_review_hours)
    return completion_service.get_organized_tasks(engine, user["sub"], pending_window=window).to_dict()


@router.post("/tasks/check-expiration")
def check_expiration(
    body: CheckExpirationBody,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return completion_service.check_task_expiration(engine, body.task_id)


@router.post("/completions", status_code=201)
async def submit_completion(
    body: CompletionBody,
    request: Request,
    user: dict = Depends(rate_limited_completion),
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    meta = request_meta(request)
    outcome = await run_db(
        completion_service.complete_task,
        engine,
        user_id=user["sub"],
        task_id=body.task_id,
        ip_address=meta["ip_address"],
        user_agent=meta["user_agent"],
        cfg=cfg,
    )
    return {"completion": outcome.to_dict()}
