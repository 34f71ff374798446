"""
sylvan.api.routes.workflows — Workflow automation management
==============================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from sylvan.api.deps import get_config, get_engine, request_meta
from sylvan.api.rate_limit import rate_limited_admin
from sylvan.config import SylvanConfig
from sylvan.database.engine import run_db
from sylvan.engine.workflows import WorkflowDefinition
from sylvan.services import workflow_service

router = APIRouter(prefix="/admin/workflows", tags=["workflows"])


class WorkflowCreate(BaseModel):
    name: str
    description: str | None = None
    trigger: dict[str, Any]
    actions: list[dict[str, Any]]
    is_active: bool = True


class WorkflowUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    is_active: bool | None = None


class WorkflowTestBody(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)


def _actor(admin: dict) -> dict:
    return {"actor_id": admin["sub"], "actor_email": admin.get("email") or admin["sub"]}


@router.get("")
def list_workflows(
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    return {"workflows": workflow_service.list_workflows(engine)}


@router.post("", status_code=201)
def create_workflow(
    body: WorkflowCreate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    definition = WorkflowDefinition.from_dict(
        body.model_dump(include={"name", "trigger", "actions", "is_active"})
    )
    workflow = workflow_service.create_workflow(
        engine,
        definition,
        description=body.description,
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"workflow": workflow}


@router.get("/{workflow_id}")
def get_workflow(
    workflow_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    return {"workflow": workflow_service.get_workflow(engine, workflow_id)}


@router.put("/{workflow_id}")
def update_workflow(
    workflow_id: int,
    body: WorkflowUpdate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    workflow = workflow_service.update_workflow(
        engine,
        workflow_id,
        **body.model_dump(),
        **_actor(admin),
        ip_address=request_meta(request)["ip_address"],
    )
    return {"workflow": workflow}


@router.delete("/{workflow_id}")
def delete_workflow(
    workflow_id: int,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    workflow_service.delete_workflow(
        engine, workflow_id, **_actor(admin), ip_address=request_meta(request)["ip_address"],
    )
    return {"ok": True}


@router.post("/{workflow_id}/test")
async def test_workflow(
    workflow_id: int,
    body: WorkflowTestBody,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    """Run the workflow once against a caller-supplied context."""
    result = await run_db(
        workflow_service.run_workflow_test,
        engine, workflow_id, body.context, actor_id=admin["sub"], cfg=cfg,
    )
    return {"result": result.to_dict()}


@router.get("/{workflow_id}/stats")
def workflow_stats(
    workflow_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    workflow_service.get_workflow(engine, workflow_id)
    return {"stats": workflow_service.get_workflow_stats(engine, workflow_id)}
