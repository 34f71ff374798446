"""
sylvan.api.routes.audit — Audit log browsing (admin only)
===========================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import Engine

from sylvan.api.deps import get_current_admin, get_engine
from sylvan.constants import DEFAULT_AUDIT_LIMIT
from sylvan.services.audit_service import (
    AuditFilters,
    audit_to_dict,
    get_audit_log_by_id,
    get_audit_logs,
    get_audit_stats,
    get_duration_change_logs,
    get_security_events,
)

router = APIRouter(prefix="/admin/audit", tags=["audit"])


def _filters(
    actor_id: str | None = None,
    action: str | None = None,
    affected_model: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    limit: int = Query(DEFAULT_AUDIT_LIMIT, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> AuditFilters:
    return AuditFilters(
        actor_id=actor_id,
        action=action,
        affected_model=affected_model,
        start_date=start_date,
        end_date=end_date,
        search=search,
        limit=limit,
        offset=offset,
    )


@router.get("")
def list_audit_logs(
    filters: AuditFilters = Depends(_filters),
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    rows, total = get_audit_logs(engine, filters)
    return {"logs": [audit_to_dict(r) for r in rows], "total": total}


@router.get("/stats")
def audit_stats(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    return get_audit_stats(engine, start_date, end_date)


@router.get("/security")
def security_events(
    filters: AuditFilters = Depends(_filters),
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    rows, total = get_security_events(engine, filters)
    return {"logs": [audit_to_dict(r) for r in rows], "total": total}


@router.get("/duration-changes")
def duration_changes(
    task_id: int | None = None,
    actor_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    rows, total = get_duration_change_logs(
        engine, task_id=task_id, actor_id=actor_id, limit=limit, offset=offset,
    )
    return {"logs": [audit_to_dict(r) for r in rows], "total": total}


@router.get("/{log_id}")
def audit_log_detail(
    log_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    row = get_audit_log_by_id(engine, log_id)
    if row is None:
        raise HTTPException(404, "Audit log not found")
    return {"log": audit_to_dict(row)}
