"""
sylvan.api.routes.filter_presets — Saved user-search filters
==============================================================

Presets belong to the admin who created them; another admin's preset id
behaves like a missing one.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from sylvan.api.deps import get_engine
from sylvan.api.rate_limit import rate_limited_admin
from sylvan.services import filter_service

router = APIRouter(prefix="/admin/filter-presets", tags=["filter-presets"])


class PresetCreate(BaseModel):
    name: str
    criteria: list[dict] = Field(default_factory=list)


class PresetUpdate(BaseModel):
    name: str | None = None
    criteria: list[dict] | None = None


@router.get("")
def list_presets(
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    return {"presets": filter_service.get_filter_presets(engine, admin["sub"])}


@router.post("", status_code=201)
def create_preset(
    body: PresetCreate,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    preset = filter_service.save_filter_preset(
        engine, name=body.name, criteria=body.criteria, created_by=admin["sub"],
    )
    return {"preset": preset}


@router.get("/{preset_id}")
def get_preset(
    preset_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    preset = filter_service.get_filter_preset(engine, preset_id, admin["sub"])
    if preset is None:
        raise HTTPException(404, "Filter preset not found")
    return {"preset": preset}


@router.put("/{preset_id}")
def update_preset(
    preset_id: int,
    body: PresetUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    preset = filter_service.update_filter_preset(
        engine, preset_id, admin["sub"], name=body.name, criteria=body.criteria,
    )
    if preset is None:
        raise HTTPException(404, "Filter preset not found")
    return {"preset": preset}


@router.delete("/{preset_id}")
def delete_preset(
    preset_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine: Engine = Depends(get_engine),
):
    if not filter_service.delete_filter_preset(engine, preset_id, admin["sub"]):
        raise HTTPException(404, "Filter preset not found")
    return {"ok": True}
