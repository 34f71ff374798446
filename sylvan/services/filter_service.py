"""
sylvan.services.filter_service — Filter presets & admin user search
=====================================================================

Presets are private to the admin who saved them: every read and write is
scoped by ``created_by``.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from sylvan.database.models import FilterPreset, User
from sylvan.engine.filters import FilterCriteria, build_filter, validate_filter_criteria
from sylvan.errors import ValidationFailed

logger = logging.getLogger(__name__)

USER_FILTER_FIELDS = frozenset({
    "id",
    "email",
    "username",
    "role",
    "status",
    "wallet_address",
    "wallet_verified",
    "twitter_verified",
    "telegram_verified",
    "total_points",
    "created_at",
    "last_active",
})


def _criteria(raw: list[dict]) -> list[FilterCriteria]:
    criteria = [FilterCriteria.from_dict(c) for c in raw]
    errors = validate_filter_criteria(criteria)
    if errors:
        raise ValidationFailed("Invalid filter criteria", errors=errors)
    return criteria


def preset_to_dict(preset: FilterPreset) -> dict:
    return {
        "id": preset.id,
        "name": preset.name,
        "criteria": preset.criteria,
        "created_by": preset.created_by,
        "created_at": preset.created_at.isoformat() if preset.created_at else None,
    }


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------
def save_filter_preset(engine: Engine, *, name: str, criteria: list[dict], created_by: str) -> dict:
    if not name or not name.strip():
        raise ValidationFailed("Preset name is required")
    parsed = _criteria(criteria)
    with Session(engine) as session:
        preset = FilterPreset(
            name=name.strip(),
            criteria=[c.to_dict() for c in parsed],
            created_by=created_by,
        )
        session.add(preset)
        session.commit()
        session.refresh(preset)
        return preset_to_dict(preset)


def get_filter_presets(engine: Engine, user_id: str) -> list[dict]:
    """Newest first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(FilterPreset)
            .where(FilterPreset.created_by == user_id)
            .order_by(FilterPreset.created_at.desc(), FilterPreset.id.desc())
        ).all()
        return [preset_to_dict(p) for p in rows]


def get_filter_preset(engine: Engine, preset_id: int, user_id: str) -> dict | None:
    with Session(engine) as session:
        preset = session.scalar(
            select(FilterPreset).where(
                FilterPreset.id == preset_id, FilterPreset.created_by == user_id
            )
        )
        return preset_to_dict(preset) if preset else None


def update_filter_preset(
    engine: Engine,
    preset_id: int,
    user_id: str,
    *,
    name: str | None = None,
    criteria: list[dict] | None = None,
) -> dict | None:
    with Session(engine) as session:
        preset = session.scalar(
            select(FilterPreset).where(
                FilterPreset.id == preset_id, FilterPreset.created_by == user_id
            )
        )
        if preset is None:
            return None
        if name:
            preset.name = name.strip()
        if criteria is not None:
            preset.criteria = [c.to_dict() for c in _criteria(criteria)]
        session.commit()
        session.refresh(preset)
        return preset_to_dict(preset)


def delete_filter_preset(engine: Engine, preset_id: int, user_id: str) -> bool:
    with Session(engine) as session:
        result = session.execute(
            delete(FilterPreset).where(
                FilterPreset.id == preset_id, FilterPreset.created_by == user_id
            )
        )
        session.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# User search
# ---------------------------------------------------------------------------
def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "role": user.role.value,
        "status": user.status.value,
        "wallet_address": user.wallet_address,
        "wallet_verified": user.wallet_verified,
        "twitter_verified": user.twitter_verified,
        "telegram_verified": user.telegram_verified,
        "referral_code": user.referral_code,
        "invited_by": user.invited_by,
        "total_points": user.total_points,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_active": user.last_active.isoformat() if user.last_active else None,
    }


def search_users(
    engine: Engine,
    criteria: list[dict],
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Apply filter criteria to ``users``; returns a page and the total."""
    try:
        clause = build_filter(User, _criteria(criteria), USER_FILTER_FIELDS)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from None
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(User).where(clause)) or 0
        rows = session.scalars(
            select(User)
            .where(clause)
            .order_by(User.created_at.desc(), User.id)
            .offset(offset)
            .limit(limit)
        ).all()
        return [user_to_dict(u) for u in rows], total
