"""
sylvan.api.routes.cron — Scheduler-invoked maintenance endpoints
==================================================================

Each endpoint runs one background sweep.  They exist for hosts that
prefer an external scheduler over ``python -m sylvan.worker``; both
paths call the same service functions.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import Engine

from sylvan.api.deps import get_config, get_engine, verify_cron_secret
from sylvan.config import SylvanConfig
from sylvan.database.engine import run_db
from sylvan.services import completion_service, email_service, workflow_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


def _stamp(**data) -> dict:
    return {"success": True, **data, "timestamp": datetime.now(UTC).isoformat()}


@router.post("/mark-expired")
async def mark_expired(engine: Engine = Depends(get_engine)):
    result = await run_db(completion_service.mark_expired_tasks, engine)
    return _stamp(**result)


@router.post("/auto-reject-pending")
async def auto_reject(
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    rejected = await run_db(
        completion_service.auto_reject_pending,
        engine,
        window=timedelta(hours=cfg.pending_review_hours),
    )
    return _stamp(rejected=rejected)


@router.post("/auto-approve")
async def auto_approve(engine: Engine = Depends(get_engine)):
    approved = await run_db(completion_service.auto_approve_pending, engine)
    return _stamp(approved=approved)


@router.post("/run-workflows")
async def run_workflows(
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    results = await run_db(workflow_service.run_scheduled_workflows, engine, cfg=cfg)
    return _stamp(results={str(k): v.to_dict() for k, v in results.items()})


@router.post("/process-emails")
async def process_emails(
    engine: Engine = Depends(get_engine),
    cfg: SylvanConfig = Depends(get_config),
):
    sender = email_service.build_sender_from_env(cfg)
    try:
        counts = await run_db(
            email_service.process_email_queue,
            engine,
            sender,
            retry_delay=cfg.email_retry_delay_seconds,
        )
    finally:
        if sender is not None:
            sender.close()
    return _stamp(**counts)
