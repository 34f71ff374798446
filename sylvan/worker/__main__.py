"""
sylvan.worker.__main__ — Entry point for ``python -m sylvan.worker``
======================================================================

Periodic maintenance jobs on a single asyncio loop.  Every job body runs
through ``run_db()`` so a slow query never stalls the others.

==========================  ==========
Job                         Interval
==========================  ==========
email outbox                30 s
expired task sweep          5 min
scheduled workflows         5 min
auto-approve due            15 min
auto-reject stale pending   1 h
==========================  ==========

Run with::

    python -m sylvan.worker
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from dotenv import load_dotenv
from sqlalchemy import Engine

from sylvan.config import SylvanConfig, load_config
from sylvan.database.engine import create_db_engine, init_db, run_db
from sylvan.services import completion_service, email_service, workflow_service

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("sylvan")


async def _every(name: str, seconds: float, job: Callable[[], Awaitable[object]]) -> None:
    while True:
        try:
            await job()
        except Exception:
            logger.exception("Job %s failed", name, extra={"task": name})
        await asyncio.sleep(seconds)


def _jobs(
    engine: Engine,
    cfg: SylvanConfig,
    sender: email_service.ResendSender | None,
) -> list[tuple[str, float, Callable[[], Awaitable[object]]]]:
    async def emails():
        counts = await run_db(
            email_service.process_email_queue, engine, sender,
            retry_delay=cfg.email_retry_delay_seconds,
        )
        if any(counts.values()):
            logger.info("Email outbox: %s", counts)

    async def expired():
        await run_db(completion_service.mark_expired_tasks, engine)

    async def workflows():
        await run_db(workflow_service.run_scheduled_workflows, engine, cfg=cfg)

    async def approve():
        await run_db(completion_service.auto_approve_pending, engine)

    async def reject():
        await run_db(
            completion_service.auto_reject_pending, engine,
            window=timedelta(hours=cfg.pending_review_hours),
        )

    return [
        ("emails", 30, emails),
        ("mark_expired", 300, expired),
        ("scheduled_workflows", 300, workflows),
        ("auto_approve", 900, approve),
        ("auto_reject", 3600, reject),
    ]


async def run(engine: Engine, cfg: SylvanConfig) -> None:
    sender = email_service.build_sender_from_env(cfg)
    if sender is None:
        logger.warning("RESEND_API_KEY not set; queued emails will be marked skipped")
    try:
        await asyncio.gather(*(_every(name, seconds, job) for name, seconds, job in _jobs(engine, cfg, sender)))
    finally:
        if sender is not None:
            sender.close()


def main() -> None:
    """Bootstrap and run the worker."""
    load_dotenv()

    cfg = load_config()
    logger.info("Config loaded — %s (%s)", cfg.app_name, cfg.app_url)

    engine = create_db_engine()
    init_db(engine)

    logger.info("Starting Sylvan worker…")
    try:
        asyncio.run(run(engine, cfg))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
