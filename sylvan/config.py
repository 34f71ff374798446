"""
sylvan.config — YAML Configuration Loader
===========================================

Reads ``config.yaml`` for **non-secret** settings (platform identity,
email sender addresses, organizer and queue tuning).  Secrets
(``DATABASE_URL``, ``JWT_SECRET``, ``CRON_SECRET``, ``RESEND_API_KEY``)
come from the environment / ``.env``.

Usage::

    from sylvan.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.app_name)          # "Sylvan Token"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SylvanConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str
    app_url: str

    # Email
    email_from: str
    email_reply_to: str

    support_email: str | None = None

    # Task organizer
    task_box_count: int = 10
    pending_review_hours: int = 48

    # Email queue
    email_max_attempts: int = 3
    email_retry_delay_seconds: float = 2.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SylvanConfig:
    """Read *path* and return a :class:`SylvanConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return SylvanConfig(
        app_name=raw["app_name"],
        app_url=str(raw["app_url"]).rstrip("/"),
        email_from=raw["email_from"],
        email_reply_to=raw["email_reply_to"],
        support_email=raw.get("support_email") or None,
        task_box_count=int(raw.get("task_box_count", 10)),
        pending_review_hours=int(raw.get("pending_review_hours", 48)),
        email_max_attempts=int(raw.get("email_max_attempts", 3)),
        email_retry_delay_seconds=float(raw.get("email_retry_delay_seconds", 2.0)),
    )
