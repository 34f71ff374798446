"""
sylvan.constants — Shared Constants
=====================================

Single source of truth for limits and time windows used by the engine,
services and API layers.
"""

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------
# Time-limited tasks
# ---------------------------------------------------------------------------
MIN_DURATION_HOURS = 1
MAX_DURATION_HOURS = 24

# Pending completions older than this are treated as missed / auto-rejected
PENDING_REVIEW_WINDOW = timedelta(hours=48)
AUTO_REJECT_REASON = "Automatically rejected after {hours} hours without approval"

# ---------------------------------------------------------------------------
# Task organizer
# ---------------------------------------------------------------------------
DEFAULT_BOX_COUNT = 10
SECTION_BOX_LIMIT = 5

# ---------------------------------------------------------------------------
# Rate limits (requests per sliding window)
# ---------------------------------------------------------------------------
ADMIN_MUTATION_LIMIT = 30
COMPLETION_LIMIT = 10
RATE_LIMIT_WINDOW_SECONDS = 60

# ---------------------------------------------------------------------------
# Fraud detection
# ---------------------------------------------------------------------------
FRAUD_FLAG_THRESHOLD = 60
FRAUD_REVIEW_THRESHOLD = 40
RANDOM_REVIEW_RATE = 0.2

# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_EMAIL = "system@sylvantoken.org"

SECURITY_EVENT_ACTIONS: tuple[str, ...] = (
    "user_delete",
    "bulk_delete",
    "role_change",
    "permission_change",
    "admin_login_failed",
    "unauthorized_access",
    "data_export",
    "database_reset",
)

# Keywords counted as security-relevant in audit statistics
SECURITY_STAT_KEYWORDS: tuple[str, ...] = ("delete", "role", "permission", "export", "reset")

DEFAULT_AUDIT_LIMIT = 100
