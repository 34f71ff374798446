"""
sylvan.services.email_service — Email outbox, preferences & delivery
======================================================================

Emails are never sent inline.  Services call :func:`queue_email` inside
their own transaction, so a rolled-back operation never sends mail, and
the worker drains the ``email_outbox`` table with
:func:`process_email_queue`.

Delivery goes through the Resend REST API.  Failed sends are retried
with exponential backoff (``retry_delay * 2 ** (attempt - 1)``) up to
``max_attempts`` and then marked ``FAILED``.  Without ``RESEND_API_KEY``
queued messages are marked ``SKIPPED`` so the outbox doesn't grow
forever.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import Engine, func, or_, select
from sqlalchemy.orm import Session

from sylvan.config import SylvanConfig
from sylvan.database.models import EmailMessage, EmailPreference, EmailStatus
from sylvan.services.email_templates import RenderedEmail

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
NOT_CONFIGURED = "Email system is not configured (RESEND_API_KEY is not set)"

# Preference flags that can gate a message
PREFERENCE_KINDS = frozenset({
    "task_completions",
    "wallet_verifications",
    "admin_notifications",
    "marketing_emails",
})


class EmailDeliveryError(Exception):
    """Raised by a sender when the provider rejects a message."""


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> str | None:
        """Deliver *message*; return the provider id."""
        ...


# ---------------------------------------------------------------------------
# Resend client
# ---------------------------------------------------------------------------
class ResendSender:
    """Thin synchronous Resend client (the worker runs it via ``run_db``)."""

    def __init__(
        self,
        api_key: str,
        *,
        email_from: str,
        reply_to: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.email_from = email_from
        self.reply_to = reply_to
        self._client = client or httpx.Client(
            timeout=10, transport=httpx.HTTPTransport(retries=1)
        )

    def send(self, message: EmailMessage) -> str | None:
        payload = {
            "from": self.email_from,
            "to": [message.to_address],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text
        if self.reply_to:
            payload["reply_to"] = self.reply_to

        try:
            resp = self._client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Transport error: {exc}") from exc

        if resp.status_code >= 400:
            raise EmailDeliveryError(f"Resend returned {resp.status_code}: {resp.text[:300]}")
        try:
            return resp.json().get("id")
        except (ValueError, AttributeError):
            # Delivered; the id is only used for tracing
            logger.warning("Resend returned %d with a non-JSON body", resp.status_code)
            return None

    def close(self) -> None:
        self._client.close()


def build_sender_from_env(cfg: SylvanConfig) -> ResendSender | None:
    """Return a :class:`ResendSender` or ``None`` when no API key is set."""
    api_key = os.getenv("RESEND_API_KEY", "").strip()
    if not api_key:
        logger.warning("RESEND_API_KEY is not set — outbound email disabled")
        return None
    return ResendSender(api_key, email_from=cfg.email_from, reply_to=cfg.email_reply_to)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
def is_email_enabled(session: Session, user_id: str, kind: str) -> bool:
    """No preference row means the defaults apply (everything but marketing)."""
    if kind not in PREFERENCE_KINDS:
        raise ValueError(f"Unknown email preference: {kind}")
    prefs = session.get(EmailPreference, user_id)
    if prefs is None:
        return kind != "marketing_emails"
    if prefs.unsubscribed_at is not None:
        return False
    return bool(getattr(prefs, kind))


def get_preferences(engine: Engine, user_id: str) -> dict:
    with Session(engine) as session:
        prefs = session.get(EmailPreference, user_id)
        if prefs is None:
            return {
                "task_completions": True,
                "wallet_verifications": True,
                "admin_notifications": True,
                "marketing_emails": False,
                "unsubscribed": False,
            }
        return {
            "task_completions": prefs.task_completions,
            "wallet_verifications": prefs.wallet_verifications,
            "admin_notifications": prefs.admin_notifications,
            "marketing_emails": prefs.marketing_emails,
            "unsubscribed": prefs.unsubscribed_at is not None,
        }


def update_preferences(engine: Engine, user_id: str, **changes: bool | None) -> dict:
    """Upsert preference flags.  ``unsubscribed=True`` opts out of everything;
    ``unsubscribed=False`` resubscribes.
    """
    with Session(engine) as session:
        prefs = session.get(EmailPreference, user_id)
        if prefs is None:
            prefs = EmailPreference(
                user_id=user_id,
                task_completions=True,
                wallet_verifications=True,
                admin_notifications=True,
                marketing_emails=False,
            )
            session.add(prefs)
        for key, value in changes.items():
            if value is None:
                continue
            if key == "unsubscribed":
                prefs.unsubscribed_at = datetime.now(UTC) if value else None
            elif key in PREFERENCE_KINDS:
                setattr(prefs, key, bool(value))
        session.commit()
    return get_preferences(engine, user_id)


# ---------------------------------------------------------------------------
# Queueing
# ---------------------------------------------------------------------------
def queue_email(
    session: Session,
    *,
    to: str,
    email: RenderedEmail,
    locale: str = "en",
    max_attempts: int = 3,
) -> EmailMessage:
    """Add a message to the outbox within the caller's transaction."""
    now = datetime.now(UTC)
    message = EmailMessage(
        to_address=to,
        subject=email.subject,
        template=email.template,
        html=email.html,
        text=email.text,
        locale=locale,
        status=EmailStatus.QUEUED,
        attempts=0,
        max_attempts=max_attempts,
        next_attempt_at=now,
        created_at=now,
    )
    session.add(message)
    logger.debug("Queued %s email to %s", email.template, to)
    return message


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
def process_email_queue(
    engine: Engine,
    sender: EmailSender | None,
    *,
    retry_delay: float = 2.0,
    batch_size: int = 50,
    now: datetime | None = None,
) -> dict[str, int]:
    """Send due outbox messages.  Returns counts per outcome.

    Each message's outcome is committed before the next send.
    """
    now = now or datetime.now(UTC)
    stats = {"sent": 0, "retried": 0, "failed": 0, "skipped": 0}

    with Session(engine, expire_on_commit=False) as session:
        due = session.scalars(
            select(EmailMessage)
            .where(
                EmailMessage.status == EmailStatus.QUEUED,
                or_(EmailMessage.next_attempt_at.is_(None), EmailMessage.next_attempt_at <= now),
            )
            .order_by(EmailMessage.id)
            .limit(batch_size)
        ).all()

        for message in due:
            if sender is None:
                message.status = EmailStatus.SKIPPED
                message.last_error = NOT_CONFIGURED
                stats["skipped"] += 1
                session.commit()
                continue

            message.attempts = (message.attempts or 0) + 1
            try:
                provider_id = sender.send(message)
            except Exception as exc:
                if not isinstance(exc, EmailDeliveryError):
                    logger.exception("Unexpected error sending email %s", message.id)
                outcome = _record_failure(message, exc, retry_delay, now)
                stats[outcome] += 1
            else:
                message.provider_id = provider_id
                message.status = EmailStatus.SENT
                message.sent_at = now
                message.last_error = None
                stats["sent"] += 1
            session.commit()

    if any(stats.values()):
        logger.info("Email queue processed: %s", stats)
    return stats


def _record_failure(message: EmailMessage, exc: Exception, retry_delay: float, now: datetime) -> str:
    message.last_error = str(exc) or type(exc).__name__
    if message.attempts >= message.max_attempts:
        message.status = EmailStatus.FAILED
        logger.error(
            "Email %s to %s failed permanently after %d attempts: %s",
            message.id, message.to_address, message.attempts, exc,
        )
        return "failed"
    backoff = retry_delay * 2 ** (message.attempts - 1)
    message.next_attempt_at = now + timedelta(seconds=backoff)
    logger.warning(
        "Email %s attempt %d failed, retrying in %.0fs: %s",
        message.id, message.attempts, backoff, exc,
    )
    return "retried"


def get_queue_stats(engine: Engine) -> dict[str, int]:
    with Session(engine) as session:
        rows = session.execute(
            select(EmailMessage.status, func.count()).group_by(EmailMessage.status)
        ).all()
    counts = {status.value.lower(): 0 for status in EmailStatus}
    for status, n in rows:
        counts[EmailStatus(status).value.lower()] = n
    return counts
