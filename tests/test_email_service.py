"""
tests/test_email_service.py — Outbox delivery, backoff & preferences
======================================================================

The Resend client is exercised through ``httpx.MockTransport``; queue
processing uses an in-memory fake sender.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy.orm import Session

from sylvan.database.models import EmailMessage, EmailStatus
from sylvan.services.email_service import (
    NOT_CONFIGURED,
    EmailDeliveryError,
    ResendSender,
    build_sender_from_env,
    get_preferences,
    get_queue_stats,
    is_email_enabled,
    process_email_queue,
    queue_email,
    update_preferences,
)
from sylvan.services.email_templates import (
    build_admin_review_email,
    build_task_completion_email,
    build_welcome_email,
)
from conftest import make_user


class FakeSender:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.sent: list[str] = []

    def send(self, message):
        if self.fail_times:
            self.fail_times -= 1
            raise EmailDeliveryError("provider unavailable")
        self.sent.append(message.to_address)
        return f"re_{len(self.sent)}"


def _queue(engine, cfg, to="someone@example.com", max_attempts=3) -> int:
    with Session(engine) as session:
        message = queue_email(
            session, to=to, email=build_welcome_email(cfg, "sam"), max_attempts=max_attempts
        )
        session.commit()
        return message.id


def _message(engine, message_id) -> EmailMessage:
    with Session(engine, expire_on_commit=False) as session:
        message = session.get(EmailMessage, message_id)
        session.expunge(message)
        return message


class TestTemplates:
    def test_welcome(self, cfg):
        email = build_welcome_email(cfg, None)
        assert email.template == "welcome"
        assert "Welcome to Sylvan Token" in email.subject
        assert "https://app.sylvantoken.test/tasks" in email.text

    def test_completion_pending(self, cfg):
        email = build_task_completion_email(cfg, "sam", "<Follow>", 50, 200, pending=True)
        assert email.subject == "Task submitted for review"
        assert "&lt;Follow&gt;" in email.html

    def test_admin_review_switches_on_score(self, cfg):
        low = build_admin_review_email(
            cfg, review_type="completion", item_id="1", user_email="u@x", fraud_score=45, reasons=[]
        )
        high = build_admin_review_email(
            cfg, review_type="completion", item_id="1", user_email="u@x", fraud_score=80,
            reasons=["wallet_unverified"],
        )
        assert low.template == "admin_review_needed"
        assert "random sample" in low.text
        assert high.template == "admin_fraud_alert"
        assert "Fraud alert" in high.subject


class TestQueueProcessing:
    def test_queue_is_transactional(self, db_engine, cfg):
        with Session(db_engine) as session:
            queue_email(session, to="a@example.com", email=build_welcome_email(cfg, "a"))
            session.rollback()
        assert process_email_queue(db_engine, FakeSender(), now=datetime.now(UTC) + timedelta(minutes=1))["sent"] == 0

    def test_sends_due_messages(self, db_engine, cfg):
        message_id = _queue(db_engine, cfg)
        sender = FakeSender()
        stats = process_email_queue(db_engine, sender)
        assert stats == {"sent": 1, "retried": 0, "failed": 0, "skipped": 0}
        message = _message(db_engine, message_id)
        assert message.status is EmailStatus.SENT
        assert message.provider_id == "re_1"
        assert sender.sent == ["someone@example.com"]

    def test_exponential_backoff(self, db_engine, cfg):
        message_id = _queue(db_engine, cfg)
        sender = FakeSender(fail_times=2)
        start = datetime.now(UTC) + timedelta(minutes=1)

        stats = process_email_queue(db_engine, sender, retry_delay=2.0, now=start)
        assert stats["retried"] == 1
        first = _message(db_engine, message_id)
        assert first.attempts == 1
        assert first.last_error == "provider unavailable"

        # not due yet
        assert process_email_queue(db_engine, sender, retry_delay=2.0, now=start + timedelta(seconds=1))["retried"] == 0

        stats = process_email_queue(db_engine, sender, retry_delay=2.0, now=start + timedelta(seconds=2))
        assert stats["retried"] == 1
        assert _message(db_engine, message_id).attempts == 2

        stats = process_email_queue(db_engine, sender, retry_delay=2.0, now=start + timedelta(seconds=6))
        assert stats["sent"] == 1

    def test_gives_up_after_max_attempts(self, db_engine, cfg):
        message_id = _queue(db_engine, cfg, max_attempts=1)
        stats = process_email_queue(db_engine, FakeSender(fail_times=5))
        assert stats["failed"] == 1
        assert _message(db_engine, message_id).status is EmailStatus.FAILED

    def test_unexpected_error_counts_as_attempt(self, db_engine, cfg):
        first = _queue(db_engine, cfg, to="a@example.com")
        second = _queue(db_engine, cfg, to="b@example.com", max_attempts=1)

        class BrokenSecond(FakeSender):
            def send(self, message):
                if message.to_address == "b@example.com":
                    raise RuntimeError("bad payload")
                return super().send(message)

        stats = process_email_queue(db_engine, BrokenSecond())
        assert stats == {"sent": 1, "retried": 0, "failed": 1, "skipped": 0}
        assert _message(db_engine, first).status is EmailStatus.SENT
        broken = _message(db_engine, second)
        assert broken.status is EmailStatus.FAILED
        assert broken.attempts == 1
        assert broken.last_error == "bad payload"

    def test_delivered_messages_stay_sent_with_non_json_reply(self, db_engine, cfg):
        first = _queue(db_engine, cfg, to="a@example.com")
        second = _queue(db_engine, cfg, to="b@example.com")
        replies = iter([httpx.Response(200, json={"id": "re_1"}), httpx.Response(200, content=b"")])
        client = httpx.Client(transport=httpx.MockTransport(lambda request: next(replies)))
        sender = ResendSender("re_key", email_from="Sylvan <noreply@x>", client=client)

        assert process_email_queue(db_engine, sender)["sent"] == 2
        assert _message(db_engine, first).provider_id == "re_1"
        assert _message(db_engine, second).status is EmailStatus.SENT
        assert _message(db_engine, second).provider_id is None
        assert process_email_queue(db_engine, sender)["sent"] == 0

    def test_no_sender_marks_skipped(self, db_engine, cfg):
        message_id = _queue(db_engine, cfg)
        stats = process_email_queue(db_engine, None)
        assert stats["skipped"] == 1
        message = _message(db_engine, message_id)
        assert message.status is EmailStatus.SKIPPED
        assert message.last_error == NOT_CONFIGURED

    def test_queue_stats(self, db_engine, cfg):
        _queue(db_engine, cfg)
        _queue(db_engine, cfg, to="b@example.com")
        process_email_queue(db_engine, None, batch_size=1)
        stats = get_queue_stats(db_engine)
        assert stats["queued"] == 1
        assert stats["skipped"] == 1
        assert stats["sent"] == 0


class TestResendSender:
    def _sender(self, handler) -> ResendSender:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return ResendSender("re_key", email_from="Sylvan <noreply@x>", reply_to="help@x", client=client)

    def _outbox_message(self) -> EmailMessage:
        return EmailMessage(to_address="a@example.com", subject="Hi", template="welcome", html="<p>Hi</p>", text="Hi")

    def test_payload_and_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "re_123"})

        assert self._sender(handler).send(self._outbox_message()) == "re_123"
        assert seen["auth"] == "Bearer re_key"
        assert seen["body"]["to"] == ["a@example.com"]
        assert seen["body"]["reply_to"] == "help@x"
        assert seen["body"]["text"] == "Hi"

    def test_provider_error(self):
        sender = self._sender(lambda request: httpx.Response(422, text="invalid from"))
        with pytest.raises(EmailDeliveryError, match="422"):
            sender.send(self._outbox_message())

    def test_success_without_json_body(self):
        sender = self._sender(lambda request: httpx.Response(200, content=b""))
        assert sender.send(self._outbox_message()) is None

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EmailDeliveryError, match="Transport error"):
            self._sender(handler).send(self._outbox_message())

    def test_build_from_env(self, cfg, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        assert build_sender_from_env(cfg) is None
        monkeypatch.setenv("RESEND_API_KEY", "re_live")
        sender = build_sender_from_env(cfg)
        assert sender.email_from == cfg.email_from
        sender.close()


class TestPreferences:
    def test_defaults_without_row(self, db_engine):
        make_user(db_engine)
        prefs = get_preferences(db_engine, "user-1")
        assert prefs["task_completions"] is True
        assert prefs["marketing_emails"] is False
        with Session(db_engine) as session:
            assert is_email_enabled(session, "user-1", "task_completions")
            assert not is_email_enabled(session, "user-1", "marketing_emails")

    def test_update_and_unsubscribe(self, db_engine):
        make_user(db_engine)
        prefs = update_preferences(db_engine, "user-1", marketing_emails=True, task_completions=None)
        assert prefs["marketing_emails"] is True
        assert prefs["task_completions"] is True

        prefs = update_preferences(db_engine, "user-1", unsubscribed=True)
        assert prefs["unsubscribed"] is True
        with Session(db_engine) as session:
            assert not is_email_enabled(session, "user-1", "task_completions")

        assert update_preferences(db_engine, "user-1", unsubscribed=False)["unsubscribed"] is False

    def test_unknown_kind(self, db_session):
        with pytest.raises(ValueError):
            is_email_enabled(db_session, "user-1", "newsletters")
