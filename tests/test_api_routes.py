"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Exercises the public, user and admin routers through the TestClient
against the in-memory SQLite engine.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from sylvan.database.models import (
    AuditLog,
    Completion,
    CompletionStatus,
    EmailMessage,
    TaskType,
    User,
    UserStatus,
)
from sylvan.services.notification_service import create_notification
from conftest import NOW, auth, make_admin_token, make_task, make_token, make_user


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    ADMIN_GET_ENDPOINTS = [
        "/api/admin/tasks",
        "/api/admin/campaigns",
        "/api/admin/completions",
        "/api/admin/audit",
        "/api/admin/audit/stats",
        "/api/admin/filter-presets",
        "/api/admin/workflows",
        "/api/admin/email/queue",
    ]

    USER_GET_ENDPOINTS = [
        "/api/tasks",
        "/api/tasks/organized",
        "/api/users/email-preferences",
        "/api/users/referrals",
        "/api/leaderboard",
        "/api/notifications",
        "/api/auth/me",
    ]

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS + USER_GET_ENDPOINTS)
    def test_rejects_no_auth(self, client, endpoint):
        resp = client.get(endpoint)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing token"

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_rejects_invalid_token(self, client, endpoint):
        resp = client.get(endpoint, headers={"Authorization": "Bearer invalid"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_rejects_non_admin(self, client, user_token, endpoint):
        resp = client.get(endpoint, headers=auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Not admin"

    def test_token_without_sub_is_invalid(self, client):
        import jwt

        from sylvan.api.deps import JWT_ALGORITHM, JWT_SECRET

        token = jwt.encode({"email": "a@example.com"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert client.get("/api/auth/me", headers=auth(token)).status_code == 401


# ===========================================================================
# Identity
# ===========================================================================
class TestAuth:
    def test_me_without_profile(self, client, admin_token):
        body = client.get("/api/auth/me", headers=auth(admin_token)).json()
        assert body["id"] == "admin-1"
        assert body["is_admin"] is True
        assert body["profile"] is None

    def test_register_creates_once(self, client, db_engine):
        token = make_token("new-user")
        first = client.post("/api/auth/register", json={"username": "newbie"}, headers=auth(token))
        assert first.status_code == 200
        assert first.json()["created"] is True
        assert first.json()["user"]["username"] == "newbie"

        second = client.post("/api/auth/register", json={}, headers=auth(token))
        assert second.json()["created"] is False

        with Session(db_engine) as session:
            templates = session.scalars(select(EmailMessage.template)).all()
        assert templates == ["welcome"]

        me = client.get("/api/auth/me", headers=auth(token)).json()
        assert me["profile"]["email"] == "new-user@example.com"

    def test_register_assigns_referral_code(self, client):
        token = make_token("new-user")
        profile = client.post("/api/auth/register", json={}, headers=auth(token)).json()["user"]
        assert len(profile["referral_code"]) == 8
        assert profile["invited_by"] is None

    def test_register_with_referral_completes_referrer_task(self, client, db_engine):
        make_user(db_engine, total_points=5)
        task = make_task(db_engine, task_type=TaskType.REFERRAL, points=100)
        with Session(db_engine) as session:
            session.get(User, "user-1").referral_code = "ABC123XY"
            session.add(Completion(
                user_id="user-1", task_id=task.id, status=CompletionStatus.PENDING,
                completed_at=NOW, points_awarded=0,
            ))
            session.commit()

        token = make_token("friend")
        resp = client.post("/api/auth/register", json={"referral_code": "abc-123-xy"}, headers=auth(token))
        assert resp.json()["user"]["invited_by"] == "ABC123XY"

        with Session(db_engine) as session:
            completion = session.scalar(select(Completion))
            assert completion.status is CompletionStatus.APPROVED
            assert completion.points_awarded == 100
            assert session.get(User, "user-1").total_points == 105
            assert session.scalar(
                select(AuditLog.action).where(AuditLog.action == "referral_completed")
            ) == "referral_completed"

        stats = client.get("/api/users/referrals", headers=auth(make_token())).json()
        assert stats["total_referrals"] == 1
        assert stats["referrals"][0]["id"] == "friend"

    def test_register_with_unknown_referral_code(self, client, db_engine):
        token = make_token("friend")
        resp = client.post("/api/auth/register", json={"referral_code": "NOPE9999"}, headers=auth(token))
        assert resp.json()["created"] is True
        assert resp.json()["user"]["invited_by"] is None

    def test_referral_failure_does_not_block_registration(self, client, db_engine, monkeypatch):
        make_user(db_engine)
        with Session(db_engine) as session:
            session.get(User, "user-1").referral_code = "ABC123XY"
            session.commit()

        def boom(*args, **kwargs):
            raise RuntimeError("db hiccup")

        monkeypatch.setattr("sylvan.api.auth.process_referral_completion", boom)
        resp = client.post(
            "/api/auth/register", json={"referral_code": "ABC123XY"}, headers=auth(make_token("friend"))
        )
        assert resp.status_code == 200
        assert resp.json()["created"] is True
        with Session(db_engine) as session:
            assert session.get(User, "friend") is not None

    def test_register_requires_email_claim(self, client):
        import jwt

        from sylvan.api.deps import JWT_ALGORITHM, JWT_SECRET

        token = jwt.encode({"sub": "anon"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        resp = client.post("/api/auth/register", json={}, headers=auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation Error"


# ===========================================================================
# Tasks & completions
# ===========================================================================
class TestTasks:
    def test_dashboard_layout(self, client, db_engine, user_token):
        make_user(db_engine)
        for i in range(3):
            make_task(db_engine, title=f"Task {i}")

        body = client.get("/api/tasks?box_count=2", headers=auth(user_token)).json()
        assert len(body["box_tasks"]) == 2
        assert len(body["list_tasks"]) == 1
        assert body["total_count"] == 3

    def test_bad_status_filter(self, client, user_token):
        resp = client.get("/api/tasks?status=sleeping", headers=auth(user_token))
        assert resp.status_code == 422

    def test_organized(self, client, user_token):
        body = client.get("/api/tasks/organized", headers=auth(user_token)).json()
        assert set(body) >= {"active_tasks", "completed_tasks", "missed_tasks"}

    def test_organized_uses_configured_review_window(self, client, db_engine, cfg, user_token):
        from sylvan.api.deps import get_config
        from sylvan.api.main import app

        make_user(db_engine)
        task = make_task(db_engine, title="waiting")
        with Session(db_engine) as session:
            session.add(Completion(
                user_id="user-1", task_id=task.id, status=CompletionStatus.PENDING,
                completed_at=datetime.now(UTC) - timedelta(hours=60),
            ))
            session.commit()

        body = client.get("/api/tasks/organized", headers=auth(user_token)).json()
        assert [t["title"] for t in body["missed_tasks"]] == ["waiting"]

        app.dependency_overrides[get_config] = lambda: replace(cfg, pending_review_hours=72)
        body = client.get("/api/tasks/organized", headers=auth(user_token)).json()
        assert [t["title"] for t in body["pending_tasks"]] == ["waiting"]
        assert body["missed_tasks"] == []

    def test_check_expiration_missing_task(self, client, user_token):
        resp = client.post("/api/tasks/check-expiration", json={"task_id": 999}, headers=auth(user_token))
        assert resp.status_code == 404
        assert resp.json()["error"] == "Not Found"

    def test_submit_completion(self, client, db_engine, user_token):
        make_user(db_engine)
        task = make_task(db_engine, points=50)
        resp = client.post("/api/completions", json={"task_id": task.id}, headers=auth(user_token))
        assert resp.status_code == 201
        completion = resp.json()["completion"]
        assert completion["task_id"] == task.id
        assert completion["points_awarded"] == 50

    def test_wallet_unverified_is_json_error(self, client, db_engine, user_token):
        make_user(db_engine, wallet_verified=False)
        task = make_task(db_engine)
        resp = client.post("/api/completions", json={"task_id": task.id}, headers=auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"] == "Wallet Not Verified"
        assert resp.json()["message"]

    def test_duplicate_completion_conflict(self, client, db_engine, user_token):
        make_user(db_engine)
        task = make_task(db_engine)
        client.post("/api/completions", json={"task_id": task.id}, headers=auth(user_token))
        resp = client.post("/api/completions", json={"task_id": task.id}, headers=auth(user_token))
        assert resp.status_code == 409


# ===========================================================================
# Preferences & notifications
# ===========================================================================
class TestUserSettings:
    def test_email_preferences(self, client, db_engine, user_token):
        make_user(db_engine)
        resp = client.get("/api/users/email-preferences", headers=auth(user_token))
        assert resp.json()["preferences"]["task_completions"] is True

        resp = client.put(
            "/api/users/email-preferences", json={"task_completions": False}, headers=auth(user_token)
        )
        assert resp.json()["preferences"]["task_completions"] is False

    def test_empty_preference_update(self, client, db_engine, user_token):
        make_user(db_engine)
        resp = client.put("/api/users/email-preferences", json={}, headers=auth(user_token))
        assert resp.status_code == 400

    def test_notifications(self, client, db_engine, user_token):
        make_user(db_engine)
        with Session(db_engine) as session:
            row = create_notification(session, user_id="user-1", type="info", message="hello")
            session.commit()
            notification_id = row.id

        body = client.get("/api/notifications", headers=auth(user_token)).json()
        assert [n["message"] for n in body["notifications"]] == ["hello"]

        resp = client.post(f"/api/notifications/{notification_id}/read", headers=auth(user_token))
        assert resp.json() == {"ok": True}
        # already read
        resp = client.post(f"/api/notifications/{notification_id}/read", headers=auth(user_token))
        assert resp.status_code == 404
        assert client.get("/api/notifications?unread=true", headers=auth(user_token)).json() == {
            "notifications": []
        }


# ===========================================================================
# Leaderboard
# ===========================================================================
class TestLeaderboard:
    def test_ranked_and_paginated(self, client, db_engine, user_token):
        for i in range(3):
            make_user(db_engine, f"user-{i}", total_points=10 * (3 - i))

        body = client.get("/api/leaderboard?limit=2", headers=auth(user_token)).json()
        assert [e["id"] for e in body["leaderboard"]] == ["user-0", "user-1"]
        assert body["pagination"]["has_more"] is True

        body = client.get("/api/leaderboard?page=2&limit=2", headers=auth(user_token)).json()
        assert body["leaderboard"][0]["rank"] == 3

    def test_bad_pagination(self, client, user_token):
        assert client.get("/api/leaderboard?limit=500", headers=auth(user_token)).status_code == 422
        assert client.get("/api/leaderboard?page=0", headers=auth(user_token)).status_code == 422


# ===========================================================================
# Admin CRUD
# ===========================================================================
class TestAdminTasks:
    def test_create_update_delete(self, client, admin_token):
        headers = auth(admin_token)
        resp = client.post(
            "/api/admin/tasks",
            json={"title": "Retweet", "points": 30, "task_type": "TWITTER_RETWEET", "duration": 4},
            headers=headers,
        )
        assert resp.status_code == 201
        task = resp.json()["task"]
        assert task["duration"] == 4
        assert task["expires_at"] is not None

        resp = client.patch(f"/api/admin/tasks/{task['id']}", json={"duration": None}, headers=headers)
        assert resp.json()["task"]["duration"] is None

        assert client.patch(f"/api/admin/tasks/{task['id']}", json={}, headers=headers).status_code == 400
        assert [t["title"] for t in client.get("/api/admin/tasks", headers=headers).json()["tasks"]] == ["Retweet"]

        assert client.delete(f"/api/admin/tasks/{task['id']}", headers=headers).json() == {"ok": True}
        assert client.delete(f"/api/admin/tasks/{task['id']}", headers=headers).status_code == 404

    def test_duration_validation_error(self, client, admin_token):
        resp = client.post("/api/admin/tasks", json={"title": "Long", "duration": 48}, headers=auth(admin_token))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation Error"

    def test_campaigns(self, client, admin_token):
        headers = auth(admin_token)
        campaign = client.post("/api/admin/campaigns", json={"title": "Launch"}, headers=headers).json()["campaign"]
        resp = client.patch(f"/api/admin/campaigns/{campaign['id']}", json={"title": "Relaunch"}, headers=headers)
        assert resp.json()["campaign"]["title"] == "Relaunch"
        assert len(client.get("/api/admin/campaigns", headers=headers).json()["campaigns"]) == 1
        assert client.delete(f"/api/admin/campaigns/{campaign['id']}", headers=headers).json() == {"ok": True}


class TestAdminUsers:
    def test_search_with_criteria_and_preset(self, client, db_engine, admin_token):
        headers = auth(admin_token)
        make_user(db_engine, "alice", total_points=500)
        make_user(db_engine, "bob", total_points=5)

        criteria = [{"field": "total_points", "operator": "gt", "value": 100}]
        body = client.post("/api/admin/users/search", json={"criteria": criteria}, headers=headers).json()
        assert body["total"] == 1
        assert body["users"][0]["id"] == "alice"

        preset = client.post(
            "/api/admin/filter-presets", json={"name": "Whales", "criteria": criteria}, headers=headers
        ).json()["preset"]
        body = client.post("/api/admin/users/search", json={"preset_id": preset["id"]}, headers=headers).json()
        assert [u["id"] for u in body["users"]] == ["alice"]

        resp = client.post("/api/admin/users/search", json={"preset_id": 999}, headers=headers)
        assert resp.status_code == 404

    def test_invalid_criteria_lists_errors(self, client, admin_token):
        resp = client.post(
            "/api/admin/users/search",
            json={"criteria": [{"field": "status", "operator": "like", "value": "A"}]},
            headers=auth(admin_token),
        )
        assert resp.status_code == 400
        assert resp.json()["errors"] == ["Criterion 1: unknown operator 'like'"]

    def test_set_status(self, client, db_engine, admin_token):
        make_user(db_engine)
        resp = client.put("/api/admin/users/user-1/status", json={"status": "BLOCKED"}, headers=auth(admin_token))
        assert resp.json()["user"]["status"] == UserStatus.BLOCKED.value

        resp = client.put("/api/admin/users/user-1/status", json={"status": "FROZEN"}, headers=auth(admin_token))
        assert resp.status_code == 422

    def test_cannot_block_self(self, client, db_engine, admin_token):
        make_user(db_engine, "admin-1")
        resp = client.put("/api/admin/users/admin-1/status", json={"status": "BLOCKED"}, headers=auth(admin_token))
        assert resp.status_code == 409


    def test_bulk_operations(self, client, db_engine, admin_token):
        headers = auth(admin_token)
        make_user(db_engine, "alice", total_points=10)
        make_user(db_engine, "bob")

        body = client.post(
            "/api/admin/users/bulk",
            json={"operation": "assign_points", "user_ids": ["alice", "bob", "ghost"], "points": 15},
            headers=headers,
        ).json()
        assert body["success"] == 2
        assert body["failed_ids"] == ["ghost"]

        body = client.post(
            "/api/admin/users/bulk",
            json={"operation": "update_status", "user_ids": ["bob"], "status": "BLOCKED"},
            headers=headers,
        ).json()
        assert body["successful_ids"] == ["bob"]

        body = client.post(
            "/api/admin/users/bulk", json={"operation": "delete", "user_ids": ["alice"]}, headers=headers
        ).json()
        assert body["success"] == 1

        with Session(db_engine) as session:
            users = {u.id: u for u in session.scalars(select(User)).all()}
            actions = session.scalars(select(AuditLog.action).where(AuditLog.action.like("bulk_%"))).all()
        assert users["alice"].total_points == 25
        assert users["alice"].status is UserStatus.DELETED
        assert users["bob"].status is UserStatus.BLOCKED
        assert actions == ["bulk_assign_points", "bulk_update_status", "bulk_delete"]

    @pytest.mark.parametrize(
        "payload, status",
        [
            ({"operation": "update_status", "user_ids": ["bob"]}, 400),
            ({"operation": "assign_points", "user_ids": ["bob"]}, 400),
            ({"operation": "export", "user_ids": ["bob"]}, 422),
            ({"operation": "delete", "user_ids": []}, 422),
        ],
    )
    def test_bulk_validation(self, client, admin_token, payload, status):
        resp = client.post("/api/admin/users/bulk", json=payload, headers=auth(admin_token))
        assert resp.status_code == status

    def test_bulk_requires_admin(self, client, user_token):
        resp = client.post(
            "/api/admin/users/bulk", json={"operation": "delete", "user_ids": ["x"]}, headers=auth(user_token)
        )
        assert resp.status_code == 403


class TestAdminReview:
    def test_review_queue_and_approve(self, client, db_engine, admin_token):
        make_user(db_engine)
        task = make_task(db_engine, points=20)
        with Session(db_engine) as session:
            pending = Completion(
                user_id="user-1", task_id=task.id, status=CompletionStatus.PENDING,
                completed_at=NOW, needs_review=True,
            )
            session.add(pending)
            session.commit()
            completion_id = pending.id

        body = client.get("/api/admin/completions?status=PENDING", headers=auth(admin_token)).json()
        assert body["total"] == 1
        assert body["completions"][0]["task_title"] == "Follow us"

        url = f"/api/admin/completions/{completion_id}/review"
        resp = client.post(url, json={"approve": True}, headers=auth(admin_token))
        assert resp.json()["completion"]["status"] == "APPROVED"
        assert resp.json()["completion"]["points_awarded"] == 20
        assert client.post(url, json={"approve": True}, headers=auth(admin_token)).status_code == 409

    def test_review_missing(self, client, admin_token):
        resp = client.post("/api/admin/completions/5/review", json={"approve": False}, headers=auth(admin_token))
        assert resp.status_code == 404

    def test_email_queue_stats(self, client, admin_token):
        body = client.get("/api/admin/email/queue", headers=auth(admin_token)).json()
        assert body["queue"]["queued"] == 0


# ===========================================================================
# Audit log
# ===========================================================================
class TestAuditRoutes:
    def test_mutations_show_up_in_audit(self, client, admin_token):
        headers = auth(admin_token)
        task = client.post("/api/admin/tasks", json={"title": "T", "duration": 2}, headers=headers).json()["task"]
        client.patch(f"/api/admin/tasks/{task['id']}", json={"duration": 6}, headers=headers)

        body = client.get("/api/admin/audit?action=task_create", headers=headers).json()
        assert body["total"] == 1
        log_id = body["logs"][0]["id"]
        assert client.get(f"/api/admin/audit/{log_id}", headers=headers).json()["log"]["action"] == "task_create"

        changes = client.get(f"/api/admin/audit/duration-changes?task_id={task['id']}", headers=headers).json()
        assert {log["action"] for log in changes["logs"]} == {
            "task_duration_created_with_time_limit",
            "task_duration_increased_duration",
        }

        stats = client.get("/api/admin/audit/stats", headers=headers).json()
        assert stats["total_actions"] >= 3

    def test_security_events(self, client, db_engine, admin_token):
        make_user(db_engine)
        client.put("/api/admin/users/user-1/status", json={"status": "DELETED"}, headers=auth(admin_token))
        body = client.get("/api/admin/audit/security", headers=auth(admin_token)).json()
        assert [log["action"] for log in body["logs"]] == ["user_delete"]

    def test_missing_log(self, client, admin_token):
        assert client.get("/api/admin/audit/4242", headers=auth(admin_token)).status_code == 404


# ===========================================================================
# Filter presets
# ===========================================================================
class TestFilterPresetRoutes:
    CRITERIA = [{"field": "status", "operator": "equals", "value": "ACTIVE"}]

    def test_crud(self, client, admin_token):
        headers = auth(admin_token)
        resp = client.post("/api/admin/filter-presets", json={"name": "Active", "criteria": self.CRITERIA}, headers=headers)
        assert resp.status_code == 201
        preset_id = resp.json()["preset"]["id"]

        assert client.get(f"/api/admin/filter-presets/{preset_id}", headers=headers).json()["preset"]["name"] == "Active"
        resp = client.put(f"/api/admin/filter-presets/{preset_id}", json={"name": "Live"}, headers=headers)
        assert resp.json()["preset"]["name"] == "Live"
        assert len(client.get("/api/admin/filter-presets", headers=headers).json()["presets"]) == 1
        assert client.delete(f"/api/admin/filter-presets/{preset_id}", headers=headers).json() == {"ok": True}
        assert client.get(f"/api/admin/filter-presets/{preset_id}", headers=headers).status_code == 404

    def test_other_admin_cannot_see_preset(self, client, admin_token):
        resp = client.post(
            "/api/admin/filter-presets", json={"name": "Mine", "criteria": self.CRITERIA}, headers=auth(admin_token)
        )
        preset_id = resp.json()["preset"]["id"]
        other = auth(make_admin_token("admin-2"))
        assert client.get(f"/api/admin/filter-presets/{preset_id}", headers=other).status_code == 404
        assert client.delete(f"/api/admin/filter-presets/{preset_id}", headers=other).status_code == 404


# ===========================================================================
# Workflows
# ===========================================================================
class TestWorkflowRoutes:
    WORKFLOW = {
        "name": "Welcome bonus",
        "trigger": {"type": "user_registered", "conditions": []},
        "actions": [{"type": "assign_points", "config": {"points": 10}}],
    }

    def test_crud_and_test_run(self, client, db_engine, admin_token):
        headers = auth(admin_token)
        make_user(db_engine)

        resp = client.post("/api/admin/workflows", json=self.WORKFLOW, headers=headers)
        assert resp.status_code == 201
        workflow_id = resp.json()["workflow"]["id"]

        assert len(client.get("/api/admin/workflows", headers=headers).json()["workflows"]) == 1
        resp = client.put(f"/api/admin/workflows/{workflow_id}", json={"is_active": False}, headers=headers)
        assert resp.json()["workflow"]["is_active"] is False

        resp = client.post(
            f"/api/admin/workflows/{workflow_id}/test", json={"context": {"user_id": "user-1"}}, headers=headers
        )
        result = resp.json()["result"]
        assert result["success"] is True

        stats = client.get(f"/api/admin/workflows/{workflow_id}/stats", headers=headers).json()["stats"]
        assert stats["total_executions"] >= 1

        assert client.delete(f"/api/admin/workflows/{workflow_id}", headers=headers).json() == {"ok": True}
        assert client.get(f"/api/admin/workflows/{workflow_id}", headers=headers).status_code == 404

    def test_invalid_workflow_lists_errors(self, client, admin_token):
        bad = {**self.WORKFLOW, "actions": []}
        resp = client.post("/api/admin/workflows", json=bad, headers=auth(admin_token))
        assert resp.status_code == 400
        assert "At least one action is required" in resp.json()["errors"]

    def test_stats_for_missing_workflow(self, client, admin_token):
        assert client.get("/api/admin/workflows/77/stats", headers=auth(admin_token)).status_code == 404
