"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# A valid JWT_SECRET must exist before sylvan.api.deps is imported, since
# the secret is validated at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# SQLite has no JSONB; render it as TEXT (SQLAlchemy's JSON handling does
# the rest).  BigInteger → INTEGER so autoincrement primary keys work.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from sylvan.config import SylvanConfig  # noqa: E402
from sylvan.database.models import (  # noqa: E402
    Base,
    Task,
    TaskType,
    User,
    UserRole,
    UserStatus,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB / BigInteger (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Sylvan tables.

    StaticPool keeps one shared connection so worker threads
    (``asyncio.to_thread`` in ``run_db`` and the rate limiter) see the
    same database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cfg() -> SylvanConfig:
    return SylvanConfig(
        app_name="Sylvan Token",
        app_url="https://app.sylvantoken.test",
        email_from="Sylvan <noreply@sylvantoken.test>",
        email_reply_to="support@sylvantoken.test",
    )


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    user_id: str = "user-1",
    *,
    email: str | None = None,
    role: UserRole = UserRole.USER,
    status: UserStatus = UserStatus.ACTIVE,
    wallet_verified: bool = True,
    twitter_verified: bool = True,
    telegram_verified: bool = True,
    total_points: int = 0,
    created_at: datetime | None = None,
) -> User:
    with Session(engine, expire_on_commit=False) as session:
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            username=user_id,
            role=role,
            status=status,
            wallet_verified=wallet_verified,
            twitter_verified=twitter_verified,
            telegram_verified=telegram_verified,
            total_points=total_points,
            created_at=created_at or NOW - timedelta(days=60),
        )
        session.add(user)
        session.commit()
        return user


def make_task(
    engine: Engine,
    *,
    title: str = "Follow us",
    points: int = 50,
    task_type: TaskType = TaskType.TWITTER_FOLLOW,
    is_active: bool = True,
    duration: int | None = None,
    expires_at: datetime | None = None,
    created_at: datetime | None = None,
    **extra,
) -> Task:
    with Session(engine, expire_on_commit=False) as session:
        task = Task(
            title=title,
            points=points,
            task_type=task_type,
            is_active=is_active,
            duration=duration,
            expires_at=expires_at,
            created_at=created_at or NOW - timedelta(hours=1),
            **extra,
        )
        session.add(task)
        session.commit()
        return task


# ---------------------------------------------------------------------------
# Tokens & API client
# ---------------------------------------------------------------------------
def make_token(sub: str = "user-1", *, role: str = "USER", email: str | None = None) -> str:
    """Create a JWT as the identity provider would."""
    import jwt

    from sylvan.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "email": email or f"{sub}@example.com", "role": role},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_admin_token(sub: str = "admin-1", email: str | None = None) -> str:
    return make_token(sub, role="ADMIN", email=email)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token() -> str:
    return make_admin_token()


@pytest.fixture
def user_token() -> str:
    return make_token()


@pytest.fixture
def client(db_engine, cfg):
    """TestClient wired to the SQLite engine with fresh rate limiters.

    The lifespan hook is not run (no ``with``), so the limiters are
    configured here instead.
    """
    from fastapi.testclient import TestClient

    from sylvan.api import rate_limit
    from sylvan.api.deps import get_config, get_engine
    from sylvan.api.main import app

    rate_limit.configure_rate_limiter(engine=db_engine)
    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: cfg

    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()
