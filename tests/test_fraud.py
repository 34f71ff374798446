"""
tests/test_fraud.py — Completion fraud scoring
================================================
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from sylvan.engine.fraud import (
    FraudSignals,
    RiskLevel,
    assess_completion,
    get_fraud_risk_level,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

CLEAN = FraudSignals(
    account_age=timedelta(days=90),
    wallet_verified=True,
    twitter_verified=True,
    telegram_verified=False,
    completions_last_minute=0,
    completions_today=2,
    same_ip_users=0,
    previous_attempts=0,
)


def _rng(value: float) -> MagicMock:
    rng = MagicMock()
    rng.random.return_value = value
    return rng


class TestScoring:
    def test_clean_user_scores_zero(self):
        result = assess_completion(CLEAN, NOW, _rng(0.9))
        assert result.score == 0
        assert result.reasons == []
        assert not result.needs_review

    @pytest.mark.parametrize(
        ("age", "points"),
        [(timedelta(minutes=30), 20), (timedelta(hours=12), 10), (timedelta(hours=48), 5)],
    )
    def test_account_age(self, age, points):
        assert assess_completion(replace(CLEAN, account_age=age), NOW, _rng(0.9)).score == points

    def test_unverified_wallet_and_socials(self):
        signals = replace(CLEAN, wallet_verified=False, twitter_verified=False)
        result = assess_completion(signals, NOW, _rng(0.9))
        assert result.score == 25
        assert "wallet_unverified" in result.reasons
        assert "no_social_verification" in result.reasons

    @pytest.mark.parametrize(("per_minute", "points"), [(3, 0), (4, 10), (6, 20)])
    def test_minute_velocity(self, per_minute, points):
        signals = replace(CLEAN, completions_last_minute=per_minute)
        assert assess_completion(signals, NOW, _rng(0.9)).score == points

    @pytest.mark.parametrize(("today", "points"), [(30, 0), (31, 10), (51, 15)])
    def test_daily_velocity(self, today, points):
        assert assess_completion(replace(CLEAN, completions_today=today), NOW, _rng(0.9)).score == points

    @pytest.mark.parametrize(("users", "points"), [(5, 0), (6, 5), (11, 10)])
    def test_shared_ip(self, users, points):
        assert assess_completion(replace(CLEAN, same_ip_users=users), NOW, _rng(0.9)).score == points

    def test_repeat_attempt(self):
        assert assess_completion(replace(CLEAN, previous_attempts=2), NOW, _rng(0.9)).score == 10

    def test_score_capped_at_100(self):
        worst = FraudSignals(
            account_age=timedelta(0),
            wallet_verified=False,
            twitter_verified=False,
            telegram_verified=False,
            completions_last_minute=99,
            completions_today=999,
            same_ip_users=99,
            previous_attempts=5,
        )
        assert assess_completion(worst, NOW, _rng(0.9)).score == 100


class TestReviewDecision:
    def test_random_sample_forces_review(self):
        assert assess_completion(CLEAN, NOW, _rng(0.1)).needs_review

    def test_threshold_forces_review(self):
        signals = replace(CLEAN, wallet_verified=False, twitter_verified=False, account_age=timedelta(hours=2))
        result = assess_completion(signals, NOW, _rng(0.99))
        assert result.score == 35
        assert not result.needs_review

        result = assess_completion(replace(signals, previous_attempts=1), NOW, _rng(0.99))
        assert result.score == 45
        assert result.needs_review

    @pytest.mark.parametrize(
        ("signals", "hours"),
        [
            (CLEAN, 24),
            (replace(CLEAN, wallet_verified=False, twitter_verified=False, completions_today=40,
                     previous_attempts=1), 36),
            (replace(CLEAN, wallet_verified=False, twitter_verified=False, account_age=timedelta(0),
                     completions_last_minute=10), 48),
        ],
    )
    def test_auto_approve_delay(self, signals, hours):
        assert assess_completion(signals, NOW, _rng(0.9)).auto_approve_at == NOW + timedelta(hours=hours)


class TestRiskLevel:
    @pytest.mark.parametrize(
        ("score", "level"),
        [(0, RiskLevel.LOW), (19, RiskLevel.LOW), (20, RiskLevel.MEDIUM), (40, RiskLevel.HIGH),
         (69, RiskLevel.HIGH), (70, RiskLevel.CRITICAL), (100, RiskLevel.CRITICAL)],
    )
    def test_levels(self, score, level):
        assert get_fraud_risk_level(score) is level

    def test_assessment_exposes_level(self):
        assert assess_completion(CLEAN, NOW, _rng(0.9)).risk_level is RiskLevel.LOW
