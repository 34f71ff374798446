"""
sylvan.engine.fraud — Completion fraud scoring
================================================

Pure function over a :class:`FraudSignals` snapshot.  The completion
service gathers the counts (account age, velocity, shared IPs …) and
this module turns them into a 0–100 score, a review decision and an
auto-approval deadline.

Scoring table:

========================================  ======
Signal                                    Points
========================================  ======
Account younger than 1 h / 24 h / 72 h    20 / 10 / 5
Wallet not verified                       15
Neither Twitter nor Telegram verified     10
> 5 / > 3 completions in the last minute  20 / 10
> 50 / > 30 completions today             15 / 10
> 10 / > 5 other users on the same IP     10 / 5
Previous attempt at this task             10
========================================  ======
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sylvan.constants import FRAUD_REVIEW_THRESHOLD, RANDOM_REVIEW_RATE

MAX_SCORE = 100


class RiskLevel(enum.StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True, slots=True)
class FraudSignals:
    account_age: timedelta
    wallet_verified: bool
    twitter_verified: bool
    telegram_verified: bool
    completions_last_minute: int
    completions_today: int
    same_ip_users: int
    previous_attempts: int


@dataclass(frozen=True, slots=True)
class FraudAssessment:
    score: int
    needs_review: bool
    auto_approve_at: datetime
    reasons: list[str] = field(default_factory=list)

    @property
    def risk_level(self) -> RiskLevel:
        return get_fraud_risk_level(self.score)


def _score(signals: FraudSignals) -> tuple[int, list[str]]:
    score = 0
    reasons: list[str] = []

    if signals.account_age < timedelta(hours=1):
        score += 20
        reasons.append("account_age<1h")
    elif signals.account_age < timedelta(hours=24):
        score += 10
        reasons.append("account_age<24h")
    elif signals.account_age < timedelta(hours=72):
        score += 5
        reasons.append("account_age<72h")

    if not signals.wallet_verified:
        score += 15
        reasons.append("wallet_unverified")

    if not signals.twitter_verified and not signals.telegram_verified:
        score += 10
        reasons.append("no_social_verification")

    if signals.completions_last_minute > 5:
        score += 20
        reasons.append("velocity_minute>5")
    elif signals.completions_last_minute > 3:
        score += 10
        reasons.append("velocity_minute>3")

    if signals.completions_today > 50:
        score += 15
        reasons.append("velocity_day>50")
    elif signals.completions_today > 30:
        score += 10
        reasons.append("velocity_day>30")

    if signals.same_ip_users > 10:
        score += 10
        reasons.append("shared_ip>10")
    elif signals.same_ip_users > 5:
        score += 5
        reasons.append("shared_ip>5")

    if signals.previous_attempts > 0:
        score += 10
        reasons.append("repeat_attempt")

    return min(score, MAX_SCORE), reasons


def assess_completion(
    signals: FraudSignals,
    now: datetime,
    rng: random.Random | None = None,
) -> FraudAssessment:
    """Score a completion and decide whether a human must review it.

    A random 20 % of completions are sampled for review regardless of
    score.  Riskier completions wait longer before auto-approval.
    """
    rng = rng or random.Random()
    score, reasons = _score(signals)

    sampled = rng.random() < RANDOM_REVIEW_RATE
    needs_review = sampled or score >= FRAUD_REVIEW_THRESHOLD

    if score >= 60:
        delay = timedelta(hours=48)
    elif score >= 40:
        delay = timedelta(hours=36)
    else:
        delay = timedelta(hours=24)

    return FraudAssessment(
        score=score,
        needs_review=needs_review,
        auto_approve_at=now + delay,
        reasons=reasons,
    )


def get_fraud_risk_level(score: int) -> RiskLevel:
    if score < 20:
        return RiskLevel.LOW
    if score < 40:
        return RiskLevel.MEDIUM
    if score < 70:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL
