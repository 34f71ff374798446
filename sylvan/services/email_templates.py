"""
sylvan.services.email_templates — Transactional email builders
================================================================

All message layout lives here so the services only supply data.  Each
builder returns a :class:`RenderedEmail` with an HTML body and a plain
text alternative.
"""

from __future__ import annotations

from dataclasses import dataclass
from html import escape

from sylvan.config import SylvanConfig


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    template: str
    subject: str
    html: str
    text: str


def _layout(cfg: SylvanConfig, heading: str, paragraphs: list[str], cta: tuple[str, str] | None = None) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    if cta:
        label, url = cta
        body += (
            f'<p><a href="{escape(url)}" style="background:#2f855a;color:#fff;'
            f'padding:10px 18px;border-radius:6px;text-decoration:none">{escape(label)}</a></p>'
        )
    footer = f"<p style=\"color:#718096;font-size:12px\">{escape(cfg.app_name)}"
    if cfg.support_email:
        footer += f" · {escape(cfg.support_email)}"
    footer += f' · <a href="{escape(cfg.app_url)}/settings/email">Email preferences</a></p>'
    return (
        "<!doctype html><html><body style=\"font-family:sans-serif\">"
        f"<h1>{escape(heading)}</h1>{body}<hr>{footer}</body></html>"
    )


def build_welcome_email(cfg: SylvanConfig, username: str | None) -> RenderedEmail:
    name = username or "there"
    return RenderedEmail(
        template="welcome",
        subject=f"Welcome to {cfg.app_name}!",
        html=_layout(
            cfg,
            f"Welcome, {name}!",
            [
                f"Thanks for joining {escape(cfg.app_name)}.",
                "Complete tasks to earn points towards the airdrop.",
            ],
            cta=("View tasks", f"{cfg.app_url}/tasks"),
        ),
        text=(
            f"Welcome, {name}!\n\n"
            f"Thanks for joining {cfg.app_name}. Complete tasks to earn points.\n"
            f"{cfg.app_url}/tasks\n"
        ),
    )


def build_task_completion_email(
    cfg: SylvanConfig,
    username: str | None,
    task_title: str,
    points: int,
    total_points: int,
    pending: bool = False,
) -> RenderedEmail:
    name = username or "there"
    if pending:
        line = f"Your completion of <b>{escape(task_title)}</b> is under review."
        plain = f"Your completion of {task_title} is under review."
    else:
        line = f"You earned <b>{points}</b> points for <b>{escape(task_title)}</b>."
        plain = f"You earned {points} points for {task_title}."
    return RenderedEmail(
        template="task_completion",
        subject="Task completed!" if not pending else "Task submitted for review",
        html=_layout(
            cfg,
            f"Nice work, {name}!",
            [line, f"Total points: <b>{total_points}</b>"],
            cta=("Keep going", f"{cfg.app_url}/tasks"),
        ),
        text=f"Nice work, {name}!\n\n{plain}\nTotal points: {total_points}\n",
    )


def build_admin_review_email(
    cfg: SylvanConfig,
    *,
    review_type: str,
    item_id: str,
    user_email: str,
    fraud_score: int,
    reasons: list[str],
) -> RenderedEmail:
    high_risk = fraud_score >= 60
    subject = (
        f"[{cfg.app_name}] Fraud alert: {review_type} {item_id}"
        if high_risk
        else f"[{cfg.app_name}] Review needed: {review_type} {item_id}"
    )
    reason_text = ", ".join(reasons) or "random sample"
    return RenderedEmail(
        template="admin_fraud_alert" if high_risk else "admin_review_needed",
        subject=subject,
        html=_layout(
            cfg,
            "Fraud alert" if high_risk else "Review needed",
            [
                f"{escape(review_type)} <code>{escape(item_id)}</code> by {escape(user_email)}",
                f"Fraud score: <b>{fraud_score}</b>",
                f"Signals: {escape(reason_text)}",
            ],
            cta=("Open review queue", f"{cfg.app_url}/admin/completions"),
        ),
        text=(
            f"{review_type} {item_id} by {user_email}\n"
            f"Fraud score: {fraud_score}\nSignals: {reason_text}\n"
        ),
    )


def build_custom_email(
    cfg: SylvanConfig,
    *,
    subject: str,
    message: str,
    template: str = "custom",
) -> RenderedEmail:
    """Free-form email used by workflow ``send_email`` actions."""
    paragraphs = [escape(p) for p in message.split("\n\n") if p.strip()] or [escape(subject)]
    return RenderedEmail(
        template=template,
        subject=subject,
        html=_layout(cfg, subject, paragraphs),
        text=f"{message or subject}\n",
    )
