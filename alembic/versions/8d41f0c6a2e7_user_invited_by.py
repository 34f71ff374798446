"""Referral attribution: users.invited_by

Revision ID: 8d41f0c6a2e7
Revises: 5c2e9a7b1f30
Create Date: 2026-10-18 14:03:27.550912

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '8d41f0c6a2e7'
down_revision: str | Sequence[str] | None = '5c2e9a7b1f30'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("users", sa.Column("invited_by", sa.String(32), nullable=True))
    op.create_index("ix_users_invited_by", "users", ["invited_by"])


def downgrade() -> None:
    op.drop_index("ix_users_invited_by", table_name="users")
    op.drop_column("users", "invited_by")
