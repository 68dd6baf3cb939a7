"""single_active_sync_job

Revision ID: 1b2c3d4e5f6a
Revises: 0a1b2c3d4e5f
Create Date: 2026-10-20 10:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "1b2c3d4e5f6a"
down_revision: Union[str, None] = "0a1b2c3d4e5f"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # TRUE while pending/running, NULL once terminal; NULLs never collide
    op.add_column("sync_jobs", sa.Column("active_lock", sa.Boolean, nullable=True))
    op.execute(
        "UPDATE sync_jobs SET active_lock = true "
        "WHERE id = (SELECT id FROM sync_jobs WHERE status IN ('pending', 'running') "
        "ORDER BY created_at DESC LIMIT 1)"
    )
    op.create_unique_constraint("uq_sync_jobs_active_lock", "sync_jobs", ["active_lock"])


def downgrade() -> None:
    op.drop_constraint("uq_sync_jobs_active_lock", "sync_jobs", type_="unique")
    op.drop_column("sync_jobs", "active_lock")
