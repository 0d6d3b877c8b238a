"""Reward submission state: stored signed transactions, TTLs, run generations.

Revision ID: 002_reward_submission_state
Revises: 001_initial_schema
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_reward_submission_state"
down_revision: str | None = "001_initial_schema"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("ALTER TABLE sessions ADD COLUMN IF NOT EXISTS avg_answer_ms DOUBLE PRECISION NOT NULL DEFAULT 0")

    op.execute("ALTER TABLE mints ADD COLUMN IF NOT EXISTS signed_tx TEXT")
    op.execute("ALTER TABLE mints ADD COLUMN IF NOT EXISTS tx_ttl BIGINT")

    op.execute("ALTER TABLE forge_operations ADD COLUMN IF NOT EXISTS unsigned_tx TEXT")
    op.execute("ALTER TABLE forge_operations ADD COLUMN IF NOT EXISTS signed_tx TEXT")
    op.execute("ALTER TABLE forge_operations ADD COLUMN IF NOT EXISTS tx_ttl BIGINT")

    op.execute("ALTER TABLE workflow_runs ADD COLUMN IF NOT EXISTS generation INTEGER NOT NULL DEFAULT 0")
    # Failed mints still holding a catalog reservation are re-checked against the ledger
    op.execute("CREATE INDEX IF NOT EXISTS idx_mints_status ON mints(status)")


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_mints_status")
    op.execute("ALTER TABLE workflow_runs DROP COLUMN IF EXISTS generation")
    for column in ("tx_ttl", "signed_tx", "unsigned_tx"):
        op.execute(f"ALTER TABLE forge_operations DROP COLUMN IF EXISTS {column}")
    for column in ("tx_ttl", "signed_tx"):
        op.execute(f"ALTER TABLE mints DROP COLUMN IF EXISTS {column}")
    op.execute("ALTER TABLE sessions DROP COLUMN IF EXISTS avg_answer_ms")
