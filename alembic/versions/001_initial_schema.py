"""Initial schema: players, content, sessions, rewards, leaderboard, workflows.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Players & content ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS players (
            id VARCHAR(36) PRIMARY KEY,
            stake_key VARCHAR(128) UNIQUE,
            anon_id VARCHAR(64) UNIQUE,
            username VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS seasons (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            code VARCHAR(8) NOT NULL,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT false
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS questions (
            id VARCHAR(36) PRIMARY KEY,
            category_id VARCHAR(64) NOT NULL REFERENCES categories(id),
            text TEXT NOT NULL,
            options JSONB NOT NULL,
            correct_index INTEGER NOT NULL,
            explanation TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_questions_category_created
        ON questions(category_id, created_at)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS question_flags (
            id VARCHAR(36) PRIMARY KEY,
            question_id VARCHAR(36) NOT NULL REFERENCES questions(id),
            player_id VARCHAR(36) NOT NULL REFERENCES players(id),
            session_id VARCHAR(36),
            reason TEXT NOT NULL,
            comment TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT question_flags_question_player_key UNIQUE (question_id, player_id)
        )
    """)

    # --- Sessions & eligibilities ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id VARCHAR(36) PRIMARY KEY,
            player_id VARCHAR(36) NOT NULL REFERENCES players(id),
            stake_key VARCHAR(128),
            anon_id VARCHAR(64),
            category_id VARCHAR(64) NOT NULL REFERENCES categories(id),
            season_id VARCHAR(64),
            status VARCHAR(16) NOT NULL,
            score INTEGER NOT NULL DEFAULT 0,
            questions_served INTEGER NOT NULL,
            total_ms BIGINT NOT NULL DEFAULT 0,
            answers JSONB DEFAULT '[]',
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_sessions_player_started ON sessions(player_id, started_at)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_sessions_stake_category ON sessions(stake_key, category_id)")
    op.execute("""
        CREATE TABLE IF NOT EXISTS eligibilities (
            id VARCHAR(36) PRIMARY KEY,
            type VARCHAR(16) NOT NULL DEFAULT 'category',
            player_id VARCHAR(36) NOT NULL REFERENCES players(id),
            stake_key VARCHAR(128),
            anon_id VARCHAR(64),
            category_id VARCHAR(64),
            season_id VARCHAR(64),
            session_id VARCHAR(36),
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            expires_at TIMESTAMPTZ NOT NULL,
            used_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_eligibilities_player_status ON eligibilities(player_id, status)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_eligibilities_status_expires ON eligibilities(status, expires_at)")

    # --- Catalog, operations & tokens ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS catalog (
            id VARCHAR(36) PRIMARY KEY,
            category_id VARCHAR(64) NOT NULL REFERENCES categories(id),
            name VARCHAR(128) NOT NULL,
            description TEXT,
            image_cid VARCHAR(128),
            attributes JSONB DEFAULT '{}',
            tier VARCHAR(16) NOT NULL DEFAULT 'category',
            is_minted BOOLEAN NOT NULL DEFAULT false,
            reserved_by VARCHAR(36),
            minted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_catalog_category_available
        ON catalog(category_id, tier, is_minted)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS mints (
            id VARCHAR(36) PRIMARY KEY,
            eligibility_id VARCHAR(36) UNIQUE NOT NULL REFERENCES eligibilities(id),
            catalog_id VARCHAR(36) NOT NULL REFERENCES catalog(id),
            player_id VARCHAR(36) NOT NULL REFERENCES players(id),
            stake_key VARCHAR(128),
            destination_address VARCHAR(128) NOT NULL,
            policy_id VARCHAR(56),
            token_name VARCHAR(64),
            asset_fingerprint VARCHAR(128),
            tx_hash VARCHAR(64),
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            confirmed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS forge_operations (
            id VARCHAR(36) PRIMARY KEY,
            idempotency_key VARCHAR(128) UNIQUE NOT NULL,
            type VARCHAR(16) NOT NULL,
            player_id VARCHAR(36),
            stake_key VARCHAR(128) NOT NULL,
            category_id VARCHAR(64),
            season_id VARCHAR(64),
            destination_address VARCHAR(128) NOT NULL,
            input_token_ids JSONB DEFAULT '[]',
            input_fingerprints JSONB DEFAULT '[]',
            output_token_name VARCHAR(64),
            output_asset_fingerprint VARCHAR(128),
            burn_tx_hash VARCHAR(64),
            mint_tx_hash VARCHAR(64),
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            confirmed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS player_tokens (
            id VARCHAR(36) PRIMARY KEY,
            stake_key VARCHAR(128) NOT NULL,
            policy_id VARCHAR(56) NOT NULL,
            asset_fingerprint VARCHAR(128) UNIQUE NOT NULL,
            token_name VARCHAR(64) NOT NULL,
            source VARCHAR(16) NOT NULL,
            category_id VARCHAR(64),
            season_id VARCHAR(64),
            tier VARCHAR(16) NOT NULL,
            type_code VARCHAR(64),
            status VARCHAR(16) NOT NULL DEFAULT 'confirmed',
            metadata JSONB DEFAULT '{}',
            mint_operation_id VARCHAR(36) UNIQUE,
            forge_operation_id VARCHAR(36) UNIQUE,
            minted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            burned_at TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_player_tokens_owner_status ON player_tokens(stake_key, status)")

    # --- Leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS season_points (
            id VARCHAR(36) PRIMARY KEY,
            season_id VARCHAR(64) NOT NULL,
            stake_key VARCHAR(128) NOT NULL,
            points INTEGER NOT NULL DEFAULT 0,
            perfect_count INTEGER NOT NULL DEFAULT 0,
            minted_count INTEGER NOT NULL DEFAULT 0,
            avg_answer_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
            sessions_used INTEGER NOT NULL DEFAULT 0,
            first_achieved_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT season_points_season_stake_key UNIQUE (season_id, stake_key)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id VARCHAR(36) PRIMARY KEY,
            season_id VARCHAR(64) NOT NULL,
            snapshot_date DATE NOT NULL,
            stake_key VARCHAR(128) NOT NULL,
            rank INTEGER NOT NULL,
            composite_score BIGINT NOT NULL,
            points INTEGER NOT NULL,
            minted_count INTEGER NOT NULL,
            perfect_count INTEGER NOT NULL,
            avg_answer_ms DOUBLE PRECISION NOT NULL,
            sessions_used INTEGER NOT NULL,
            first_achieved_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT lb_snapshots_season_date_stake_key UNIQUE (season_id, snapshot_date, stake_key)
        )
    """)

    # --- Reward workflows ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS workflow_runs (
            id VARCHAR(36) PRIMARY KEY,
            kind VARCHAR(16) NOT NULL,
            idempotency_key VARCHAR(128) UNIQUE NOT NULL,
            payload JSONB DEFAULT '{}',
            status VARCHAR(16) NOT NULL DEFAULT 'running',
            last_completed_step VARCHAR(64),
            step_results JSONB DEFAULT '{}',
            attempts INTEGER NOT NULL DEFAULT 0,
            wake_at TIMESTAMPTZ,
            deadline TIMESTAMPTZ NOT NULL,
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_workflow_runs_status_wake ON workflow_runs(status, wake_at)")


def downgrade() -> None:
    for table in (
        "workflow_runs",
        "leaderboard_snapshots",
        "season_points",
        "player_tokens",
        "forge_operations",
        "mints",
        "catalog",
        "eligibilities",
        "sessions",
        "question_flags",
        "questions",
        "seasons",
        "categories",
        "players",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
