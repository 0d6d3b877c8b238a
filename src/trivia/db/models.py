"""ORM models for the durable store.

Tables are created by the Alembic migrations in ``alembic/versions``; the
models use extend_existing=True so they can be loaded next to reflected
metadata.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from trivia.db.base import Base, JSONType, UTCDateTime, new_id, utcnow

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

SESSION_STATUSES = ("active", "won", "lost", "forfeit")
ELIGIBILITY_STATUSES = ("active", "used", "expired")
ELIGIBILITY_TYPES = ("category", "master", "season")
OPERATION_STATUSES = ("pending", "confirmed", "failed")
TOKEN_STATUSES = ("confirmed", "burned")
TOKEN_SOURCES = ("mint", "forge")
TOKEN_TIERS = ("category", "ultimate", "master", "seasonal")
FORGE_TYPES = ("category", "master", "season")


# ---------------------------------------------------------------------------
# Players & content
# ---------------------------------------------------------------------------


class Player(Base):
    """A player, either connected (stake key) or guest (anon id)."""

    __tablename__ = "players"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stake_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    anon_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Category(Base):
    """Maps to the 'categories' table. The id is the category slug."""

    __tablename__ = "categories"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Season(Base):
    """Maps to the 'seasons' table."""

    __tablename__ = "seasons"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(8), nullable=False)  # e.g. WI1
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)


class Question(Base):
    """Maps to the 'questions' table. Populated by the content pipeline."""

    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_category_created", "category_id", "created_at"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    category_id: Mapped[str] = mapped_column(String(64), ForeignKey("categories.id"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    correct_index: Mapped[int] = mapped_column(Integer, nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class QuestionFlag(Base):
    """Player reports against a question."""

    __tablename__ = "question_flags"
    __table_args__ = (
        UniqueConstraint("question_id", "player_id", name="question_flags_question_player_key"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id"), nullable=False)
    player_id: Mapped[str] = mapped_column(String(36), ForeignKey("players.id"), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Sessions & eligibilities
# ---------------------------------------------------------------------------


class GameSession(Base):
    """A completed trivia session. Active sessions live only in Redis."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("idx_sessions_player_started", "player_id", "started_at"),
        Index("idx_sessions_stake_category", "stake_key", "category_id"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    player_id: Mapped[str] = mapped_column(String(36), ForeignKey("players.id"), nullable=False)
    stake_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    anon_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category_id: Mapped[str] = mapped_column(String(64), ForeignKey("categories.id"), nullable=False)
    season_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    questions_served: Mapped[int] = mapped_column(Integer, nullable=False)
    total_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    avg_answer_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    answers: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Eligibility(Base):
    """A one-time right to mint (or forge) earned by a perfect session."""

    __tablename__ = "eligibilities"
    __table_args__ = (
        Index("idx_eligibilities_player_status", "player_id", "status"),
        Index("idx_eligibilities_status_expires", "status", "expires_at"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="category")
    player_id: Mapped[str] = mapped_column(String(36), ForeignKey("players.id"), nullable=False)
    stake_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    anon_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    season_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Catalog, operations & tokens
# ---------------------------------------------------------------------------


class CatalogItem(Base):
    """A pre-generated collectible waiting to be minted."""

    __tablename__ = "catalog"
    __table_args__ = (
        Index("idx_catalog_category_available", "category_id", "tier", "is_minted"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    category_id: Mapped[str] = mapped_column(String(64), ForeignKey("categories.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_cid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="category")
    is_minted: Mapped[bool] = mapped_column(Boolean, default=False)
    reserved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    minted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class MintOperation(Base):
    """One mint per eligibility; the unique eligibility_id is the idempotency key."""

    __tablename__ = "mints"
    __table_args__ = (
        Index("idx_mints_status", "status"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    eligibility_id: Mapped[str] = mapped_column(String(36), ForeignKey("eligibilities.id"), unique=True, nullable=False)
    catalog_id: Mapped[str] = mapped_column(String(36), ForeignKey("catalog.id"), nullable=False)
    player_id: Mapped[str] = mapped_column(String(36), ForeignKey("players.id"), nullable=False)
    stake_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    destination_address: Mapped[str] = mapped_column(String(128), nullable=False)
    policy_id: Mapped[str | None] = mapped_column(String(56), nullable=True)
    token_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    asset_fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signed_tx: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_ttl: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ForgeOperation(Base):
    """Burn N owned tokens and mint one forged token in a single transaction.

    The player co-signs the transaction (it spends their outputs), so
    ``unsigned_tx`` waits for their witness before ``signed_tx`` is submitted.
    ``burn_tx_hash`` and ``mint_tx_hash`` both name that one transaction.
    """

    __tablename__ = "forge_operations"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    player_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    stake_key: Mapped[str] = mapped_column(String(128), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    season_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    destination_address: Mapped[str] = mapped_column(String(128), nullable=False)
    input_token_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    input_fingerprints: Mapped[list[str]] = mapped_column(JSONType, default=list)
    output_token_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    output_asset_fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    burn_tx_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mint_tx_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unsigned_tx: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_tx: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_ttl: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PlayerToken(Base):
    """A token the backend knows a player holds (minted or forged)."""

    __tablename__ = "player_tokens"
    __table_args__ = (
        Index("idx_player_tokens_owner_status", "stake_key", "status"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stake_key: Mapped[str] = mapped_column(String(128), nullable=False)
    policy_id: Mapped[str] = mapped_column(String(56), nullable=False)
    asset_fingerprint: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    token_name: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    season_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    type_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    token_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    mint_operation_id: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)
    forge_operation_id: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)
    minted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    burned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------


class SeasonPoints(Base):
    """Durable per-season totals. Source of truth for the global ladder."""

    __tablename__ = "season_points"
    __table_args__ = (
        UniqueConstraint("season_id", "stake_key", name="season_points_season_stake_key"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    season_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stake_key: Mapped[str] = mapped_column(String(128), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    perfect_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_answer_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sessions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_achieved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class LeaderboardSnapshot(Base):
    """Daily copy of a season ladder, used for historical standings."""

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (
        UniqueConstraint("season_id", "snapshot_date", "stake_key", name="lb_snapshots_season_date_stake_key"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    season_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    stake_key: Mapped[str] = mapped_column(String(128), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    composite_score: Mapped[int] = mapped_column(BigInteger, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    minted_count: Mapped[int] = mapped_column(Integer, nullable=False)
    perfect_count: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_answer_ms: Mapped[float] = mapped_column(Float, nullable=False)
    sessions_used: Mapped[int] = mapped_column(Integer, nullable=False)
    first_achieved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Reward workflows
# ---------------------------------------------------------------------------


class WorkflowRun(Base):
    """Persisted cursor of a reward workflow.

    ``last_completed_step`` plus ``step_results`` is the whole execution
    state: a resumed run skips every step already recorded there.
    """

    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("idx_workflow_runs_status_wake", "status", "wake_at"),
        {"extend_existing": True},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    last_completed_step: Mapped[str | None] = mapped_column(String(64), nullable=True)
    step_results: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wake_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
