"""ORM models for import bookkeeping tables.

These tables describe the import pipeline itself rather than site data:
- sync_logs: one row per import invocation (append-only history)
- sync_status: singleton "current" row read by the dashboard
- import_checkpoints: singleton "current" row used to resume a run
- skipped_entities: ledger of units that failed during a run
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

SINGLETON_ID = "current"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMERATIONS
# ============================================================================


class ImportPhase(str, Enum):
    """Import phases, declared in execution order."""

    CLUBS = "CLUBS"
    PLAYERS = "PLAYERS"
    CLUB_MEMBERS = "CLUB_MEMBERS"
    PLAYER_YEAR_STATS = "PLAYER_YEAR_STATS"
    TOURNAMENTS = "TOURNAMENTS"
    TOURNAMENT_CHIEF_JUDGE = "TOURNAMENT_CHIEF_JUDGE"
    PLAYER_TOURNAMENT_HISTORY = "PLAYER_TOURNAMENT_HISTORY"
    JUDGES = "JUDGES"
    GAMES = "GAMES"
    STATISTICS = "STATISTICS"


PHASE_ORDER: list[ImportPhase] = list(ImportPhase)


class SyncType(str, Enum):
    """Kinds of sync runs."""

    FULL = "FULL"


class SyncLogStatus(str, Enum):
    """Terminal and in-flight states of a sync log row."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class EntityType(str, Enum):
    """What a skipped unit refers to."""

    PLAYER = "player"
    CLUB = "club"
    TOURNAMENT = "tournament"
    PAGE = "page"


class SkippedStatus(str, Enum):
    """Lifecycle of a skipped entity row."""

    PENDING = "PENDING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ============================================================================
# RUN RECORDS
# ============================================================================


class SyncLog(SQLModel, table=True):
    """One row per import invocation. Never deleted."""

    __tablename__ = "sync_logs"

    id: str = Field(
        default_factory=lambda: str(uuid4()), sa_type=String(36), primary_key=True
    )
    type: str = Field(default=SyncType.FULL.value, sa_type=String(20), nullable=False)
    status: str = Field(
        default=SyncLogStatus.RUNNING.value, sa_type=String(20), nullable=False, index=True
    )
    start_time: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
    end_time: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    records_processed: int = Field(default=0, sa_type=Integer, nullable=False)
    errors: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)


class SyncStatus(SQLModel, table=True):
    """Singleton status row (id "current") polled by the dashboard."""

    __tablename__ = "sync_status"

    id: str = Field(default=SINGLETON_ID, sa_type=String(20), primary_key=True)
    is_running: bool = Field(default=False, sa_type=Boolean, nullable=False)
    progress: int = Field(default=0, sa_type=Integer, nullable=False)
    current_operation: Optional[str] = Field(default=None, sa_type=Text)
    sync_log_id: Optional[str] = Field(default=None, sa_type=String(36))
    last_sync_time: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_sync_type: Optional[str] = Field(default=None, sa_type=String(20))
    last_error: Optional[str] = Field(default=None, sa_type=Text)

    # Validation metrics of the most recent run
    total_records_processed: int = Field(default=0, sa_type=Integer, nullable=False)
    valid_records: int = Field(default=0, sa_type=Integer, nullable=False)
    invalid_records: int = Field(default=0, sa_type=Integer, nullable=False)
    validation_rate: Optional[float] = Field(default=None, sa_type=Float)

    # Set by a control surface that does not own the running worker
    cancel_requested: bool = Field(default=False, sa_type=Boolean, nullable=False)

    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


# ============================================================================
# RESUME STATE
# ============================================================================


class ImportCheckpoint(SQLModel, table=True):
    """Singleton checkpoint row (id "current").

    processed_ids only holds the unit ids of the current batch; units
    before the batch are covered by last_processed_id.
    """

    __tablename__ = "import_checkpoints"

    id: str = Field(default=SINGLETON_ID, sa_type=String(20), primary_key=True)
    current_phase: str = Field(sa_type=String(40), nullable=False)
    current_batch: int = Field(default=0, sa_type=Integer, nullable=False)
    last_processed_id: Optional[str] = Field(default=None, sa_type=String(100))
    processed_ids: list[str] = Field(default_factory=list, sa_type=JSONType, nullable=False)
    progress: int = Field(default=0, sa_type=Integer, nullable=False)
    last_updated: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


# ============================================================================
# SKIPPED ENTITY LEDGER
# ============================================================================


class SkippedEntity(SQLModel, table=True):
    """A unit that could not be imported.

    Exactly one of entity_id / page_number is set; unit_key mirrors it
    ("<entity_id>" or "page:<n>") and is part of the uniqueness key.
    """

    __tablename__ = "skipped_entities"
    __table_args__ = (
        UniqueConstraint("phase", "entity_type", "unit_key", name="uq_skipped_entity_unit"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    phase: str = Field(sa_type=String(40), nullable=False, index=True)
    entity_type: str = Field(sa_type=String(20), nullable=False)
    entity_id: Optional[str] = Field(default=None, sa_type=String(100), index=True)
    page_number: Optional[int] = Field(default=None, sa_type=Integer)
    unit_key: str = Field(sa_type=String(100), nullable=False)

    error_code: Optional[str] = Field(default=None, sa_type=String(20))
    error_message: Optional[str] = Field(default=None, sa_type=Text)
    error_details: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)

    retry_count: int = Field(default=0, sa_type=Integer, nullable=False)
    status: str = Field(
        default=SkippedStatus.PENDING.value, sa_type=String(20), nullable=False, index=True
    )
    sync_log_id: Optional[str] = Field(default=None, sa_type=String(36))

    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
    last_retry_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
