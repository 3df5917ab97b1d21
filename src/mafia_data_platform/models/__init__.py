"""SQLModel ORM models.

Importing this package registers every table on SQLModel.metadata.
"""

from mafia_data_platform.models.entities import (
    Club,
    ClubMember,
    Game,
    GameParticipation,
    Judge,
    Player,
    PlayerRoleStats,
    PlayerTournament,
    PlayerYearStats,
    Tournament,
)
from mafia_data_platform.models.sync import (
    PHASE_ORDER,
    SINGLETON_ID,
    EntityType,
    ImportCheckpoint,
    ImportPhase,
    SkippedEntity,
    SkippedStatus,
    SyncLog,
    SyncLogStatus,
    SyncStatus,
    SyncType,
    utcnow,
)

__all__ = [
    # Site entities
    "Club",
    "ClubMember",
    "Game",
    "GameParticipation",
    "Judge",
    "Player",
    "PlayerRoleStats",
    "PlayerTournament",
    "PlayerYearStats",
    "Tournament",
    # Import bookkeeping
    "PHASE_ORDER",
    "SINGLETON_ID",
    "EntityType",
    "ImportCheckpoint",
    "ImportPhase",
    "SkippedEntity",
    "SkippedStatus",
    "SyncLog",
    "SyncLogStatus",
    "SyncStatus",
    "SyncType",
    "utcnow",
]
