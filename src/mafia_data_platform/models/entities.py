"""ORM models for entities imported from the rating site.

Every table carries a stable external key (gomafia_id or a natural
composite key) with a unique constraint. Writes go through the upsert
helpers in mafia_data_platform.storage.upsert and are always keyed by the
external key, never by the surrogate id.
"""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from mafia_data_platform.models.sync import JSONType, utcnow


# ============================================================================
# CLUBS AND PLAYERS
# ============================================================================


class Club(SQLModel, table=True):
    """Club listed on the clubs rating tab."""

    __tablename__ = "clubs"

    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(sa_type=String(50), unique=True, nullable=False)
    name: str = Field(sa_type=String(255), nullable=False, index=True)
    region: Optional[str] = Field(default=None, sa_type=String(255))
    president_name: Optional[str] = Field(default=None, sa_type=String(255))
    elo: Optional[float] = Field(default=None, sa_type=Float)
    last_synced_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class Player(SQLModel, table=True):
    """Player listed on the main rating page."""

    __tablename__ = "players"

    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(sa_type=String(50), unique=True, nullable=False)
    name: str = Field(sa_type=String(255), nullable=False, index=True)
    region: Optional[str] = Field(default=None, sa_type=String(255))
    club_id: Optional[int] = Field(default=None, foreign_key="clubs.id")
    elo: Optional[float] = Field(default=None, sa_type=Float)

    # Aggregated by the STATISTICS phase
    total_games: int = Field(default=0, sa_type=Integer, nullable=False)
    wins: int = Field(default=0, sa_type=Integer, nullable=False)
    losses: int = Field(default=0, sa_type=Integer, nullable=False)

    last_synced_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class ClubMember(SQLModel, table=True):
    """Membership of a player in a club."""

    __tablename__ = "club_members"
    __table_args__ = (UniqueConstraint("club_id", "player_id", name="uq_club_member"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    club_id: int = Field(foreign_key="clubs.id", nullable=False)
    player_id: int = Field(foreign_key="players.id", nullable=False)


class PlayerYearStats(SQLModel, table=True):
    """Per-year game counts of a player."""

    __tablename__ = "player_year_stats"
    __table_args__ = (UniqueConstraint("player_id", "year", name="uq_player_year"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(foreign_key="players.id", nullable=False)
    year: int = Field(sa_type=Integer, nullable=False)
    total_games: int = Field(default=0, sa_type=Integer, nullable=False)
    don_games: int = Field(default=0, sa_type=Integer, nullable=False)
    mafia_games: int = Field(default=0, sa_type=Integer, nullable=False)
    sheriff_games: int = Field(default=0, sa_type=Integer, nullable=False)
    civilian_games: int = Field(default=0, sa_type=Integer, nullable=False)
    elo_rating: Optional[float] = Field(default=None, sa_type=Float)
    extra_points: float = Field(default=0.0, sa_type=Float, nullable=False)


class PlayerRoleStats(SQLModel, table=True):
    """Per-role aggregates computed locally from game participations."""

    __tablename__ = "player_role_stats"
    __table_args__ = (UniqueConstraint("player_id", "role", name="uq_player_role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(foreign_key="players.id", nullable=False)
    role: str = Field(sa_type=String(20), nullable=False)
    games_played: int = Field(default=0, sa_type=Integer, nullable=False)
    wins: int = Field(default=0, sa_type=Integer, nullable=False)
    losses: int = Field(default=0, sa_type=Integer, nullable=False)
    win_rate: float = Field(default=0.0, sa_type=Float, nullable=False)
    last_played: Optional[date] = Field(default=None, sa_type=Date)


# ============================================================================
# TOURNAMENTS, JUDGES, GAMES
# ============================================================================


class Tournament(SQLModel, table=True):
    """Tournament listed on the tournaments page."""

    __tablename__ = "tournaments"

    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(sa_type=String(50), unique=True, nullable=False)
    name: str = Field(sa_type=String(255), nullable=False)
    city: Optional[str] = Field(default=None, sa_type=String(255))
    start_date: Optional[date] = Field(default=None, sa_type=Date)
    end_date: Optional[date] = Field(default=None, sa_type=Date)
    stars: Optional[int] = Field(default=None, sa_type=Integer)
    status: Optional[str] = Field(default=None, sa_type=String(50))
    participants_count: Optional[int] = Field(default=None, sa_type=Integer)

    # Filled by the TOURNAMENT_CHIEF_JUDGE phase
    chief_judge_name: Optional[str] = Field(default=None, sa_type=String(255))
    chief_judge_gomafia_id: Optional[str] = Field(default=None, sa_type=String(50))

    last_synced_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class PlayerTournament(SQLModel, table=True):
    """A player's result in one tournament."""

    __tablename__ = "player_tournaments"
    __table_args__ = (
        UniqueConstraint("player_id", "tournament_id", name="uq_player_tournament"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(foreign_key="players.id", nullable=False)
    tournament_id: int = Field(foreign_key="tournaments.id", nullable=False)
    placement: Optional[int] = Field(default=None, sa_type=Integer)
    ga_points: Optional[float] = Field(default=None, sa_type=Float)
    elo_change: Optional[float] = Field(default=None, sa_type=Float)


class Judge(SQLModel, table=True):
    """Judge listed on the judges page."""

    __tablename__ = "judges"

    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(sa_type=String(50), unique=True, nullable=False)
    name: str = Field(sa_type=String(255), nullable=False)
    category: Optional[str] = Field(default=None, sa_type=String(100))
    region: Optional[str] = Field(default=None, sa_type=String(255))
    games_judged: Optional[int] = Field(default=None, sa_type=Integer)
    last_synced_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class Game(SQLModel, table=True):
    """A single game played at a tournament."""

    __tablename__ = "games"

    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(sa_type=String(50), unique=True, nullable=False)
    tournament_id: Optional[int] = Field(default=None, foreign_key="tournaments.id")
    played_on: Optional[date] = Field(default=None, sa_type=Date)
    table_number: Optional[int] = Field(default=None, sa_type=Integer)
    winner_team: Optional[str] = Field(default=None, sa_type=String(20))
    raw: Optional[dict[str, Any]] = Field(default=None, sa_type=JSONType)


class GameParticipation(SQLModel, table=True):
    """A player's seat in a game."""

    __tablename__ = "game_participations"
    __table_args__ = (UniqueConstraint("game_id", "player_id", name="uq_game_player"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="games.id", nullable=False)
    player_id: int = Field(foreign_key="players.id", nullable=False)
    role: Optional[str] = Field(default=None, sa_type=String(20))
    is_winner: bool = Field(default=False, sa_type=Boolean, nullable=False)
    points: Optional[float] = Field(default=None, sa_type=Float)
