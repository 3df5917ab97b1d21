"""Validated record schemas for raw rows extracted from site pages.

Rows arrive as ``dict[str, str]`` from the HTML extraction. Each schema
normalises cell text (blank and dash cells become None, "1 234,5" becomes
1234.5, "01.05.2024" becomes a date) and validates it. A row that fails
validation raises ``pydantic.ValidationError``.
"""

import re
from datetime import date, datetime
from typing import Annotated, Any, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    field_validator,
    model_validator,
)

_EMPTY_CELLS = {"", "-", "—", "–"}
_NUMBER_NOISE = re.compile(r"[\s +]")


class SiteRecord(BaseModel):
    """Base schema: trims cell text and maps empty cells to None."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def clean_cells(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            if isinstance(value, str):
                value = value.strip()
                if value in _EMPTY_CELLS:
                    value = None
            cleaned[key] = value
        return cleaned


def _to_number(value: Any) -> Any:
    if isinstance(value, str):
        value = _NUMBER_NOISE.sub("", value).replace(",", ".").rstrip("%")
    return value


def _to_date(value: Any) -> Any:
    if isinstance(value, str) and re.fullmatch(r"\d{2}\.\d{2}\.\d{4}", value):
        return datetime.strptime(value, "%d.%m.%Y").date()
    return value


def _to_count(value: Any) -> Any:
    return 0 if value is None else _to_number(value)


NumberCell = Annotated[Optional[float], BeforeValidator(_to_number)]
IntCell = Annotated[Optional[NonNegativeInt], BeforeValidator(_to_number)]
PlacementCell = Annotated[Optional[PositiveInt], BeforeValidator(_to_number)]
StarsCell = Annotated[Optional[Annotated[int, Field(ge=0, le=10)]], BeforeValidator(_to_number)]
CountCell = Annotated[NonNegativeInt, BeforeValidator(_to_count)]
DateCell = Annotated[Optional[date], BeforeValidator(_to_date)]
PointsCell = Annotated[float, BeforeValidator(_to_count)]


# ============================================================================
# LISTING ROWS
# ============================================================================


class ClubRecord(SiteRecord):
    gomafia_id: str = Field(alias="id", min_length=1)
    name: str = Field(min_length=1)
    region: Optional[str] = None
    president: Optional[str] = None
    elo: NumberCell = None


class PlayerRecord(SiteRecord):
    gomafia_id: str = Field(alias="id", min_length=1)
    name: str = Field(min_length=1)
    region: Optional[str] = None
    club: Optional[str] = None
    elo: NumberCell = None


class TournamentRecord(SiteRecord):
    gomafia_id: str = Field(alias="id", min_length=1)
    name: str = Field(min_length=1)
    city: Optional[str] = None
    start_date: DateCell = None
    end_date: DateCell = None
    stars: StarsCell = None
    status: Optional[str] = None
    participants: IntCell = None


class JudgeRecord(SiteRecord):
    gomafia_id: str = Field(alias="id", min_length=1)
    name: str = Field(min_length=1)
    category: Optional[str] = None
    region: Optional[str] = None
    games_judged: IntCell = None


# ============================================================================
# DETAIL PAGE ROWS
# ============================================================================


class ClubMemberRecord(SiteRecord):
    """Member row on a club page."""

    player_gomafia_id: str = Field(alias="id", min_length=1)
    name: Optional[str] = None


class PlayerYearStatsRecord(SiteRecord):
    """Standalone fields of a player stats page for one year."""

    total_games: CountCell = 0
    don_games: CountCell = 0
    mafia_games: CountCell = 0
    sheriff_games: CountCell = 0
    civilian_games: CountCell = 0
    elo_rating: NumberCell = None
    extra_points: PointsCell = 0.0

    @property
    def has_games(self) -> bool:
        return self.total_games > 0


class ChiefJudgeRecord(SiteRecord):
    """Chief judge fields of a tournament page."""

    chief_judge: str = Field(min_length=1)
    chief_judge_id: Optional[str] = None


class PlayerTournamentRecord(SiteRecord):
    """Row of a player's tournament history tab."""

    tournament_gomafia_id: str = Field(alias="id", min_length=1)
    placement: PlacementCell = None
    ga_points: NumberCell = None
    elo_change: NumberCell = None


class GameParticipationRecord(SiteRecord):
    """Row of a tournament games tab: one player seat in one game."""

    row_id: str = Field(alias="id", min_length=1)
    game_id: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    role: Optional[str] = None
    points: NumberCell = None
    is_winner: bool = False
    table_number: PlacementCell = None
    played_on: DateCell = None
    winner_team: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def normalise_role(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("is_winner", mode="before")
    @classmethod
    def parse_winner(cls, v: Any) -> Any:
        if v is None:
            return False
        if isinstance(v, str):
            return v.lower() in {"1", "true", "yes", "win", "победа"}
        return v
