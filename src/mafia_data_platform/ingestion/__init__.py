"""Ingestion layer for rating site data.

Provides:
- SiteClient: Rate-limited httpx client returning extracted page content
- parse_page: Generic BeautifulSoup row/field extraction
- Record schemas validating raw rows before they are stored
"""

from .client import ParsedPage, SiteClient, parse_page
from .records import (
    ChiefJudgeRecord,
    ClubMemberRecord,
    ClubRecord,
    GameParticipationRecord,
    JudgeRecord,
    PlayerRecord,
    PlayerTournamentRecord,
    PlayerYearStatsRecord,
    TournamentRecord,
)

__all__ = [
    "SiteClient",
    "ParsedPage",
    "parse_page",
    "ChiefJudgeRecord",
    "ClubMemberRecord",
    "ClubRecord",
    "GameParticipationRecord",
    "JudgeRecord",
    "PlayerRecord",
    "PlayerTournamentRecord",
    "PlayerYearStatsRecord",
    "TournamentRecord",
]
