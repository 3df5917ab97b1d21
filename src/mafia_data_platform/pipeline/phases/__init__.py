"""Import phases, in execution order.

Phase order (each phase reads what earlier phases wrote):

    CLUBS -> PLAYERS -> CLUB_MEMBERS -> PLAYER_YEAR_STATS -> TOURNAMENTS
        -> TOURNAMENT_CHIEF_JUDGE -> PLAYER_TOURNAMENT_HISTORY -> JUDGES
        -> GAMES -> STATISTICS
"""

from mafia_data_platform.models import PHASE_ORDER, ImportPhase
from mafia_data_platform.pipeline.phases.base import (
    EntityPhase,
    ListingPhase,
    Phase,
    PhaseContext,
    PhaseResult,
    WorkUnit,
)
from mafia_data_platform.pipeline.phases.details import (
    ClubMembersPhase,
    GamesPhase,
    TournamentChiefJudgePhase,
)
from mafia_data_platform.pipeline.phases.listings import (
    ClubsPhase,
    JudgesPhase,
    PlayersPhase,
    TournamentsPhase,
)
from mafia_data_platform.pipeline.phases.players import (
    PlayerTournamentHistoryPhase,
    PlayerYearStatsPhase,
    StatisticsPhase,
)

PHASE_CLASSES: dict[ImportPhase, type[Phase]] = {
    ImportPhase.CLUBS: ClubsPhase,
    ImportPhase.PLAYERS: PlayersPhase,
    ImportPhase.CLUB_MEMBERS: ClubMembersPhase,
    ImportPhase.PLAYER_YEAR_STATS: PlayerYearStatsPhase,
    ImportPhase.TOURNAMENTS: TournamentsPhase,
    ImportPhase.TOURNAMENT_CHIEF_JUDGE: TournamentChiefJudgePhase,
    ImportPhase.PLAYER_TOURNAMENT_HISTORY: PlayerTournamentHistoryPhase,
    ImportPhase.JUDGES: JudgesPhase,
    ImportPhase.GAMES: GamesPhase,
    ImportPhase.STATISTICS: StatisticsPhase,
}


def build_phases() -> list[Phase]:
    """Instantiate every phase in execution order."""
    return [PHASE_CLASSES[phase]() for phase in PHASE_ORDER]


__all__ = [
    "PHASE_CLASSES",
    "build_phases",
    "Phase",
    "ListingPhase",
    "EntityPhase",
    "PhaseContext",
    "PhaseResult",
    "WorkUnit",
    "ClubsPhase",
    "PlayersPhase",
    "ClubMembersPhase",
    "PlayerYearStatsPhase",
    "TournamentsPhase",
    "TournamentChiefJudgePhase",
    "PlayerTournamentHistoryPhase",
    "JudgesPhase",
    "GamesPhase",
    "StatisticsPhase",
]
