"""Per-player phases: year stats, tournament history and local statistics."""

import logging
from datetime import date
from typing import Optional

from sqlmodel import select

from mafia_data_platform.ingestion.records import PlayerTournamentRecord, PlayerYearStatsRecord
from mafia_data_platform.models import (
    EntityType,
    Game,
    GameParticipation,
    ImportPhase,
    Player,
    PlayerRoleStats,
    PlayerTournament,
    PlayerYearStats,
    Tournament,
)
from mafia_data_platform.pipeline.phases.base import EntityPhase, PhaseContext, WorkUnit
from mafia_data_platform.storage.upsert import id_map, upsert

logger = logging.getLogger(__name__)


class PlayerYearStatsPhase(EntityPhase):
    """Phase 4: year-by-year stats from /stats/{id}?year=Y.

    Walks back from the current year to ``stats_start_year`` and stops after
    ``stats_empty_years_stop`` consecutive years without games.
    """

    phase = ImportPhase.PLAYER_YEAR_STATS
    entity_type = EntityType.PLAYER
    source_model = Player

    def __init__(self, current_year: Optional[int] = None):
        self.current_year = current_year

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        first_year = self.current_year or date.today().year
        stop_after = ctx.config.stats_empty_years_stop

        found: dict[int, PlayerYearStatsRecord] = {}
        empty_streak = 0
        for year in range(first_year, ctx.config.stats_start_year - 1, -1):
            ctx.token.raise_if_cancelled()

            page = ctx.client.fetch_page(f"/stats/{unit.entity_id}", {"year": year})
            record = PlayerYearStatsRecord.model_validate(page.fields)

            if not record.has_games:
                empty_streak += 1
                if empty_streak >= stop_after:
                    logger.debug(
                        f"[{self.name}] Player {unit.entity_id}: stopping at {year} "
                        f"({empty_streak} consecutive empty years)"
                    )
                    break
                continue

            empty_streak = 0
            found[year] = record

        with ctx.session() as session:
            player = self.load_entity(session, unit)
            for year, record in found.items():
                upsert(
                    session,
                    PlayerYearStats,
                    {"player_id": player.id, "year": year},
                    record.model_dump(),
                )

        self.count_rows(ctx, len(found), 0)
        return len(found)


class PlayerTournamentHistoryPhase(EntityPhase):
    """Phase 7: tournament results from /stats/{id}?tab=history."""

    phase = ImportPhase.PLAYER_TOURNAMENT_HISTORY
    entity_type = EntityType.PLAYER
    source_model = Player

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        page = ctx.client.fetch_page(f"/stats/{unit.entity_id}", {"tab": "history"})
        records, invalid = self.validate_rows(page.rows, PlayerTournamentRecord)

        written = 0
        with ctx.session() as session:
            player = self.load_entity(session, unit)
            tournaments = id_map(session, Tournament, [r.tournament_gomafia_id for r in records])

            for record in records:
                tournament_id = tournaments.get(record.tournament_gomafia_id)
                if tournament_id is None:
                    # Tournament outside the imported listing
                    invalid += 1
                    continue

                upsert(
                    session,
                    PlayerTournament,
                    {"player_id": player.id, "tournament_id": tournament_id},
                    {
                        "placement": record.placement,
                        "ga_points": record.ga_points,
                        "elo_change": record.elo_change,
                    },
                )
                written += 1

        self.count_rows(ctx, written, invalid)
        return written


class StatisticsPhase(EntityPhase):
    """Phase 10: aggregate totals from stored game participations (no fetch)."""

    phase = ImportPhase.STATISTICS
    entity_type = EntityType.PLAYER
    source_model = Player

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        with ctx.session() as session:
            player = self.load_entity(session, unit)
            seats = session.exec(
                select(GameParticipation, Game.played_on)
                .join(Game, GameParticipation.game_id == Game.id)
                .where(GameParticipation.player_id == player.id)
            ).all()

            by_role: dict[str, list] = {}
            for seat, played_on in seats:
                by_role.setdefault(seat.role or "UNKNOWN", []).append((seat, played_on))

            for role, role_seats in by_role.items():
                games_played = len(role_seats)
                wins = sum(1 for seat, _ in role_seats if seat.is_winner)
                dates = [played_on for _, played_on in role_seats if played_on is not None]
                upsert(
                    session,
                    PlayerRoleStats,
                    {"player_id": player.id, "role": role},
                    {
                        "games_played": games_played,
                        "wins": wins,
                        "losses": games_played - wins,
                        "win_rate": wins / games_played * 100,
                        "last_played": max(dates) if dates else None,
                    },
                )

            player.total_games = len(seats)
            player.wins = sum(1 for seat, _ in seats if seat.is_winner)
            player.losses = player.total_games - player.wins

        return len(by_role)
