"""Phases that visit the detail page of each club or tournament."""

import logging

from mafia_data_platform.ingestion.records import (
    ChiefJudgeRecord,
    ClubMemberRecord,
    GameParticipationRecord,
)
from mafia_data_platform.models import (
    Club,
    ClubMember,
    EntityType,
    Game,
    GameParticipation,
    ImportPhase,
    Player,
    Tournament,
)
from mafia_data_platform.pipeline.phases.base import EntityPhase, PhaseContext, WorkUnit
from mafia_data_platform.storage.upsert import id_map, upsert

logger = logging.getLogger(__name__)


class ClubMembersPhase(EntityPhase):
    """Phase 3: club rosters from /club/{id}."""

    phase = ImportPhase.CLUB_MEMBERS
    entity_type = EntityType.CLUB
    source_model = Club

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        page = ctx.client.fetch_page(f"/club/{unit.entity_id}")
        records, invalid = self.validate_rows(page.rows, ClubMemberRecord)

        written = 0
        with ctx.session() as session:
            club = self.load_entity(session, unit)
            players = id_map(session, Player, [r.player_gomafia_id for r in records])

            for record in records:
                player_id = players.get(record.player_gomafia_id)
                if player_id is None:
                    # Member not present in the player rating
                    invalid += 1
                    continue

                upsert(session, ClubMember, {"club_id": club.id, "player_id": player_id}, {})
                player = session.get(Player, player_id)
                player.club_id = club.id
                written += 1

        self.count_rows(ctx, written, invalid)
        return written


class TournamentChiefJudgePhase(EntityPhase):
    """Phase 6: chief judge of each tournament from /tournament/{id}."""

    phase = ImportPhase.TOURNAMENT_CHIEF_JUDGE
    entity_type = EntityType.TOURNAMENT
    source_model = Tournament

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        page = ctx.client.fetch_page(f"/tournament/{unit.entity_id}")

        if not page.fields.get("chief_judge"):
            logger.debug(f"[{self.name}] Tournament {unit.entity_id} lists no chief judge")
            return 0

        # Raises ValidationError (permanent) on malformed fields
        record = ChiefJudgeRecord.model_validate(page.fields)

        with ctx.session() as session:
            tournament = self.load_entity(session, unit)
            tournament.chief_judge_name = record.chief_judge
            tournament.chief_judge_gomafia_id = record.chief_judge_id

        self.count_rows(ctx, 1, 0)
        return 1


class GamesPhase(EntityPhase):
    """Phase 9: games and seats from /tournament/{id}?tab=games."""

    phase = ImportPhase.GAMES
    entity_type = EntityType.TOURNAMENT
    source_model = Tournament

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        page = ctx.client.fetch_page(f"/tournament/{unit.entity_id}", {"tab": "games"})
        records, invalid = self.validate_rows(page.rows, GameParticipationRecord)

        written = 0
        with ctx.session() as session:
            tournament = self.load_entity(session, unit)
            players = id_map(session, Player, [r.player_id for r in records])
            games: dict[str, int] = {}

            for record in records:
                if record.game_id not in games:
                    game = upsert(
                        session,
                        Game,
                        {"gomafia_id": record.game_id},
                        {
                            "tournament_id": tournament.id,
                            "played_on": record.played_on or tournament.start_date,
                            "table_number": record.table_number,
                            "winner_team": record.winner_team,
                        },
                    )
                    games[record.game_id] = game.id

                player_id = players.get(record.player_id)
                if player_id is None:
                    invalid += 1
                    continue

                upsert(
                    session,
                    GameParticipation,
                    {"game_id": games[record.game_id], "player_id": player_id},
                    {"role": record.role, "is_winner": record.is_winner, "points": record.points},
                )
                written += 1

        self.count_rows(ctx, written, invalid)
        return written
