"""Phases that walk paginated listings: clubs, players, tournaments, judges."""

import logging

from sqlmodel import Session, select

from mafia_data_platform.ingestion.records import ClubRecord, JudgeRecord, PlayerRecord, TournamentRecord
from mafia_data_platform.models import Club, ImportPhase, Judge, Player, Tournament, utcnow
from mafia_data_platform.pipeline.phases.base import ListingPhase
from mafia_data_platform.storage.upsert import upsert

logger = logging.getLogger(__name__)


class ClubsPhase(ListingPhase):
    """Phase 1: clubs from /rating?tab=clubs&page=N."""

    phase = ImportPhase.CLUBS
    path = "/rating"
    params = {"tab": "clubs"}
    schema = ClubRecord

    def store(self, session: Session, record: ClubRecord) -> None:
        upsert(
            session,
            Club,
            {"gomafia_id": record.gomafia_id},
            {
                "name": record.name,
                "region": record.region,
                "president_name": record.president,
                "elo": record.elo,
                "last_synced_at": utcnow(),
            },
        )


class PlayersPhase(ListingPhase):
    """Phase 2: players from /rating?page=N, linked to clubs by name."""

    phase = ImportPhase.PLAYERS
    path = "/rating"
    schema = PlayerRecord

    def store(self, session: Session, record: PlayerRecord) -> None:
        values = {
            "name": record.name,
            "region": record.region,
            "elo": record.elo,
            "last_synced_at": utcnow(),
        }

        if record.club:
            club_id = session.exec(select(Club.id).where(Club.name == record.club)).first()
            if club_id is not None:
                values["club_id"] = club_id
            else:
                logger.debug(f"[{self.name}] Club {record.club!r} of player {record.gomafia_id} not imported")

        upsert(session, Player, {"gomafia_id": record.gomafia_id}, values)


class TournamentsPhase(ListingPhase):
    """Phase 5: tournaments from /tournaments?page=N."""

    phase = ImportPhase.TOURNAMENTS
    path = "/tournaments"
    schema = TournamentRecord

    def store(self, session: Session, record: TournamentRecord) -> None:
        upsert(
            session,
            Tournament,
            {"gomafia_id": record.gomafia_id},
            {
                "name": record.name,
                "city": record.city,
                "start_date": record.start_date,
                "end_date": record.end_date,
                "stars": record.stars,
                "status": record.status,
                "participants_count": record.participants,
                "last_synced_at": utcnow(),
            },
        )


class JudgesPhase(ListingPhase):
    """Phase 8: judges from /judges?page=N."""

    phase = ImportPhase.JUDGES
    path = "/judges"
    schema = JudgeRecord

    def store(self, session: Session, record: JudgeRecord) -> None:
        upsert(
            session,
            Judge,
            {"gomafia_id": record.gomafia_id},
            {
                "name": record.name,
                "category": record.category,
                "region": record.region,
                "games_judged": record.games_judged,
                "last_synced_at": utcnow(),
            },
        )
