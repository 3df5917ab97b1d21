"""Post-import referential integrity checks."""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mafia_data_platform.database.session import session_scope
from mafia_data_platform.models import Game, GameParticipation, Player, PlayerTournament, Tournament

logger = logging.getLogger(__name__)


@dataclass
class IntegrityCheckResult:
    check_name: str
    passed: bool
    total_checked: int
    errors: list[str] = field(default_factory=list)


class IntegrityChecker:
    """Counts child rows whose parent rows are missing.

    Foreign keys are not enforced on every backend (SQLite), so the checks
    are plain anti-joins rather than relying on constraints.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _count(session: Session, model) -> int:
        return session.exec(select(func.count()).select_from(model)).one()

    def check_game_participation_links(self, session: Session) -> IntegrityCheckResult:
        total = self._count(session, GameParticipation)
        orphaned = session.exec(
            select(func.count())
            .select_from(GameParticipation)
            .outerjoin(Player, GameParticipation.player_id == Player.id)
            .outerjoin(Game, GameParticipation.game_id == Game.id)
            .where(or_(Player.id.is_(None), Game.id.is_(None)))
        ).one()

        errors = [f"Found {orphaned} GameParticipation records with missing Player or Game"] if orphaned else []
        return IntegrityCheckResult("GameParticipation Links", not errors, total, errors)

    def check_player_tournament_links(self, session: Session) -> IntegrityCheckResult:
        total = self._count(session, PlayerTournament)
        orphaned = session.exec(
            select(func.count())
            .select_from(PlayerTournament)
            .outerjoin(Player, PlayerTournament.player_id == Player.id)
            .outerjoin(Tournament, PlayerTournament.tournament_id == Tournament.id)
            .where(or_(Player.id.is_(None), Tournament.id.is_(None)))
        ).one()

        errors = [f"Found {orphaned} PlayerTournament records with missing Player or Tournament"] if orphaned else []
        return IntegrityCheckResult("PlayerTournament Links", not errors, total, errors)

    def check_orphaned_games(self, session: Session) -> IntegrityCheckResult:
        total = self._count(session, Game)
        orphaned = session.exec(
            select(func.count())
            .select_from(Game)
            .outerjoin(Tournament, Game.tournament_id == Tournament.id)
            .where(Game.tournament_id.is_not(None), Tournament.id.is_(None))
        ).one()

        errors = [f"Found {orphaned} orphaned Game records"] if orphaned else []
        return IntegrityCheckResult("Orphaned Games", not errors, total, errors)

    def run(self) -> list[IntegrityCheckResult]:
        with session_scope(self.engine) as session:
            return [
                self.check_game_participation_links(session),
                self.check_player_tournament_links(session),
                self.check_orphaned_games(session),
            ]

    def get_summary(self) -> dict[str, Any]:
        """User-facing summary stored on the sync log."""
        checks = self.run()
        failed = [check for check in checks if not check.passed]

        if failed:
            message = f"{len(failed)} of {len(checks)} integrity checks failed."
            logger.warning(f"Integrity check: {message}")
        else:
            message = "All integrity checks passed successfully."

        summary: dict[str, Any] = {
            "status": "FAIL" if failed else "PASS",
            "totalChecks": len(checks),
            "passedChecks": len(checks) - len(failed),
            "failedChecks": len(failed),
            "message": message,
        }
        issues = [error for check in failed for error in check.errors]
        if issues:
            summary["issues"] = issues
        return summary
