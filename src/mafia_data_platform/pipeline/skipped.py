"""Skipped-entity ledger.

Every unit that could not be imported gets exactly one row, keyed by
(phase, entity_type, unit_key). Recording the same unit again refreshes the
row in place instead of adding a duplicate.
"""

import logging
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from mafia_data_platform.database.session import session_scope
from mafia_data_platform.models import EntityType, ImportPhase, SkippedEntity, SkippedStatus, utcnow

logger = logging.getLogger(__name__)


def unit_key_for(entity_id: Optional[str] = None, page_number: Optional[int] = None) -> str:
    """Uniqueness key of a unit: the entity id or "page:<n>".

    Raises:
        ValueError: Unless exactly one of entity_id / page_number is given
    """
    if (entity_id is None) == (page_number is None):
        raise ValueError("Exactly one of entity_id or page_number is required")
    if page_number is not None:
        return f"page:{page_number}"
    return str(entity_id)


def _value(enum_or_str) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


class SkippedEntityLedger:
    """Repository for skipped_entities."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ========================================================================
    # RECORDING
    # ========================================================================

    def record_skip(
        self,
        phase: ImportPhase,
        entity_type: EntityType,
        entity_id: Optional[str] = None,
        page_number: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        error_details: Optional[dict[str, Any]] = None,
        sync_log_id: Optional[str] = None,
    ) -> SkippedEntity:
        """Insert a PENDING row, or refresh the existing row for this unit.

        A repeat refreshes the error fields, resets status to PENDING and
        increments retry_count.
        """
        unit_key = unit_key_for(entity_id, page_number)
        phase_value = _value(phase)
        entity_type_value = _value(entity_type)
        error_code = _value(error_code) if error_code is not None else None

        with session_scope(self.engine) as session:
            row = session.exec(
                select(SkippedEntity).where(
                    SkippedEntity.phase == phase_value,
                    SkippedEntity.entity_type == entity_type_value,
                    SkippedEntity.unit_key == unit_key,
                )
            ).first()

            if row is None:
                row = SkippedEntity(
                    phase=phase_value,
                    entity_type=entity_type_value,
                    entity_id=entity_id,
                    page_number=page_number,
                    unit_key=unit_key,
                    error_code=error_code,
                    error_message=error_message,
                    error_details=error_details,
                    sync_log_id=sync_log_id,
                )
                session.add(row)
            else:
                row.error_code = error_code
                row.error_message = error_message
                row.error_details = error_details
                row.status = SkippedStatus.PENDING.value
                row.retry_count += 1
                row.sync_log_id = sync_log_id or row.sync_log_id
                row.updated_at = utcnow()

            session.flush()

        logger.warning(
            f"[{phase_value}] Skipped {entity_type_value} {unit_key} "
            f"({error_code}): {error_message}"
        )
        return row

    def _transition(self, skipped_id: int, status: SkippedStatus, **changes) -> SkippedEntity:
        with session_scope(self.engine) as session:
            row = session.get(SkippedEntity, skipped_id)
            if row is None:
                raise KeyError(f"Skipped entity {skipped_id} not found")
            row.status = status.value
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            return row

    def mark_retrying(self, skipped_id: int) -> SkippedEntity:
        with session_scope(self.engine) as session:
            row = session.get(SkippedEntity, skipped_id)
            if row is None:
                raise KeyError(f"Skipped entity {skipped_id} not found")
            now = utcnow()
            row.status = SkippedStatus.RETRYING.value
            row.retry_count += 1
            row.last_retry_at = now
            row.updated_at = now
            return row

    def mark_completed(self, skipped_id: int) -> SkippedEntity:
        return self._transition(skipped_id, SkippedStatus.COMPLETED)

    def mark_failed(self, skipped_id: int, error: str) -> SkippedEntity:
        return self._transition(skipped_id, SkippedStatus.FAILED, error_message=error)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @staticmethod
    def _list(session: Session, *conditions) -> list[SkippedEntity]:
        statement = select(SkippedEntity)
        if conditions:
            statement = statement.where(*conditions)
        return list(session.exec(statement.order_by(col(SkippedEntity.id))).all())

    def get(self, skipped_id: int) -> Optional[SkippedEntity]:
        with session_scope(self.engine) as session:
            return session.get(SkippedEntity, skipped_id)

    def get_by_phase(
        self, phase: ImportPhase, status: Optional[SkippedStatus] = None
    ) -> list[SkippedEntity]:
        conditions = [SkippedEntity.phase == _value(phase)]
        if status is not None:
            conditions.append(SkippedEntity.status == _value(status))
        with session_scope(self.engine) as session:
            return self._list(session, *conditions)

    def get_by_player_id(self, player_id: str) -> list[SkippedEntity]:
        with session_scope(self.engine) as session:
            return self._list(
                session,
                SkippedEntity.entity_type == EntityType.PLAYER.value,
                SkippedEntity.entity_id == player_id,
            )

    def get_by_page(self, phase: ImportPhase, page_number: int) -> Optional[SkippedEntity]:
        with session_scope(self.engine) as session:
            rows = self._list(
                session,
                SkippedEntity.phase == _value(phase),
                SkippedEntity.page_number == page_number,
            )
            return rows[0] if rows else None

    def get_by_entity_id(self, phase: ImportPhase, entity_id: str) -> Optional[SkippedEntity]:
        with session_scope(self.engine) as session:
            rows = self._list(
                session,
                SkippedEntity.phase == _value(phase),
                SkippedEntity.entity_id == entity_id,
            )
            return rows[0] if rows else None

    def list_entities(self, status: Optional[SkippedStatus] = None) -> list[SkippedEntity]:
        with session_scope(self.engine) as session:
            if status is None:
                return self._list(session)
            return self._list(session, SkippedEntity.status == _value(status))

    def get_summary(self) -> dict[str, dict[str, int]]:
        """Counts per phase: total, pending, retrying, completed, failed."""
        with session_scope(self.engine) as session:
            rows = session.exec(
                select(SkippedEntity.phase, SkippedEntity.status, func.count()).group_by(
                    SkippedEntity.phase, SkippedEntity.status
                )
            ).all()

        summary: dict[str, dict[str, int]] = {}
        for phase, status, count in rows:
            counts = summary.setdefault(
                phase,
                {"total": 0, "pending": 0, "retrying": 0, "completed": 0, "failed": 0},
            )
            counts[status.lower()] = counts.get(status.lower(), 0) + count
            counts["total"] += count
        return summary
