"""Checkpoint persistence and the per-phase resume cursor."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from sqlalchemy.engine import Engine

from mafia_data_platform.database.session import session_scope
from mafia_data_platform.models import SINGLETON_ID, ImportCheckpoint, ImportPhase, utcnow
from mafia_data_platform.pipeline.errors import ResumeInconsistencyError
from mafia_data_platform.pipeline.run_log import get_or_create_status

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    """Resume point of a run.

    processed_ids lists the units committed in the current batch of the
    current phase; everything up to last_processed_id is already done.
    """

    phase: ImportPhase
    batch: int = 0
    last_processed_id: Optional[str] = None
    processed_ids: list[str] = field(default_factory=list)
    progress: int = 0


class CheckpointStore:
    """Stores the singleton checkpoint row.

    save() also refreshes sync_status progress and current operation inside
    the same transaction, so the dashboard never sees one without the other.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def save(self, checkpoint: Checkpoint, current_operation: Optional[str] = None) -> None:
        with session_scope(self.engine) as session:
            row = session.get(ImportCheckpoint, SINGLETON_ID)
            if row is None:
                row = ImportCheckpoint(id=SINGLETON_ID, current_phase=checkpoint.phase.value)
                session.add(row)

            row.current_phase = checkpoint.phase.value
            row.current_batch = checkpoint.batch
            row.last_processed_id = checkpoint.last_processed_id
            # Assign a fresh list so the JSON column is flagged dirty
            row.processed_ids = list(dict.fromkeys(checkpoint.processed_ids))
            row.progress = checkpoint.progress
            row.last_updated = utcnow()

            status = get_or_create_status(session)
            status.progress = max(status.progress, checkpoint.progress)
            if current_operation is not None:
                status.current_operation = current_operation
            status.updated_at = utcnow()

        logger.debug(
            f"Saved checkpoint {checkpoint.phase.value} batch={checkpoint.batch} "
            f"last={checkpoint.last_processed_id} progress={checkpoint.progress}%"
        )

    def load(self) -> Optional[Checkpoint]:
        """Load the stored checkpoint.

        Raises:
            ResumeInconsistencyError: If the stored phase is unknown
        """
        with session_scope(self.engine) as session:
            row = session.get(ImportCheckpoint, SINGLETON_ID)
            if row is None:
                return None

            try:
                phase = ImportPhase(row.current_phase)
            except ValueError:
                raise ResumeInconsistencyError(
                    f"Checkpoint refers to unknown phase {row.current_phase!r}"
                )

            return Checkpoint(
                phase=phase,
                batch=row.current_batch,
                last_processed_id=row.last_processed_id,
                processed_ids=list(row.processed_ids or []),
                progress=row.progress,
            )

    def clear(self) -> None:
        """Delete the checkpoint; a missing checkpoint is not an error."""
        with session_scope(self.engine) as session:
            row = session.get(ImportCheckpoint, SINGLETON_ID)
            if row is not None:
                session.delete(row)
                logger.info("Cleared import checkpoint")


class PhaseCursor:
    """Tracks progress through one phase's unit list and saves checkpoints.

    Args:
        phase: Phase being executed
        save: Callback persisting a checkpoint
        batch_size: Units per checkpoint batch
        progress: Callback mapping (done, total) to overall progress 0-100
        resume: Checkpoint to resume from, if it belongs to this phase
    """

    def __init__(
        self,
        phase: ImportPhase,
        save: Callable[[Checkpoint], None],
        batch_size: int = 100,
        progress: Optional[Callable[[int, int], int]] = None,
        resume: Optional[Checkpoint] = None,
    ):
        self.phase = phase
        self._save = save
        self.batch_size = batch_size
        self._progress = progress
        self.resume = resume if resume is not None and resume.phase == phase else None

        self.batch = self.resume.batch if self.resume else 0
        self.last_processed_id: Optional[str] = self.resume.last_processed_id if self.resume else None
        self.processed_ids: list[str] = list(self.resume.processed_ids) if self.resume else []
        self.done = 0
        self.total = 0

    def pending(self, units: Sequence) -> list:
        """Return the units still to process, honouring the resume checkpoint.

        Raises:
            ResumeInconsistencyError: If the checkpoint cursor is not in ``units``
        """
        self.total = len(units)
        if self.resume is None:
            return list(units)

        start = 0
        if self.last_processed_id is not None:
            keys = [unit.key for unit in units]
            if self.last_processed_id not in keys:
                raise ResumeInconsistencyError(
                    f"Cursor {self.last_processed_id!r} not found in {self.phase.value} units"
                )
            start = keys.index(self.last_processed_id) + 1

        already_done = set(self.processed_ids)
        remaining = [unit for unit in units[start:] if unit.key not in already_done]
        self.done = self.total - len(remaining)

        logger.info(
            f"[{self.phase.value}] Resuming at batch {self.batch} after "
            f"{self.last_processed_id!r} ({len(remaining)}/{self.total} units left)"
        )
        return remaining

    @property
    def progress(self) -> int:
        if self._progress is None:
            return 0
        return self._progress(self.done, self.total)

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(
            phase=self.phase,
            batch=self.batch,
            last_processed_id=self.last_processed_id,
            processed_ids=list(self.processed_ids),
            progress=self.progress,
        )

    def mark_skipped(self, key: str) -> None:
        """Count a ledgered unit towards progress without moving the cursor.

        Only committed units enter processed_ids. A ledgered unit after the
        last committed one is attempted again on resume.
        """
        self.done += 1
        logger.debug(f"[{self.phase.value}] Unit {key} ledgered, cursor stays at {self.last_processed_id!r}")

    def mark_processed(self, key: str) -> None:
        """Record a committed unit; saves when the batch fills."""
        if key not in self.processed_ids:
            self.processed_ids.append(key)
        self.last_processed_id = key
        self.done += 1

        if len(self.processed_ids) >= self.batch_size:
            self.save()
            self.batch += 1
            self.processed_ids = []

    def save(self) -> None:
        self._save(self.checkpoint())
