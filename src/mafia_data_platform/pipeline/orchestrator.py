"""Import orchestrator: runs the phases of one full import.

State machine:

    IDLE -> STARTING -> RUNNING(phase) -> COMPLETING | CANCELLING | FAILING -> IDLE
                     \\-> REJECTED (lock not acquired)

One orchestrator instance drives exactly one run. Everything it touches is
injected: the engine, the advisory lock, the site client, the cancellation
token and the phase list. Whatever happens inside the run, the terminal
state is persisted and the lock is released before run() returns.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Optional

from sqlalchemy.engine import Engine

from mafia_data_platform.config import ImportConfig
from mafia_data_platform.ingestion.client import SiteClient
from mafia_data_platform.models import ImportPhase, SyncLogStatus, utcnow
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.checkpoint import Checkpoint, CheckpointStore, PhaseCursor
from mafia_data_platform.pipeline.errors import (
    CancelReason,
    ImportCancelledError,
    ImportConflictError,
    ResumeInconsistencyError,
)
from mafia_data_platform.pipeline.integrity import IntegrityChecker
from mafia_data_platform.pipeline.lock import LockManager
from mafia_data_platform.pipeline.metrics import ErrorLog, ValidationMetrics
from mafia_data_platform.pipeline.phases import Phase, PhaseContext, PhaseResult, build_phases
from mafia_data_platform.pipeline.retry import RetryPolicy
from mafia_data_platform.pipeline.run_log import RunLogRepository
from mafia_data_platform.pipeline.skipped import SkippedEntityLedger

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    COMPLETING = "COMPLETING"
    CANCELLING = "CANCELLING"
    FAILING = "FAILING"
    REJECTED = "REJECTED"


@dataclass
class ImportResult:
    """Outcome of one orchestrator run."""

    sync_log_id: Optional[str] = None
    status: Optional[SyncLogStatus] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    phases: list[PhaseResult] = field(default_factory=list)
    records_processed: int = 0
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()


class ImportOrchestrator:
    """Runs the import phases in order with checkpointing and cancellation.

    Usage:
        >>> orchestrator = ImportOrchestrator(engine, LockManager(engine), SiteClient())
        >>> result = orchestrator.run()
        >>> print(result.status, result.records_processed)
    """

    def __init__(
        self,
        engine: Engine,
        lock: LockManager,
        client: SiteClient,
        config: Optional[ImportConfig] = None,
        phases: Optional[list[Phase]] = None,
        token: Optional[CancellationToken] = None,
        sync_log_id: Optional[str] = None,
        force_restart: bool = False,
    ):
        """Initialize the orchestrator.

        Args:
            engine: Engine for all bookkeeping and entity tables
            lock: Import lock (may already be held by the caller)
            client: Site client used by the phases
            config: Import configuration
            phases: Phases to run, in order (defaults to all ten)
            token: Cancellation token (defaults to one with the configured deadline)
            sync_log_id: Run record created by the caller, if any
            force_restart: Discard any stored checkpoint before running
        """
        self.engine = engine
        self.lock = lock
        self.client = client
        self.config = config or ImportConfig()
        self.phases = phases if phases is not None else build_phases()
        self.token = token or CancellationToken(self.config.max_duration_hours)
        self.sync_log_id = sync_log_id
        self.force_restart = force_restart

        self.checkpoints = CheckpointStore(engine)
        self.ledger = SkippedEntityLedger(engine)
        self.run_log = RunLogRepository(engine)
        self.integrity = IntegrityChecker(engine)

        self.metrics = ValidationMetrics()
        self.errors = ErrorLog()
        self.skipped_pages: dict[ImportPhase, list[int]] = {}

        self.state = OrchestratorState.IDLE
        self.current_phase: Optional[ImportPhase] = None
        self.cursor: Optional[PhaseCursor] = None
        self.progress = 0
        self.result = ImportResult(sync_log_id=sync_log_id)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def set_cancellation_signal(self, token: CancellationToken) -> None:
        self.token = token

    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def check_cancellation(self) -> None:
        """Raise ImportCancelledError if the run has been cancelled."""
        self.token.raise_if_cancelled()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Request cancellation. Idempotent; True only for the first request."""
        return self.token.cancel(reason)

    def _poll_cancel_flag(self) -> None:
        """Pick up cancel requests made through another process."""
        if not self.token.is_cancelled and self.run_log.is_cancel_requested():
            logger.info("Cancel requested via sync_status")
            self.token.cancel(CancelReason.USER)

    # =========================================================================
    # METRICS AND ERROR BOOKKEEPING
    # =========================================================================

    def get_validation_metrics(self) -> dict[str, Any]:
        return self.metrics.to_dict()

    def record_skipped_page(self, phase: ImportPhase, page_number: int) -> None:
        self.skipped_pages.setdefault(phase, []).append(page_number)

    def get_skipped_pages_for_storage(self) -> dict[str, list[int]]:
        """Skipped pages per phase, de-duplicated and sorted."""
        return {
            phase.value: sorted(set(pages))
            for phase, pages in self.skipped_pages.items()
            if pages
        }

    def log_error(
        self,
        error: BaseException | str,
        code: str,
        context: Optional[dict[str, Any]] = None,
        will_retry: bool = False,
    ) -> None:
        self.errors.log(error, code, phase=self.current_phase, context=context, will_retry=will_retry)

    def get_error_summary(self) -> dict[str, Any]:
        return self.errors.summary()

    def calculate_progress(self, phase_index: int, done: int = 0, total: int = 0) -> int:
        """Overall progress 0-100 from the phase index and progress within it."""
        fraction = min(done / total, 1.0) if total else 0.0
        return min(100, math.floor((phase_index + fraction) / len(self.phases) * 100))

    # =========================================================================
    # CHECKPOINTS
    # =========================================================================

    def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        checkpoint.progress = max(self.progress, checkpoint.progress)
        self.progress = checkpoint.progress

        cursor = self.cursor
        if cursor is not None and cursor.total:
            operation = f"{checkpoint.phase.value}: {cursor.done}/{cursor.total} (batch {checkpoint.batch})"
        else:
            operation = f"{checkpoint.phase.value}: starting"

        self.checkpoints.save(checkpoint, current_operation=operation)
        self._poll_cancel_flag()

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self) -> ImportResult:
        """Execute the import.

        Never raises for failures inside the run; they are logged and
        recorded on the run record.

        Raises:
            ImportConflictError: If the import lock is held elsewhere
        """
        self.state = OrchestratorState.STARTING
        if not self.lock.acquire():
            self.state = OrchestratorState.REJECTED
            raise ImportConflictError("Import already running")

        try:
            if self.sync_log_id is None:
                self.run_log.mark_stale_runs_failed()
                self.sync_log_id = self.run_log.start_run().id
            self.result.sync_log_id = self.sync_log_id

            if self.force_restart:
                self.checkpoints.clear()

            self.state = OrchestratorState.RUNNING
            self._run_phases(self.checkpoints.load())
            self._complete()

        except ImportCancelledError as e:
            self._finalize_cancelled(e)

        except Exception as e:
            self._finalize_failed(e)

        finally:
            self.lock.release()
            self.result.finished_at = utcnow()
            self.state = OrchestratorState.IDLE

        return self.result

    def _run_phases(self, resume: Optional[Checkpoint]) -> None:
        retry = RetryPolicy(self.config.retry, self.token)

        start_index = 0
        if resume is not None:
            indexes = [phase.phase for phase in self.phases]
            if resume.phase not in indexes:
                raise ResumeInconsistencyError(f"Checkpoint phase {resume.phase.value} is not scheduled")
            start_index = indexes.index(resume.phase)
            self.progress = resume.progress
            logger.info(f"Resuming import at phase {resume.phase.value} (batch {resume.batch})")

        for index, phase in enumerate(self.phases):
            if index < start_index:
                continue

            self._poll_cancel_flag()
            self.check_cancellation()

            self.current_phase = phase.phase
            self.cursor = PhaseCursor(
                phase.phase,
                save=self._save_checkpoint,
                batch_size=self.config.batch_size,
                progress=partial(self.calculate_progress, index),
                resume=resume,
            )
            if self.cursor.resume is None:
                self.cursor.save()

            logger.info(f"[PHASE] Starting {phase.name} ({index + 1}/{len(self.phases)})")
            ctx = PhaseContext(
                engine=self.engine,
                client=self.client,
                token=self.token,
                retry=retry,
                ledger=self.ledger,
                config=self.config,
                metrics=self.metrics,
                errors=self.errors,
                sync_log_id=self.sync_log_id,
                cursor=self.cursor,
                on_page_skipped=self.record_skipped_page,
            )
            self.result.phases.append(phase.execute(ctx))
            logger.info(f"[PHASE] Finished {phase.name}")

    # =========================================================================
    # TERMINAL STATES
    # =========================================================================

    def _summary_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        error_summary = self.get_error_summary()
        if error_summary["totalErrors"]:
            payload["errorSummary"] = error_summary
        skipped_pages = self.get_skipped_pages_for_storage()
        if skipped_pages:
            payload["skippedPages"] = skipped_pages
        return payload

    def _complete(self) -> None:
        self.state = OrchestratorState.COMPLETING

        try:
            integrity = self.integrity.get_summary()
        except Exception as e:
            logger.error(f"Integrity check failed to run: {e}")
            integrity = {"status": "ERROR", "message": str(e)}

        payload = self._summary_payload()
        if integrity["status"] != "PASS":
            payload["integrity"] = integrity
        if payload:
            payload["message"] = (
                "Import completed with integrity issues"
                if "integrity" in payload
                else "Import completed with non-critical errors"
            )

        self.result.records_processed = self.metrics.valid_records
        self.run_log.finish_run(
            self.sync_log_id,
            SyncLogStatus.COMPLETED,
            records_processed=self.metrics.valid_records,
            errors=payload or None,
            metrics=self.get_validation_metrics(),
        )
        self.checkpoints.clear()
        self.result.status = SyncLogStatus.COMPLETED
        logger.info(f"Import {self.sync_log_id} completed ({self.metrics.valid_records} records)")

    def _finalize_cancelled(self, error: ImportCancelledError) -> None:
        self.state = OrchestratorState.CANCELLING
        message = str(error)
        logger.warning(f"Import {self.sync_log_id} cancelled: {message}")

        try:
            if self.cursor is not None:
                self.checkpoints.save(self.cursor.checkpoint(), current_operation=message)

            payload = self._summary_payload()
            payload.update({"message": message, "reason": error.reason.value})
            self.run_log.finish_run(
                self.sync_log_id,
                SyncLogStatus.CANCELLED,
                records_processed=self.metrics.valid_records,
                errors=payload,
                last_error=message if error.reason == CancelReason.TIMEOUT else None,
                metrics=self.get_validation_metrics(),
                current_operation=message,
            )
        except Exception as e:
            logger.exception(f"Failed to persist cancellation of import {self.sync_log_id}: {e}")

        self.result.status = SyncLogStatus.CANCELLED
        self.result.error = message
        self.result.records_processed = self.metrics.valid_records

    def _finalize_failed(self, error: Exception) -> None:
        self.state = OrchestratorState.FAILING
        message = f"{type(error).__name__}: {error}"
        logger.exception(f"Import {self.sync_log_id} failed: {message}")
        self.log_error(error, "FATAL")

        try:
            # A broken checkpoint is left as-is for inspection; force_restart clears it
            if self.cursor is not None and not isinstance(error, ResumeInconsistencyError):
                self.checkpoints.save(self.cursor.checkpoint(), current_operation="Import failed")

            if self.sync_log_id is not None:
                payload = self._summary_payload()
                payload.update({"message": "Import failed", "error": message})
                self.run_log.finish_run(
                    self.sync_log_id,
                    SyncLogStatus.FAILED,
                    records_processed=self.metrics.valid_records,
                    errors=payload,
                    last_error=message,
                    metrics=self.get_validation_metrics(),
                )
        except Exception as e:
            logger.exception(f"Failed to persist failure of import {self.sync_log_id}: {e}")

        self.result.status = SyncLogStatus.FAILED
        self.result.error = message
        self.result.records_processed = self.metrics.valid_records
