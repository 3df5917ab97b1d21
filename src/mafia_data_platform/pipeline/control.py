"""Control surface for imports: start, status, cancel, retry, list skipped.

Transport-agnostic; the HTTP API and the CLI both call into ImportControl.
"Is an import running" is always answered from sync_status. The only
process-local state is the RunRegistry of tokens for runs this process
started, which lets cancel() reach its own worker immediately.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import select

from mafia_data_platform.config import ImportConfig
from mafia_data_platform.database.session import session_scope
from mafia_data_platform.ingestion.client import SiteClient
from mafia_data_platform.models import (
    Club,
    Game,
    ImportPhase,
    Player,
    SkippedEntity,
    SkippedStatus,
    SyncStatus,
    Tournament,
)
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.errors import (
    CancelReason,
    ImportConflictError,
    InvalidPhaseError,
    NoImportRunningError,
    UnitFailure,
)
from mafia_data_platform.pipeline.lock import LockManager
from mafia_data_platform.pipeline.orchestrator import ImportOrchestrator, ImportResult
from mafia_data_platform.pipeline.phases import Phase, PhaseContext, WorkUnit, build_phases
from mafia_data_platform.pipeline.retry import RetryPolicy
from mafia_data_platform.pipeline.run_log import RunLogRepository
from mafia_data_platform.pipeline.skipped import SkippedEntityLedger

logger = logging.getLogger(__name__)

ESTIMATED_DURATION = "3-4 hours"


def parse_phase(value: str) -> ImportPhase:
    """Parse a phase name.

    Raises:
        InvalidPhaseError: If the name is not a known phase
    """
    try:
        return ImportPhase(value.upper())
    except (ValueError, AttributeError):
        raise InvalidPhaseError(f"Invalid phase: {value}")


def skipped_to_dict(row: SkippedEntity) -> dict[str, Any]:
    return {
        "id": row.id,
        "phase": row.phase,
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "pageNumber": row.page_number,
        "errorCode": row.error_code,
        "errorMessage": row.error_message,
        "errorDetails": row.error_details,
        "retryCount": row.retry_count,
        "status": row.status,
        "syncLogId": row.sync_log_id,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
        "lastRetryAt": row.last_retry_at.isoformat() if row.last_retry_at else None,
    }


# ============================================================================
# PROCESS-LOCAL RUN REGISTRY
# ============================================================================


@dataclass
class ActiveRun:
    sync_log_id: str
    token: CancellationToken
    thread: threading.Thread
    orchestrator: ImportOrchestrator


class RunRegistry:
    """Runs started by this process, keyed by sync log id."""

    def __init__(self):
        self._runs: dict[str, ActiveRun] = {}
        self._lock = threading.Lock()

    def register(self, run: ActiveRun) -> None:
        """Add a run, dropping finished runs nobody waited on."""
        with self._lock:
            for sync_log_id, old in list(self._runs.items()):
                if not old.thread.is_alive():
                    del self._runs[sync_log_id]
            self._runs[run.sync_log_id] = run

    def get(self, sync_log_id: Optional[str]) -> Optional[ActiveRun]:
        if sync_log_id is None:
            return None
        with self._lock:
            return self._runs.get(sync_log_id)

    def discard(self, sync_log_id: str) -> None:
        with self._lock:
            self._runs.pop(sync_log_id, None)

    def active(self) -> list[ActiveRun]:
        """Runs whose worker thread is still alive."""
        with self._lock:
            return [run for run in self._runs.values() if run.thread.is_alive()]


# ============================================================================
# CONTROL SERVICE
# ============================================================================


class ImportControl:
    """Start, observe, cancel and repair imports.

    Args:
        engine: Database engine
        config: Import configuration
        client_factory: Builds a SiteClient per run or retry request
        lock_factory: Builds a LockManager (tests inject a fake)
        phases_factory: Builds the ordered phase list
        registry: Registry of runs owned by this process
    """

    def __init__(
        self,
        engine: Engine,
        config: Optional[ImportConfig] = None,
        client_factory: Optional[Callable[[], SiteClient]] = None,
        lock_factory: Optional[Callable[[], LockManager]] = None,
        phases_factory: Optional[Callable[[], list[Phase]]] = None,
        registry: Optional[RunRegistry] = None,
    ):
        self.engine = engine
        self.config = config or ImportConfig()
        self.client_factory = client_factory or (lambda: SiteClient(self.config.site))
        self.lock_factory = lock_factory or (lambda: LockManager(engine))
        self.phases_factory = phases_factory or build_phases
        self.registry = registry or RunRegistry()

        self.run_log = RunLogRepository(engine)
        self.ledger = SkippedEntityLedger(engine)

    # =========================================================================
    # START
    # =========================================================================

    def start(self, force_restart: bool = False) -> dict[str, Any]:
        """Start an import in a background worker thread.

        Returns:
            Accepted response body (syncLogId, estimatedDuration, ...)

        Raises:
            ImportConflictError: If an import is already running
        """
        lock = self.lock_factory()
        if not lock.acquire():
            status = self.run_log.get_status()
            raise ImportConflictError(
                "Import already running",
                progress={"progress": status.progress, "currentOperation": status.current_operation},
            )

        try:
            self.run_log.mark_stale_runs_failed()
            sync_log = self.run_log.start_run()

            token = CancellationToken(self.config.max_duration_hours)
            client = self.client_factory()
            orchestrator = ImportOrchestrator(
                self.engine,
                lock,
                client,
                config=self.config,
                phases=self.phases_factory(),
                token=token,
                sync_log_id=sync_log.id,
                force_restart=force_restart,
            )
            thread = threading.Thread(
                target=self._run_worker,
                args=(orchestrator, client),
                name=f"import-{sync_log.id[:8]}",
                daemon=True,
            )
            self.registry.register(ActiveRun(sync_log.id, token, thread, orchestrator))
            thread.start()

        except Exception:
            lock.release()
            raise

        logger.info(f"Import {sync_log.id} started (force_restart={force_restart})")
        return {
            "success": True,
            "message": "Import started",
            "syncLogId": sync_log.id,
            "estimatedDuration": ESTIMATED_DURATION,
            "note": "Import runs in the background. Poll GET /api/import for progress.",
        }

    def _run_worker(self, orchestrator: ImportOrchestrator, client: SiteClient) -> None:
        """Thread target: run the orchestrator and swallow (log) anything left."""
        try:
            result = orchestrator.run()
            logger.info(
                f"Import {result.sync_log_id} ended with {result.status.value if result.status else 'no status'} "
                f"after {result.duration_seconds:.0f}s"
            )
        except Exception as e:
            logger.exception(f"Import worker crashed: {e}")
        finally:
            client.close()

    def wait(self, sync_log_id: str, timeout: Optional[float] = None) -> Optional[ImportResult]:
        """Block until a run owned by this process finishes.

        A finished run is dropped from the registry once waited on.

        Returns:
            The run's result, or None if this process does not own the run
        """
        run = self.registry.get(sync_log_id)
        if run is None:
            return None
        run.thread.join(timeout)
        if not run.thread.is_alive():
            self.registry.discard(sync_log_id)
        return run.orchestrator.result

    def _finish_if_orphaned(self, status: SyncStatus) -> bool:
        """Close out a RUNNING import whose process is gone.

        A run that no live worker in this process owns, with the import lock
        free, has no orchestrator left to finish it.

        Returns:
            True if the run was finished here
        """
        if not status.is_running:
            return False

        run = self.registry.get(status.sync_log_id)
        if run is not None and run.thread.is_alive():
            return False

        lock = self.lock_factory()
        if not lock.acquire():
            return False
        try:
            self.run_log.finish_interrupted_run()
        finally:
            lock.release()

        logger.warning(f"Import {status.sync_log_id} was left running by a dead process; marked FAILED")
        return True

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> dict[str, Any]:
        """Status document for the dashboard."""
        status = self.run_log.get_status()
        if self._finish_if_orphaned(status):
            status = self.run_log.get_status()

        with session_scope(self.engine) as session:
            summary = {
                "players": session.exec(select(func.count()).select_from(Player)).one(),
                "clubs": session.exec(select(func.count()).select_from(Club)).one(),
                "games": session.exec(select(func.count()).select_from(Game)).one(),
                "tournaments": session.exec(select(func.count()).select_from(Tournament)).one(),
            }

        return {
            "isRunning": status.is_running,
            "progress": status.progress,
            "currentOperation": status.current_operation,
            "lastSyncTime": status.last_sync_time.isoformat() if status.last_sync_time else None,
            "lastSyncType": status.last_sync_type,
            "lastError": status.last_error,
            "syncLogId": status.sync_log_id,
            "processedRecords": status.valid_records,
            "totalRecords": status.total_records_processed,
            "validation": {
                "validationRate": status.validation_rate,
                "totalRecordsProcessed": status.total_records_processed,
                "validRecords": status.valid_records,
                "invalidRecords": status.invalid_records,
            },
            "summary": summary,
        }

    # =========================================================================
    # CANCEL
    # =========================================================================

    def cancel(self) -> dict[str, Any]:
        """Request cancellation of the running import.

        Raises:
            NoImportRunningError: If no import is running
        """
        status = self.run_log.get_status()
        if self._finish_if_orphaned(status):
            raise NoImportRunningError("No import is currently running")
        if not status.is_running or not self.run_log.request_cancel():
            raise NoImportRunningError("No import is currently running")

        run = self.registry.get(status.sync_log_id)
        if run is not None:
            run.token.cancel(CancelReason.USER)
        else:
            logger.info(f"Import {status.sync_log_id} is owned by another process; flagged for cancellation")

        return {"success": True, "message": "Import cancellation requested"}

    def shutdown(self) -> None:
        """Cancel every run owned by this process (application shutdown)."""
        for run in self.registry.active():
            run.token.cancel(CancelReason.USER)

    # =========================================================================
    # SKIPPED ENTITIES
    # =========================================================================

    def list_skipped(
        self, phase: Optional[str] = None, status: Optional[SkippedStatus] = None
    ) -> dict[str, Any]:
        """Skipped entities, for one phase or across all phases with a summary.

        Raises:
            InvalidPhaseError: If ``phase`` is not a known phase
        """
        if phase:
            rows = self.ledger.get_by_phase(parse_phase(phase), status)
            return {"entities": [skipped_to_dict(row) for row in rows], "total": len(rows)}

        rows = self.ledger.list_entities(status)
        return {
            "summary": self.ledger.get_summary(),
            "entities": [skipped_to_dict(row) for row in rows],
        }

    def retry(
        self,
        phase: str,
        skipped_entity_ids: Optional[list[int]] = None,
        entity_ids: Optional[list[str]] = None,
        page_numbers: Optional[list[int]] = None,
    ) -> dict[str, Any]:
        """Re-run selected units of one phase while holding the import lock.

        Raises:
            InvalidPhaseError: If ``phase`` is not a known phase
            ImportConflictError: If an import is running
        """
        import_phase = parse_phase(phase)
        status = self.run_log.get_status()
        if status.is_running and not self._finish_if_orphaned(status):
            raise ImportConflictError("Cannot retry while an import is running")

        return self.lock_factory().with_lock(
            lambda: self._retry_units(
                import_phase, skipped_entity_ids or [], entity_ids or [], page_numbers or []
            )
        )

    def _retry_targets(
        self,
        phase: Phase,
        skipped_entity_ids: list[int],
        entity_ids: list[str],
        page_numbers: list[int],
        errors: list[str],
    ) -> list[tuple[Optional[SkippedEntity], WorkUnit]]:
        targets = []

        for skipped_id in skipped_entity_ids:
            row = self.ledger.get(skipped_id)
            if row is None or row.phase != phase.phase.value:
                errors.append(f"Skipped entity {skipped_id} not found in {phase.name}")
                continue
            targets.append((row, phase.build_unit(entity_id=row.entity_id, page_number=row.page_number)))

        for entity_id in entity_ids:
            try:
                unit = phase.build_unit(entity_id=entity_id)
            except ValueError as e:
                errors.append(str(e))
                continue
            targets.append((self.ledger.get_by_entity_id(phase.phase, entity_id), unit))

        for page_number in page_numbers:
            try:
                unit = phase.build_unit(page_number=page_number)
            except ValueError as e:
                errors.append(str(e))
                continue
            targets.append((self.ledger.get_by_page(phase.phase, page_number), unit))

        return targets

    def _retry_units(
        self,
        import_phase: ImportPhase,
        skipped_entity_ids: list[int],
        entity_ids: list[str],
        page_numbers: list[int],
    ) -> dict[str, Any]:
        phase = next(p for p in self.phases_factory() if p.phase == import_phase)
        errors: list[str] = []
        targets = self._retry_targets(phase, skipped_entity_ids, entity_ids, page_numbers, errors)

        token = CancellationToken()
        client = self.client_factory()
        ctx = PhaseContext(
            engine=self.engine,
            client=client,
            token=token,
            retry=RetryPolicy(self.config.retry, token),
            ledger=self.ledger,
            config=self.config,
        )

        retried = 0
        try:
            for row, unit in targets:
                if row is not None:
                    self.ledger.mark_retrying(row.id)
                try:
                    phase.retry_unit(ctx, unit)
                except UnitFailure as failure:
                    errors.append(f"{unit.key}: {failure}")
                    if row is not None:
                        self.ledger.mark_failed(row.id, str(failure))
                    continue
                except Exception as e:
                    if row is not None:
                        self.ledger.mark_failed(row.id, f"{type(e).__name__}: {e}")
                    raise

                retried += 1
                if row is not None:
                    self.ledger.mark_completed(row.id)
        finally:
            client.close()

        logger.info(f"[{import_phase.value}] Retried {retried} of {len(targets)} unit(s)")
        response: dict[str, Any] = {
            "success": not errors,
            "message": f"Retried {retried} of {len(targets)} {import_phase.value} unit(s)",
            "retriedCount": retried,
        }
        if errors:
            response["errors"] = errors
        return response
