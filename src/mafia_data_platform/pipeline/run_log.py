"""Repository for run records (sync_logs) and the sync_status singleton."""

import logging
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mafia_data_platform.database.session import session_scope
from mafia_data_platform.models import (
    SINGLETON_ID,
    SyncLog,
    SyncLogStatus,
    SyncStatus,
    SyncType,
    utcnow,
)

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Import interrupted (process exited before finishing)"
CANCELLING_OPERATION = "Cancelling import... (saving checkpoint)"


def get_or_create_status(session: Session) -> SyncStatus:
    """Load the sync_status singleton, creating it on first use."""
    status = session.get(SyncStatus, SINGLETON_ID)
    if status is None:
        status = SyncStatus(id=SINGLETON_ID)
        session.add(status)
        session.flush()
    return status


class RunLogRepository:
    """Reads and writes the run record tables.

    sync_logs keeps one row per import invocation. sync_status is the
    single source of truth for "is an import running".
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    # ========================================================================
    # STATUS
    # ========================================================================

    def get_status(self) -> SyncStatus:
        """Current sync_status row (created if missing)."""
        with session_scope(self.engine) as session:
            return get_or_create_status(session)

    def is_running(self) -> bool:
        return self.get_status().is_running

    def request_cancel(self) -> bool:
        """Flag the running import for cancellation.

        Returns:
            False if no import is running
        """
        with session_scope(self.engine) as session:
            status = get_or_create_status(session)
            if not status.is_running:
                return False
            status.cancel_requested = True
            status.current_operation = CANCELLING_OPERATION
            status.updated_at = utcnow()
            return True

    def is_cancel_requested(self) -> bool:
        with session_scope(self.engine) as session:
            status = session.get(SyncStatus, SINGLETON_ID)
            return bool(status and status.cancel_requested)

    # ========================================================================
    # RUN LIFECYCLE
    # ========================================================================

    def mark_stale_runs_failed(self) -> int:
        """Fail RUNNING logs left behind by a process that died mid-run.

        Only call this while holding the import lock: with the lock held no
        other run can legitimately be RUNNING.

        Returns:
            Number of logs marked FAILED
        """
        with session_scope(self.engine) as session:
            stale = session.exec(
                select(SyncLog).where(SyncLog.status == SyncLogStatus.RUNNING.value)
            ).all()
            for log in stale:
                log.status = SyncLogStatus.FAILED.value
                log.end_time = utcnow()
                log.errors = {**(log.errors or {}), "message": STALE_RUN_MESSAGE}

        if stale:
            logger.warning(f"Marked {len(stale)} stale RUNNING sync log(s) as FAILED")
        return len(stale)

    def finish_interrupted_run(self) -> int:
        """Close out a run whose process died, leaving its checkpoint in place.

        Only call this while holding the import lock.

        Returns:
            Number of logs marked FAILED
        """
        failed = self.mark_stale_runs_failed()
        with session_scope(self.engine) as session:
            status = get_or_create_status(session)
            if status.is_running:
                status.is_running = False
                status.cancel_requested = False
                status.last_error = STALE_RUN_MESSAGE
                status.current_operation = STALE_RUN_MESSAGE
                status.updated_at = utcnow()
                logger.warning(f"Cleared running flag of interrupted import {status.sync_log_id}")
        return failed

    def start_run(self, sync_type: SyncType = SyncType.FULL) -> SyncLog:
        """Create the run record and flip sync_status to running."""
        with session_scope(self.engine) as session:
            log = SyncLog(type=sync_type.value, status=SyncLogStatus.RUNNING.value)
            session.add(log)

            status = get_or_create_status(session)
            status.is_running = True
            status.progress = 0
            status.current_operation = "Starting import..."
            status.sync_log_id = log.id
            status.last_error = None
            status.cancel_requested = False
            status.updated_at = utcnow()

        logger.info(f"Started {sync_type.value} import run {log.id}")
        return log

    def finish_run(
        self,
        sync_log_id: str,
        status: SyncLogStatus,
        records_processed: int = 0,
        errors: Optional[dict[str, Any]] = None,
        last_error: Optional[str] = None,
        metrics: Optional[dict[str, Any]] = None,
        current_operation: Optional[str] = None,
    ) -> None:
        """Persist the terminal state of a run and mark the import idle."""
        now = utcnow()
        with session_scope(self.engine) as session:
            log = session.get(SyncLog, sync_log_id)
            if log is not None:
                log.status = status.value
                log.end_time = now
                log.records_processed = records_processed
                log.errors = errors

            sync_status = get_or_create_status(session)
            sync_status.is_running = False
            sync_status.cancel_requested = False
            sync_status.last_sync_time = now
            sync_status.last_sync_type = log.type if log is not None else SyncType.FULL.value
            sync_status.last_error = last_error
            sync_status.current_operation = current_operation
            if status == SyncLogStatus.COMPLETED:
                sync_status.progress = 100
            if metrics:
                sync_status.total_records_processed = metrics.get("totalRecordsProcessed", 0)
                sync_status.valid_records = metrics.get("validRecords", 0)
                sync_status.invalid_records = metrics.get("invalidRecords", 0)
                sync_status.validation_rate = metrics.get("validationRate")
            sync_status.updated_at = now

        logger.info(f"Import run {sync_log_id} finished with status {status.value}")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_log(self, sync_log_id: str) -> Optional[SyncLog]:
        with session_scope(self.engine) as session:
            return session.get(SyncLog, sync_log_id)
