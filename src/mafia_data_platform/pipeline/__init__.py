"""Import pipeline for the rating site.

Runs a full import as ten ordered phases with checkpoint/resume,
cooperative cancellation, per-unit retry and a skipped-entity ledger:

    CLUBS -> PLAYERS -> CLUB_MEMBERS -> PLAYER_YEAR_STATS -> TOURNAMENTS
        -> TOURNAMENT_CHIEF_JUDGE -> PLAYER_TOURNAMENT_HISTORY -> JUDGES
        -> GAMES -> STATISTICS

Key Components:
- ImportOrchestrator (pipeline.orchestrator): Drives one run
- ImportControl (pipeline.control): Start/status/cancel/retry surface
- CheckpointStore / PhaseCursor: Resume points
- SkippedEntityLedger: Units that could not be imported
- LockManager: Postgres advisory lock guarding starts

The orchestrator and control modules are imported from their own modules;
the ingestion layer depends on pipeline.errors, so this package only
re-exports the leaf modules.
"""

from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.checkpoint import Checkpoint, CheckpointStore, PhaseCursor
from mafia_data_platform.pipeline.errors import (
    CancelReason,
    ErrorClass,
    ErrorCode,
    ImportCancelledError,
    ImportConflictError,
    InvalidPhaseError,
    ListingUnavailableError,
    MafiaImportError,
    NoImportRunningError,
    PermanentUnitError,
    ResumeInconsistencyError,
    TransientUnitError,
    UnitFailure,
    classify_error,
)
from mafia_data_platform.pipeline.lock import IMPORT_LOCK_ID, LockManager
from mafia_data_platform.pipeline.retry import RetryPolicy

__all__ = [
    "CancellationToken",
    "Checkpoint",
    "CheckpointStore",
    "PhaseCursor",
    "CancelReason",
    "ErrorClass",
    "ErrorCode",
    "ImportCancelledError",
    "ImportConflictError",
    "InvalidPhaseError",
    "ListingUnavailableError",
    "MafiaImportError",
    "NoImportRunningError",
    "PermanentUnitError",
    "ResumeInconsistencyError",
    "TransientUnitError",
    "UnitFailure",
    "classify_error",
    "IMPORT_LOCK_ID",
    "LockManager",
    "RetryPolicy",
]
