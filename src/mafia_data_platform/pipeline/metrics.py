"""In-memory validation metrics and structured error log for one run."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from mafia_data_platform.models import ImportPhase, PHASE_ORDER, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ValidationMetrics:
    """Counts of fetched rows that passed or failed validation."""

    total_fetched: int = 0
    valid_records: int = 0
    invalid_records: int = 0

    def record_valid(self, count: int = 1) -> None:
        self.total_fetched += count
        self.valid_records += count

    def record_invalid(self, count: int = 1) -> None:
        self.total_fetched += count
        self.invalid_records += count

    @property
    def validation_rate(self) -> float:
        """Percentage of fetched rows that were valid (0 when nothing was fetched)."""
        if self.total_fetched == 0:
            return 0.0
        return self.valid_records / self.total_fetched * 100

    def reset(self) -> None:
        self.total_fetched = 0
        self.valid_records = 0
        self.invalid_records = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "validationRate": round(self.validation_rate, 2),
            "totalRecordsProcessed": self.total_fetched,
            "validRecords": self.valid_records,
            "invalidRecords": self.invalid_records,
        }


@dataclass
class ErrorLogEntry:
    """A single error observed during a run."""

    code: str
    message: str
    phase: Optional[str]
    context: dict[str, Any] = field(default_factory=dict)
    will_retry: bool = False
    timestamp: datetime = field(default_factory=utcnow)


class ErrorLog:
    """Collects errors for the run summary stored on the sync log."""

    def __init__(self):
        self.entries: list[ErrorLogEntry] = []

    def log(
        self,
        error: BaseException | str,
        code: str,
        phase: Optional[ImportPhase] = None,
        context: Optional[dict[str, Any]] = None,
        will_retry: bool = False,
    ) -> ErrorLogEntry:
        phase_value = phase.value if phase is not None else None
        entry = ErrorLogEntry(
            code=code,
            message=str(error),
            phase=phase_value,
            context=context or {},
            will_retry=will_retry,
        )
        self.entries.append(entry)

        logger.error(
            f"[{phase_value or 'IMPORT'}] Error {code}: {entry.message}"
            + (f" (context: {entry.context})" if entry.context else "")
            + (" (will retry)" if will_retry else " (continuing)")
        )
        return entry

    def summary(self) -> dict[str, Any]:
        errors_by_phase = {phase.value: 0 for phase in PHASE_ORDER}
        errors_by_code: dict[str, int] = {}
        for entry in self.entries:
            if entry.phase is not None:
                errors_by_phase[entry.phase] = errors_by_phase.get(entry.phase, 0) + 1
            errors_by_code[entry.code] = errors_by_code.get(entry.code, 0) + 1

        retried = sum(1 for entry in self.entries if entry.will_retry)
        return {
            "totalErrors": len(self.entries),
            "errorsByPhase": errors_by_phase,
            "errorsByCode": errors_by_code,
            "criticalErrors": len(self.entries) - retried,
            "retriedErrors": retried,
        }
