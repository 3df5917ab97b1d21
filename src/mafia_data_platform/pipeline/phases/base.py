"""Phase contract shared by all import phases.

A phase turns a stable, ordered list of work units into rows:

    for unit in units:
        check cancellation -> fetch -> validate -> upsert -> commit -> mark processed

Each unit runs in its own transaction under the run's RetryPolicy.
Transient failures are retried. Units that still fail are written to the
skipped-entity ledger and the loop moves on. Anything unclassified
propagates and fails the run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlmodel import col, select

from mafia_data_platform.config import ImportConfig
from mafia_data_platform.database.session import session_scope
from mafia_data_platform.ingestion.client import ParsedPage, SiteClient
from mafia_data_platform.ingestion.records import SiteRecord
from mafia_data_platform.models import EntityType, ImportPhase
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.checkpoint import PhaseCursor
from mafia_data_platform.pipeline.errors import (
    ErrorClass,
    ErrorCode,
    ListingUnavailableError,
    PermanentUnitError,
    UnitFailure,
)
from mafia_data_platform.pipeline.metrics import ErrorLog, ValidationMetrics
from mafia_data_platform.pipeline.retry import RetryPolicy
from mafia_data_platform.pipeline.skipped import SkippedEntityLedger
from mafia_data_platform.storage.upsert import get_by_gomafia_id

logger = logging.getLogger(__name__)


@dataclass
class WorkUnit:
    """One unit of work: a listing page or a single entity.

    key is the checkpoint cursor value: the entity's external id, or
    "page:<n>" for listing pages.
    """

    key: str
    entity_type: EntityType
    entity_id: Optional[str] = None
    page_number: Optional[int] = None
    label: Optional[str] = None
    # Content fetched while listing units (first listing page)
    payload: Any = None


@dataclass
class PhaseContext:
    """Everything a phase needs for one run, passed explicitly."""

    engine: Engine
    client: SiteClient
    token: CancellationToken
    retry: RetryPolicy
    ledger: SkippedEntityLedger
    config: ImportConfig = field(default_factory=ImportConfig)
    metrics: ValidationMetrics = field(default_factory=ValidationMetrics)
    errors: ErrorLog = field(default_factory=ErrorLog)
    sync_log_id: Optional[str] = None
    cursor: Optional[PhaseCursor] = None
    on_page_skipped: Optional[Callable[[ImportPhase, int], None]] = None

    def session(self):
        """Transactional session scope on the run's engine."""
        return session_scope(self.engine)


@dataclass
class PhaseResult:
    phase: ImportPhase
    units_total: int = 0
    units_processed: int = 0
    units_skipped: int = 0
    records_written: int = 0


class Phase:
    """Base class for import phases.

    Subclasses set ``phase`` and ``entity_type`` and implement list_units()
    and process_unit().
    """

    phase: ImportPhase
    entity_type: EntityType

    @property
    def name(self) -> str:
        return self.phase.value

    # ========================================================================
    # UNIT CONTRACT
    # ========================================================================

    def list_units(self, ctx: PhaseContext) -> list[WorkUnit]:
        """Return every unit of this phase in a stable order."""
        raise NotImplementedError

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        """Fetch, validate and store one unit in a single transaction.

        Returns:
            Number of records written
        """
        raise NotImplementedError

    def build_unit(
        self, entity_id: Optional[str] = None, page_number: Optional[int] = None
    ) -> WorkUnit:
        """Rebuild a unit from its ledger identity (for operator retries)."""
        raise NotImplementedError

    def retry_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        """Re-run a single unit under the retry policy.

        Raises:
            UnitFailure: If the unit still fails
        """
        return ctx.retry.call(self.process_unit, ctx, unit)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(self, ctx: PhaseContext) -> PhaseResult:
        """Run the phase, resuming from ctx.cursor when it carries a checkpoint."""
        units = self.list_units(ctx)
        pending = ctx.cursor.pending(units) if ctx.cursor is not None else list(units)
        result = PhaseResult(phase=self.phase, units_total=len(units))

        logger.info(f"[{self.name}] {len(pending)} of {len(units)} units to process")

        for unit in pending:
            ctx.token.raise_if_cancelled()

            try:
                result.records_written += ctx.retry.call(self.process_unit, ctx, unit)
            except UnitFailure as failure:
                self.record_failure(ctx, unit, failure)
                result.units_skipped += 1
                if ctx.cursor is not None:
                    ctx.cursor.mark_skipped(unit.key)
                continue

            result.units_processed += 1
            if ctx.cursor is not None:
                ctx.cursor.mark_processed(unit.key)

        logger.info(
            f"[{self.name}] Done: {result.units_processed} processed, "
            f"{result.units_skipped} skipped, {result.records_written} records written"
        )
        return result

    def record_failure(
        self,
        ctx: PhaseContext,
        unit: WorkUnit,
        failure: UnitFailure,
    ) -> None:
        """Write a failed unit to the ledger and the run's error log."""
        code = failure.code
        ctx.ledger.record_skip(
            phase=self.phase,
            entity_type=unit.entity_type,
            entity_id=unit.entity_id,
            page_number=unit.page_number,
            error_code=code.value,
            error_message=str(failure),
            error_details=failure.details,
            sync_log_id=ctx.sync_log_id,
        )
        ctx.errors.log(
            failure,
            code.value,
            phase=self.phase,
            context={"unit": unit.key, "attempts": failure.attempts},
        )
        if unit.page_number is not None and ctx.on_page_skipped is not None:
            ctx.on_page_skipped(self.phase, unit.page_number)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def validate_rows(
        self, rows: Sequence[dict[str, Any]], schema: type[SiteRecord]
    ) -> tuple[list, int]:
        """Validate raw rows, dropping the invalid ones.

        Returns:
            (valid records, number of invalid rows)
        """
        records = []
        invalid = 0
        for row in rows:
            try:
                records.append(schema.model_validate(row))
            except ValidationError as e:
                invalid += 1
                logger.debug(f"[{self.name}] Invalid row {row.get('id')!r}: {e.error_count()} error(s)")
        return records, invalid

    @staticmethod
    def count_rows(ctx: PhaseContext, valid: int, invalid: int) -> None:
        """Update validation metrics once a unit has committed."""
        if valid:
            ctx.metrics.record_valid(valid)
        if invalid:
            ctx.metrics.record_invalid(invalid)


class ListingPhase(Phase):
    """Phase whose units are the pages of a paginated listing."""

    entity_type = EntityType.PAGE
    path: str
    params: dict[str, Any] = {}
    schema: type[SiteRecord]

    def page_params(self, page_number: int) -> dict[str, Any]:
        return {**self.params, "page": page_number}

    def fetch(self, ctx: PhaseContext, page_number: int) -> ParsedPage:
        return ctx.client.fetch_page(self.path, self.page_params(page_number))

    def build_unit(
        self, entity_id: Optional[str] = None, page_number: Optional[int] = None
    ) -> WorkUnit:
        if page_number is None:
            raise ValueError(f"{self.name} units are listing pages; page_number is required")
        return WorkUnit(key=f"page:{page_number}", entity_type=EntityType.PAGE, page_number=page_number)

    def list_units(self, ctx: PhaseContext) -> list[WorkUnit]:
        """Fetch page 1 to learn the page count.

        Raises:
            ListingUnavailableError: If page 1 still fails after retries
                (EC-001 for an unreachable site). The run fails and keeps
                its checkpoint, since no other page can be enumerated.
        """
        first_unit = self.build_unit(page_number=1)
        try:
            first = ctx.retry.call(self.fetch, ctx, 1)
        except UnitFailure as failure:
            code = ErrorCode.SITE_UNAVAILABLE if failure.error_class == ErrorClass.TRANSIENT else failure.code
            ctx.errors.log(
                failure,
                code.value,
                phase=self.phase,
                context={"unit": first_unit.key, "attempts": failure.attempts},
            )
            raise ListingUnavailableError(f"{self.name} listing unavailable: {failure}", code=code) from failure

        page_count = first.page_count
        if ctx.config.site.max_pages is not None:
            page_count = min(page_count, ctx.config.site.max_pages)

        first_unit.payload = first
        return [first_unit] + [self.build_unit(page_number=n) for n in range(2, page_count + 1)]

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        page = unit.payload if unit.payload is not None else self.fetch(ctx, unit.page_number)
        records, invalid = self.validate_rows(page.rows, self.schema)

        with ctx.session() as session:
            for record in records:
                self.store(session, record)

        self.count_rows(ctx, len(records), invalid)
        return len(records)

    def store(self, session, record) -> None:
        """Upsert one validated record."""
        raise NotImplementedError


class EntityPhase(Phase):
    """Phase with one unit per already-imported entity."""

    source_model: Any

    def build_unit(
        self, entity_id: Optional[str] = None, page_number: Optional[int] = None
    ) -> WorkUnit:
        if entity_id is None:
            raise ValueError(f"{self.name} units are entities; entity_id is required")
        return WorkUnit(key=str(entity_id), entity_type=self.entity_type, entity_id=str(entity_id))

    def list_units(self, ctx: PhaseContext) -> list[WorkUnit]:
        """Every source entity, ordered by surrogate id (stable across runs)."""
        model = self.source_model
        with ctx.session() as session:
            rows = session.exec(
                select(model.gomafia_id, model.name).order_by(col(model.id))
            ).all()

        return [
            WorkUnit(
                key=gomafia_id,
                entity_type=self.entity_type,
                entity_id=gomafia_id,
                label=name,
            )
            for gomafia_id, name in rows
        ]

    def load_entity(self, session, unit: WorkUnit):
        """Load the source entity of a unit.

        Raises:
            PermanentUnitError: If the entity no longer exists (EC-002)
        """
        entity = get_by_gomafia_id(session, self.source_model, unit.entity_id)
        if entity is None:
            raise PermanentUnitError(
                f"{self.source_model.__name__} {unit.entity_id} not found",
                code=ErrorCode.NOT_FOUND,
            )
        return entity
