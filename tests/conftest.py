"""Pytest configuration and fixtures for all tests."""

from typing import Any, Generator, Optional

import httpx
import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from mafia_data_platform.config import ImportConfig, RetryConfig
from mafia_data_platform.database.session import _engines, create_db_and_tables
from mafia_data_platform.ingestion.client import ParsedPage
from mafia_data_platform.models import EntityType, ImportPhase
from mafia_data_platform.pipeline.errors import ImportConflictError
from mafia_data_platform.pipeline.phases import Phase, PhaseContext, WorkUnit


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clear_engine_cache():
    """Clear the global engine cache around each test."""
    _engines.clear()
    yield
    _engines.clear()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with every table created.

    StaticPool keeps one shared connection so the import worker thread and
    the test thread see the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


# ============================================================================
# Config Fixtures
# ============================================================================

@pytest.fixture
def import_config() -> ImportConfig:
    """Import config with instant retries and small checkpoint batches."""
    return ImportConfig(
        retry=RetryConfig(max_attempts=3, initial_delay=0, max_delay=0),
        batch_size=2,
        stats_start_year=2022,
    )


# ============================================================================
# Fakes
# ============================================================================

class FakeLock:
    """In-process stand-in for the Postgres advisory lock."""

    def __init__(self, available: bool = True):
        self.available = available
        self.is_held = False
        self.acquire_calls = 0
        self.release_calls = 0

    def acquire(self) -> bool:
        self.acquire_calls += 1
        if self.is_held:
            return True
        if not self.available:
            return False
        self.is_held = True
        return True

    def release(self) -> None:
        self.release_calls += 1
        self.is_held = False

    def with_lock(self, fn):
        if not self.acquire():
            raise ImportConflictError("Import already running")
        try:
            return fn()
        finally:
            self.release()


def _params_key(params: Optional[dict[str, Any]]) -> tuple:
    return tuple(sorted((params or {}).items()))


def http_error(status_code: int, path: str = "/") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", f"https://gomafia.pro{path}")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class FakeSite:
    """Scripted replacement for SiteClient.

    Each (path, params) maps to a ParsedPage, an exception, or a list of
    outcomes consumed in order (the last one repeats). Unknown pages 404.
    """

    def __init__(self):
        self.pages: dict[tuple, Any] = {}
        self.calls: list[tuple[str, dict]] = []
        self.closed = False

    def add(self, path: str, outcome: Any, **params: Any) -> None:
        self.pages[(path, _params_key(params))] = outcome

    def listing(self, path: str, pages: list[list[dict]], **params: Any) -> None:
        """Register a paginated listing, one list of rows per page."""
        for number, rows in enumerate(pages, start=1):
            self.add(path, ParsedPage(rows=rows, page_count=len(pages)), page=number, **params)

    def fetch_page(self, path: str, params: Optional[dict[str, Any]] = None) -> ParsedPage:
        self.calls.append((path, dict(params or {})))
        key = (path, _params_key(params))
        if key not in self.pages:
            raise http_error(404, path)

        outcome = self.pages[key]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_lock() -> FakeLock:
    return FakeLock()


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def make_http_error():
    """Factory for httpx.HTTPStatusError with a given status code."""
    return http_error


@pytest.fixture
def make_lock():
    """Factory for FakeLock instances."""
    return FakeLock


class FakePhase(Phase):
    """Phase over a fixed list of entity ids that writes nothing.

    on_unit(ctx, unit) runs after each unit is counted; tests use it to
    cancel, fail or advance the clock at a precise point.
    """

    entity_type = EntityType.CLUB

    def __init__(self, phase: ImportPhase, keys: list[str], on_unit=None):
        self.phase = phase
        self.keys = list(keys)
        self.on_unit = on_unit
        self.seen: list[str] = []

    def list_units(self, ctx: PhaseContext) -> list[WorkUnit]:
        return [self.build_unit(entity_id=key) for key in self.keys]

    def build_unit(self, entity_id=None, page_number=None) -> WorkUnit:
        if entity_id is None:
            raise ValueError(f"{self.name} units are entities; entity_id is required")
        return WorkUnit(key=entity_id, entity_type=self.entity_type, entity_id=entity_id)

    def process_unit(self, ctx: PhaseContext, unit: WorkUnit) -> int:
        self.seen.append(unit.key)
        ctx.metrics.record_valid()
        if self.on_unit is not None:
            self.on_unit(ctx, unit)
        return 1


@pytest.fixture
def make_phase():
    """Factory for FakePhase instances."""
    return FakePhase
