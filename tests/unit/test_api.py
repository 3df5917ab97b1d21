"""Unit tests for the HTTP control surface.

Uses FastAPI's TestClient with a real ImportControl on in-memory SQLite,
FakeLock and FakePhase. Background runs are gated with threading.Event so
the worker never touches the database while a request does.
"""

import threading
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from mafia_data_platform.api import create_app
from mafia_data_platform.models import Club, EntityType, ImportPhase, SkippedStatus, SyncLogStatus
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.checkpoint import Checkpoint, CheckpointStore
from mafia_data_platform.pipeline.control import ActiveRun, ImportControl, RunRegistry
from mafia_data_platform.pipeline.errors import PermanentUnitError
from mafia_data_platform.pipeline.run_log import STALE_RUN_MESSAGE, RunLogRepository
from mafia_data_platform.pipeline.skipped import SkippedEntityLedger

CLUB_IDS = ["c1", "c2", "c3"]


class KeepingRegistry(RunRegistry):
    """RunRegistry that remembers every run it saw."""

    def __init__(self):
        super().__init__()
        self.started = []

    def register(self, run) -> None:
        self.started.append(run)
        super().register(run)


class Gate:
    """Blocks the first unit of a run until the test opens it."""

    def __init__(self):
        self.entered = threading.Event()
        self.opened = threading.Event()

    def __call__(self, ctx, unit) -> None:
        if unit.key == CLUB_IDS[0]:
            self.entered.set()
            self.opened.wait(5)


@pytest.fixture
def registry():
    return KeepingRegistry()


@pytest.fixture
def build_control(engine, fake_site, import_config, make_lock, make_phase, registry):
    def build(lock_available=True, on_unit=None) -> ImportControl:
        return ImportControl(
            engine,
            config=import_config,
            client_factory=lambda: fake_site,
            lock_factory=lambda: make_lock(available=lock_available),
            phases_factory=lambda: [make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=on_unit)],
            registry=registry,
        )

    return build


@pytest.fixture
def client(build_control):
    return TestClient(create_app(build_control()))


def record_skip(engine, entity_id: str, phase: ImportPhase = ImportPhase.CLUBS):
    return SkippedEntityLedger(engine).record_skip(
        phase=phase,
        entity_type=EntityType.CLUB,
        entity_id=entity_id,
        error_code="EC-002",
        error_message="HTTP 404",
    )


# ============================================================================
# Start / status / cancel
# ============================================================================


class TestStartImport:
    """Test POST /api/import."""

    def test_start_returns_accepted(self, client, registry, engine, fake_site):
        response = client.post("/api/import")

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Import started"
        assert body["estimatedDuration"] == "3-4 hours"

        run = registry.started[-1]
        assert run.sync_log_id == body["syncLogId"]
        assert run.thread.name == f"import-{body['syncLogId'][:8]}"
        run.thread.join(5)

        assert run.orchestrator.result.status == SyncLogStatus.COMPLETED
        assert RunLogRepository(engine).get_log(body["syncLogId"]).status == "COMPLETED"
        assert fake_site.closed is True
        assert registry.active() == []

    def test_start_with_force_restart(self, client, registry):
        response = client.post("/api/import", json={"forceRestart": True})

        assert response.status_code == 202
        run = registry.started[-1]
        run.thread.join(5)
        assert run.orchestrator.force_restart is True

    def test_start_while_running_conflicts(self, build_control, engine):
        RunLogRepository(engine).start_run()
        CheckpointStore(engine).save(
            Checkpoint(phase=ImportPhase.PLAYERS, progress=42), current_operation="PLAYERS: 10/20"
        )
        client = TestClient(create_app(build_control(lock_available=False)))

        response = client.post("/api/import")

        assert response.status_code == 409
        assert response.json() == {
            "error": "Import already running",
            "code": "IMPORT_RUNNING",
            "details": {"progress": 42, "currentOperation": "PLAYERS: 10/20"},
        }

    def test_malformed_body_is_rejected(self, client):
        response = client.post("/api/import", json={"forceRestart": "sometimes"})

        assert response.status_code == 422


class TestStatusAndCancel:
    """Test GET and DELETE /api/import."""

    def test_status_when_idle(self, client, engine):
        with Session(engine) as session:
            session.add(Club(gomafia_id="1", name="Red Square"))
            session.commit()

        response = client.get("/api/import")

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"

        body = response.json()
        assert body["isRunning"] is False
        assert body["progress"] == 0
        assert body["lastSyncTime"] is None
        assert body["summary"] == {"players": 0, "clubs": 1, "games": 0, "tournaments": 0}
        assert set(body["validation"]) == {
            "validationRate",
            "totalRecordsProcessed",
            "validRecords",
            "invalidRecords",
        }

    def test_cancel_when_idle(self, client):
        response = client.delete("/api/import")

        assert response.status_code == 404
        assert response.json()["code"] == "NO_IMPORT_RUNNING"

    def test_cancel_running_import(self, build_control, registry, engine):
        gate = Gate()
        client = TestClient(create_app(build_control(on_unit=gate)))

        started = client.post("/api/import").json()
        assert gate.entered.wait(5)
        run = registry.started[-1]

        status = client.get("/api/import").json()
        assert status["isRunning"] is True
        assert status["syncLogId"] == started["syncLogId"]

        response = client.delete("/api/import")
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Import cancellation requested"}
        assert run.token.is_cancelled is True

        gate.opened.set()
        run.thread.join(5)

        assert run.orchestrator.result.status == SyncLogStatus.CANCELLED
        after = client.get("/api/import").json()
        assert after["isRunning"] is False
        assert after["currentOperation"] == "Import cancelled by user"
        assert client.delete("/api/import").status_code == 404

    def test_shutdown_cancels_owned_runs(self):
        control = MagicMock()

        with TestClient(create_app(control)) as client:
            assert client.get("/health").json() == {"status": "healthy"}

        control.shutdown.assert_called_once()

    def test_unexpected_error_is_internal(self):
        control = MagicMock()
        control.status.side_effect = RuntimeError("database unreachable")
        client = TestClient(create_app(control), raise_server_exceptions=False)

        response = client.get("/api/import")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


# ============================================================================
# Retry
# ============================================================================


class TestRetry:
    """Test POST and GET /api/import/retry."""

    def test_retry_skipped_entity(self, client, engine):
        skipped = record_skip(engine, "c2")

        response = client.post("/api/import/retry", json={"phase": "CLUBS", "skippedEntityIds": [skipped.id]})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Retried 1 of 1 CLUBS unit(s)",
            "retriedCount": 1,
        }
        row = SkippedEntityLedger(engine).get(skipped.id)
        assert row.status == "COMPLETED"
        assert row.retry_count == 1
        assert row.last_retry_at is not None

    def test_retry_by_entity_id_accepts_lowercase_phase(self, client, engine):
        skipped = record_skip(engine, "c3")

        response = client.post("/api/import/retry", json={"phase": "clubs", "entityIds": ["c3", "c9"]})

        assert response.json()["retriedCount"] == 2
        assert SkippedEntityLedger(engine).get(skipped.id).status == "COMPLETED"

    def test_failed_retry_is_marked_failed(self, build_control, engine):
        def not_found(ctx, unit):
            raise PermanentUnitError(f"Club {unit.entity_id} not found")

        client = TestClient(create_app(build_control(on_unit=not_found)))
        skipped = record_skip(engine, "c1")

        body = client.post("/api/import/retry", json={"phase": "CLUBS", "skippedEntityIds": [skipped.id, 999]}).json()

        assert body["success"] is False
        assert body["retriedCount"] == 0
        assert body["errors"] == [
            "Skipped entity 999 not found in CLUBS",
            "c1: Club c1 not found",
        ]
        row = SkippedEntityLedger(engine).get(skipped.id)
        assert row.status == "FAILED"
        assert row.error_message == "Club c1 not found"

    def test_unexpected_retry_error_marks_row_failed(self, build_control, engine):
        def database_down(ctx, unit):
            raise RuntimeError("database unreachable")

        client = TestClient(create_app(build_control(on_unit=database_down)), raise_server_exceptions=False)
        skipped = record_skip(engine, "c1")

        response = client.post("/api/import/retry", json={"phase": "CLUBS", "skippedEntityIds": [skipped.id]})

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        row = SkippedEntityLedger(engine).get(skipped.id)
        assert row.status == "FAILED"
        assert row.error_message == "RuntimeError: database unreachable"

    def test_page_numbers_on_entity_phase(self, client):
        body = client.post("/api/import/retry", json={"phase": "CLUBS", "pageNumbers": [2]}).json()

        assert body["success"] is False
        assert body["retriedCount"] == 0
        assert "entity_id is required" in body["errors"][0]

    def test_invalid_phase(self, client):
        response = client.post("/api/import/retry", json={"phase": "bogus"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid phase: bogus", "code": "INVALID_PHASE"}

    def test_missing_phase(self, client):
        assert client.post("/api/import/retry", json={"entityIds": ["c1"]}).status_code == 422

    def test_retry_while_running_conflicts(self, build_control, engine):
        RunLogRepository(engine).start_run()
        client = TestClient(create_app(build_control(lock_available=False)))

        response = client.post("/api/import/retry", json={"phase": "CLUBS", "entityIds": ["c1"]})

        assert response.status_code == 409
        assert response.json()["code"] == "IMPORT_RUNNING"

    def test_retry_without_lock_conflicts(self, build_control):
        client = TestClient(create_app(build_control(lock_available=False)))

        response = client.post("/api/import/retry", json={"phase": "CLUBS", "entityIds": ["c1"]})

        assert response.status_code == 409

    def test_list_skipped_across_phases(self, client, engine):
        record_skip(engine, "c1")
        record_skip(engine, "p1", phase=ImportPhase.PLAYERS)

        body = client.get("/api/import/retry").json()

        assert body["summary"]["CLUBS"]["total"] == 1
        assert body["summary"]["PLAYERS"]["pending"] == 1
        assert [e["entityId"] for e in body["entities"]] == ["c1", "p1"]
        assert body["entities"][0]["errorCode"] == "EC-002"

    def test_list_skipped_for_phase_and_status(self, client, engine):
        first = record_skip(engine, "c1")
        record_skip(engine, "c2")
        SkippedEntityLedger(engine).mark_completed(first.id)

        body = client.get("/api/import/retry", params={"phase": "clubs"}).json()
        assert body["total"] == 2

        pending = client.get(
            "/api/import/retry", params={"phase": "CLUBS", "status": SkippedStatus.PENDING.value}
        ).json()
        assert [e["entityId"] for e in pending["entities"]] == ["c2"]

    def test_list_skipped_invalid_filters(self, client):
        assert client.get("/api/import/retry", params={"phase": "nope"}).status_code == 400
        assert client.get("/api/import/retry", params={"status": "LOST"}).status_code == 422


# ============================================================================
# Runs left behind by a dead process
# ============================================================================


class TestInterruptedRun:
    """Test runs still marked RUNNING with no live orchestrator."""

    @pytest.fixture
    def interrupted(self, engine):
        log = RunLogRepository(engine).start_run()
        CheckpointStore(engine).save(
            Checkpoint(phase=ImportPhase.CLUBS, last_processed_id="c2", processed_ids=["c2"])
        )
        return log

    def test_status_finishes_interrupted_run(self, client, engine, interrupted):
        body = client.get("/api/import").json()

        assert body["isRunning"] is False
        assert body["lastError"] == STALE_RUN_MESSAGE
        assert RunLogRepository(engine).get_log(interrupted.id).status == "FAILED"
        # Still resumable
        assert CheckpointStore(engine).load().last_processed_id == "c2"

    def test_cancel_interrupted_run_reports_not_running(self, client, engine, interrupted):
        response = client.delete("/api/import")

        assert response.status_code == 404
        assert response.json()["code"] == "NO_IMPORT_RUNNING"
        assert RunLogRepository(engine).get_log(interrupted.id).status == "FAILED"
        assert client.get("/api/import").json()["isRunning"] is False

    def test_retry_after_interrupted_run(self, client, engine, interrupted):
        skipped = record_skip(engine, "c3")

        body = client.post("/api/import/retry", json={"phase": "CLUBS", "skippedEntityIds": [skipped.id]}).json()

        assert body["retriedCount"] == 1
        assert SkippedEntityLedger(engine).get(skipped.id).status == "COMPLETED"
        assert RunLogRepository(engine).get_log(interrupted.id).status == "FAILED"

    def test_run_of_live_process_is_left_alone(self, build_control, engine):
        log = RunLogRepository(engine).start_run()
        client = TestClient(create_app(build_control(lock_available=False)))

        assert client.get("/api/import").json()["isRunning"] is True

        response = client.delete("/api/import")

        assert response.status_code == 200
        status = RunLogRepository(engine).get_status()
        assert status.is_running is True
        assert status.cancel_requested is True
        assert RunLogRepository(engine).get_log(log.id).status == "RUNNING"


class TestRunRegistry:
    """Test RunRegistry bookkeeping."""

    @staticmethod
    def finished_run(sync_log_id: str) -> ActiveRun:
        thread = threading.Thread(target=lambda: None)
        thread.start()
        thread.join()
        return ActiveRun(sync_log_id, CancellationToken(), thread, MagicMock())

    def test_register_drops_finished_runs(self):
        registry = RunRegistry()
        registry.register(self.finished_run("old"))

        registry.register(self.finished_run("new"))

        assert registry.get("old") is None
        assert registry.get("new") is not None
        assert registry.active() == []
