"""Unit tests for ImportOrchestrator.

Runs against in-memory SQLite with FakeLock, FakePhase and FakeSite; no HTTP.
"""

import pytest
from sqlmodel import Session, select

from mafia_data_platform.ingestion.client import ParsedPage
from mafia_data_platform.models import Club, ImportPhase, SyncLog, SyncLogStatus
from mafia_data_platform.pipeline.cancellation import CancellationToken
from mafia_data_platform.pipeline.checkpoint import Checkpoint, CheckpointStore
from mafia_data_platform.pipeline.errors import ImportConflictError, PermanentUnitError
from mafia_data_platform.pipeline.orchestrator import ImportOrchestrator, OrchestratorState
from mafia_data_platform.pipeline.phases import ClubsPhase
from mafia_data_platform.pipeline.run_log import RunLogRepository
from mafia_data_platform.pipeline.skipped import SkippedEntityLedger

CLUB_IDS = ["c1", "c2", "c3", "c4", "c5"]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def build(engine, lock, site, config, phases, **kwargs) -> ImportOrchestrator:
    return ImportOrchestrator(engine, lock, site, config=config, phases=phases, **kwargs)


class TestRunLifecycle:
    """Test complete, failed and rejected runs."""

    def test_completed_run(self, engine, fake_lock, fake_site, import_config, make_phase):
        phases = [make_phase(ImportPhase.CLUBS, CLUB_IDS), make_phase(ImportPhase.PLAYERS, ["p1"])]
        orchestrator = build(engine, fake_lock, fake_site, import_config, phases)

        result = orchestrator.run()

        assert result.status == SyncLogStatus.COMPLETED
        assert result.records_processed == 6
        assert [p.units_processed for p in result.phases] == [5, 1]
        assert orchestrator.state == OrchestratorState.IDLE
        assert fake_lock.is_held is False
        assert fake_lock.release_calls == 1

        repo = RunLogRepository(engine)
        status = repo.get_status()
        assert status.is_running is False
        assert status.progress == 100
        assert status.valid_records == 6
        assert repo.get_log(result.sync_log_id).status == "COMPLETED"
        assert CheckpointStore(engine).load() is None

    def test_failed_run_records_error_and_releases_lock(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        def explode(ctx, unit):
            if unit.key == "c2":
                raise RuntimeError("boom")

        phases = [make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=explode)]

        result = build(engine, fake_lock, fake_site, import_config, phases).run()

        assert result.status == SyncLogStatus.FAILED
        assert result.error == "RuntimeError: boom"
        assert fake_lock.is_held is False

        repo = RunLogRepository(engine)
        assert repo.get_status().last_error == "RuntimeError: boom"
        log = repo.get_log(result.sync_log_id)
        assert log.status == "FAILED"
        assert log.errors["errorSummary"]["errorsByCode"] == {"FATAL": 1}
        # Resumable from the last committed unit
        assert CheckpointStore(engine).load().last_processed_id == "c1"

    def test_lock_unavailable_is_rejected(self, engine, make_lock, fake_site, import_config, make_phase):
        orchestrator = build(
            engine, make_lock(available=False), fake_site, import_config, [make_phase(ImportPhase.CLUBS, CLUB_IDS)]
        )

        with pytest.raises(ImportConflictError):
            orchestrator.run()

        assert orchestrator.state == OrchestratorState.REJECTED
        with Session(engine) as session:
            assert session.exec(select(SyncLog)).first() is None

    def test_skipped_units_complete_with_non_critical_errors(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        def not_found(ctx, unit):
            if unit.key == "c3":
                raise PermanentUnitError("Club c3 not found")

        phases = [make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=not_found)]

        result = build(engine, fake_lock, fake_site, import_config, phases).run()

        assert result.status == SyncLogStatus.COMPLETED
        assert result.phases[0].units_skipped == 1
        log = RunLogRepository(engine).get_log(result.sync_log_id)
        assert log.errors["message"] == "Import completed with non-critical errors"
        assert SkippedEntityLedger(engine).get_by_entity_id(ImportPhase.CLUBS, "c3").sync_log_id == result.sync_log_id


class TestCancellationAndResume:
    """Test cancel, checkpoint and resume."""

    def test_cancel_then_resume(self, engine, fake_lock, fake_site, import_config, make_phase):
        orchestrator = None

        def cancel_after_third(ctx, unit):
            if unit.key == "c3":
                orchestrator.cancel()

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=cancel_after_third)
        players = make_phase(ImportPhase.PLAYERS, ["p1", "p2"])
        orchestrator = build(engine, fake_lock, fake_site, import_config, [clubs, players])

        result = orchestrator.run()

        assert result.status == SyncLogStatus.CANCELLED
        assert clubs.seen == ["c1", "c2", "c3"]
        assert players.seen == []
        assert fake_lock.is_held is False

        checkpoint = CheckpointStore(engine).load()
        assert checkpoint.phase == ImportPhase.CLUBS
        assert checkpoint.last_processed_id == "c3"
        log = RunLogRepository(engine).get_log(result.sync_log_id)
        assert log.status == "CANCELLED"
        assert log.errors["reason"] == "USER"
        assert RunLogRepository(engine).get_status().last_error is None

        clubs_again = make_phase(ImportPhase.CLUBS, CLUB_IDS)
        players_again = make_phase(ImportPhase.PLAYERS, ["p1", "p2"])
        resumed = build(engine, fake_lock, fake_site, import_config, [clubs_again, players_again]).run()

        assert resumed.status == SyncLogStatus.COMPLETED
        assert clubs_again.seen == ["c4", "c5"]
        assert players_again.seen == ["p1", "p2"]
        assert CheckpointStore(engine).load() is None

    def test_force_restart_discards_checkpoint(self, engine, fake_lock, fake_site, import_config, make_phase):
        CheckpointStore(engine).save(Checkpoint(phase=ImportPhase.CLUBS, batch=1, last_processed_id="c3"))
        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS)

        build(engine, fake_lock, fake_site, import_config, [clubs], force_restart=True).run()

        assert clubs.seen == CLUB_IDS

    def test_checkpoint_for_unscheduled_phase_fails_run(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        CheckpointStore(engine).save(Checkpoint(phase=ImportPhase.JUDGES, last_processed_id="j1"))

        result = build(engine, fake_lock, fake_site, import_config, [make_phase(ImportPhase.CLUBS, CLUB_IDS)]).run()

        assert result.status == SyncLogStatus.FAILED
        assert "ResumeInconsistencyError" in result.error
        # Left in place for inspection
        assert CheckpointStore(engine).load().phase == ImportPhase.JUDGES

    def test_cancel_flag_from_another_process(self, engine, fake_lock, fake_site, import_config, make_phase):
        def flag_cancel(ctx, unit):
            if unit.key == "c1":
                RunLogRepository(engine).request_cancel()

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=flag_cancel)

        result = build(engine, fake_lock, fake_site, import_config, [clubs]).run()

        assert result.status == SyncLogStatus.CANCELLED
        # Picked up when the first batch (2 units) is checkpointed
        assert clubs.seen == ["c1", "c2"]
        assert RunLogRepository(engine).get_status().cancel_requested is False

    def test_timeout_cancels_with_reason(self, engine, fake_lock, fake_site, import_config, make_phase):
        clock = FakeClock()
        token = CancellationToken(max_duration_hours=1, clock=clock)

        def advance(ctx, unit):
            clock.now = 2 * 3600

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=advance)

        result = build(engine, fake_lock, fake_site, import_config, [clubs], token=token).run()

        assert result.status == SyncLogStatus.CANCELLED
        assert clubs.seen == ["c1"]
        assert result.error.startswith("EC-008")

        repo = RunLogRepository(engine)
        assert repo.get_status().last_error == "EC-008: Import timeout exceeded (1 hours)"
        assert repo.get_log(result.sync_log_id).errors["reason"] == "TIMEOUT"
        assert CheckpointStore(engine).load().last_processed_id == "c1"


class TestProgressAndBookkeeping:
    """Test progress and skipped-page bookkeeping."""

    def test_calculate_progress(self, engine, fake_lock, fake_site, import_config, make_phase):
        phases = [make_phase(phase, []) for phase in list(ImportPhase)[:4]]
        orchestrator = build(engine, fake_lock, fake_site, import_config, phases)

        assert orchestrator.calculate_progress(0) == 0
        assert orchestrator.calculate_progress(1, 1, 2) == 37
        assert orchestrator.calculate_progress(3, 5, 5) == 100
        assert orchestrator.calculate_progress(2, 0, 0) == 50

    def test_skipped_pages_for_storage(self, engine, fake_lock, fake_site, import_config):
        orchestrator = build(engine, fake_lock, fake_site, import_config, [])
        orchestrator.record_skipped_page(ImportPhase.CLUBS, 3)
        orchestrator.record_skipped_page(ImportPhase.CLUBS, 1)
        orchestrator.record_skipped_page(ImportPhase.CLUBS, 3)

        assert orchestrator.get_skipped_pages_for_storage() == {"CLUBS": [1, 3]}

    def test_progress_is_monotonic_across_checkpoints(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        phases = [make_phase(ImportPhase.CLUBS, CLUB_IDS), make_phase(ImportPhase.PLAYERS, ["p1", "p2"])]
        orchestrator = build(engine, fake_lock, fake_site, import_config, phases)
        seen = []
        save = orchestrator.checkpoints.save

        def recording_save(checkpoint, current_operation=None):
            seen.append(checkpoint.progress)
            save(checkpoint, current_operation=current_operation)

        orchestrator.checkpoints.save = recording_save
        orchestrator.run()

        assert seen == sorted(seen)
        assert seen[-1] <= 100


class TestCheckpointShape:
    """Test what the checkpoint holds when a run stops mid-phase."""

    def test_cancel_inside_first_batch_keeps_committed_ids(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        orchestrator = None

        def cancel_after_third(ctx, unit):
            if unit.key == "c3":
                orchestrator.cancel()

        config = import_config.model_copy(update={"batch_size": 10})
        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=cancel_after_third)
        orchestrator = build(engine, fake_lock, fake_site, config, [clubs])

        orchestrator.run()

        checkpoint = CheckpointStore(engine).load()
        assert checkpoint.phase == ImportPhase.CLUBS
        assert checkpoint.batch == 0
        assert checkpoint.processed_ids == ["c1", "c2", "c3"]
        assert checkpoint.last_processed_id == "c3"

    def test_cancel_between_batch_boundaries(self, engine, fake_lock, fake_site, import_config, make_phase):
        orchestrator = None

        def cancel_after_third(ctx, unit):
            if unit.key == "c3":
                orchestrator.cancel()

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=cancel_after_third)
        orchestrator = build(engine, fake_lock, fake_site, import_config, [clubs])

        orchestrator.run()

        # Batch 0 (c1, c2) was saved; only c3 belongs to the open batch
        checkpoint = CheckpointStore(engine).load()
        assert checkpoint.batch == 1
        assert checkpoint.processed_ids == ["c3"]
        assert checkpoint.last_processed_id == "c3"

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS)
        build(engine, fake_lock, fake_site, import_config, [clubs]).run()

        assert clubs.seen == ["c4", "c5"]

    def test_ledgered_units_stay_out_of_processed_ids(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        orchestrator = None

        def fail_c2_cancel_at_c3(ctx, unit):
            if unit.key == "c2":
                raise PermanentUnitError("Club c2 not found")
            if unit.key == "c3":
                orchestrator.cancel()

        config = import_config.model_copy(update={"batch_size": 10})
        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=fail_c2_cancel_at_c3)
        orchestrator = build(engine, fake_lock, fake_site, config, [clubs])

        orchestrator.run()

        checkpoint = CheckpointStore(engine).load()
        assert checkpoint.processed_ids == ["c1", "c3"]
        assert SkippedEntityLedger(engine).get_by_entity_id(ImportPhase.CLUBS, "c2") is not None

    def test_ledgered_unit_after_cursor_is_attempted_again_on_resume(
        self, engine, fake_lock, fake_site, import_config, make_phase
    ):
        orchestrator = None

        def cancel_and_fail_c3(ctx, unit):
            if unit.key == "c3":
                orchestrator.cancel()
                raise PermanentUnitError("Club c3 not found")

        config = import_config.model_copy(update={"batch_size": 10})
        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS, on_unit=cancel_and_fail_c3)
        orchestrator = build(engine, fake_lock, fake_site, config, [clubs])

        orchestrator.run()

        checkpoint = CheckpointStore(engine).load()
        assert checkpoint.processed_ids == ["c1", "c2"]
        assert checkpoint.last_processed_id == "c2"

        clubs = make_phase(ImportPhase.CLUBS, CLUB_IDS)
        build(engine, fake_lock, fake_site, config, [clubs]).run()

        assert clubs.seen == ["c3", "c4", "c5"]


class TestListingOutage:
    """Test a listing whose first page cannot be fetched."""

    def test_unreachable_listing_fails_run_and_resumes(
        self, engine, fake_lock, fake_site, import_config, make_http_error
    ):
        fake_site.add("/rating", make_http_error(503, "/rating"), tab="clubs", page=1)
        fake_site.add("/rating", ParsedPage(rows=[{"id": "2", "name": "B"}], page_count=3), tab="clubs", page=2)
        fake_site.add("/rating", ParsedPage(rows=[{"id": "3", "name": "C"}], page_count=3), tab="clubs", page=3)

        result = build(engine, fake_lock, fake_site, import_config, [ClubsPhase()]).run()

        assert result.status == SyncLogStatus.FAILED
        assert result.error.startswith("ListingUnavailableError: EC-001")
        assert [params["page"] for _, params in fake_site.calls] == [1, 1, 1]
        assert SkippedEntityLedger(engine).list_entities() == []
        assert CheckpointStore(engine).load().phase == ImportPhase.CLUBS

        fake_site.add("/rating", ParsedPage(rows=[{"id": "1", "name": "A"}], page_count=3), tab="clubs", page=1)
        resumed = build(engine, fake_lock, fake_site, import_config, [ClubsPhase()]).run()

        assert resumed.status == SyncLogStatus.COMPLETED
        with Session(engine) as session:
            assert sorted(c.gomafia_id for c in session.exec(select(Club)).all()) == ["1", "2", "3"]
        assert CheckpointStore(engine).load() is None
