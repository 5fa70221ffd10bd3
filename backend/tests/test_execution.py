"""
Tests for execution tracking and ImportPipelineRunner.

Covers status transitions, the one-running-execution-per-pipeline rule under
concurrent starts, result bookkeeping and the runner's outcome paths.
"""

import threading
from datetime import datetime
from unittest.mock import patch

import pytest

from importer.common.cache import ImportCache
from importer.common.exceptions import (
    ExecutionAlreadyQueued,
    ExecutionAlreadyRunning,
    ExecutionTimedOut,
    InvalidExecutionTransition,
)
from importer.core.execution import ImportPipelineRunner, PipelineExecutionService
from importer.core.results import ImportPipelineResult
from importer.core.service import ImportPipelineService
from importer.db.models import ExecutionStatus

from conftest import CSV_INVENTORY

NOW = datetime(2024, 3, 10, 9, 1)


@pytest.fixture
def executions(store):
    """Execution service with a fixed clock."""
    return PipelineExecutionService(store, clock=lambda: NOW)


@pytest.fixture
def runner(store, settings, executions):
    """Runner over an in-process service."""
    service = ImportPipelineService(settings, cache=ImportCache())
    return ImportPipelineRunner(store, service, executions)


# ============================================================================
# Transitions
# ============================================================================


class TestTransitions:
    """Test the execution state machine."""

    def test_pending_running_completed(self, executions, saved_pipeline):
        """Test the happy path and its timestamps."""
        execution = executions.create_execution(saved_pipeline, "manual")
        assert execution.status == ExecutionStatus.PENDING

        execution = executions.mark_as_running(execution)
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.started_at == NOW

        execution = executions.mark_as_completed(execution, {"saved_rows": 2})
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_at == NOW
        assert execution.result_data == {"saved_rows": 2}

    @pytest.mark.parametrize("finish", ["mark_as_completed", "mark_as_cancelled"])
    def test_terminal_executions_are_final(self, executions, saved_pipeline, finish):
        """Test no transition leaves a terminal status."""
        execution = executions.start_execution(saved_pipeline)
        getattr(executions, finish)(execution)

        with pytest.raises(InvalidExecutionTransition):
            executions.mark_as_failed(execution, "late failure")

    def test_pending_cannot_complete(self, executions, saved_pipeline):
        """Test completion requires a running execution."""
        execution = executions.create_execution(saved_pipeline)
        with pytest.raises(InvalidExecutionTransition, match="from 'pending' to 'completed'"):
            executions.mark_as_completed(execution)

    def test_start_passes_through_pending(self, store, executions, saved_pipeline):
        """Test every stored status follows pending, running, completed."""
        history = []
        create, update = store.create_execution, store.update_execution

        def record_create(execution):
            created = create(execution)
            history.append(created.status)
            return created

        def record_update(execution_id, **fields):
            updated = update(execution_id, **fields)
            history.append(updated.status)
            return updated

        with patch.object(store, "create_execution", side_effect=record_create), \
                patch.object(store, "update_execution", side_effect=record_update):
            execution = executions.start_execution(saved_pipeline)
            executions.mark_as_completed(execution)

        assert history == [ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED]

    def test_pending_cannot_fail(self, executions, saved_pipeline):
        """Test a pending execution must start before it can fail."""
        execution = executions.create_execution(saved_pipeline)
        with pytest.raises(InvalidExecutionTransition, match="from 'pending' to 'failed'"):
            executions.mark_as_failed(execution, "never started")

    def test_mark_as_running_rejects_second_run(self, executions, saved_pipeline):
        """Test a pending execution cannot start while another runs."""
        executions.start_execution(saved_pipeline)
        pending = executions.create_execution(saved_pipeline)

        with pytest.raises(ExecutionAlreadyRunning):
            executions.mark_as_running(pending)

    def test_mark_as_failed_records_message_and_trace(self, store, executions, saved_pipeline):
        """Test the error message, stage and logged trace."""
        execution = executions.start_execution(saved_pipeline)
        try:
            raise ValueError("bad feed")
        except ValueError as e:
            failed = executions.mark_as_failed(execution, e, stage="read")

        assert failed.status == ExecutionStatus.FAILED
        assert failed.error_message == "bad feed"
        assert failed.failed_stage == "read"
        error_log = store.list_logs(execution.id, level="error")[0]
        assert "ValueError: bad feed" in error_log.context["trace"]


# ============================================================================
# Concurrency
# ============================================================================


class TestSingleRunning:
    """Test concurrent start_execution calls."""

    def test_exactly_one_start_wins(self, store, executions, saved_pipeline):
        """Test only one of many simultaneous starts succeeds."""
        workers = 8
        barrier = threading.Barrier(workers)
        started, rejected = [], []

        def start():
            barrier.wait()
            try:
                started.append(executions.start_execution(saved_pipeline, "scheduler"))
            except ExecutionAlreadyRunning:
                rejected.append(1)

        threads = [threading.Thread(target=start) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(started) == 1
        assert len(rejected) == workers - 1
        assert store.list_executions(saved_pipeline.id, status="running")[0].id == started[0].id

    def test_enqueue_rejects_second_queued_run(self, executions, saved_pipeline):
        """Test only one pending or running execution can be queued."""
        queued = executions.enqueue_execution(saved_pipeline)
        assert queued.status == ExecutionStatus.PENDING

        with pytest.raises(ExecutionAlreadyQueued) as exc:
            executions.enqueue_execution(saved_pipeline)
        assert exc.value.execution_id == queued.id

    def test_enqueue_rejected_while_running(self, executions, saved_pipeline):
        """Test a running execution also blocks queueing."""
        running = executions.start_execution(saved_pipeline)
        with pytest.raises(ExecutionAlreadyRunning) as exc:
            executions.enqueue_execution(saved_pipeline)
        assert exc.value.execution_id == running.id

    def test_new_run_allowed_after_completion(self, executions, saved_pipeline):
        """Test the rule only covers running executions."""
        first = executions.start_execution(saved_pipeline)
        executions.mark_as_completed(first)

        second = executions.start_execution(saved_pipeline)
        assert executions.get_latest_running_execution(saved_pipeline).id == second.id


# ============================================================================
# Bookkeeping
# ============================================================================


class TestBookkeeping:
    """Test result and schedule bookkeeping."""

    def test_update_result_on_terminal_execution(self, executions, saved_pipeline):
        """Test results cannot be written after the execution finished."""
        execution = executions.start_execution(saved_pipeline)
        executions.mark_as_completed(execution)

        with pytest.raises(InvalidExecutionTransition):
            executions.update_result(execution, ImportPipelineResult())

    def test_tracking_sets_last_and_next(self, executions, saved_pipeline):
        """Test last_executed_at and the next daily instant are stored."""
        execution = executions.start_execution(saved_pipeline)
        pipeline = executions.update_pipeline_execution_tracking(saved_pipeline, execution)

        assert pipeline.last_executed_at == execution.started_at
        assert pipeline.next_execution_at == datetime(2024, 3, 11, 9, 0)


# ============================================================================
# Runner
# ============================================================================


class TestRunner:
    """Test ImportPipelineRunner.run()."""

    def test_completed_run_saves_result(self, store, runner, memory_downloader, saved_pipeline):
        """Test a successful run records stats and persists prepared rows."""
        memory_downloader["inventory.csv"] = CSV_INVENTORY.encode("utf-8")

        execution = runner.run(saved_pipeline.id, "manual")

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.total_rows == 3
        assert execution.processed_rows == 2
        assert execution.result_data["saved_rows"] == 2
        record = store.result_for_execution(execution.id)
        assert [row["vin"] for row in record.data] == ["1HGCM82633A004352", "WBA3A5C51CF256651"]
        assert record.organization_id == 7
        assert store.get_pipeline(saved_pipeline.id).last_executed_at is not None

    def test_invalid_config_fails_execution(self, store, runner, saved_pipeline):
        """Test validation errors become the failure message."""
        store.update_pipeline(saved_pipeline.id, config={
            "download": {"url": "smb://host/feed.csv"}, "read": {"type": "csv"},
        })

        execution = runner.run(saved_pipeline.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Unsupported downloader scheme: smb"

    def test_missing_config(self, store, runner, saved_pipeline):
        """Test an empty configuration fails without running."""
        store.update_pipeline(saved_pipeline.id, config={})
        execution = runner.run(saved_pipeline.id)
        assert execution.error_message == "Pipeline configuration not found"

    def test_stage_failure_names_stage(self, runner, memory_downloader, saved_pipeline):
        """Test a missing source fails the download stage."""
        execution = runner.run(saved_pipeline.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.failed_stage == "download"

    def test_cancelled_run(self, runner, memory_downloader, saved_pipeline):
        """Test a cancel request ends in the cancelled status."""
        memory_downloader["inventory.csv"] = CSV_INVENTORY.encode("utf-8")
        execution = runner.run(saved_pipeline.id, cancel_check=lambda: True)
        assert execution.status == ExecutionStatus.CANCELLED

    def test_rejected_while_running(self, runner, executions, saved_pipeline):
        """Test a second run is rejected and creates nothing."""
        executions.start_execution(saved_pipeline)
        with pytest.raises(ExecutionAlreadyRunning):
            runner.run(saved_pipeline.id)

    def test_error_mapper_translates_worker_errors(self, store, settings, executions, saved_pipeline):
        """Test errors from the worker are mapped, recorded and re-raised."""

        class SoftLimit(Exception):
            pass

        class SlowService(ImportPipelineService):
            def process(self, config, writer=None, cancel_check=None):
                raise SoftLimit()

        runner = ImportPipelineRunner(
            store,
            SlowService(settings, cache=ImportCache()),
            executions,
            error_mapper=lambda e: ExecutionTimedOut(saved_pipeline.id, 30) if isinstance(e, SoftLimit) else e,
        )

        with pytest.raises(ExecutionTimedOut):
            runner.run(saved_pipeline.id)

        execution = store.list_executions(saved_pipeline.id)[0]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == f"Pipeline {saved_pipeline.id} timed out after 30s"
