"""
Tests for the celery application and pipeline tasks.

Tasks are called directly with the worker runtime patched to an in-memory
store; apply_async is patched so nothing reaches a broker.
"""

from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from importer.common.cache import ImportCache
from importer.common.exceptions import ExecutionTimedOut
from importer.common.settings import ImportSettings, QueueSettings, RetrySettings
from importer.core.execution import PipelineExecutionService
from importer.core.scheduling import PipelineSchedulingService
from importer.core.service import ImportPipelineService
from importer.db.models import ExecutionStatus
from importer.jobs import tasks
from importer.jobs.celery_app import SCHEDULE_CHECK_INTERVAL, create_celery_app

from conftest import CSV_INVENTORY


def make_runtime(store, settings):
    scheduling = PipelineSchedulingService(store, settings.scheduling)
    return tasks.WorkerRuntime(
        settings=settings,
        store=store,
        service=ImportPipelineService(settings, cache=ImportCache()),
        scheduling=scheduling,
        executions=PipelineExecutionService(store, scheduling),
    )


@pytest.fixture
def runtime(store, settings):
    """Worker runtime over the in-memory store, patched into the tasks module."""
    rt = make_runtime(store, settings)
    with patch("importer.jobs.tasks.worker_runtime", return_value=rt):
        yield rt


@pytest.fixture
def apply_async():
    """Captures dispatches instead of publishing them."""
    with patch.object(tasks.process_import_pipeline, "apply_async") as mock:
        yield mock


# ============================================================================
# Lanes
# ============================================================================


class TestLanes:
    """Test queue and limit selection."""

    @pytest.mark.parametrize("priority,queue", [
        ("high", "import-pipelines-high"),
        ("default", "import-pipelines"),
        ("low", "import-pipelines-low"),
    ])
    def test_queue_for(self, settings, priority, queue):
        """Test each priority maps to its configured queue."""
        assert tasks.queue_for(settings, priority) == queue

    @pytest.mark.parametrize("size,expected", [
        ("small", {"timeout": 1800, "memory_mb": 512}),
        ("default", {"timeout": 5600, "memory_mb": 512}),
        ("large", {"timeout": 7200, "memory_mb": 1024}),
    ])
    def test_limits_for(self, settings, size, expected):
        """Test size classes select time and memory limits."""
        assert tasks.limits_for(settings, size) == expected

    def test_unknown_values(self, settings):
        """Test unknown priorities and sizes are rejected."""
        with pytest.raises(ValueError, match="Unknown priority"):
            tasks.queue_for(settings, "urgent")
        with pytest.raises(ValueError, match="Unknown size class"):
            tasks.limits_for(settings, "huge")


class TestDispatch:
    """Test dispatch_pipeline()."""

    def test_dispatch_options(self, settings, saved_pipeline, apply_async):
        """Test queue, limits and task kwargs."""
        tasks.dispatch_pipeline(saved_pipeline, priority="high", size="large", settings=settings)

        apply_async.assert_called_once_with(
            args=[saved_pipeline.id],
            kwargs={"triggered_by": "manual", "timeout": 7200, "memory_limit_mb": 1024, "execution_id": None},
            queue="import-pipelines-high",
            soft_time_limit=7200,
            time_limit=7260,
        )

    def test_custom_queue_names(self, saved_pipeline, apply_async):
        """Test renamed queues from settings are used."""
        settings = ImportSettings(queues=QueueSettings(default="imports"))
        tasks.dispatch_pipeline(saved_pipeline, settings=settings)
        assert apply_async.call_args.kwargs["queue"] == "imports"


# ============================================================================
# Tasks
# ============================================================================


class TestProcessImportPipeline:
    """Test the process_import_pipeline task body."""

    def test_completed_run(self, runtime, memory_downloader, saved_pipeline):
        """Test a run reports the execution outcome."""
        memory_downloader["inventory.csv"] = CSV_INVENTORY.encode("utf-8")

        outcome = tasks.process_import_pipeline(saved_pipeline.id, triggered_by="manual")

        assert outcome["status"] == "completed"
        execution = runtime.store.get_execution(outcome["execution_id"])
        assert execution.triggered_by == "manual"

    def test_rejected_when_running(self, runtime, saved_pipeline):
        """Test a second concurrent run is rejected without raising."""
        runtime.executions.start_execution(saved_pipeline)

        outcome = tasks.process_import_pipeline(saved_pipeline.id)

        assert outcome["status"] == "rejected"
        assert len(runtime.store.list_executions(saved_pipeline.id)) == 1

    def test_unexpected_error_without_retries_left(self, store, saved_pipeline):
        """Test the error propagates once attempts are spent."""
        rt = make_runtime(store, ImportSettings(retry=RetrySettings(max_attempts=1)))
        rt.service = MagicMock()
        rt.service.process.side_effect = RuntimeError("database went away")

        with patch("importer.jobs.tasks.worker_runtime", return_value=rt):
            with pytest.raises(RuntimeError):
                tasks.process_import_pipeline(saved_pipeline.id)

        assert store.list_executions(saved_pipeline.id)[0].status == ExecutionStatus.FAILED

    def test_soft_time_limit_is_mapped(self, runtime):
        """Test the runner maps celery's soft limit to ExecutionTimedOut."""
        mapper = runtime.runner(3, 90).error_mapper
        mapped = mapper(SoftTimeLimitExceeded())
        assert isinstance(mapped, ExecutionTimedOut)
        assert mapped.message == "Pipeline 3 timed out after 90s"
        other = ValueError("x")
        assert mapper(other) is other


class TestScheduleTasks:
    """Test the periodic tasks."""

    def test_check_scheduled_pipelines(self, runtime, saved_pipeline, apply_async):
        """Test due pipelines are dispatched as scheduler runs."""
        dispatched = tasks.check_scheduled_pipelines("2024-03-10T09:01:00")

        assert dispatched == [saved_pipeline.id]
        assert apply_async.call_args.kwargs["kwargs"]["triggered_by"] == "scheduler"

    def test_running_pipelines_are_skipped(self, runtime, saved_pipeline, apply_async):
        """Test a pipeline with a running execution is not dispatched again."""
        runtime.executions.start_execution(saved_pipeline)
        assert tasks.check_scheduled_pipelines("2024-03-10T09:01:00") == []
        apply_async.assert_not_called()

    def test_tick_records_pending_execution(self, runtime, saved_pipeline, apply_async):
        """Test the dispatched task carries the pending execution it will start."""
        tasks.check_scheduled_pipelines("2024-03-10T09:01:00")

        pending = runtime.store.list_executions(saved_pipeline.id)
        assert [e.status for e in pending] == [ExecutionStatus.PENDING]
        assert pending[0].triggered_by == "scheduler"
        assert apply_async.call_args.kwargs["kwargs"]["execution_id"] == pending[0].id

    def test_second_tick_before_worker_starts(self, runtime, saved_pipeline, apply_async):
        """Test a queued run is not dispatched again by the next tick in the window."""
        assert tasks.check_scheduled_pipelines("2024-03-10T09:00:00") == [saved_pipeline.id]
        assert tasks.check_scheduled_pipelines("2024-03-10T09:01:00") == []

        apply_async.assert_called_once()
        assert len(runtime.store.list_executions(saved_pipeline.id)) == 1

    def test_worker_starts_queued_execution(self, runtime, memory_downloader, saved_pipeline, apply_async):
        """Test the worker runs the pending execution instead of creating another."""
        memory_downloader["inventory.csv"] = CSV_INVENTORY.encode("utf-8")
        tasks.check_scheduled_pipelines("2024-03-10T09:01:00")
        kwargs = apply_async.call_args.kwargs["kwargs"]

        outcome = tasks.process_import_pipeline(saved_pipeline.id, **kwargs)

        assert outcome["status"] == "completed"
        assert outcome["execution_id"] == kwargs["execution_id"]
        assert len(runtime.store.list_executions(saved_pipeline.id)) == 1

    def test_queued_execution_cancelled_when_another_runs(self, runtime, saved_pipeline, apply_async):
        """Test a queued run meeting a running one is rejected and cancelled."""
        tasks.check_scheduled_pipelines("2024-03-10T09:01:00")
        queued_id = apply_async.call_args.kwargs["kwargs"]["execution_id"]
        runtime.executions.start_execution(saved_pipeline)

        outcome = tasks.process_import_pipeline(saved_pipeline.id, execution_id=queued_id)

        assert outcome["status"] == "rejected"
        assert runtime.store.get_execution(queued_id).status == ExecutionStatus.CANCELLED

    def test_nothing_due(self, runtime, saved_pipeline, apply_async):
        """Test outside the window nothing is dispatched."""
        assert tasks.check_scheduled_pipelines("2024-03-10T14:00:00") == []

    def test_recompute_next_executions(self, runtime, saved_pipeline):
        """Test the recompute task counts updated pipelines."""
        assert tasks.recompute_next_executions() == 1
        assert runtime.store.get_pipeline(saved_pipeline.id).next_execution_at is not None


# ============================================================================
# Celery app
# ============================================================================


class TestCeleryApp:
    """Test create_celery_app()."""

    def test_queues_routes_and_beat(self):
        """Test lanes, routes and the schedule check entry."""
        settings = ImportSettings()
        app = create_celery_app(settings)

        assert [q.name for q in app.conf.task_queues] == [
            "import-pipelines-high", "import-pipelines", "import-pipelines-low",
        ]
        assert app.conf.task_default_queue == "import-pipelines"
        assert app.conf.task_soft_time_limit == 5600
        assert app.conf.task_time_limit == 5660
        assert app.conf.task_routes["importer.jobs.tasks.check_scheduled_pipelines"] == {
            "queue": "import-pipelines-low",
        }
        beat = app.conf.beat_schedule["check-scheduled-pipelines"]
        assert beat["schedule"] == SCHEDULE_CHECK_INTERVAL == 60
        assert beat["task"] == "importer.jobs.tasks.check_scheduled_pipelines"
