"""
Tests for the DuckDB-backed PipelineStore.
"""

from datetime import datetime, time

import pytest

from importer.common.exceptions import ConfigurationError, ExecutionAlreadyRunning, RecordNotFound
from importer.db.models import Execution, ExecutionStatus, Frequency, Pipeline, PipelineResultRecord
from importer.db.store import DBConfig, PipelineStore, open_connection


class TestPipelines:
    """Test pipeline records."""

    def test_round_trip(self, store, saved_pipeline, csv_config):
        """Test every column survives a save and reload."""
        loaded = store.get_pipeline(saved_pipeline.id)

        assert loaded.name == "Dealer inventory"
        assert loaded.organization_id == 7
        assert loaded.frequency == Frequency.DAILY
        assert loaded.start_time == time(9, 0)
        assert loaded.config == csv_config
        assert loaded.created_at == datetime(2024, 1, 1, 8, 0)
        assert loaded.is_scheduled is True

    def test_missing_pipeline(self, store):
        """Test lookups of unknown ids raise RecordNotFound."""
        with pytest.raises(RecordNotFound, match="Pipeline 404 not found"):
            store.get_pipeline(404)

    def test_update(self, store, saved_pipeline):
        """Test partial updates."""
        updated = store.update_pipeline(saved_pipeline.id, is_active=False, frequency=Frequency.WEEKLY)
        assert updated.is_active is False
        assert updated.frequency == Frequency.WEEKLY

    def test_update_rejects_unknown_columns(self, store, saved_pipeline):
        """Test only whitelisted columns can be written."""
        with pytest.raises(ConfigurationError, match="Unknown import_pipelines columns: id"):
            store.update_pipeline(saved_pipeline.id, id=99)

    def test_list_filters(self, store, saved_pipeline):
        """Test active/scheduled/frequency/organization filters."""
        store.save_pipeline(Pipeline(name="one-off", organization_id=7))
        store.save_pipeline(Pipeline(name="paused", organization_id=8, frequency=Frequency.WEEKLY,
                                     start_time=time(6, 0), is_active=False))

        assert [p.name for p in store.list_pipelines(active=True, scheduled=True)] == ["Dealer inventory"]
        assert [p.name for p in store.list_pipelines(scheduled=False)] == ["one-off"]
        assert [p.name for p in store.list_pipelines(frequency="weekly")] == ["paused"]
        assert len(store.list_pipelines(organization_id=7)) == 2


class TestExecutions:
    """Test execution records."""

    def test_create_and_update(self, store, saved_pipeline):
        """Test an execution starts pending and accepts field updates."""
        execution = store.create_execution(Execution(pipeline_id=saved_pipeline.id))
        assert execution.status == ExecutionStatus.PENDING

        updated = store.update_execution(execution.id, status=ExecutionStatus.FAILED, error_message="x",
                                         result_data={"stats": {"total_rows": 3}})
        assert updated.status == ExecutionStatus.FAILED
        assert updated.result_data == {"stats": {"total_rows": 3}}

    def test_start_atomically_rejects_second_run(self, store, saved_pipeline):
        """Test only one running execution per pipeline."""
        first = store.start_execution_atomically(saved_pipeline.id, "manual")
        assert first.status == ExecutionStatus.RUNNING
        assert first.started_at is not None

        with pytest.raises(ExecutionAlreadyRunning) as exc:
            store.start_execution_atomically(saved_pipeline.id, "scheduler")
        assert exc.value.execution_id == first.id

    def test_list_and_latest_running(self, store, saved_pipeline):
        """Test newest-first listing and the running lookup."""
        done = store.create_execution(Execution(pipeline_id=saved_pipeline.id, status=ExecutionStatus.COMPLETED))
        running = store.start_execution_atomically(saved_pipeline.id, "manual")

        assert [e.id for e in store.list_executions(saved_pipeline.id)] == [running.id, done.id]
        assert [e.id for e in store.list_executions(saved_pipeline.id, status="completed")] == [done.id]
        assert store.latest_running_execution(saved_pipeline.id).id == running.id


class TestResultsAndLogs:
    """Test result records and execution logs."""

    def test_result_for_execution(self, store, saved_pipeline):
        """Test saved rows are found by execution."""
        execution = store.start_execution_atomically(saved_pipeline.id, "manual")
        store.save_result(PipelineResultRecord(organization_id=7, pipeline_id=saved_pipeline.id,
                                               execution_id=execution.id, data=[{"vin": "A"}]))

        record = store.result_for_execution(execution.id)
        assert record.data == [{"vin": "A"}]
        assert store.result_for_execution(execution.id + 1) is None

    def test_logs_filtered_by_level(self, store):
        """Test logs keep their context and filter by level."""
        store.add_log(1, "info", "started", {"triggered_by": "manual"})
        store.add_log(1, "error", "failed", {"stage": "read"})

        assert [entry.message for entry in store.list_logs(1)] == ["started", "failed"]
        errors = store.list_logs(1, level="error")
        assert errors[0].context == {"stage": "read"}


class TestConnection:
    """Test connection configuration."""

    def test_unsupported_driver(self):
        """Test only duckdb is accepted."""
        with pytest.raises(ConfigurationError, match="Unsupported database driver: postgres"):
            open_connection(DBConfig(driver="postgres"))

    def test_file_database(self, tmp_path):
        """Test a file-backed store persists across connections."""
        path = str(tmp_path / "db" / "importer.duckdb")
        first = PipelineStore(open_connection({"path": path}))
        first.save_pipeline(Pipeline(name="kept", organization_id=1))
        first.close()

        second = PipelineStore(open_connection({"path": path}))
        assert [p.name for p in second.list_pipelines()] == ["kept"]
        second.close()
