"""
Execution tracking and the synchronous pipeline runner.

An execution moves pending -> running -> completed | failed (or cancelled);
terminal executions are never modified again. At most one execution per
pipeline is running at a time: `start_execution` checks and creates under
the store lock.
"""
from __future__ import annotations
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from importer.common.config_models import ImportPipelineConfig
from importer.common.exceptions import (
    ExecutionAlreadyQueued,
    ExecutionAlreadyRunning,
    ImporterError,
    InvalidExecutionTransition,
)
from importer.common.logger import get_logger
from importer.db.models import Execution, ExecutionStatus, Pipeline, PipelineResultRecord, TriggeredBy
from importer.db.store import PipelineStore
from .passable import PipelinePassable
from .pipes import ResultWriter
from .results import ImportPipelineResult
from .scheduling import PipelineSchedulingService
from .service import ImportPipelineService

log = get_logger()


class PipelineExecutionService:
    def __init__(self, store: PipelineStore, scheduling: Optional[PipelineSchedulingService] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.scheduling = scheduling or PipelineSchedulingService(store, clock=clock)
        self.clock = clock

    # ---------------- transitions ----------------
    def _transition(self, execution: Execution, status: ExecutionStatus, **fields: Any) -> Execution:
        current = self.store.get_execution(execution.id)
        if not current.status.can_move_to(status):
            raise InvalidExecutionTransition(execution.id, current.status.value, status.value)
        return self.store.update_execution(execution.id, status=status, **fields)

    def create_execution(self, pipeline: Pipeline, triggered_by: str = TriggeredBy.MANUAL.value) -> Execution:
        execution = self.store.create_execution(Execution(pipeline_id=pipeline.id, triggered_by=triggered_by))
        self._log(execution, "info", "Pipeline execution created", {"triggered_by": triggered_by})
        return execution

    def mark_as_running(self, execution: Execution) -> Execution:
        """
        Raises:
            ExecutionAlreadyRunning: If another execution of the pipeline is running
        """
        with self.store.lock:
            running = self.store.latest_running_execution(execution.pipeline_id)
            if running is not None and running.id != execution.id:
                raise ExecutionAlreadyRunning(execution.pipeline_id, running.id)
            execution = self._transition(execution, ExecutionStatus.RUNNING, started_at=self.clock())
        self._log(execution, "info", "Pipeline execution started")
        return execution

    def mark_as_completed(self, execution: Execution, result: Optional[Dict[str, Any]] = None) -> Execution:
        current = self.store.get_execution(execution.id)
        merged = {**current.result_data, **(result or {})}
        execution = self._transition(execution, ExecutionStatus.COMPLETED, completed_at=self.clock(),
                                     result_data=merged)
        self._log(execution, "info", "Pipeline execution completed")
        return execution

    def mark_as_failed(self, execution: Execution, error: BaseException | str,
                       stage: Optional[str] = None) -> Execution:
        if isinstance(error, str):
            message = error
        else:
            message = getattr(error, "message", None) or str(error) or type(error).__name__
        execution = self._transition(
            execution, ExecutionStatus.FAILED, completed_at=self.clock(), error_message=message, failed_stage=stage
        )
        context: Dict[str, Any] = {"error": message, "stage": stage}
        if isinstance(error, BaseException):
            context["trace"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self._log(execution, "error", "Pipeline execution failed", context)
        return execution

    def mark_as_cancelled(self, execution: Execution) -> Execution:
        execution = self._transition(execution, ExecutionStatus.CANCELLED, completed_at=self.clock())
        self._log(execution, "warning", "Pipeline execution cancelled")
        return execution

    # ---------------- bookkeeping ----------------
    def update_result(self, execution: Execution, result: ImportPipelineResult) -> Execution:
        current = self.store.get_execution(execution.id)
        if current.is_terminal:
            raise InvalidExecutionTransition(execution.id, current.status.value, "update_result")
        return self.store.update_execution(
            execution.id,
            total_rows=result.stats.total_rows,
            processed_rows=result.processed_rows,
            success_rate=result.success_rate,
            processing_time=result.stats.processing_time,
            memory_usage=int(result.stats.memory_usage.get("peak", 0)),
            result_data={"stats": result.stats.to_dict(), "row_errors": _count_row_errors(result)},
        )

    def get_latest_running_execution(self, pipeline: Pipeline) -> Optional[Execution]:
        return self.store.latest_running_execution(pipeline.id)

    def start_execution(self, pipeline: Pipeline, triggered_by: str = TriggeredBy.MANUAL.value) -> Execution:
        """
        Atomically create an execution and move it from pending to running.

        Raises:
            ExecutionAlreadyRunning: If the pipeline already has a running execution
        """
        with self.store.lock:
            running = self.store.latest_running_execution(pipeline.id)
            if running is not None:
                self._reject(pipeline, ExecutionAlreadyRunning(pipeline.id, running.id))
            execution = self.create_execution(pipeline, triggered_by)
            return self.mark_as_running(execution)

    def enqueue_execution(self, pipeline: Pipeline, triggered_by: str = TriggeredBy.SCHEDULER.value) -> Execution:
        """
        Record a pending execution for a run handed to a worker.

        Raises:
            ExecutionAlreadyQueued: If a pending or running execution exists
        """
        with self.store.lock:
            active = self.store.latest_active_execution(pipeline.id)
            if active is not None:
                self._reject(pipeline, ExecutionAlreadyQueued(pipeline.id, active.id))
            return self.create_execution(pipeline, triggered_by)

    def _reject(self, pipeline: Pipeline, error: ExecutionAlreadyRunning) -> None:
        log.execution_event("Run rejected: " + error.message,
                            {"pipeline_id": pipeline.id, "active_execution_id": error.execution_id}, failed=True)
        raise error

    def update_pipeline_execution_tracking(self, pipeline: Pipeline, execution: Execution) -> Pipeline:
        fields: Dict[str, Any] = {"last_executed_at": execution.started_at or self.clock()}
        if pipeline.is_scheduled:
            next_at = self.scheduling.calculate_next_execution(pipeline, self.clock())
            if next_at is not None:
                fields["next_execution_at"] = next_at
        pipeline = self.store.update_pipeline(pipeline.id, **fields)
        log.execution_event("Pipeline execution tracking updated", {
            "pipeline_id": pipeline.id,
            "execution_id": execution.id,
            "last_executed_at": str(pipeline.last_executed_at),
            "next_execution_at": str(pipeline.next_execution_at),
        })
        return pipeline

    def _log(self, execution: Execution, level: str, message: str,
             context: Optional[Dict[str, Any]] = None) -> None:
        data = {"pipeline_id": execution.pipeline_id, "execution_id": execution.id, **(context or {})}
        self.store.add_log(execution.id, level, message, data)
        log.execution_event(message, {k: v for k, v in data.items() if k != "trace"}, failed=level == "error")


def _count_row_errors(result: ImportPipelineResult) -> Dict[str, int]:
    return {stage: len(errors) for stage, errors in result.row_errors.items()}


class StoreResultWriter(ResultWriter):
    """Save stage writer persisting rows as the execution's result record."""
    target = "import_pipeline_results"

    def __init__(self, store: PipelineStore, execution: Execution, organization_id: int):
        self.store = store
        self.execution = execution
        self.organization_id = organization_id

    def write(self, rows: List[Dict[str, Any]], passable: PipelinePassable) -> int:
        self.store.save_result(PipelineResultRecord(
            organization_id=self.organization_id,
            pipeline_id=self.execution.pipeline_id,
            execution_id=self.execution.id,
            data=list(rows),
        ))
        return len(rows)


class ImportPipelineRunner:
    """
    Runs a stored pipeline end to end: start (atomic), process, record the
    result, then complete or fail and update schedule bookkeeping.

    `error_mapper` translates errors raised by the surrounding worker (for
    example a soft time limit) into engine errors before they are recorded.
    """

    def __init__(self, store: PipelineStore, service: ImportPipelineService,
                 executions: Optional[PipelineExecutionService] = None,
                 error_mapper: Optional[Callable[[BaseException], BaseException]] = None):
        self.store = store
        self.service = service
        self.executions = executions or PipelineExecutionService(store)
        self.error_mapper = error_mapper

    def run(self, pipeline_id: int, triggered_by: str = TriggeredBy.MANUAL.value,
            cancel_check: Optional[Callable[[], bool]] = None,
            execution_id: Optional[int] = None) -> Execution:
        """
        Run the pipeline. `execution_id` names a pending execution recorded
        when the run was queued; without it a new execution is started.

        Raises:
            ExecutionAlreadyRunning: If the pipeline is already running
            RecordNotFound: If the pipeline does not exist
        """
        pipeline = self.store.get_pipeline(pipeline_id)
        if execution_id is None:
            execution = self.executions.start_execution(pipeline, triggered_by)
        else:
            execution = self._start_queued(self.store.get_execution(execution_id))

        try:
            if not pipeline.config:
                raise ImporterError("Pipeline configuration not found")
            config = ImportPipelineConfig.from_mapping(
                pipeline.config,
                pipeline_id=pipeline.id,
                organization_id=pipeline.organization_id,
            )
            writer = StoreResultWriter(self.store, execution, pipeline.organization_id)
            result = self.service.process(config, writer=writer, cancel_check=cancel_check)
            self.executions.update_result(execution, result)
        except ImporterError as e:
            execution = self.executions.mark_as_failed(execution, e)
            self.executions.update_pipeline_execution_tracking(pipeline, execution)
            return execution
        except BaseException as e:
            mapped = self.error_mapper(e) if self.error_mapper else e
            self.executions.mark_as_failed(execution, mapped)
            if mapped is e:
                raise
            raise mapped from e

        if result.cancelled:
            execution = self.executions.mark_as_cancelled(execution)
        elif not result.success:
            execution = self.executions.mark_as_failed(execution, "; ".join(result.errors), stage=result.failed_stage)
        else:
            execution = self.executions.mark_as_completed(execution, {"saved_rows": result.stats.saved_rows})
        self.executions.update_pipeline_execution_tracking(pipeline, execution)
        return execution

    def _start_queued(self, execution: Execution) -> Execution:
        try:
            return self.executions.mark_as_running(execution)
        except ExecutionAlreadyRunning:
            self.executions.mark_as_cancelled(execution)
            raise
