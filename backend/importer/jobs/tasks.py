"""
Celery tasks wrapping the synchronous pipeline runner.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

from celery.exceptions import SoftTimeLimitExceeded
from celery.result import AsyncResult

from importer.common.cache import ImportCache
from importer.common.exceptions import ExecutionAlreadyRunning, ExecutionError, ExecutionTimedOut
from importer.common.logger import get_logger, init_logger
from importer.common.settings import ImportSettings, load_settings
from importer.common.utils import memory_usage
from importer.core.execution import ImportPipelineRunner, PipelineExecutionService
from importer.core.scheduling import PipelineSchedulingService
from importer.core.service import ImportPipelineService
from importer.db.models import Pipeline, TriggeredBy
from importer.db.store import PipelineStore
from .celery_app import app

log = get_logger()

PRIORITIES = ("high", "default", "low")
SIZES = ("small", "default", "large")
HARD_LIMIT_GRACE = 60  # seconds between soft and hard time limit


@dataclass
class WorkerRuntime:
    """Objects one worker process shares between task invocations."""
    settings: ImportSettings
    store: PipelineStore
    service: ImportPipelineService
    scheduling: PipelineSchedulingService
    executions: PipelineExecutionService

    @classmethod
    def build(cls, settings: ImportSettings) -> "WorkerRuntime":
        store = PipelineStore.from_settings(settings.database)
        scheduling = PipelineSchedulingService(store, settings.scheduling)
        return cls(
            settings=settings,
            store=store,
            service=ImportPipelineService(settings, ImportCache.from_settings(settings.cache)),
            scheduling=scheduling,
            executions=PipelineExecutionService(store, scheduling),
        )

    def runner(self, pipeline_id: int, timeout: int) -> ImportPipelineRunner:
        def to_engine_error(exc: BaseException) -> BaseException:
            if isinstance(exc, SoftTimeLimitExceeded):
                return ExecutionTimedOut(pipeline_id, timeout)
            return exc

        return ImportPipelineRunner(self.store, self.service, self.executions, error_mapper=to_engine_error)


@lru_cache(maxsize=1)
def worker_runtime() -> WorkerRuntime:
    settings = load_settings()
    init_logger(settings.logging.level, settings.logging.format, settings.logging.channels)
    return WorkerRuntime.build(settings)


# ============================================================================
# Lanes
# ============================================================================

def queue_for(settings: ImportSettings, priority: str = "default") -> str:
    if priority not in PRIORITIES:
        raise ValueError(f"Unknown priority '{priority}'. Valid: {', '.join(PRIORITIES)}")
    return {
        "high": settings.queues.high_priority,
        "default": settings.queues.default,
        "low": settings.queues.low_priority,
    }[priority]


def limits_for(settings: ImportSettings, size: str = "default") -> Dict[str, int]:
    """Time limit (s) and memory ceiling (MB) for a payload size class."""
    if size not in SIZES:
        raise ValueError(f"Unknown size class '{size}'. Valid: {', '.join(SIZES)}")
    timeouts = settings.timeouts
    timeout = {"small": timeouts.small_files, "default": timeouts.default, "large": timeouts.large_files}[size]
    memory = settings.memory.large_files if size == "large" else settings.memory.default
    return {"timeout": timeout, "memory_mb": memory}


def dispatch_pipeline(
    pipeline: Pipeline,
    priority: str = "default",
    size: str = "default",
    triggered_by: str = TriggeredBy.MANUAL.value,
    settings: Optional[ImportSettings] = None,
    execution_id: Optional[int] = None,
) -> AsyncResult:
    """
    Queue one run of `pipeline` on the lane and limits for `priority`/`size`.
    `execution_id` is the pending execution the worker will start.
    """
    settings = settings or worker_runtime().settings
    limits = limits_for(settings, size)
    queue = queue_for(settings, priority)
    log.execution_event("Pipeline run queued", {
        "pipeline_id": pipeline.id,
        "queue": queue,
        "timeout": limits["timeout"],
        "triggered_by": triggered_by,
    })
    return process_import_pipeline.apply_async(
        args=[pipeline.id],
        kwargs={
            "triggered_by": triggered_by,
            "timeout": limits["timeout"],
            "memory_limit_mb": limits["memory_mb"],
            "execution_id": execution_id,
        },
        queue=queue,
        soft_time_limit=limits["timeout"],
        time_limit=limits["timeout"] + HARD_LIMIT_GRACE,
    )


# ============================================================================
# Tasks
# ============================================================================

@app.task(bind=True, name="importer.jobs.tasks.process_import_pipeline")
def process_import_pipeline(
    self,
    pipeline_id: int,
    triggered_by: str = TriggeredBy.SCHEDULER.value,
    timeout: Optional[int] = None,
    memory_limit_mb: Optional[int] = None,
    seen_exceptions: Optional[List[str]] = None,
    execution_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run one pipeline. Engine failures end in a failed execution record;
    unexpected errors are retried with a fixed delay until either the
    attempt limit or the distinct-exception limit is reached. A retry starts
    a fresh execution since the queued one has already failed.
    """
    runtime = worker_runtime()
    retry = runtime.settings.retry
    timeout = timeout or runtime.settings.timeouts.default

    try:
        execution = runtime.runner(pipeline_id, timeout).run(pipeline_id, triggered_by, execution_id=execution_id)
    except ExecutionAlreadyRunning as e:
        log.warning(e.message, {"pipeline_id": pipeline_id})
        return {"pipeline_id": pipeline_id, "status": "rejected", "error": e.message}
    except ExecutionError:
        raise
    except Exception as e:
        seen = list(seen_exceptions or [])
        kind = type(e).__name__
        if kind not in seen:
            seen.append(kind)
        if self.request.retries + 1 >= retry.max_attempts or len(seen) >= retry.max_exceptions:
            log.error("Import pipeline job failed permanently", {"pipeline_id": pipeline_id, "error": str(e)})
            raise
        raise self.retry(
            exc=e,
            countdown=retry.backoff,
            max_retries=retry.max_attempts - 1,
            kwargs={
                "triggered_by": triggered_by,
                "timeout": timeout,
                "memory_limit_mb": memory_limit_mb,
                "seen_exceptions": seen,
            },
        )

    rss_mb = memory_usage() // (1024 * 1024)
    if memory_limit_mb and rss_mb > memory_limit_mb:
        log.warning("Worker memory above ceiling after run", {
            "pipeline_id": pipeline_id, "rss_mb": rss_mb, "limit_mb": memory_limit_mb,
        })
    return {
        "pipeline_id": pipeline_id,
        "execution_id": execution.id,
        "status": execution.status.value,
        "error": execution.error_message,
    }


@app.task(name="importer.jobs.tasks.check_scheduled_pipelines")
def check_scheduled_pipelines(now: Optional[str] = None) -> List[int]:
    """
    Dispatch every due pipeline that has no queued or running execution.
    A pending execution is recorded before the task is queued so later ticks
    inside the same tolerance window skip the pipeline.
    """
    runtime = worker_runtime()
    at = datetime.fromisoformat(now) if now else None
    dispatched: List[int] = []
    for pipeline in runtime.scheduling.due_pipelines(at):
        try:
            execution = runtime.executions.enqueue_execution(pipeline, TriggeredBy.SCHEDULER.value)
        except ExecutionAlreadyRunning as e:
            log.schedule_event("Skipping pipeline with an active execution",
                               {"pipeline_id": pipeline.id, "execution_id": e.execution_id})
            continue
        dispatch_pipeline(pipeline, triggered_by=TriggeredBy.SCHEDULER.value, settings=runtime.settings,
                          execution_id=execution.id)
        dispatched.append(pipeline.id)
    return dispatched


@app.task(name="importer.jobs.tasks.recompute_next_executions")
def recompute_next_executions() -> int:
    return worker_runtime().scheduling.update_all_next_execution_times()
