"""
Celery application for pipeline runs.

Queue lanes come from engine settings:
- high priority: manual runs a user is waiting on
- default: scheduled runs
- low priority: bulk/backfill runs and maintenance (schedule checks)

Workers consume queues left-to-right, so list the high lane first:
    celery -A importer.jobs.celery_app worker -Q import-pipelines-high,import-pipelines,import-pipelines-low
"""
from __future__ import annotations

from celery import Celery
from kombu import Queue

from importer.common.settings import ImportSettings, load_settings

SCHEDULE_CHECK_INTERVAL = 60  # seconds


def create_celery_app(settings: ImportSettings) -> Celery:
    app = Celery(
        "importer",
        broker=settings.broker.broker_url,
        backend=settings.broker.result_backend,
        include=["importer.jobs.tasks"],
    )
    queues = settings.queues
    app.conf.task_queues = (
        Queue(queues.high_priority, routing_key=queues.high_priority),
        Queue(queues.default, routing_key=queues.default),
        Queue(queues.low_priority, routing_key=queues.low_priority),
    )
    app.conf.update(
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_default_queue=queues.default,
        task_soft_time_limit=settings.timeouts.default,
        task_time_limit=settings.timeouts.default + 60,
        # KiB; a worker child is replaced once it grows past the default ceiling
        worker_max_memory_per_child=settings.memory.default * 1024,
        task_routes={
            "importer.jobs.tasks.check_scheduled_pipelines": {"queue": queues.low_priority},
            "importer.jobs.tasks.recompute_next_executions": {"queue": queues.low_priority},
        },
        timezone="UTC",
    )
    app.conf.beat_schedule = {
        "check-scheduled-pipelines": {
            "task": "importer.jobs.tasks.check_scheduled_pipelines",
            "schedule": SCHEDULE_CHECK_INTERVAL,
            "options": {"queue": queues.low_priority},
        },
    }
    return app


app = create_celery_app(load_settings())
