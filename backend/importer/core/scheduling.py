"""
Pipeline scheduling: is a pipeline due now, and when does it run next.

A pipeline is due when `now` lies within the tolerance window of the
instant it is scheduled for and it has not already run in the current
period. A period runs from the start of one tolerance window to the start
of the next, so a window crossing midnight belongs to a single period.
Every method takes `now` explicitly (defaulting to the service clock) so
results are deterministic under test.
"""
from __future__ import annotations
import calendar
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional

from importer.common.logger import get_logger
from importer.common.settings import SchedulingSettings
from importer.db.models import Frequency, Pipeline
from importer.db.store import PipelineStore

log = get_logger()


def _at(day: date, start: time) -> datetime:
    return datetime.combine(day, time(start.hour, start.minute))


def _clamped_day(year: int, month: int, day: int) -> date:
    """`day` of the given month, clamped to the month's last day."""
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _add_months(year: int, month: int, n: int) -> tuple[int, int]:
    idx = year * 12 + (month - 1) + n
    return idx // 12, idx % 12 + 1


class PipelineSchedulingService:
    def __init__(
        self,
        store: PipelineStore,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.settings = settings or SchedulingSettings()
        self.clock = clock

    @property
    def tolerance(self) -> timedelta:
        return timedelta(minutes=self.settings.tolerance_minutes)

    # ---------------- period helpers ----------------
    def _anchor(self, pipeline: Pipeline) -> datetime:
        """Creation day at the start time; custom intervals count from here."""
        created = (pipeline.created_at or self.clock()).date()
        return _at(created, pipeline.start_time)  # type: ignore[arg-type]

    def _runs_on(self, pipeline: Pipeline, day: date) -> bool:
        created = (pipeline.created_at or self.clock()).date()
        freq = pipeline.frequency
        if freq == Frequency.DAILY:
            return True
        if freq == Frequency.WEEKLY:
            return day.weekday() == created.weekday()
        if freq == Frequency.MONTHLY:
            return day == _clamped_day(day.year, day.month, created.day)
        return False

    def _scheduled_instants_near(self, pipeline: Pipeline, now: datetime) -> List[datetime]:
        """Candidate scheduled instants around `now` (yesterday, today, tomorrow)."""
        start = pipeline.start_time
        if pipeline.frequency == Frequency.CUSTOM:
            step = timedelta(hours=self.settings.custom_interval_hours)
            anchor = self._anchor(pipeline)
            if now < anchor:
                return [anchor]
            n = (now - anchor) // step
            return [anchor + step * k for k in (n - 1, n, n + 1) if k >= 0]
        days = [now.date() + timedelta(days=d) for d in (-1, 0, 1)]
        return [_at(d, start) for d in days if self._runs_on(pipeline, d)]  # type: ignore[arg-type]

    def _period_start(self, scheduled: datetime) -> datetime:
        """A period opens with the tolerance window of its scheduled instant."""
        return scheduled - self.tolerance

    # ---------------- public API ----------------
    def is_ready_for_execution(self, pipeline: Pipeline, now: Optional[datetime] = None) -> bool:
        """
        True when the pipeline is active, scheduled, within tolerance of a
        scheduled instant, and has not already run in that period.
        """
        now = now or self.clock()
        if not pipeline.is_active or pipeline.start_time is None:
            return False
        if pipeline.frequency == Frequency.ONCE:
            return False

        for scheduled in self._scheduled_instants_near(pipeline, now):
            if abs(now - scheduled) > self.tolerance:
                continue
            last = pipeline.last_executed_at
            if last is not None and last >= self._period_start(scheduled):
                return False
            return True
        return False

    def calculate_next_execution(self, pipeline: Pipeline, now: Optional[datetime] = None) -> Optional[datetime]:
        """First scheduled instant strictly after `now`; None for one-off pipelines."""
        now = now or self.clock()
        if pipeline.frequency == Frequency.ONCE or pipeline.start_time is None:
            return None
        start = pipeline.start_time
        freq = pipeline.frequency

        if freq == Frequency.CUSTOM:
            step = timedelta(hours=self.settings.custom_interval_hours)
            anchor = self._anchor(pipeline)
            if anchor > now:
                return anchor
            return anchor + step * ((now - anchor) // step + 1)

        if freq == Frequency.DAILY:
            candidate = _at(now.date(), start)
            return candidate if candidate > now else candidate + timedelta(days=1)

        created = (pipeline.created_at or now).date()
        if freq == Frequency.WEEKLY:
            ahead = (created.weekday() - now.weekday()) % 7
            candidate = _at(now.date() + timedelta(days=ahead), start)
            return candidate if candidate > now else candidate + timedelta(days=7)

        # monthly
        candidate = _at(_clamped_day(now.year, now.month, created.day), start)
        if candidate > now:
            return candidate
        year, month = _add_months(now.year, now.month, 1)
        return _at(_clamped_day(year, month, created.day), start)

    def get_scheduled_pipelines(self, frequency: Optional[Frequency | str] = None) -> List[Pipeline]:
        return self.store.list_pipelines(active=True, scheduled=True, frequency=frequency)

    def due_pipelines(self, now: Optional[datetime] = None) -> List[Pipeline]:
        now = now or self.clock()
        due = [p for p in self.get_scheduled_pipelines() if self.is_ready_for_execution(p, now)]
        if due:
            log.schedule_event("Pipelines due for execution", {"pipeline_ids": [p.id for p in due]})
        return due

    def update_next_execution_time(self, pipeline: Pipeline, now: Optional[datetime] = None) -> Pipeline:
        if not pipeline.is_scheduled:
            return self.store.update_pipeline(pipeline.id, next_execution_at=None)
        next_at = self.calculate_next_execution(pipeline, now)
        if next_at is None:
            return pipeline
        log.schedule_event("Next execution scheduled", {"pipeline_id": pipeline.id, "next_execution_at": str(next_at)})
        return self.store.update_pipeline(pipeline.id, next_execution_at=next_at)

    def update_all_next_execution_times(self, now: Optional[datetime] = None) -> int:
        """Recompute `next_execution_at` for every active scheduled pipeline."""
        pipelines = self.get_scheduled_pipelines()
        for pipeline in pipelines:
            self.update_next_execution_time(pipeline, now)
        log.schedule_event("Recomputed next execution times", {"count": len(pipelines)})
        return len(pipelines)
