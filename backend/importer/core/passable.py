from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from importer.common.config_models import ImportPipelineConfig
from importer.common.utils import memory_usage as current_rss
from importer.plugins.api import DownloadResult, ReadResult
from importer.proc.filter import FilterResult
from importer.proc.images import ImagesResult
from importer.proc.mapper import MappingResult
from importer.proc.resolvers import PrepareResult
from .stages import PipelineStage


@dataclass
class SaveResult:
    saved_rows: int = 0
    target: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"saved_rows": self.saved_rows, "target": self.target, "skipped": self.skipped}


@dataclass
class PipelinePassable:
    """
    Run-local context threaded through the pipes. One instance per
    orchestrator invocation; never shared between runs.
    """
    config: ImportPipelineConfig
    target_stage: Optional[PipelineStage] = None
    current_stage: Optional[PipelineStage] = None
    start_time: float = field(default_factory=time.perf_counter)
    start_memory: int = field(default_factory=current_rss)
    stage_timings: Dict[str, float] = field(default_factory=dict)
    memory_usage: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    failed_stage: Optional[PipelineStage] = None
    cancel_check: Optional[Callable[[], bool]] = None
    context: Dict[str, Any] = field(default_factory=dict)

    download_result: Optional[DownloadResult] = None
    read_result: Optional[ReadResult] = None
    filter_result: Optional[FilterResult] = None
    mapping_result: Optional[MappingResult] = None
    images_result: Optional[ImagesResult] = None
    prepare_result: Optional[PrepareResult] = None
    save_result: Optional[SaveResult] = None

    _last_memory: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._last_memory = self.start_memory
        self.memory_usage["start"] = self.start_memory
        self.memory_usage["peak"] = self.start_memory

    @property
    def failed(self) -> bool:
        return self.failed_stage is not None

    def should_stop(self) -> bool:
        return self.target_stage is not None and self.current_stage == self.target_stage

    def is_cancelled(self) -> bool:
        return bool(self.cancel_check and self.cancel_check())

    def complete_stage(self, stage: PipelineStage, elapsed: float) -> None:
        """Record timing and memory delta for a finished stage."""
        self.current_stage = stage
        self.stage_timings[stage.value] = elapsed
        now = current_rss()
        self.memory_usage[stage.value] = now - self._last_memory
        self.memory_usage["peak"] = max(self.memory_usage["peak"], now)
        self._last_memory = now

    def fail(self, stage: PipelineStage, message: str) -> None:
        self.failed_stage = stage
        self.errors.append(message)

    def free_download(self) -> None:
        """Drop the raw bytes once they have been parsed."""
        if self.download_result is not None:
            self.download_result.contents = b""

    def current_rows(self) -> List[Dict[str, Any]]:
        """Rows produced by the furthest stage that ran so far."""
        if self.prepare_result is not None:
            return self.prepare_result.prepared_data
        if self.images_result is not None:
            return self.images_result.rows
        if self.mapping_result is not None:
            return self.mapping_result.mapped_data
        if self.filter_result is not None:
            return self.filter_result.filtered_data
        if self.read_result is not None:
            return self.read_result.rows
        return []

    def elapsed(self) -> float:
        return time.perf_counter() - self.start_time
