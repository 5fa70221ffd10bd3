from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ImportPipelineStats:
    total_rows: int = 0
    filtered_rows: int = 0
    mapped_rows: int = 0
    prepared_rows: int = 0
    saved_rows: int = 0
    processing_time: float = 0.0
    stage_timings: Dict[str, float] = field(default_factory=dict)
    memory_usage: Dict[str, int] = field(default_factory=dict)
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "filtered_rows": self.filtered_rows,
            "mapped_rows": self.mapped_rows,
            "prepared_rows": self.prepared_rows,
            "saved_rows": self.saved_rows,
            "processing_time": round(self.processing_time, 4),
            "stage_timings": {k: round(v, 4) for k, v in self.stage_timings.items()},
            "memory_usage": dict(self.memory_usage),
            "error_count": self.error_count,
        }


@dataclass
class ImportPipelineResult:
    """
    Outcome of one orchestrator run (full or partial).

    Stage sections hold the stage result summaries; sections of stages that
    did not run stay None. `data` holds the rows produced by the last stage
    that ran.
    """
    download: Optional[Dict[str, Any]] = None
    read: Optional[Dict[str, Any]] = None
    filter: Optional[Dict[str, Any]] = None
    mapping: Optional[Dict[str, Any]] = None
    images: Optional[Dict[str, Any]] = None
    prepare: Optional[Dict[str, Any]] = None
    save: Optional[Dict[str, Any]] = None
    stats: ImportPipelineStats = field(default_factory=ImportPipelineStats)
    errors: List[str] = field(default_factory=list)
    success: bool = True
    failed_stage: Optional[str] = None
    target_stage: Optional[str] = None
    cancelled: bool = False
    data: List[Dict[str, Any]] = field(default_factory=list)
    row_errors: Dict[str, Dict[int, List[str]]] = field(default_factory=dict)

    @property
    def processed_rows(self) -> int:
        """Rows out of the furthest row-producing stage that ran."""
        s = self.stats
        if self.prepare is not None:
            return s.prepared_rows or len(self.data)
        if self.mapping is not None:
            return s.mapped_rows
        if self.filter is not None:
            return s.filtered_rows
        return s.total_rows

    @property
    def success_rate(self) -> float:
        if self.stats.total_rows == 0:
            return 0.0
        return round(self.processed_rows / self.stats.total_rows * 100, 2)

    def to_dict(self, sample_size: int = 5) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed_stage": self.failed_stage,
            "target_stage": self.target_stage,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
            "row_errors": self.row_errors,
            "download": self.download,
            "read": self.read,
            "filter": self.filter,
            "mapping": self.mapping,
            "images": self.images,
            "prepare": self.prepare,
            "save": self.save,
            "stats": self.stats.to_dict(),
            "processed_rows": self.processed_rows,
            "success_rate": self.success_rate,
            "sample": self.data[:sample_size],
        }
