"""
JSON-Lines formatter for structured import logging

Used when the engine runs behind a dashboard or a log shipper that needs to
parse every entry. Output format: one JSON object per line (NDJSON)
{
    "timestamp": "2025-10-25T10:30:00.123Z",
    "level": "info",
    "category": "execution",
    "message": "Pipeline execution started",
    "data": {...}  // Optional metadata
}
"""
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JSONLogLevel(str, Enum):
    """JSON log levels matching standard severity"""
    DEBUG = "debug"
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class JSONLogCategory(str, Enum):
    """Log categories, one per engine concern (the log channels)"""
    PIPELINE = "pipeline"
    STAGE = "stage"
    EXECUTION = "execution"
    SCHEDULING = "scheduling"
    DOWNLOAD = "download"
    READ = "read"
    FILTER = "filter"
    MAP = "map"
    IMAGES = "images"
    PREPARE = "prepare"
    SAVE = "save"
    DATABASE = "database"
    SYSTEM = "system"


class JSONLogger:
    """
    Structured JSON logger that outputs one JSON object per line.

    Each log entry includes:
    - timestamp: ISO 8601 format with timezone
    - level: debug, info, success, warning, error, critical
    - category: Semantic category (pipeline, stage, execution, ...)
    - message: Human-readable message
    - data: Optional structured metadata
    """

    def __init__(self, output_stream=None):
        self._output_stream = output_stream

    @property
    def output_stream(self):
        # Resolved per call so redirected stdout is honoured
        return self._output_stream or sys.stdout

    def emit(
        self,
        level: JSONLogLevel,
        category: JSONLogCategory,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "category": category.value,
            "message": message,
        }
        if data:
            entry["data"] = data
        entry.update(kwargs)

        # default=str keeps datetimes, enums and Paths serialisable
        json_line = json.dumps(entry, ensure_ascii=False, default=str)
        self.output_stream.write(json_line + "\n")
        self.output_stream.flush()

    # ========== STANDARD LOG LEVELS ==========

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.DEBUG, category, message, data)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.INFO, category, message, data)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.SUCCESS, category, message, data)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.WARNING, category, message, data)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.ERROR, category, message, data)

    def critical(self, message: str, data: Optional[Dict[str, Any]] = None, category: JSONLogCategory = JSONLogCategory.SYSTEM) -> None:
        self.emit(JSONLogLevel.CRITICAL, category, message, data)

    # ========== PIPELINE-SPECIFIC METHODS ==========

    def pipeline_start(self, source: str, target_stage: str = "all", data: Optional[Dict[str, Any]] = None) -> None:
        """Log pipeline start"""
        pipeline_data = {"source": source, "target_stage": target_stage}
        if data:
            pipeline_data.update(data)
        self.emit(JSONLogLevel.INFO, JSONLogCategory.PIPELINE, "Starting pipeline execution", pipeline_data)

    def pipeline_complete(self, elapsed: float, data: Optional[Dict[str, Any]] = None) -> None:
        """Log pipeline completion"""
        complete_data = {"elapsed_seconds": round(elapsed, 3)}
        if data:
            complete_data.update(data)
        self.emit(
            JSONLogLevel.SUCCESS,
            JSONLogCategory.PIPELINE,
            f"Pipeline completed in {elapsed:.2f}s",
            complete_data
        )

    def pipeline_failed(self, error: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Log pipeline failure"""
        error_data = {"error": error}
        if data:
            error_data.update(data)
        self.emit(JSONLogLevel.ERROR, JSONLogCategory.PIPELINE, f"Pipeline failed: {error}", error_data)

    def stage_start(self, stage_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        stage_data = {"stage": stage_name}
        if data:
            stage_data.update(data)
        self.emit(JSONLogLevel.INFO, JSONLogCategory.STAGE, f"Starting {stage_name} stage", stage_data)

    def stage_success(self, stage_name: str, elapsed: float, data: Optional[Dict[str, Any]] = None) -> None:
        stage_data = {"stage": stage_name, "duration": round(elapsed, 4)}
        if data:
            stage_data.update(data)
        self.emit(JSONLogLevel.SUCCESS, JSONLogCategory.STAGE, f"{stage_name} stage completed", stage_data)

    def stage_failed(self, stage_name: str, error: str, data: Optional[Dict[str, Any]] = None) -> None:
        stage_data = {"stage": stage_name, "error": error}
        if data:
            stage_data.update(data)
        self.emit(JSONLogLevel.ERROR, JSONLogCategory.STAGE, f"{stage_name} stage failed: {error}", stage_data)

    def stage_skipped(self, stage_name: str, reason: str) -> None:
        self.emit(
            JSONLogLevel.WARNING,
            JSONLogCategory.STAGE,
            f"{stage_name} stage skipped: {reason}",
            {"stage": stage_name, "reason": reason},
        )
