"""
Logging module for the import engine with user/dev/debug verbosity

User mode: Clean logging showing only stage boundaries and outcomes
Dev mode: Adds structured context (row counts, options, timings)
Debug mode: Everything, including per-row warnings
JSON mode: Structured JSON-Lines output for log shippers and dashboards

Every message belongs to a category; categories double as the per-concern
log channels (execution, scheduling, download, ...). A channel may carry its
own verbosity that overrides the global level for its messages.
"""
from __future__ import annotations

import sys
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from importer.common.json_formatter import JSONLogCategory, JSONLogger


class LogLevel(Enum):
    """Logging levels"""
    USER = "user"      # Simple, clean logging for operators
    DEV = "dev"        # Structured context for developers
    DEBUG = "debug"    # Very verbose logging

    @classmethod
    def parse(cls, value: "LogLevel | str") -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        v = str(value).strip().lower()
        # Conventional level names map onto the three verbosities
        aliases = {"info": "user", "notice": "user", "warning": "user", "error": "user", "development": "dev"}
        return cls(aliases.get(v, v))


class LogFormat(Enum):
    """Log output formats"""
    TEXT = "text"      # Human-readable text with colors
    JSON = "json"      # Structured JSON-Lines format


Category = JSONLogCategory


class Logger:
    """Import logger with configurable verbosity and output format"""

    def __init__(self, level: LogLevel = LogLevel.USER, format: LogFormat = LogFormat.TEXT, stream=None,
                 channels: Optional[Mapping[str, LogLevel | str]] = None):
        self.level = level
        self.format = format
        self.channels: Dict[Category, LogLevel] = {}
        self.set_channels(channels or {})
        self._stream = stream
        self._colors_enabled = getattr(self.stream, "isatty", lambda: False)() and format == LogFormat.TEXT
        self._json_logger: Optional[JSONLogger] = None

        if format == LogFormat.JSON:
            self._json_logger = JSONLogger(stream)

    @property
    def stream(self):
        return self._stream or sys.stdout

    def set_channels(self, channels: Mapping[str, LogLevel | str]) -> None:
        """Per-category verbosity, e.g. {"scheduling": "debug"}."""
        self.channels = {Category(name): LogLevel.parse(level) for name, level in channels.items()}

    def level_for(self, category: Optional[Category]) -> LogLevel:
        return self.channels.get(category, self.level) if category is not None else self.level

    def _timestamp(self) -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _format_message(self, msg: str, prefix: str = "", color: str = "", category: Optional[Category] = None) -> str:
        ts = self._timestamp()
        channel = f" [{category.value}]" if category is not None and category != Category.SYSTEM else ""
        if self._colors_enabled and color:
            return f"{color}[{ts}]{prefix}{channel} {msg}\033[0m"
        return f"[{ts}]{prefix}{channel} {msg}"

    def _with_data(self, msg: str, data: Optional[Dict[str, Any]], category: Optional[Category] = None) -> str:
        # Structured context is only spelled out in text mode for dev/debug
        if not data or self.level_for(category) == LogLevel.USER:
            return msg
        pairs = ", ".join(f"{k}={v}" for k, v in data.items())
        return f"{msg} | {pairs}"

    def _print(self, line: str) -> None:
        print(line, file=self.stream)

    # ========== USER-LEVEL LOGGING (Always shown) ==========

    def info(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Info message (shown in all modes)"""
        if self._json_logger is not None:
            self._json_logger.info(msg, data, category)
        else:
            self._print(self._format_message(self._with_data(msg, data, category), color="\033[36m", category=category))

    def success(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Success message (shown in all modes)"""
        if self._json_logger is not None:
            self._json_logger.success(msg, data, category)
        else:
            self._print(self._format_message(self._with_data(msg, data, category), prefix=" [OK]", color="\033[32m", category=category))

    def warning(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Warning message (shown in all modes)"""
        if self._json_logger is not None:
            self._json_logger.warning(msg, data, category)
        else:
            self._print(self._format_message(self._with_data(msg, data, category), prefix=" [WARN]", color="\033[33m", category=category))

    def error(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Error message (shown in all modes)"""
        if self._json_logger is not None:
            self._json_logger.error(msg, data, category)
        else:
            self._print(self._format_message(self._with_data(msg, data, category), prefix=" [ERROR]", color="\033[31m", category=category))

    def stage(self, stage_name: str) -> None:
        """Stage header (shown in all modes)"""
        if self._json_logger is not None:
            self._json_logger.stage_start(stage_name)
        else:
            line = "=" * 60
            self._print(self._format_message(line, color="\033[35m"))
            self._print(self._format_message(f"STAGE: {stage_name.upper()}", color="\033[35m\033[1m"))
            self._print(self._format_message(line, color="\033[35m"))

    # ========== DEV-LEVEL LOGGING (Shown in dev/debug modes) ==========

    def dev(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Development message (shown only in dev/debug mode)"""
        if self.level_for(category) in (LogLevel.DEV, LogLevel.DEBUG):
            if self._json_logger is not None:
                self._json_logger.debug(msg, data, category)
            else:
                self._print(self._format_message(self._with_data(msg, data, category), prefix=" [DEV]", color="\033[90m", category=category))

    def dev_detail(self, label: str, value: Any) -> None:
        """Development detail (shown only in dev/debug mode)"""
        if self.level in (LogLevel.DEV, LogLevel.DEBUG):
            if self._json_logger is not None:
                self._json_logger.debug(f"{label}: {value}", data={"label": label, "value": str(value)})
            else:
                self._print(self._format_message(f"{label}: {value}", prefix=" [DEV]", color="\033[90m"))

    # ========== DEBUG-LEVEL LOGGING (Shown only in debug mode) ==========

    def debug(self, msg: str, data: Optional[Dict[str, Any]] = None, category: Category = Category.SYSTEM) -> None:
        """Debug message (shown only in debug mode)"""
        if self.level_for(category) == LogLevel.DEBUG:
            if self._json_logger is not None:
                self._json_logger.debug(msg, data, category)
            else:
                self._print(self._format_message(self._with_data(msg, data, category), prefix=" [DEBUG]", color="\033[90m", category=category))

    # ========== PIPELINE LOGGING ==========

    def pipeline_start(self, source: str, target_stage: str = "all") -> None:
        if self._json_logger is not None:
            self._json_logger.pipeline_start(source, target_stage)
        else:
            self.info(f"Starting pipeline execution: {source} (target: {target_stage})", category=Category.PIPELINE)

    def pipeline_complete(self, elapsed: float, data: Optional[Dict[str, Any]] = None) -> None:
        if self._json_logger is not None:
            self._json_logger.pipeline_complete(elapsed, data)
        else:
            self.success(f"Pipeline completed in {elapsed:.2f}s", data, category=Category.PIPELINE)

    def pipeline_failed(self, error: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._json_logger is not None:
            self._json_logger.pipeline_failed(error, data)
        else:
            self.error(f"Pipeline failed: {error}", data, category=Category.PIPELINE)

    # ========== STAGE LOGGING ==========

    def stage_start(self, stage_name: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._json_logger is not None:
            self._json_logger.stage_start(stage_name, data)
        elif self.level == LogLevel.USER:
            self.info(f"[{stage_name}] starting", category=Category.STAGE)
        else:
            self.stage(stage_name)
            if data:
                for key, value in data.items():
                    self.dev_detail(f"  {key}", value)

    def stage_success(self, stage_name: str, elapsed: float, data: Optional[Dict[str, Any]] = None) -> None:
        if self._json_logger is not None:
            self._json_logger.stage_success(stage_name, elapsed, data)
        else:
            self.success(f"[{stage_name}] completed in {elapsed:.3f}s", data, category=Category.STAGE)

    def stage_failed(self, stage_name: str, error: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._json_logger is not None:
            self._json_logger.stage_failed(stage_name, error, data)
        else:
            self.error(f"[{stage_name}] FAILED: {error}", data, category=Category.STAGE)

    def stage_skipped(self, stage_name: str, reason: str) -> None:
        if self._json_logger is not None:
            self._json_logger.stage_skipped(stage_name, reason)
        elif self.level != LogLevel.USER:
            self.warning(f"[{stage_name}] skipped: {reason}", category=Category.STAGE)

    # ========== EXECUTION / SCHEDULING LOGGING ==========

    def execution_event(self, msg: str, data: Optional[Dict[str, Any]] = None, failed: bool = False) -> None:
        if failed:
            self.error(msg, data, category=Category.EXECUTION)
        else:
            self.info(msg, data, category=Category.EXECUTION)

    def schedule_event(self, msg: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.dev(msg, data, category=Category.SCHEDULING)


# Global logger instance
_logger: Optional[Logger] = None


def get_logger() -> Logger:
    """Get the global logger instance"""
    global _logger
    if _logger is None:
        _logger = Logger(LogLevel.USER)
    return _logger


def init_logger(
    level: LogLevel | str = LogLevel.USER,
    format: LogFormat | str = LogFormat.TEXT,
    channels: Optional[Mapping[str, LogLevel | str]] = None,
) -> Logger:
    """Initialize the global logger in place and return it"""
    global _logger
    level = LogLevel.parse(level)
    if isinstance(format, str):
        format = LogFormat(format.lower())

    fresh = Logger(level, format, channels=channels)
    if _logger is None:
        _logger = fresh
    else:
        # Modules hold `log = get_logger()` at import time; mutate that object
        _logger.__dict__.update(fresh.__dict__)
    return _logger
