"""
Error taxonomy for the import engine.

Every family carries a ``kind`` so calling code can branch on the failure
class (retryable transport error vs permanent error) without matching
message strings.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional


class ImporterError(Exception):
    """Base class for every error raised by the engine."""
    kind: Optional[Enum] = None

    def __init__(self, message: str, kind: Optional[Enum] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.context = context


class ConfigurationError(ImporterError):
    """Pipeline configuration could not be built or loaded."""


# ============================================================================
# Options
# ============================================================================

class InvalidOptionError(ImporterError):
    def __init__(self, option: str, owner: str, expected_type: str, actual_type: str, reason: Optional[str] = None):
        message = reason or f"Invalid option '{option}' for {owner}: expected {expected_type}, got {actual_type}"
        super().__init__(message, option=option, owner=owner)
        self.option = option
        self.owner = owner
        self.expected_type = expected_type
        self.actual_type = actual_type

    @classmethod
    def type_mismatch(cls, option: str, owner: str, expected_type: str, actual_type: str) -> "InvalidOptionError":
        return cls(option, owner, expected_type, actual_type)

    @classmethod
    def not_allowed(cls, option: str, owner: str, value: Any, allowed: Iterable[Any]) -> "InvalidOptionError":
        allowed_list = ", ".join(str(a) for a in allowed)
        return cls(
            option, owner, f"one of [{allowed_list}]", repr(value),
            reason=f"Invalid option '{option}' for {owner}: {value!r} is not one of [{allowed_list}]",
        )

    @classmethod
    def out_of_range(cls, option: str, owner: str, value: Any, min_value: Any, max_value: Any) -> "InvalidOptionError":
        return cls(
            option, owner, f"value in [{min_value}, {max_value}]", repr(value),
            reason=f"Invalid option '{option}' for {owner}: {value!r} is outside [{min_value}, {max_value}]",
        )

    @classmethod
    def missing(cls, option: str, owner: str, expected_type: str) -> "InvalidOptionError":
        return cls(
            option, owner, expected_type, "nothing",
            reason=f"Invalid option '{option}' for {owner}: option is required",
        )


# ============================================================================
# Downloaders
# ============================================================================

class DownloaderErrorKind(str, Enum):
    CONNECTION_FAILED = "connection_failed"
    FILE_NOT_FOUND = "file_not_found"
    DOWNLOAD_FAILED = "download_failed"


class DownloaderError(ImporterError):
    def __init__(self, message: str, kind: DownloaderErrorKind, downloader: str):
        super().__init__(message, kind, downloader=downloader)
        self.downloader = downloader

    @property
    def retryable(self) -> bool:
        return self.kind == DownloaderErrorKind.CONNECTION_FAILED

    @classmethod
    def connection_failed(cls, downloader: str, reason: str) -> "DownloaderError":
        return cls(f"Connection failed for {downloader} downloader: {reason}", DownloaderErrorKind.CONNECTION_FAILED, downloader)

    @classmethod
    def file_not_found(cls, downloader: str, path: str) -> "DownloaderError":
        return cls(f"File not found for {downloader} downloader: {path}", DownloaderErrorKind.FILE_NOT_FOUND, downloader)

    @classmethod
    def download_failed(cls, downloader: str, reason: str) -> "DownloaderError":
        return cls(f"Download failed for {downloader} downloader: {reason}", DownloaderErrorKind.DOWNLOAD_FAILED, downloader)


# ============================================================================
# Readers
# ============================================================================

class ReaderErrorKind(str, Enum):
    INVALID_CONTENT = "invalid_content"
    PARSING_FAILED = "parsing_failed"


class ReaderError(ImporterError):
    def __init__(self, message: str, kind: ReaderErrorKind, reader: str):
        super().__init__(message, kind, reader=reader)
        self.reader = reader

    @classmethod
    def invalid_content(cls, reader: str, reason: str) -> "ReaderError":
        return cls(f"Invalid content for {reader} reader: {reason}", ReaderErrorKind.INVALID_CONTENT, reader)

    @classmethod
    def parsing_failed(cls, reader: str, reason: str) -> "ReaderError":
        return cls(f"Parsing failed for {reader} reader: {reason}", ReaderErrorKind.PARSING_FAILED, reader)


# ============================================================================
# Filters
# ============================================================================

class FilterErrorKind(str, Enum):
    UNKNOWN_OPERATOR = "unknown_operator"
    INVALID_RULE = "invalid_rule"
    REGEX_ERROR = "regex_error"
    UNSUPPORTED_VALUE_TYPE = "unsupported_value_type"


class FilterError(ImporterError):
    @classmethod
    def unknown_operator(cls, operator: str) -> "FilterError":
        return cls(f"Unknown operator: {operator}", FilterErrorKind.UNKNOWN_OPERATOR, operator=operator)

    @classmethod
    def invalid_rule(cls, reason: str) -> "FilterError":
        return cls(f"Invalid rule: {reason}", FilterErrorKind.INVALID_RULE)

    @classmethod
    def regex_error(cls, pattern: str, reason: str) -> "FilterError":
        return cls(f"Regex error for pattern '{pattern}': {reason}", FilterErrorKind.REGEX_ERROR, pattern=pattern)

    @classmethod
    def unsupported_value_type(cls, operator: str, value_type: str) -> "FilterError":
        return cls(
            f'Operator "{operator}" does not support value type "{value_type}"',
            FilterErrorKind.UNSUPPORTED_VALUE_TYPE,
            operator=operator,
            value_type=value_type,
        )


# ============================================================================
# Registries / factories
# ============================================================================

class FactoryErrorKind(str, Enum):
    UNSUPPORTED_TYPE = "unsupported_type"
    CLASS_NOT_FOUND = "class_not_found"
    INVALID_SERVICE_CLASS = "invalid_service_class"


class FactoryError(ImporterError):
    @classmethod
    def unsupported_type(cls, type_name: str, available: Iterable[str]) -> "FactoryError":
        available_list = ", ".join(sorted(available))
        return cls(
            f"Unsupported type: '{type_name}'. Available types: {available_list}",
            FactoryErrorKind.UNSUPPORTED_TYPE,
            type=type_name,
        )

    @classmethod
    def class_not_found(cls, class_name: str) -> "FactoryError":
        return cls(f"Service class not found: {class_name}", FactoryErrorKind.CLASS_NOT_FOUND)

    @classmethod
    def invalid_service_class(cls, class_name: str, expected: str) -> "FactoryError":
        return cls(
            f"Service class '{class_name}' must implement {expected}",
            FactoryErrorKind.INVALID_SERVICE_CLASS,
        )


# ============================================================================
# Stages and executions
# ============================================================================

class StageError(ImporterError):
    """A pipe could not complete; the chain halts at ``stage``."""

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, stage=stage)
        self.stage = stage
        self.cause = cause


class ExecutionErrorKind(str, Enum):
    ALREADY_RUNNING = "already_running"
    ALREADY_QUEUED = "already_queued"
    INVALID_TRANSITION = "invalid_transition"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


class ExecutionError(ImporterError):
    pass


class ExecutionAlreadyRunning(ExecutionError):
    def __init__(self, pipeline_id: int, execution_id: int):
        super().__init__(
            f"Pipeline {pipeline_id} already has a running execution ({execution_id})",
            ExecutionErrorKind.ALREADY_RUNNING,
            pipeline_id=pipeline_id,
            execution_id=execution_id,
        )
        self.pipeline_id = pipeline_id
        self.execution_id = execution_id


class ExecutionAlreadyQueued(ExecutionAlreadyRunning):
    """A pending execution is waiting for a worker."""

    def __init__(self, pipeline_id: int, execution_id: int):
        ExecutionError.__init__(
            self,
            f"Pipeline {pipeline_id} already has a queued execution ({execution_id})",
            ExecutionErrorKind.ALREADY_QUEUED,
            pipeline_id=pipeline_id,
            execution_id=execution_id,
        )
        self.pipeline_id = pipeline_id
        self.execution_id = execution_id


class InvalidExecutionTransition(ExecutionError):
    def __init__(self, execution_id: int, current: str, requested: str):
        super().__init__(
            f"Execution {execution_id} cannot move from '{current}' to '{requested}'",
            ExecutionErrorKind.INVALID_TRANSITION,
        )
        self.current = current
        self.requested = requested


class ExecutionTimedOut(ExecutionError):
    def __init__(self, pipeline_id: int, timeout: int):
        super().__init__(
            f"Pipeline {pipeline_id} timed out after {timeout}s",
            ExecutionErrorKind.TIMED_OUT,
            pipeline_id=pipeline_id,
        )
        self.timeout = timeout


class ExecutionCancelled(ExecutionError):
    def __init__(self, stage: str):
        super().__init__(f"Execution cancelled before {stage} stage", ExecutionErrorKind.CANCELLED, stage=stage)
        self.stage = stage


class RecordNotFound(ExecutionError):
    def __init__(self, entity: str, record_id: Any):
        super().__init__(f"{entity} {record_id} not found", ExecutionErrorKind.NOT_FOUND)
