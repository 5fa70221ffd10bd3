"""
Persistent records: pipelines, executions, results and execution logs.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_move_to(self, other: "ExecutionStatus") -> bool:
        return other in _TRANSITIONS[self]


TERMINAL_STATUSES: FrozenSet[ExecutionStatus] = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# pending -> running -> completed | failed; cancellation from any live status
_TRANSITIONS = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class TriggeredBy(str, Enum):
    SCHEDULER = "scheduler"
    MANUAL = "manual"


@dataclass
class Pipeline:
    """A saved, schedulable import configuration scoped to an organization."""
    name: str
    organization_id: int
    config: Dict[str, Any] = field(default_factory=dict)
    frequency: Frequency = Frequency.ONCE
    start_time: Optional[time] = None
    is_active: bool = True
    description: Optional[str] = None
    target_id: Optional[str] = None
    created_by: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    next_execution_at: Optional[datetime] = None

    @property
    def is_scheduled(self) -> bool:
        return self.frequency != Frequency.ONCE


@dataclass
class Execution:
    pipeline_id: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_by: str = TriggeredBy.MANUAL.value
    id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_rows: int = 0
    processed_rows: int = 0
    success_rate: float = 0.0
    processing_time: float = 0.0
    memory_usage: int = 0
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    result_data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class PipelineResultRecord:
    """Rows persisted by the Save stage for one execution."""
    organization_id: int
    pipeline_id: int
    execution_id: int
    data: list = field(default_factory=list)
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class ExecutionLog:
    execution_id: int
    log_level: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
