"""
DuckDB-backed persistence for pipelines, executions, results and logs.

All calls go through one connection guarded by a lock, so the store is the
single authoritative writer for the "one running execution per pipeline"
check (`start_execution_atomically`).
"""
from __future__ import annotations
import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import duckdb

from importer.common.exceptions import ConfigurationError, ExecutionAlreadyRunning, RecordNotFound
from importer.common.logger import Category, get_logger
from importer.common.settings import DatabaseSettings
from .models import (
    Execution,
    ExecutionLog,
    ExecutionStatus,
    Frequency,
    Pipeline,
    PipelineResultRecord,
)

log = get_logger()


@dataclass
class DBConfig:
    """driver: only 'duckdb' is supported; path: file path or ':memory:'"""
    driver: str = "duckdb"
    path: str = ":memory:"


def open_connection(cfg: DBConfig | Mapping[str, Any]) -> duckdb.DuckDBPyConnection:
    """Open a DB connection for the given config."""
    if not isinstance(cfg, DBConfig):
        cfg = DBConfig(**cfg)  # type: ignore[arg-type]
    if cfg.driver.lower() != "duckdb":
        raise ConfigurationError(f"Unsupported database driver: {cfg.driver}")
    path = cfg.path or ":memory:"
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        log.debug(f"Connecting to DuckDB: {path}", category=Category.DATABASE)
    else:
        log.debug("Connecting to in-memory DuckDB", category=Category.DATABASE)
    return duckdb.connect(database=path)


SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS seq_import_pipelines START 1",
    "CREATE SEQUENCE IF NOT EXISTS seq_import_pipeline_executions START 1",
    "CREATE SEQUENCE IF NOT EXISTS seq_import_pipeline_results START 1",
    "CREATE SEQUENCE IF NOT EXISTS seq_import_pipeline_logs START 1",
    """
    CREATE TABLE IF NOT EXISTS import_pipelines (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_import_pipelines'),
        organization_id BIGINT NOT NULL,
        name VARCHAR NOT NULL,
        description VARCHAR,
        target_id VARCHAR,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        frequency VARCHAR NOT NULL,
        start_time TIME,
        config VARCHAR,
        created_by VARCHAR,
        last_executed_at TIMESTAMP,
        next_execution_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_pipeline_executions (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_import_pipeline_executions'),
        pipeline_id BIGINT NOT NULL,
        status VARCHAR NOT NULL,
        triggered_by VARCHAR,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        total_rows INTEGER DEFAULT 0,
        processed_rows INTEGER DEFAULT 0,
        success_rate DOUBLE DEFAULT 0,
        processing_time DOUBLE DEFAULT 0,
        memory_usage BIGINT DEFAULT 0,
        error_message VARCHAR,
        failed_stage VARCHAR,
        result_data VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_pipeline_results (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_import_pipeline_results'),
        organization_id BIGINT NOT NULL,
        pipeline_id BIGINT NOT NULL,
        execution_id BIGINT NOT NULL,
        data VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_pipeline_logs (
        id BIGINT PRIMARY KEY DEFAULT nextval('seq_import_pipeline_logs'),
        execution_id BIGINT NOT NULL,
        log_level VARCHAR NOT NULL,
        message VARCHAR NOT NULL,
        context VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
)

_PIPELINE_COLUMNS = frozenset({
    "organization_id", "name", "description", "target_id", "is_active", "frequency", "start_time",
    "config", "created_by", "last_executed_at", "next_execution_at",
})
_EXECUTION_COLUMNS = frozenset({
    "status", "triggered_by", "started_at", "completed_at", "total_rows", "processed_rows", "success_rate",
    "processing_time", "memory_usage", "error_message", "failed_stage", "result_data",
})
_JSON_COLUMNS = frozenset({"config", "result_data", "data", "context"})


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _load(value: Optional[str], default: Any) -> Any:
    return default if value in (None, "") else json.loads(value)


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return _dump(value)
    if isinstance(value, (Frequency, ExecutionStatus)):
        return value.value
    return value


class PipelineStore:
    """Create/find/update for the engine's records."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, clock: Callable[[], datetime] = datetime.now):
        self.conn = conn
        self.clock = clock
        self.lock = threading.RLock()
        with self.lock:
            for ddl in SCHEMA:
                self.conn.execute(ddl)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "PipelineStore":
        return cls(open_connection(DBConfig(settings.driver, settings.path)))

    @classmethod
    def in_memory(cls) -> "PipelineStore":
        return cls(open_connection(DBConfig()))

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # ---------------- helpers ----------------
    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.lock:
            cur = self.conn.execute(sql, list(params))
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, row)) for row in cur.fetchall()]

    def _insert(self, table: str, values: Mapping[str, Any]) -> int:
        cols = list(values)
        marks = ", ".join("?" for _ in cols)
        sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({marks}) RETURNING id"
        with self.lock:
            row = self.conn.execute(sql, [_encode(c, values[c]) for c in cols]).fetchone()
        return int(row[0])

    def _update(self, table: str, record_id: int, values: Mapping[str, Any], allowed: frozenset) -> None:
        unknown = set(values) - allowed
        if unknown:
            raise ConfigurationError(f"Unknown {table} columns: {', '.join(sorted(unknown))}")
        if not values:
            return
        cols = list(values)
        assignments = ", ".join(f"{c} = ?" for c in cols)
        with self.lock:
            self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [_encode(c, values[c]) for c in cols] + [record_id],
            )

    @staticmethod
    def _to_pipeline(row: Dict[str, Any]) -> Pipeline:
        return Pipeline(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            description=row["description"],
            target_id=row["target_id"],
            is_active=bool(row["is_active"]),
            frequency=Frequency(row["frequency"]),
            start_time=row["start_time"],
            config=_load(row["config"], {}),
            created_by=row["created_by"],
            last_executed_at=row["last_executed_at"],
            next_execution_at=row["next_execution_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_execution(row: Dict[str, Any]) -> Execution:
        return Execution(
            id=row["id"],
            pipeline_id=row["pipeline_id"],
            status=ExecutionStatus(row["status"]),
            triggered_by=row["triggered_by"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            total_rows=row["total_rows"] or 0,
            processed_rows=row["processed_rows"] or 0,
            success_rate=row["success_rate"] or 0.0,
            processing_time=row["processing_time"] or 0.0,
            memory_usage=row["memory_usage"] or 0,
            error_message=row["error_message"],
            failed_stage=row["failed_stage"],
            result_data=_load(row["result_data"], {}),
            created_at=row["created_at"],
        )

    # ---------------- pipelines ----------------
    def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        now = self.clock()
        new_id = self._insert("import_pipelines", {
            "organization_id": pipeline.organization_id,
            "name": pipeline.name,
            "description": pipeline.description,
            "target_id": pipeline.target_id,
            "is_active": pipeline.is_active,
            "frequency": pipeline.frequency,
            "start_time": pipeline.start_time,
            "config": pipeline.config,
            "created_by": pipeline.created_by,
            "last_executed_at": pipeline.last_executed_at,
            "next_execution_at": pipeline.next_execution_at,
            "created_at": pipeline.created_at or now,
            "updated_at": now,
        })
        log.debug("Pipeline saved", {"pipeline_id": new_id}, category=Category.DATABASE)
        return self.get_pipeline(new_id)

    def get_pipeline(self, pipeline_id: int) -> Pipeline:
        rows = self._query("SELECT * FROM import_pipelines WHERE id = ?", [pipeline_id])
        if not rows:
            raise RecordNotFound("Pipeline", pipeline_id)
        return self._to_pipeline(rows[0])

    def update_pipeline(self, pipeline_id: int, **fields: Any) -> Pipeline:
        self._update("import_pipelines", pipeline_id, fields, _PIPELINE_COLUMNS)
        with self.lock:
            self.conn.execute("UPDATE import_pipelines SET updated_at = ? WHERE id = ?", [self.clock(), pipeline_id])
        return self.get_pipeline(pipeline_id)

    def list_pipelines(
        self,
        active: Optional[bool] = None,
        scheduled: Optional[bool] = None,
        frequency: Optional[Frequency | str] = None,
        organization_id: Optional[int] = None,
    ) -> List[Pipeline]:
        where: List[str] = []
        params: List[Any] = []
        if active is not None:
            where.append("is_active = ?")
            params.append(active)
        if scheduled is True:
            where.append("frequency <> ?")
            params.append(Frequency.ONCE.value)
        elif scheduled is False:
            where.append("frequency = ?")
            params.append(Frequency.ONCE.value)
        if frequency is not None:
            where.append("frequency = ?")
            params.append(Frequency(frequency).value)
        if organization_id is not None:
            where.append("organization_id = ?")
            params.append(organization_id)
        sql = "SELECT * FROM import_pipelines"
        if where:
            sql += " WHERE " + " AND ".join(where)
        return [self._to_pipeline(r) for r in self._query(sql + " ORDER BY id", params)]

    # ---------------- executions ----------------
    def create_execution(self, execution: Execution) -> Execution:
        new_id = self._insert("import_pipeline_executions", {
            "pipeline_id": execution.pipeline_id,
            "status": execution.status,
            "triggered_by": execution.triggered_by,
            "started_at": execution.started_at,
            "result_data": execution.result_data,
            "created_at": self.clock(),
        })
        return self.get_execution(new_id)

    def get_execution(self, execution_id: int) -> Execution:
        rows = self._query("SELECT * FROM import_pipeline_executions WHERE id = ?", [execution_id])
        if not rows:
            raise RecordNotFound("Execution", execution_id)
        return self._to_execution(rows[0])

    def update_execution(self, execution_id: int, **fields: Any) -> Execution:
        self._update("import_pipeline_executions", execution_id, fields, _EXECUTION_COLUMNS)
        return self.get_execution(execution_id)

    def latest_running_execution(self, pipeline_id: int) -> Optional[Execution]:
        rows = self._query(
            "SELECT * FROM import_pipeline_executions WHERE pipeline_id = ? AND status = ? ORDER BY id DESC LIMIT 1",
            [pipeline_id, ExecutionStatus.RUNNING.value],
        )
        return self._to_execution(rows[0]) if rows else None

    def latest_active_execution(self, pipeline_id: int) -> Optional[Execution]:
        """Newest pending or running execution of the pipeline."""
        rows = self._query(
            "SELECT * FROM import_pipeline_executions WHERE pipeline_id = ? AND status IN (?, ?) "
            "ORDER BY id DESC LIMIT 1",
            [pipeline_id, ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value],
        )
        return self._to_execution(rows[0]) if rows else None

    def list_executions(self, pipeline_id: int, status: Optional[ExecutionStatus | str] = None,
                        limit: Optional[int] = None) -> List[Execution]:
        sql = "SELECT * FROM import_pipeline_executions WHERE pipeline_id = ?"
        params: List[Any] = [pipeline_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(ExecutionStatus(status).value)
        sql += " ORDER BY id DESC"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return [self._to_execution(r) for r in self._query(sql, params)]

    def start_execution_atomically(self, pipeline_id: int, triggered_by: str) -> Execution:
        """
        Check-then-create an execution under the store lock and move it from
        pending to running.

        Raises:
            ExecutionAlreadyRunning: If the pipeline already has a running execution
        """
        with self.lock:
            running = self.latest_running_execution(pipeline_id)
            if running is not None:
                raise ExecutionAlreadyRunning(pipeline_id, running.id)
            execution = self.create_execution(Execution(pipeline_id=pipeline_id, triggered_by=triggered_by))
            return self.update_execution(execution.id, status=ExecutionStatus.RUNNING, started_at=self.clock())

    # ---------------- results ----------------
    def save_result(self, record: PipelineResultRecord) -> PipelineResultRecord:
        new_id = self._insert("import_pipeline_results", {
            "organization_id": record.organization_id,
            "pipeline_id": record.pipeline_id,
            "execution_id": record.execution_id,
            "data": record.data,
            "created_at": self.clock(),
        })
        return self.get_result(new_id)

    def get_result(self, result_id: int) -> PipelineResultRecord:
        rows = self._query("SELECT * FROM import_pipeline_results WHERE id = ?", [result_id])
        if not rows:
            raise RecordNotFound("Result", result_id)
        r = rows[0]
        return PipelineResultRecord(
            id=r["id"],
            organization_id=r["organization_id"],
            pipeline_id=r["pipeline_id"],
            execution_id=r["execution_id"],
            data=_load(r["data"], []),
            created_at=r["created_at"],
        )

    def result_for_execution(self, execution_id: int) -> Optional[PipelineResultRecord]:
        rows = self._query("SELECT id FROM import_pipeline_results WHERE execution_id = ? ORDER BY id DESC LIMIT 1",
                           [execution_id])
        return self.get_result(rows[0]["id"]) if rows else None

    # ---------------- logs ----------------
    def add_log(self, execution_id: int, level: str, message: str,
                context: Optional[Dict[str, Any]] = None) -> ExecutionLog:
        new_id = self._insert("import_pipeline_logs", {
            "execution_id": execution_id,
            "log_level": level,
            "message": message,
            "context": context or {},
            "created_at": self.clock(),
        })
        return ExecutionLog(id=new_id, execution_id=execution_id, log_level=level, message=message,
                            context=dict(context or {}))

    def list_logs(self, execution_id: int, level: Optional[str] = None) -> List[ExecutionLog]:
        sql = "SELECT * FROM import_pipeline_logs WHERE execution_id = ?"
        params: List[Any] = [execution_id]
        if level:
            sql += " AND log_level = ?"
            params.append(level)
        return [
            ExecutionLog(
                id=r["id"],
                execution_id=r["execution_id"],
                log_level=r["log_level"],
                message=r["message"],
                context=_load(r["context"], {}),
                created_at=r["created_at"],
            )
            for r in self._query(sql + " ORDER BY id", params)
        ]
