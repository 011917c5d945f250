"""Flow execution persistence.

Stores execution records and the flattened comparison rows. The
orchestrator writes through ``update_execution`` after every transition and
never reads its own writes back during a run.

Calls block; async callers run them with ``asyncio.to_thread``.

Backends:
- InMemoryExecutionStore: tests and the local dispatcher without DB_PATH
- SQLiteExecutionStore: ``test_flow_executions`` plus the three comparison tables
"""

import copy
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from comparison.models import ComparisonRows
from core.workflow.base import FlowExecution


class ExecutionNotFoundError(KeyError):
    """No execution with the requested id."""

    def __init__(self, execution_id: str):
        super().__init__(execution_id)
        self.execution_id = execution_id

    def __str__(self) -> str:
        return f"Execution not found: {self.execution_id}"


class ExecutionStore(ABC):
    """Abstract base class for execution persistence."""

    @abstractmethod
    def create_execution(self, execution: FlowExecution) -> str:
        """Persist a new execution and return its id."""
        pass

    @abstractmethod
    def update_execution(self, execution_id: str, changes: Dict[str, Any]) -> None:
        """Merge ``changes`` (``FlowExecution.to_dict`` keys) into the record."""
        pass

    @abstractmethod
    def get_execution(self, execution_id: str) -> FlowExecution:
        """Load an execution.

        Raises:
            ExecutionNotFoundError: Unknown id
        """
        pass

    @abstractmethod
    def list_executions(self, limit: int = 50) -> List[FlowExecution]:
        """Most recently created first."""
        pass

    @abstractmethod
    def save_comparison_rows(self, rows: ComparisonRows) -> Dict[str, int]:
        """Persist flattened comparison rows. Returns the record counts."""
        pass


class InMemoryExecutionStore(ExecutionStore):
    """In-memory execution store for testing."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._order: List[str] = []
        self.comparison_rows: List[ComparisonRows] = []
        self._lock = threading.Lock()

    def create_execution(self, execution: FlowExecution) -> str:
        with self._lock:
            self._records[execution.id] = copy.deepcopy(execution.to_dict())
            self._order.append(execution.id)
        return execution.id

    def update_execution(self, execution_id: str, changes: Dict[str, Any]) -> None:
        with self._lock:
            if execution_id not in self._records:
                raise ExecutionNotFoundError(execution_id)
            self._records[execution_id].update(copy.deepcopy(changes))

    def get_execution(self, execution_id: str) -> FlowExecution:
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                raise ExecutionNotFoundError(execution_id)
            return FlowExecution.from_dict(copy.deepcopy(record))

    def list_executions(self, limit: int = 50) -> List[FlowExecution]:
        with self._lock:
            ids = list(reversed(self._order))[:limit]
            return [FlowExecution.from_dict(copy.deepcopy(self._records[i])) for i in ids]

    def save_comparison_rows(self, rows: ComparisonRows) -> Dict[str, int]:
        with self._lock:
            self.comparison_rows.append(rows)
        return rows.stats


# Columns of test_flow_executions holding JSON
_JSON_COLUMNS = ("reference", "steps", "comparison", "sections_with_differences")
_EXECUTION_COLUMNS = (
    "id", "run_id", "reference", "original_order_id", "test_type", "order_id", "delivery_id",
    "billing_id", "nfe_number", "steps", "completed_steps", "total_steps",
    "global_status", "comparison", "total_differences", "sections_with_differences",
    "created_at", "updated_at",
)


class SQLiteExecutionStore(ExecutionStore):
    """SQLite execution store.

    Tables:
    - test_flow_executions: one row per execution, steps and comparison as JSON
    - test_header_comparisons / test_item_comparisons / test_tax_comparisons:
      flattened comparison rows keyed by test_execution_id
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS test_flow_executions (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    reference TEXT NOT NULL,
                    original_order_id TEXT NOT NULL,
                    test_type TEXT NOT NULL DEFAULT 'fluxo_completo',
                    order_id TEXT,
                    delivery_id TEXT,
                    billing_id TEXT,
                    nfe_number TEXT,
                    steps TEXT NOT NULL,
                    completed_steps INTEGER DEFAULT 0,
                    total_steps INTEGER DEFAULT 6,
                    global_status TEXT NOT NULL,
                    comparison TEXT,
                    total_differences INTEGER DEFAULT 0,
                    sections_with_differences TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_test_flow_executions_run_id
                ON test_flow_executions(run_id)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS test_header_comparisons (
                    id TEXT PRIMARY KEY,
                    test_execution_id TEXT NOT NULL REFERENCES test_flow_executions(id) ON DELETE CASCADE,
                    field_name TEXT NOT NULL,
                    field_path TEXT,
                    original_value TEXT,
                    new_value TEXT,
                    is_identical INTEGER NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS test_item_comparisons (
                    id TEXT PRIMARY KEY,
                    test_execution_id TEXT NOT NULL REFERENCES test_flow_executions(id) ON DELETE CASCADE,
                    item_number TEXT NOT NULL,
                    item_position INTEGER,
                    field_name TEXT NOT NULL,
                    field_path TEXT,
                    original_value TEXT,
                    new_value TEXT,
                    is_identical INTEGER NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS test_tax_comparisons (
                    id TEXT PRIMARY KEY,
                    test_execution_id TEXT NOT NULL REFERENCES test_flow_executions(id) ON DELETE CASCADE,
                    item_number TEXT NOT NULL,
                    tax_type TEXT NOT NULL,
                    original_rate TEXT,
                    original_base TEXT,
                    original_base_value TEXT,
                    original_amount TEXT,
                    new_rate TEXT,
                    new_base TEXT,
                    new_base_value TEXT,
                    new_amount TEXT,
                    has_differences INTEGER NOT NULL,
                    differences_list TEXT
                )
            """)
            for table in ("test_header_comparisons", "test_item_comparisons", "test_tax_comparisons"):
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_execution
                    ON {table}(test_execution_id)
                """)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS:
            return None if value is None else json.dumps(value, default=str)
        return value

    def _row_to_execution(self, row: sqlite3.Row) -> FlowExecution:
        data = dict(row)
        for column in _JSON_COLUMNS:
            if data.get(column) is not None:
                data[column] = json.loads(data[column])
        return FlowExecution.from_dict(data)

    def create_execution(self, execution: FlowExecution) -> str:
        record = execution.to_dict()
        columns = ", ".join(_EXECUTION_COLUMNS)
        placeholders = ", ".join("?" for _ in _EXECUTION_COLUMNS)
        conn = self._connect()
        try:
            conn.execute(
                f"INSERT INTO test_flow_executions ({columns}) VALUES ({placeholders})",
                [self._encode(c, record[c]) for c in _EXECUTION_COLUMNS],
            )
            conn.commit()
        finally:
            conn.close()
        return execution.id

    def update_execution(self, execution_id: str, changes: Dict[str, Any]) -> None:
        updates = {k: v for k, v in changes.items() if k in _EXECUTION_COLUMNS and k != "id"}
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        params = [self._encode(c, v) for c, v in updates.items()]
        params.append(execution_id)

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"UPDATE test_flow_executions SET {assignments} WHERE id = ?",
                params,
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise ExecutionNotFoundError(execution_id)
        finally:
            conn.close()

    def get_execution(self, execution_id: str) -> FlowExecution:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM test_flow_executions WHERE id = ?",
                (execution_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return self._row_to_execution(row)

    def list_executions(self, limit: int = 50) -> List[FlowExecution]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM test_flow_executions ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_execution(row) for row in rows]

    def save_comparison_rows(self, rows: ComparisonRows) -> Dict[str, int]:
        conn = self._connect()
        try:
            conn.executemany("""
                INSERT INTO test_header_comparisons
                (id, test_execution_id, field_name, field_path, original_value, new_value, is_identical)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                (str(uuid.uuid4()), r.test_execution_id, r.field_name, r.field_path,
                 r.original_value, r.new_value, 1 if r.is_identical else 0)
                for r in rows.header
            ])
            conn.executemany("""
                INSERT INTO test_item_comparisons
                (id, test_execution_id, item_number, item_position, field_name, field_path,
                 original_value, new_value, is_identical)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (str(uuid.uuid4()), r.test_execution_id, r.item_number, r.item_position,
                 r.field_name, r.field_path, r.original_value, r.new_value,
                 1 if r.is_identical else 0)
                for r in rows.items
            ])
            conn.executemany("""
                INSERT INTO test_tax_comparisons
                (id, test_execution_id, item_number, tax_type, original_rate, original_base,
                 original_base_value, original_amount, new_rate, new_base, new_base_value,
                 new_amount, has_differences, differences_list)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (str(uuid.uuid4()), r.test_execution_id, r.item_number, r.tax_type,
                 r.original_rate, r.original_base, r.original_base_value, r.original_amount,
                 r.new_rate, r.new_base, r.new_base_value, r.new_amount,
                 1 if r.has_differences else 0, json.dumps(r.differences_list))
                for r in rows.taxes
            ])
            conn.commit()
        finally:
            conn.close()
        return rows.stats

    def count_comparison_rows(self, execution_id: str) -> Dict[str, int]:
        """Stored row counts per table for one execution."""
        conn = self._connect()
        try:
            counts = {}
            for key, table in (
                ("headerRecords", "test_header_comparisons"),
                ("itemRecords", "test_item_comparisons"),
                ("taxRecords", "test_tax_comparisons"),
            ):
                counts[key] = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE test_execution_id = ?",
                    (execution_id,),
                ).fetchone()[0]
            return counts
        finally:
            conn.close()
