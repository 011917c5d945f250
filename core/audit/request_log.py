"""SAP request log.

Records every SAP call (endpoint, payloads, status, timing) so a failed step
can be reproduced without re-running the flow. Credentials never reach a
backend: ``Authorization`` and ``Cookie`` are redacted and the CSRF token is
cut to its first 10 characters.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from core.observability.logging import get_logger

logger = get_logger(__name__)

REDACTED = "[REDACTED]"
_REDACTED_HEADERS = {"authorization", "cookie"}
_TOKEN_HEADER = "x-csrf-token"


def sanitize_headers(headers: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of ``headers`` safe to persist."""
    if headers is None:
        return None
    sanitized = dict(headers)
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in _REDACTED_HEADERS:
            sanitized[name] = REDACTED
        elif lowered == _TOKEN_HEADER and isinstance(value, str) and value.lower() != "fetch":
            sanitized[name] = value[:10] + "..."
    return sanitized


class SapRequestLogEntry(BaseModel):
    """One SAP call as recorded in the request log."""
    execution_id: Optional[str] = None
    run_id: Optional[str] = None
    operation: str
    http_method: str
    endpoint: str
    request_headers: Optional[Dict[str, Any]] = None
    request_payload: Any = None
    response_payload: Any = None
    response_status: int = 0
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("request_headers")
    @classmethod
    def _redact(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return sanitize_headers(value)


class RequestLogBackend(ABC):
    """Abstract base class for request log persistence backends."""

    @abstractmethod
    def save(self, entry: SapRequestLogEntry) -> None:
        """Persist one entry."""
        pass

    @abstractmethod
    def query(
        self,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100,
    ) -> List[SapRequestLogEntry]:
        """Query entries, oldest first."""
        pass


class InMemoryRequestLogBackend(RequestLogBackend):
    """In-memory request log for testing."""

    def __init__(self):
        self._entries: List[SapRequestLogEntry] = []

    def save(self, entry: SapRequestLogEntry) -> None:
        self._entries.append(entry)

    def query(
        self,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100,
    ) -> List[SapRequestLogEntry]:
        results = []
        for entry in self._entries:
            if execution_id and entry.execution_id != execution_id:
                continue
            if operation and entry.operation != operation:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        self._entries.clear()


class SQLiteRequestLogBackend(RequestLogBackend):
    """Request log stored in the ``sap_request_logs`` table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sap_request_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT,
                    run_id TEXT,
                    operation TEXT NOT NULL,
                    http_method TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    request_headers TEXT,
                    request_payload TEXT,
                    response_payload TEXT,
                    response_status INTEGER,
                    success INTEGER NOT NULL,
                    error_code TEXT,
                    error_message TEXT,
                    duration_ms INTEGER,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sap_request_logs_execution
                ON sap_request_logs(execution_id)
            """)
            conn.commit()
        finally:
            conn.close()

    def save(self, entry: SapRequestLogEntry) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                INSERT INTO sap_request_logs
                (execution_id, run_id, operation, http_method, endpoint, request_headers,
                 request_payload, response_payload, response_status, success,
                 error_code, error_message, duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.execution_id,
                entry.run_id,
                entry.operation,
                entry.http_method,
                entry.endpoint,
                json.dumps(entry.request_headers, default=str),
                json.dumps(entry.request_payload, default=str),
                json.dumps(entry.response_payload, default=str),
                entry.response_status,
                1 if entry.success else 0,
                entry.error_code,
                entry.error_message,
                entry.duration_ms,
                entry.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100,
    ) -> List[SapRequestLogEntry]:
        sql = "SELECT * FROM sap_request_logs WHERE 1=1"
        params: List[Any] = []
        if execution_id:
            sql += " AND execution_id = ?"
            params.append(execution_id)
        if operation:
            sql += " AND operation = ?"
            params.append(operation)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [
            SapRequestLogEntry(
                execution_id=row["execution_id"],
                run_id=row["run_id"],
                operation=row["operation"],
                http_method=row["http_method"],
                endpoint=row["endpoint"],
                request_headers=json.loads(row["request_headers"]),
                request_payload=json.loads(row["request_payload"]),
                response_payload=json.loads(row["response_payload"]),
                response_status=row["response_status"],
                success=bool(row["success"]),
                error_code=row["error_code"],
                error_message=row["error_message"],
                duration_ms=row["duration_ms"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]


class RequestLog:
    """Fans request log entries out to its backends.

    A backend failure is logged and never fails the SAP call being recorded.

    Usage:
        request_log = RequestLog()
        request_log.add_backend(SQLiteRequestLogBackend(Path("sap_logs.db")))
        client = SapApiClient(config, user, password, request_log=request_log)
    """

    def __init__(self, *backends: RequestLogBackend):
        self._backends: List[RequestLogBackend] = list(backends)

    def add_backend(self, backend: RequestLogBackend) -> None:
        self._backends.append(backend)

    def record(self, entry: SapRequestLogEntry) -> None:
        for backend in self._backends:
            try:
                backend.save(entry)
            except Exception as e:
                logger.warning(
                    f"Request logging failed for backend {type(backend).__name__}: {e}",
                    extra_fields={"operation": entry.operation},
                )

    def query(
        self,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100,
    ) -> List[SapRequestLogEntry]:
        """Query the first backend."""
        if not self._backends:
            return []
        return self._backends[0].query(execution_id, operation, limit)
