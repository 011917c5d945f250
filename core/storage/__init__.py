"""Core storage - flow execution persistence."""

from core.storage.executions import (
    ExecutionNotFoundError,
    ExecutionStore,
    InMemoryExecutionStore,
    SQLiteExecutionStore,
)

__all__ = [
    "ExecutionNotFoundError",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SQLiteExecutionStore",
]
