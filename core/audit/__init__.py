"""Core audit module - SAP request log and persistence."""

from core.audit.request_log import (
    RequestLog,
    RequestLogBackend,
    InMemoryRequestLogBackend,
    SQLiteRequestLogBackend,
    SapRequestLogEntry,
    sanitize_headers,
)

__all__ = [
    "RequestLog",
    "RequestLogBackend",
    "InMemoryRequestLogBackend",
    "SQLiteRequestLogBackend",
    "SapRequestLogEntry",
    "sanitize_headers",
]
