"""Builders for the store, credential resolver and request log.

Shared by the API lifespan, the Temporal activity and the scripts so that
every entry point reads ``Settings`` the same way.
"""

from core.audit.request_log import InMemoryRequestLogBackend, RequestLog, SQLiteRequestLogBackend
from core.config import Settings
from core.observability.logging import get_logger
from core.security.credentials import CredentialResolver, StaticCredentialResolver
from core.storage.executions import ExecutionStore, InMemoryExecutionStore, SQLiteExecutionStore

logger = get_logger(__name__)


def build_execution_store(settings: Settings) -> ExecutionStore:
    if settings.db_path is None:
        logger.warning("DB_PATH not set, executions are kept in memory only")
        return InMemoryExecutionStore()
    return SQLiteExecutionStore(settings.db_path)


def build_credential_resolver(settings: Settings) -> CredentialResolver:
    if settings.credentials_file is not None:
        return StaticCredentialResolver.from_file(settings.credentials_file)
    return StaticCredentialResolver.from_env()


def build_request_log(settings: Settings) -> RequestLog:
    if settings.db_path is None:
        return RequestLog(InMemoryRequestLogBackend())
    return RequestLog(SQLiteRequestLogBackend(settings.db_path))
