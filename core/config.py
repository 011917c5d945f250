"""Application configuration from environment variables.

Loads ``.env`` from the repo root when present. Temporal connection
settings are read by ``temporal_client``; everything else lives here.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

FLOW_BACKEND_LOCAL = "local"
FLOW_BACKEND_TEMPORAL = "temporal"
TASK_QUEUE_REPLICATION = "sap-replication"


def _load_env() -> None:
    env_path = REPO_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path)


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


def _bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings.

    Attributes:
        log_level: Logging level name (LOG_LEVEL)
        log_json: JSON log lines instead of human-readable (LOG_JSON)
        db_path: SQLite file for executions and the request log (DB_PATH);
            None keeps everything in memory
        credentials_file: JSON credentials list (SAP_CREDENTIALS_FILE);
            None reads SAP_BASE_URL / SAP_USERNAME / SAP_PASSWORD
        sap_read_timeout: Seconds per GET (SAP_READ_TIMEOUT)
        sap_create_timeout: Seconds per document creation (SAP_CREATE_TIMEOUT)
        sap_write_timeout: Seconds per other write (SAP_WRITE_TIMEOUT)
        nfe_delay_seconds: Wait before fetching the NF-e (NFE_DELAY_SECONDS)
        flow_backend: "local" asyncio dispatcher or "temporal" (FLOW_BACKEND)
        task_queue: Temporal task queue (TEMPORAL_TASK_QUEUE)
    """
    log_level: str = "INFO"
    log_json: bool = False
    db_path: Optional[Path] = None
    credentials_file: Optional[Path] = None
    sap_read_timeout: float = 15.0
    sap_create_timeout: float = 20.0
    sap_write_timeout: float = 30.0
    nfe_delay_seconds: float = 3.0
    flow_backend: str = FLOW_BACKEND_LOCAL
    task_queue: str = TASK_QUEUE_REPLICATION

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.INFO)

    @classmethod
    def from_env(cls) -> "Settings":
        _load_env()

        db_path = os.getenv("DB_PATH")
        credentials_file = os.getenv("SAP_CREDENTIALS_FILE")
        flow_backend = os.getenv("FLOW_BACKEND", FLOW_BACKEND_LOCAL).strip().lower()
        if flow_backend not in (FLOW_BACKEND_LOCAL, FLOW_BACKEND_TEMPORAL):
            raise ValueError(
                f"FLOW_BACKEND must be '{FLOW_BACKEND_LOCAL}' or '{FLOW_BACKEND_TEMPORAL}', got {flow_backend!r}"
            )

        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_bool("LOG_JSON", False),
            db_path=Path(db_path) if db_path else None,
            credentials_file=Path(credentials_file) if credentials_file else None,
            sap_read_timeout=_float("SAP_READ_TIMEOUT", 15.0),
            sap_create_timeout=_float("SAP_CREATE_TIMEOUT", 20.0),
            sap_write_timeout=_float("SAP_WRITE_TIMEOUT", 30.0),
            nfe_delay_seconds=_float("NFE_DELAY_SECONDS", 3.0),
            flow_backend=flow_backend,
            task_queue=os.getenv("TEMPORAL_TASK_QUEUE", TASK_QUEUE_REPLICATION),
        )
