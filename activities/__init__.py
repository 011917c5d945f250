"""Activity definitions module."""

from activities.replication import (
    run_replication,
    ReplicationInput,
    ReplicationOutput,
)

__all__ = [
    "run_replication",
    "ReplicationInput",
    "ReplicationOutput",
]
