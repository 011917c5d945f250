"""Worker for the SAP replication pipeline.

Runs on Temporal Cloud, listens on the replication task queue and executes
ReplicationWorkflow and its run_replication activity.

Run with --queue <name> to poll a different queue than TEMPORAL_TASK_QUEUE.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from workflows.replication_workflow import ReplicationWorkflow
from activities.replication import run_replication
from core.config import Settings
from core.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)

WORKFLOWS = [ReplicationWorkflow]
ACTIVITIES = [run_replication]


async def run_worker(task_queue: str) -> None:
    """Start worker listening on the task queue.

    Raises:
        Exception: If connection to Temporal Cloud fails
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal Cloud: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=WORKFLOWS,
        activities=ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Workflows: {len(WORKFLOWS)}")
    logger.info(f"  - Activities: {len(ACTIVITIES)}")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    settings = Settings.from_env()
    configure_logging(level=settings.logging_level, json_format=settings.log_json)

    parser = argparse.ArgumentParser(description="SAP Replication Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=settings.task_queue,
        help=f"Task queue to poll (default: {settings.task_queue})"
    )
    args = parser.parse_args()

    try:
        asyncio.run(run_worker(args.queue))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
