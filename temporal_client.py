"""Temporal Cloud client factory.

Creates connections to Temporal Cloud using credentials from environment and
starts replication workflows.
"""

import os
from typing import Optional
import ssl
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client, WorkflowHandle

from activities.replication import ReplicationInput
from core.config import TASK_QUEUE_REPLICATION
from workflows.replication_workflow import ReplicationWorkflow


def replication_workflow_id(execution_id: str) -> str:
    return f"replication-{execution_id}"


async def get_temporal_client() -> Client:
    """Create and return a Temporal Cloud client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Temporal Cloud endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Cloud
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Configured Temporal client connected to Cloud

    Raises:
        ValueError: If required environment variables are missing
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT")
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")

    if not endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal Cloud endpoint (e.g., 'temporal.example.com:7233')"
        )

    if not api_key:
        raise ValueError(
            "TEMPORAL_API_KEY environment variable not set. "
            "Set to your Temporal Cloud API key"
        )

    tls_config: Optional[ssl.SSLContext] = ssl.create_default_context()
    if cert_path:
        tls_config.load_cert_chain(cert_path)

    return await Client.connect(
        target_host=endpoint,
        namespace=namespace,
        tls=tls_config,
        api_key=api_key,
    )


async def start_replication(
    execution_id: str,
    client: Optional[Client] = None,
    task_queue: str = TASK_QUEUE_REPLICATION,
) -> WorkflowHandle:
    """Start ReplicationWorkflow for an existing execution without waiting.

    Args:
        execution_id: Execution already persisted in the store
        client: Connected client; a new one is created when omitted
        task_queue: Queue the worker polls

    Returns:
        Handle of the started workflow (id ``replication-<execution_id>``)
    """

    if client is None:
        client = await get_temporal_client()

    return await client.start_workflow(
        ReplicationWorkflow.run,
        ReplicationInput(execution_id=execution_id),
        id=replication_workflow_id(execution_id),
        task_queue=task_queue,
    )
