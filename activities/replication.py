"""Replication activity.

Runs one execution through the SAP pipeline inside a Temporal worker. The
activity reads and writes the same execution store as the API, so the
store (DB_PATH) must be shared between the API process and the worker.
"""

import asyncio
import time
from dataclasses import dataclass

from temporalio import activity

from core.bootstrap import build_credential_resolver, build_execution_store, build_request_log
from core.config import Settings
from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from core.workflow.runner import abort_execution, open_sap_runner


@dataclass
class ReplicationInput:
    """Input for run_replication activity.

    Attributes:
        execution_id: Execution to run; it must already exist in the store.
            A resumed execution is prepared by the caller before the start.
    """
    execution_id: str


@dataclass
class ReplicationOutput:
    """Final state summary of the run.

    Attributes:
        execution_id: Execution that was run
        global_status: completed, partial or failed
        completed_steps: Steps in completed state
        total_steps: 6, or 1 for an order-only execution
    """
    execution_id: str
    global_status: str
    completed_steps: int
    total_steps: int


@activity.defn
async def run_replication(input: ReplicationInput) -> ReplicationOutput:
    """Run the replication pipeline for an existing execution.

    Step failures are persisted on the execution and do not fail the
    activity. A missing execution does; so does any error outside the
    steps (credentials, session), after the execution is marked failed.

    Args:
        input: ReplicationInput with the execution id

    Returns:
        ReplicationOutput with the final global status
    """
    settings = Settings.from_env()
    store = build_execution_store(settings)
    resolver = build_credential_resolver(settings)

    execution = await asyncio.to_thread(store.get_execution, input.execution_id)

    info = activity.info()
    with with_correlation(
        execution_id=execution.id,
        run_id=execution.run_id,
        workflow_id=info.workflow_id,
        activity_id=info.activity_id,
    ):
        log_activity_start("run_replication", order_id=execution.original_order_id)
        start = time.monotonic()
        try:
            credentials = resolver.resolve(execution.reference.sap_domain)
            async with open_sap_runner(
                credentials,
                store,
                settings,
                request_log=build_request_log(settings),
            ) as runner:
                final = await runner.execute(execution)
        except Exception as e:
            log_activity_error("run_replication", str(e))
            await abort_execution(store, execution, e)
            raise
        log_activity_complete(
            "run_replication",
            duration_ms=(time.monotonic() - start) * 1000,
            global_status=final.global_status.value,
        )

    return ReplicationOutput(
        execution_id=final.id,
        global_status=final.global_status.value,
        completed_steps=final.completed_steps,
        total_steps=final.total_steps,
    )
