"""Replication Workflow.

Temporal shell around the replication runner: one activity runs the whole
pipeline and persists every step transition itself. The activity is never
retried; a halted run is resumed explicitly through the API.
"""

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.replication import ReplicationInput, ReplicationOutput, run_replication


@workflow.defn
class ReplicationWorkflow:
    """Replicate a reference sales order through the SAP pipeline."""

    @workflow.run
    async def run(self, input: ReplicationInput) -> ReplicationOutput:
        workflow.logger.info(f"Starting replication for execution {input.execution_id}")

        result = await workflow.execute_activity(
            run_replication,
            input,
            # pipeline includes the NF-e wait and up to eight SAP round trips
            start_to_close_timeout=timedelta(minutes=15),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )

        workflow.logger.info(
            f"Replication {input.execution_id} finished: {result.global_status} "
            f"({result.completed_steps}/{result.total_steps})"
        )
        return result
