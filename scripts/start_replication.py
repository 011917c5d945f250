"""Start (or resume) a replication run from the command line.

With FLOW_BACKEND=local the run executes in this process and the script
waits for it. With FLOW_BACKEND=temporal the execution is persisted and a
ReplicationWorkflow is started on Temporal Cloud; --wait blocks until the
workflow result is available.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.bootstrap import build_credential_resolver, build_execution_store, build_request_log
from core.config import FLOW_BACKEND_TEMPORAL, Settings
from core.models.reference import ReferenceDocument
from core.workflow.base import FlowExecution, FlowScope
from core.workflow.runner import abort_execution, open_sap_runner, prepare_resume
from temporal_client import start_replication


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_replication(args: argparse.Namespace) -> dict:
    """Create or resume the execution and run it.

    Returns:
        dict: Final (local) or started (temporal) execution summary
    """
    settings = Settings.from_env()
    store = build_execution_store(settings)
    resolver = build_credential_resolver(settings)

    if args.resume:
        execution = store.get_execution(args.resume)
        credentials = resolver.resolve(execution.reference.sap_domain)
        start = prepare_resume(execution)
        store.update_execution(execution.id, execution.to_dict())
        logger.info(f"Resuming {execution.id} at step {start.value}")
    else:
        reference = ReferenceDocument(
            order_id=args.order_id,
            sap_domain=args.domain,
            warehouse_code=args.warehouse,
        )
        credentials = resolver.resolve(reference.sap_domain)
        scope = FlowScope.ORDER_ONLY if args.order_only else FlowScope.FULL_FLOW
        execution = FlowExecution.create(reference, test_type=scope)
        store.create_execution(execution)
        logger.info(f"Execution {execution.id} created for order {reference.order_id}")

    if settings.flow_backend == FLOW_BACKEND_TEMPORAL:
        try:
            handle = await start_replication(execution.id, task_queue=settings.task_queue)
        except Exception as e:
            await abort_execution(store, execution, e)
            raise
        logger.info(f"Workflow started: {handle.id}")
        if not args.wait:
            return {"execution_id": execution.id, "workflow_id": handle.id, "global_status": "processing"}
        result = await handle.result()
        return {
            "execution_id": result.execution_id,
            "global_status": result.global_status,
            "completed_steps": result.completed_steps,
            "total_steps": result.total_steps,
        }

    try:
        async with open_sap_runner(credentials, store, settings, build_request_log(settings)) as runner:
            final = await runner.execute(execution)
    except Exception as e:
        await abort_execution(store, execution, e)
        raise
    return {
        "execution_id": final.id,
        "global_status": final.global_status.value,
        "completed_steps": final.completed_steps,
        "total_steps": final.total_steps,
        "order_id": final.order_id,
        "delivery_id": final.delivery_id,
        "billing_id": final.billing_id,
        "nfe_number": final.nfe_number,
        "total_differences": final.total_differences,
    }


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Start a SAP replication run")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--order", dest="order_id", help="Reference sales order number")
    group.add_argument("--resume", metavar="EXECUTION_ID", help="Resume a halted execution")
    parser.add_argument("--domain", default=None, help="SAP tenant domain (default tenant when omitted)")
    parser.add_argument("--warehouse", default=None, help="Storage location override for every item")
    parser.add_argument("--order-only", action="store_true", help="Create and compare the replica order only")
    parser.add_argument("--wait", action="store_true", help="Wait for the Temporal workflow result")
    args = parser.parse_args()

    try:
        result = asyncio.run(run_replication(args))
    except Exception as e:
        logger.error(f"Replication failed: {e}", exc_info=True)
        return 1

    print(json.dumps(result, indent=2))
    return 0 if result.get("global_status") != "failed" else 2


if __name__ == "__main__":
    sys.exit(main())
