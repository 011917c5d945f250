"""Fire-and-forget flow dispatcher (local backend).

``start`` and ``resume`` persist the record and schedule the run as an
asyncio task they do not await; the caller gets the execution back in
``processing`` immediately. Each task owns its ``FlowExecution`` instance:
callers only ever receive snapshots.
"""

import asyncio
from functools import partial
from typing import AsyncContextManager, Callable, Dict, Optional

from core.audit.request_log import RequestLog
from core.config import Settings
from core.models.reference import ReferenceDocument
from core.observability.logging import CorrelationContext, get_logger
from core.security.credentials import CredentialResolver, SapCredentials
from core.storage.executions import ExecutionStore
from core.workflow.base import FlowExecution, FlowScope, ResumeError
from core.workflow.runner import ReplicationRunner, abort_execution, open_sap_runner, prepare_resume

logger = get_logger(__name__)

RunnerFactory = Callable[[SapCredentials], AsyncContextManager[ReplicationRunner]]


def sap_runner_factory(
    store: ExecutionStore,
    settings: Settings,
    request_log: Optional[RequestLog] = None,
) -> RunnerFactory:
    """Factory opening a live SAP runner per execution."""
    return partial(open_sap_runner, store=store, settings=settings, request_log=request_log)


def _snapshot(execution: FlowExecution) -> FlowExecution:
    return FlowExecution.from_dict(execution.to_dict())


class FlowDispatcher:
    """Starts and resumes replication runs in the background.

    Usage:
        dispatcher = FlowDispatcher(store, resolver, sap_runner_factory(store, settings))
        execution = await dispatcher.start(ReferenceDocument(order_id="1234"))
        # execution.global_status == "processing"; the run continues in the background
    """

    def __init__(
        self,
        store: ExecutionStore,
        credential_resolver: CredentialResolver,
        runner_factory: RunnerFactory,
    ):
        self.store = store
        self.credential_resolver = credential_resolver
        self.runner_factory = runner_factory
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    async def start(
        self,
        reference: ReferenceDocument,
        run_id: Optional[str] = None,
        test_type: FlowScope = FlowScope.FULL_FLOW,
    ) -> FlowExecution:
        """Create an execution and run it in the background.

        Raises:
            CredentialsNotFoundError: No credentials for the reference's domain
        """
        credentials = self.credential_resolver.resolve(reference.sap_domain)
        execution = FlowExecution.create(reference, run_id, test_type)
        await asyncio.to_thread(self.store.create_execution, execution)
        logger.info(
            f"Execution created for order {reference.order_id}",
            context=CorrelationContext(execution_id=execution.id, run_id=execution.run_id),
        )
        snapshot = _snapshot(execution)
        self._schedule(execution, credentials)
        return snapshot

    async def resume(self, execution_id: str) -> FlowExecution:
        """Resume a halted execution from its first pending or failed step.

        Raises:
            ExecutionNotFoundError: Unknown id
            ResumeError: Already running or nothing left to do
            CredentialsNotFoundError: No credentials for the reference's domain
        """
        if self.is_running(execution_id):
            raise ResumeError(f"Execution {execution_id} is still running")

        execution = await asyncio.to_thread(self.store.get_execution, execution_id)
        credentials = self.credential_resolver.resolve(execution.reference.sap_domain)
        start = prepare_resume(execution, running=False)
        await asyncio.to_thread(self.store.update_execution, execution.id, execution.to_dict())
        logger.info(
            f"Execution resumed at step {start.value}",
            context=CorrelationContext(execution_id=execution.id, run_id=execution.run_id),
        )
        snapshot = _snapshot(execution)
        self._schedule(execution, credentials)
        return snapshot

    def _schedule(self, execution: FlowExecution, credentials: SapCredentials) -> None:
        task = asyncio.create_task(
            self._run(execution, credentials),
            name=f"replication-{execution.id}",
        )
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution.id, None))

    async def _run(self, execution: FlowExecution, credentials: SapCredentials) -> None:
        try:
            async with self.runner_factory(credentials) as runner:
                await runner.execute(execution)
        except Exception as e:
            ctx = CorrelationContext(execution_id=execution.id, run_id=execution.run_id)
            logger.exception(f"Replication aborted outside a step: {e}", context=ctx)
            try:
                await abort_execution(self.store, execution, e)
            except Exception as store_error:
                logger.exception(f"Could not record the aborted execution: {store_error}", context=ctx)

    async def wait_idle(self) -> None:
        """Wait for every scheduled run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()))
