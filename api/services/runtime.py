"""Services shared by the API routes.

``ApiServices`` is built once in the app lifespan and stored on
``app.state``. Tests build it directly with in-memory stores and fake SAP
clients.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Optional, Union

from temporalio.client import Client

from connectors.sap.sap_steps import SapStepClient
from core.audit.request_log import RequestLog
from core.bootstrap import build_credential_resolver, build_execution_store, build_request_log
from core.config import FLOW_BACKEND_TEMPORAL, Settings
from core.models.reference import ReferenceDocument
from core.observability.logging import CorrelationContext, get_logger
from core.security.credentials import CredentialResolver, SapCredentials
from core.storage.executions import ExecutionStore
from core.workflow.base import FlowExecution, FlowScope
from core.workflow.dispatcher import FlowDispatcher, sap_runner_factory
from core.workflow.runner import abort_execution, open_step_client, prepare_resume
from temporal_client import get_temporal_client, start_replication

logger = get_logger(__name__)

StepClientFactory = Callable[[SapCredentials], AsyncContextManager[SapStepClient]]


class TemporalFlowLauncher:
    """Starts runs as ReplicationWorkflow executions instead of local tasks.

    Same ``start`` / ``resume`` contract as ``FlowDispatcher``: the record is
    persisted here and the worker's activity picks it up from the shared store.
    """

    def __init__(self, store: ExecutionStore, credential_resolver: CredentialResolver, task_queue: str):
        self.store = store
        self.credential_resolver = credential_resolver
        self.task_queue = task_queue
        self._client: Optional[Client] = None

    async def _start_workflow(self, execution: FlowExecution) -> None:
        """Start the workflow; if that fails the execution is marked failed."""
        try:
            if self._client is None:
                self._client = await get_temporal_client()
            handle = await start_replication(execution.id, client=self._client, task_queue=self.task_queue)
        except Exception as e:
            await abort_execution(self.store, execution, e)
            raise
        logger.info(
            f"Workflow started: {handle.id}",
            context=CorrelationContext(execution_id=execution.id, workflow_id=handle.id),
        )

    async def start(
        self,
        reference: ReferenceDocument,
        run_id: Optional[str] = None,
        test_type: FlowScope = FlowScope.FULL_FLOW,
    ) -> FlowExecution:
        self.credential_resolver.resolve(reference.sap_domain)
        execution = FlowExecution.create(reference, run_id, test_type)
        await asyncio.to_thread(self.store.create_execution, execution)
        await self._start_workflow(execution)
        return execution

    async def resume(self, execution_id: str) -> FlowExecution:
        execution = await asyncio.to_thread(self.store.get_execution, execution_id)
        self.credential_resolver.resolve(execution.reference.sap_domain)
        prepare_resume(execution)
        await asyncio.to_thread(self.store.update_execution, execution.id, execution.to_dict())
        await self._start_workflow(execution)
        return execution

    async def wait_idle(self) -> None:
        return None


@dataclass
class ApiServices:
    settings: Settings
    store: ExecutionStore
    credential_resolver: CredentialResolver
    request_log: RequestLog
    flows: Union[FlowDispatcher, TemporalFlowLauncher]
    step_client_factory: StepClientFactory


def build_services(settings: Settings) -> ApiServices:
    """Services for a running server, wired from ``settings``."""
    store = build_execution_store(settings)
    resolver = build_credential_resolver(settings)
    request_log = build_request_log(settings)

    if settings.flow_backend == FLOW_BACKEND_TEMPORAL:
        flows = TemporalFlowLauncher(store, resolver, settings.task_queue)
    else:
        flows = FlowDispatcher(store, resolver, sap_runner_factory(store, settings, request_log))

    def step_client_factory(credentials: SapCredentials) -> AsyncContextManager[SapStepClient]:
        return open_step_client(credentials, settings, request_log)

    return ApiServices(
        settings=settings,
        store=store,
        credential_resolver=resolver,
        request_log=request_log,
        flows=flows,
        step_client_factory=step_client_factory,
    )
