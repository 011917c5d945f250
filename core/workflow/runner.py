"""
Replication Runner

Drives one flow execution through the SAP pipeline:
1. order     - fetch reference, create replica, re-fetch, compare (once)
2. delivery  - create outbound delivery
3. picking   - PickAllItems with fresh ETag
4. pgi       - PostGoodsIssue with fresh ETag
5. billing   - optional, tenant capability "billing"
6. nfe       - optional, tenant capability "nfe"

The runner keeps the authoritative state in memory and writes it to the
store after every transition. Any exception raised inside a step becomes a
failed step: a run always ends in a terminal state. Nothing is retried.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from comparison import compare_orders, flatten_comparison
from connectors.sap.sap_auth import SapSession
from connectors.sap.sap_client import SapApiClient, SapApiConfig, SapError
from connectors.sap.sap_payload import build_replica_payload
from connectors.sap.sap_steps import SapStepClient, StepCall
from core.audit.request_log import RequestLog
from core.config import Settings
from core.observability.logging import CorrelationContext, get_logger
from core.security.credentials import SapCapabilities, SapCredentials
from core.storage.executions import ExecutionStore
from core.workflow.base import (
    OPTIONAL_STEPS,
    SKIP_CAPABILITY,
    SKIP_NOT_REQUESTED,
    SKIP_UPSTREAM_FAILED,
    STEP_ORDER,
    FlowExecution,
    FlowStep,
    GlobalStatus,
    ResumeError,
    StepStatus,
    resume_point,
    steps_after,
)

logger = get_logger(__name__)

DEFAULT_NFE_DELAY_SECONDS = 3.0


class StepFailedError(Exception):
    """SAP accepted the call but the result cannot be used (e.g. no document number)."""

    def __init__(self, message: str, call: Optional[StepCall] = None):
        super().__init__(message)
        self.message = message
        self.call = call


def error_record(error: BaseException) -> Dict[str, Any]:
    """Persisted form of a step failure."""
    if isinstance(error, SapError):
        return error.to_record()
    if isinstance(error, StepFailedError):
        return {
            "type": "protocol",
            "code": None,
            "message": error.message,
            "statusCode": error.call.status_code if error.call else 0,
            "raw": None,
        }
    return {
        "type": "internal",
        "code": type(error).__name__,
        "message": str(error) or type(error).__name__,
        "statusCode": 0,
        "raw": None,
    }


def prepare_resume(execution: FlowExecution, running: Optional[bool] = None) -> FlowStep:
    """Make a halted execution runnable again from its resume point.

    A step left in processing by a run that is no longer live fails as
    interrupted and becomes the resume point. Skipped steps after the resume
    point go back to pending (except ``not_requested`` ones) and the
    execution becomes processing.

    Args:
        execution: Execution to prepare, modified in place
        running: Whether a run of the execution is live. When unknown, a
            processing step in a processing execution counts as live.

    Raises:
        ResumeError: The execution is running or has nothing left to do
    """
    if running is None:
        running = execution.global_status == GlobalStatus.PROCESSING and any(
            record.status == StepStatus.PROCESSING for record in execution.steps.values()
        )
    if running:
        raise ResumeError(f"Execution {execution.id} is still running")

    execution.interrupt_processing_steps()
    start = resume_point(execution)
    if start is None:
        raise ResumeError(f"Execution {execution.id} has no pending or failed step")

    for step in steps_after(start):
        record = execution.step(step)
        if record.status == StepStatus.SKIPPED and record.skip_reason != SKIP_NOT_REQUESTED:
            execution.transition(step, StepStatus.PENDING)
    execution.global_status = GlobalStatus.PROCESSING
    return start


async def abort_execution(store: ExecutionStore, execution: FlowExecution, error: BaseException) -> None:
    """Persist ``execution`` as ended by ``error``, raised outside any step handler."""
    status = execution.abort(error_record(error))
    logger.error(
        f"Execution ended as {status.value}: {error}",
        context=CorrelationContext(execution_id=execution.id, run_id=execution.run_id),
    )
    await asyncio.to_thread(store.update_execution, execution.id, execution.to_dict())


class ReplicationRunner:
    """Executes the replication pipeline for one execution at a time.

    Args:
        steps: SAP step client (``SapStepClient`` or a compatible fake)
        store: Execution persistence
        capabilities: Tenant capability flags gating delivery, billing and nfe
        nfe_delay_seconds: Wait before the single NF-e fetch
        sleep: Awaitable sleep, replaced in tests
    """

    def __init__(
        self,
        steps: SapStepClient,
        store: ExecutionStore,
        capabilities: Optional[SapCapabilities] = None,
        nfe_delay_seconds: float = DEFAULT_NFE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        sap_domain: Optional[str] = None,
    ):
        self.steps = steps
        self.store = store
        self.capabilities = capabilities or SapCapabilities()
        self.nfe_delay_seconds = nfe_delay_seconds
        self._sleep = sleep
        self.sap_domain = sap_domain
        self._session: Optional[SapSession] = None
        self._original: Optional[Dict[str, Any]] = None

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _persist(self, execution: FlowExecution) -> None:
        await asyncio.to_thread(self.store.update_execution, execution.id, execution.to_dict())

    def _context(self, execution: FlowExecution, step: Optional[FlowStep] = None) -> CorrelationContext:
        return CorrelationContext(
            execution_id=execution.id,
            run_id=execution.run_id,
            sap_domain=self.sap_domain or execution.reference.sap_domain,
            order_id=execution.original_order_id,
            step=step.value if step else None,
        )

    def _capability_skip(self, step: FlowStep) -> Optional[str]:
        caps = self.capabilities
        if step in (FlowStep.DELIVERY, FlowStep.PICKING, FlowStep.PGI) and not caps.delivery:
            return SKIP_CAPABILITY
        if step == FlowStep.BILLING and not caps.billing:
            return SKIP_CAPABILITY
        if step == FlowStep.NFE and not (caps.billing and caps.nfe):
            return SKIP_CAPABILITY
        return None

    async def execute(self, execution: FlowExecution) -> FlowExecution:
        """Run from the resume point to the end. Returns the final state."""
        self._session = None
        self._original = None
        ctx = self._context(execution)

        for step in execution.interrupt_processing_steps():
            logger.warning(f"Step {step.value} was interrupted by an earlier run", context=ctx)
        start = resume_point(execution)
        if start is None:
            execution.refresh_status()
            await self._persist(execution)
            return execution

        logger.info(
            f"Replication started at step {start.value} for order {execution.original_order_id}",
            context=ctx,
        )
        execution.global_status = GlobalStatus.PROCESSING
        await self._persist(execution)

        for step in STEP_ORDER[STEP_ORDER.index(start):]:
            record = execution.step(step)
            if record.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                continue

            skip_reason = self._capability_skip(step)
            if skip_reason and record.status == StepStatus.FAILED:
                logger.warning(f"Step {step.value} failed earlier and is no longer available", context=ctx)
                break
            if skip_reason:
                execution.transition(step, StepStatus.SKIPPED, skip_reason=skip_reason)
                await self._persist(execution)
                logger.info(f"Step {step.value} skipped: {skip_reason}", context=ctx)
                continue

            execution.transition(step, StepStatus.PROCESSING)
            execution.refresh_status(running=True)
            await self._persist(execution)

            step_ctx = self._context(execution, step)
            try:
                call = await self._run_step(step, execution, step_ctx)
            except Exception as e:
                await self._fail(execution, step, e, step_ctx)
                break

            execution.transition(
                step,
                StepStatus.COMPLETED,
                endpoint=call.endpoint,
                method=call.method,
                request=call.request,
                response=call.response,
                document_id=call.document_id,
            )
            await self._persist(execution)
            logger.info(f"Step {step.value} completed ({call.document_id})", context=step_ctx)

        execution.refresh_status()
        await self._persist(execution)
        logger.info(
            f"Replication finished: {execution.global_status.value} "
            f"({execution.completed_steps}/{execution.total_steps} steps)",
            context=ctx,
        )
        return execution

    async def _fail(self, execution: FlowExecution, step: FlowStep, error: Exception, ctx: CorrelationContext) -> None:
        fields: Dict[str, Any] = {"error": error_record(error)}
        # once the replica exists the order step keeps its creation call
        keeps_creation = step == FlowStep.ORDER and execution.order_id is not None
        if isinstance(error, SapError) and not keeps_creation:
            fields.update(endpoint=error.endpoint, method=error.method, request=error.request_payload)
        elif isinstance(error, StepFailedError) and error.call is not None and not keeps_creation:
            fields.update(
                endpoint=error.call.endpoint,
                method=error.call.method,
                request=error.call.request,
                response=error.call.response,
            )

        if isinstance(error, (SapError, StepFailedError)):
            logger.error(f"Step {step.value} failed: {fields['error']['message']}", context=ctx)
        else:
            logger.exception(f"Step {step.value} failed with unexpected error: {error}", context=ctx)

        execution.transition(step, StepStatus.FAILED, **fields)

        if step in OPTIONAL_STEPS:
            for later in steps_after(step):
                if execution.step(later).status == StepStatus.PENDING:
                    execution.transition(later, StepStatus.SKIPPED, skip_reason=SKIP_UPSTREAM_FAILED)

        execution.refresh_status()
        await self._persist(execution)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _run_step(self, step: FlowStep, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        handlers = {
            FlowStep.ORDER: self._order,
            FlowStep.DELIVERY: self._delivery,
            FlowStep.PICKING: self._picking,
            FlowStep.PGI: self._pgi,
            FlowStep.BILLING: self._billing,
            FlowStep.NFE: self._nfe,
        }
        return await handlers[step](execution, ctx)

    async def _get_session(self, ctx: CorrelationContext) -> SapSession:
        if self._session is None:
            self._session = await self.steps.acquire_session(ctx)
        return self._session

    async def _fetch_original(self, execution: FlowExecution, ctx: CorrelationContext) -> Dict[str, Any]:
        if self._original is None:
            call = await self.steps.fetch_sales_order(execution.original_order_id, ctx)
            self._original = call.response or {}
        return self._original

    def _require_id(self, value: Optional[str], name: str) -> str:
        if not value:
            raise StepFailedError(f"Cannot run step without {name}")
        return value

    async def _order(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        created: Optional[StepCall] = None

        if not execution.order_id:
            original = await self._fetch_original(execution, ctx)
            session = await self._get_session(ctx)
            payload = build_replica_payload(
                original,
                execution.original_order_id,
                execution.reference.warehouse_code,
            )
            created = await self.steps.create_sales_order(session, payload, ctx)
            if not created.document_id:
                raise StepFailedError("Sales order created without a SalesOrder number", created)
            execution.order_id = created.document_id
            record = execution.step(FlowStep.ORDER)
            record.endpoint, record.method = created.endpoint, created.method
            record.request, record.response = created.request, created.response
            await self._persist(execution)
        else:
            logger.info(f"Replica {execution.order_id} already exists, not recreating", context=ctx)

        if execution.comparison is None:
            original = await self._fetch_original(execution, ctx)
            replica = await self.steps.fetch_sales_order(execution.order_id, ctx)
            result = compare_orders(original, replica.response or {})

            stats = await asyncio.to_thread(
                self.store.save_comparison_rows, flatten_comparison(execution.id, result)
            )
            execution.comparison = result.to_dict()
            execution.total_differences = result.summary.total_differences
            execution.sections_with_differences = list(result.summary.sections_with_differences)
            await self._persist(execution)
            logger.info(
                f"Comparison attached: {result.summary.total_differences} differences",
                context=ctx,
                extra_fields=stats,
            )

        if created is not None:
            return created

        record = execution.step(FlowStep.ORDER)
        return StepCall(
            endpoint=record.endpoint or "",
            method=record.method or "POST",
            request=record.request,
            response=record.response,
            document_id=execution.order_id,
        )

    async def _delivery(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        order_id = self._require_id(execution.order_id, "a replica sales order")
        session = await self._get_session(ctx)
        call = await self.steps.create_outbound_delivery(session, order_id, ctx)
        if not call.document_id:
            raise StepFailedError("Delivery created without a DeliveryDocument number", call)
        execution.delivery_id = call.document_id
        return call

    async def _picking(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        delivery_id = self._require_id(execution.delivery_id, "a delivery")
        session = await self._get_session(ctx)
        return await self.steps.pick_all_items(session, delivery_id, ctx)

    async def _pgi(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        delivery_id = self._require_id(execution.delivery_id, "a delivery")
        session = await self._get_session(ctx)
        return await self.steps.post_goods_issue(session, delivery_id, ctx)

    async def _billing(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        delivery_id = self._require_id(execution.delivery_id, "a delivery")
        session = await self._get_session(ctx)
        call = await self.steps.create_billing_document(session, delivery_id, ctx)
        if not call.document_id:
            raise StepFailedError("Billing response carries no billing document", call)
        execution.billing_id = call.document_id
        return call

    async def _nfe(self, execution: FlowExecution, ctx: CorrelationContext) -> StepCall:
        billing_id = self._require_id(execution.billing_id, "a billing document")
        if self.nfe_delay_seconds > 0:
            await self._sleep(self.nfe_delay_seconds)
        call = await self.steps.fetch_fiscal_note(billing_id, ctx)
        if not call.document_id:
            logger.warning("NF-e response carries no NF-e number", context=ctx)
        execution.nfe_number = call.document_id
        return call


@asynccontextmanager
async def open_step_client(
    credentials: SapCredentials,
    settings: Settings,
    request_log: Optional[RequestLog] = None,
) -> AsyncIterator[SapStepClient]:
    """Step client bound to a live SAP client for ``credentials``; closes it on exit."""
    config = SapApiConfig(
        base_url=credentials.base_url,
        read_timeout=settings.sap_read_timeout,
        create_timeout=settings.sap_create_timeout,
        write_timeout=settings.sap_write_timeout,
    )
    async with SapApiClient(
        config,
        credentials.username,
        credentials.password.get_secret_value(),
        request_log=request_log,
    ) as client:
        yield SapStepClient(client)


@asynccontextmanager
async def open_sap_runner(
    credentials: SapCredentials,
    store: ExecutionStore,
    settings: Settings,
    request_log: Optional[RequestLog] = None,
) -> AsyncIterator[ReplicationRunner]:
    """Runner bound to a live SAP client for ``credentials``; closes the client on exit."""
    async with open_step_client(credentials, settings, request_log) as steps:
        yield ReplicationRunner(
            steps,
            store,
            capabilities=credentials.capabilities,
            nfe_delay_seconds=settings.nfe_delay_seconds,
            sap_domain=credentials.domain,
        )
