"""SAP endpoints.

One-shot operations against SAP, order comparison and the replication flow.
SAP, credential and resume errors are mapped to HTTP in ``api.server``.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from api.services.runtime import ApiServices
from comparison import compare_orders
from connectors.sap.sap_client import odata_payload
from connectors.sap.sap_payload import build_replica_payload
from connectors.sap.sap_steps import StepCall
from core.models.reference import ReferenceCapabilities, ReferenceDocument
from core.observability.logging import CorrelationContext, get_logger
from core.workflow.base import FlowExecution, FlowScope
from core.workflow.runner import ReplicationRunner, abort_execution

logger = get_logger(__name__)

router = APIRouter()


def get_services(request: Request) -> ApiServices:
    return request.app.state.services


# =============================================================================
# Request / response models
# =============================================================================

class SapTarget(BaseModel):
    """Tenant selection shared by every request."""
    sap_domain: Optional[str] = Field(None, description="SAP tenant domain (default tenant when omitted)")


class OrderRequest(SapTarget):
    order_id: str = Field(..., min_length=1)


class ReplicateRequest(OrderRequest):
    warehouse_code: Optional[str] = None


class DeliveryRequest(SapTarget):
    sales_order: str = Field(..., min_length=1)


class DeliveryDocumentRequest(SapTarget):
    delivery_document: str = Field(..., min_length=1)


class BillingDocumentRequest(SapTarget):
    billing_document: str = Field(..., min_length=1)


class CompareRequest(BaseModel):
    original: Dict[str, Any]
    new: Dict[str, Any]


class OrderTestRequest(ReplicateRequest):
    run_id: Optional[str] = None
    description: Optional[str] = None


class FullFlowRequest(OrderTestRequest):
    capabilities: ReferenceCapabilities = Field(default_factory=ReferenceCapabilities)


class StepCallResponse(BaseModel):
    """Result of a one-shot SAP operation."""
    success: bool = True
    document_id: Optional[str] = None
    endpoint: str
    method: str
    status_code: int
    request: Any = None
    response: Any = None

    @classmethod
    def from_call(cls, call: StepCall) -> "StepCallResponse":
        return cls(
            document_id=call.document_id,
            endpoint=call.endpoint,
            method=call.method,
            status_code=call.status_code,
            request=call.request,
            response=call.response,
        )


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    duration_ms: int
    sap_domain: str


class FlowStartResponse(BaseModel):
    execution_id: str
    run_id: str
    global_status: str


class ExecutionListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int


def _context(operation: str, sap_domain: Optional[str], order_id: Optional[str] = None) -> CorrelationContext:
    return CorrelationContext(operation=operation, sap_domain=sap_domain, order_id=order_id)


# =============================================================================
# One-shot SAP operations
# =============================================================================

@router.post("/consult", response_model=StepCallResponse)
async def consult_order(
    body: OrderRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    """Fetch a sales order with items, pricing elements and partners."""
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("consult", credentials.domain, body.order_id)
    async with services.step_client_factory(credentials) as steps:
        call = await steps.fetch_sales_order(body.order_id, ctx)
    return StepCallResponse.from_call(call)


@router.post("/replicate", response_model=StepCallResponse)
async def replicate_order(
    body: ReplicateRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    """Create a replica of a sales order without running the rest of the flow."""
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("replicate", credentials.domain, body.order_id)
    async with services.step_client_factory(credentials) as steps:
        original = await steps.fetch_sales_order(body.order_id, ctx)
        payload = build_replica_payload(original.response or {}, body.order_id, body.warehouse_code)
        session = await steps.acquire_session(ctx)
        call = await steps.create_sales_order(session, payload, ctx)
    return StepCallResponse.from_call(call)


@router.post("/delivery", response_model=StepCallResponse)
async def create_delivery(
    body: DeliveryRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("delivery", credentials.domain, body.sales_order)
    async with services.step_client_factory(credentials) as steps:
        session = await steps.acquire_session(ctx)
        call = await steps.create_outbound_delivery(session, body.sales_order, ctx)
    return StepCallResponse.from_call(call)


@router.post("/picking", response_model=StepCallResponse)
async def pick_delivery(
    body: DeliveryDocumentRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("picking", credentials.domain)
    async with services.step_client_factory(credentials) as steps:
        session = await steps.acquire_session(ctx)
        call = await steps.pick_all_items(session, body.delivery_document, ctx)
    return StepCallResponse.from_call(call)


@router.post("/pgi", response_model=StepCallResponse)
async def post_goods_issue(
    body: DeliveryDocumentRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("pgi", credentials.domain)
    async with services.step_client_factory(credentials) as steps:
        session = await steps.acquire_session(ctx)
        call = await steps.post_goods_issue(session, body.delivery_document, ctx)
    return StepCallResponse.from_call(call)


@router.post("/billing", response_model=StepCallResponse)
async def create_billing(
    body: DeliveryDocumentRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("billing", credentials.domain)
    async with services.step_client_factory(credentials) as steps:
        session = await steps.acquire_session(ctx)
        call = await steps.create_billing_document(session, body.delivery_document, ctx)
    response = StepCallResponse.from_call(call)
    response.success = call.document_id is not None
    return response


@router.post("/nfe", response_model=StepCallResponse)
async def fetch_fiscal_note(
    body: BillingDocumentRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("nfe", credentials.domain)
    try:
        async with services.step_client_factory(credentials) as steps:
            call = await steps.fetch_fiscal_note(body.billing_document, ctx)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StepCallResponse.from_call(call)


@router.post("/bill-of-lading", response_model=StepCallResponse)
async def fetch_bill_of_lading(
    body: DeliveryDocumentRequest,
    services: ApiServices = Depends(get_services),
) -> StepCallResponse:
    credentials = services.credential_resolver.resolve(body.sap_domain)
    ctx = _context("bill_of_lading", credentials.domain)
    async with services.step_client_factory(credentials) as steps:
        call = await steps.fetch_bill_of_lading(body.delivery_document, ctx)
    return StepCallResponse.from_call(call)


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    body: SapTarget,
    services: ApiServices = Depends(get_services),
) -> ConnectionTestResponse:
    """Check that the tenant's sales order service answers."""
    credentials = services.credential_resolver.resolve(body.sap_domain)
    async with services.step_client_factory(credentials) as steps:
        result = await steps.test_connection(_context("test_connection", credentials.domain))
    return ConnectionTestResponse(
        success=result.success,
        message=result.message,
        duration_ms=result.duration_ms,
        sap_domain=credentials.domain,
    )


# =============================================================================
# Comparison
# =============================================================================

@router.post("/compare")
async def compare(body: CompareRequest) -> Dict[str, Any]:
    """Compare two sales orders as returned by SAP (``d`` envelope optional)."""
    original = odata_payload(body.original)
    new = odata_payload(body.new)
    if not isinstance(original, dict) or not isinstance(new, dict):
        raise HTTPException(status_code=422, detail="Orders must be JSON objects")
    return compare_orders(original, new).to_dict()


# =============================================================================
# Replication flow
# =============================================================================

@router.post("/order-test")
async def run_order_test(
    body: OrderTestRequest,
    services: ApiServices = Depends(get_services),
) -> Dict[str, Any]:
    """Replicate the reference order, compare the replica and store the result.

    Order-only execution (one step), run inline. The response is the
    finished execution; a failed order step is reported in it.
    """
    reference = ReferenceDocument(
        order_id=body.order_id,
        sap_domain=body.sap_domain,
        warehouse_code=body.warehouse_code,
        description=body.description,
    )
    credentials = services.credential_resolver.resolve(reference.sap_domain)
    execution = FlowExecution.create(reference, body.run_id, FlowScope.ORDER_ONLY)
    await asyncio.to_thread(services.store.create_execution, execution)

    try:
        async with services.step_client_factory(credentials) as steps:
            runner = ReplicationRunner(
                steps,
                services.store,
                capabilities=credentials.capabilities,
                sap_domain=credentials.domain,
            )
            final = await runner.execute(execution)
    except Exception as e:
        await abort_execution(services.store, execution, e)
        raise
    return final.to_dict()


@router.post("/full-flow", response_model=FlowStartResponse, status_code=202)
async def start_full_flow(
    body: FullFlowRequest,
    services: ApiServices = Depends(get_services),
) -> FlowStartResponse:
    """Start a replication run and return without waiting for it."""
    reference = ReferenceDocument(
        order_id=body.order_id,
        sap_domain=body.sap_domain,
        warehouse_code=body.warehouse_code,
        description=body.description,
        capabilities=body.capabilities,
    )
    execution = await services.flows.start(reference, body.run_id)
    return FlowStartResponse(
        execution_id=execution.id,
        run_id=execution.run_id,
        global_status=execution.global_status.value,
    )


@router.post("/executions/{execution_id}/resume", response_model=FlowStartResponse, status_code=202)
async def resume_execution(
    execution_id: str,
    services: ApiServices = Depends(get_services),
) -> FlowStartResponse:
    """Resume a halted run from its first pending or failed step."""
    execution = await services.flows.resume(execution_id)
    return FlowStartResponse(
        execution_id=execution.id,
        run_id=execution.run_id,
        global_status=execution.global_status.value,
    )


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    services: ApiServices = Depends(get_services),
) -> Dict[str, Any]:
    execution = await asyncio.to_thread(services.store.get_execution, execution_id)
    return execution.to_dict()


@router.get("/executions", response_model=ExecutionListResponse)
async def list_executions(
    limit: int = Query(50, ge=1, le=500),
    services: ApiServices = Depends(get_services),
) -> ExecutionListResponse:
    """Most recent executions first."""
    executions = await asyncio.to_thread(services.store.list_executions, limit)
    items = [execution.to_dict() for execution in executions]
    return ExecutionListResponse(items=items, total=len(items))
