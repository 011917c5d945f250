"""SAP pipeline step client.

One method per SAP operation of the replication flow. Each performs a single
round trip (picking and PGI add one entity tag refresh), lets the typed
errors of ``sap_client`` propagate, and returns a ``StepCall`` carrying what
the orchestrator persists on the step.
"""

import re
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional

from connectors.sap.sap_auth import SapSession, acquire_session, refresh_entity_tag
from connectors.sap.sap_client import SapApiClient, SapApiError, SapError, SapResponse
from core.observability.logging import CorrelationContext, get_logger

logger = get_logger(__name__)

SALES_ORDER_EXPAND = "to_Item/to_PricingElement,to_Partner"
BILLING_CATEGORY_DELIVERY = "J"

_ALREADY_EXISTS_MARKERS = ("already exists", "já existe")
_DOCUMENT_NUMBER = re.compile(r"\d{10}")


@dataclass
class StepCall:
    """Normalized result of one step operation."""
    endpoint: str
    method: str
    request: Any = None
    response: Any = None
    document_id: Optional[str] = None
    status_code: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "request": self.request,
            "response": self.response,
            "documentId": self.document_id,
            "statusCode": self.status_code,
        }


@dataclass
class DeliverySnapshot:
    """A delivery header as fetched, with its entity tag and items."""
    header: Dict[str, Any]
    etag: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    duration_ms: int


def format_billing_document(billing_document: Any) -> str:
    """Billing number left-padded with zeros to 10 characters."""
    text = "" if billing_document is None else str(billing_document).strip()
    if not text or text in ("undefined", "null", "None"):
        raise ValueError(f"Invalid billing document: {billing_document!r}")
    return text.zfill(10)


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class SapStepClient:
    """SAP operations of the replication pipeline.

    Usage:
        async with SapApiClient(config, user, password) as client:
            steps = SapStepClient(client)
            order = await steps.fetch_sales_order("1234", context=ctx)
    """

    def __init__(self, client: SapApiClient):
        self.client = client
        self.config = client.config

    def _call(self, method: str, url: str, payload: Any, response: SapResponse, document_id: Optional[str]) -> StepCall:
        return StepCall(
            endpoint=url,
            method=method,
            request=payload,
            response=response.data,
            document_id=document_id,
            status_code=response.status,
        )

    async def acquire_session(self, context: Optional[CorrelationContext] = None) -> SapSession:
        """CSRF session for the writes of one flow invocation."""
        return await acquire_session(self.client, context)

    # -------------------------------------------------------------------------
    # Sales orders
    # -------------------------------------------------------------------------

    async def fetch_sales_order(
        self,
        order_id: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """GET a sales order with items, pricing elements and partners."""
        url = self.config.sales_order_url(f"A_SalesOrder('{order_id}')?$expand={SALES_ORDER_EXPAND}")
        response = await self.client.request(
            "GET", url,
            operation="fetch_sales_order",
            context=context,
            timeout=self.config.read_timeout,
        )
        data = response.data or {}
        return self._call("GET", url, None, response, _text(data.get("SalesOrder")) or order_id)

    async def create_sales_order(
        self,
        session: SapSession,
        payload: Dict[str, Any],
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """POST the replica sales order. ``document_id`` is the new SalesOrder."""
        url = self.config.sales_order_url("A_SalesOrder")
        response = await self.client.request(
            "POST", url,
            operation="create_sales_order",
            context=context,
            headers=session.write_headers(),
            json_body=payload,
            timeout=self.config.create_timeout,
        )
        data = response.data or {}
        sales_order = _text(data.get("SalesOrder"))
        logger.info(f"Sales order created: {sales_order}", context=context)
        return self._call("POST", url, payload, response, sales_order)

    # -------------------------------------------------------------------------
    # Deliveries
    # -------------------------------------------------------------------------

    async def create_outbound_delivery(
        self,
        session: SapSession,
        sales_order: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """POST an outbound delivery referencing ``sales_order``.

        If SAP answers that the delivery already exists and the message
        carries a 10-digit number, that number is returned as the delivery.
        The recovery is best effort: the response is flagged
        ``recoveryAuthoritative=False``.
        """
        url = self.config.delivery_url("A_OutbDeliveryHeader")
        payload = {
            "to_DeliveryDocumentItem": {
                "results": [{"ReferenceSDDocument": sales_order}],
            },
        }
        try:
            response = await self.client.request(
                "POST", url,
                operation="create_outbound_delivery",
                context=context,
                headers=session.write_headers(),
                json_body=payload,
                timeout=self.config.create_timeout,
            )
        except SapApiError as e:
            recovered = self._recover_existing_delivery(e)
            if recovered is None:
                raise
            logger.warning(
                f"Delivery for {sales_order} already exists, using {recovered} (not authoritative)",
                context=context,
                extra_fields={"status": e.status_code},
            )
            return StepCall(
                endpoint=url,
                method="POST",
                request=payload,
                response={
                    "DeliveryDocument": recovered,
                    "alreadyExisted": True,
                    "recoveryAuthoritative": False,
                    "errorMessage": e.error_message,
                },
                document_id=recovered,
                status_code=e.status_code,
            )

        data = response.data or {}
        delivery = _text(data.get("DeliveryDocument"))
        logger.info(f"Outbound delivery created: {delivery}", context=context)
        return self._call("POST", url, payload, response, delivery)

    @staticmethod
    def _recover_existing_delivery(error: SapApiError) -> Optional[str]:
        text = error.response_body or ""
        if not any(marker in text for marker in _ALREADY_EXISTS_MARKERS):
            return None
        match = _DOCUMENT_NUMBER.search(text)
        return match.group(0) if match else None

    async def fetch_delivery_with_items(
        self,
        delivery: str,
        context: Optional[CorrelationContext] = None,
    ) -> DeliverySnapshot:
        """GET a delivery header with its items and the header ``ETag``."""
        url = self.config.delivery_url(
            f"A_OutbDeliveryHeader(DeliveryDocument='{delivery}')?$expand=to_DeliveryDocumentItem"
        )
        response = await self.client.request(
            "GET", url,
            operation="fetch_delivery_with_items",
            context=context,
            timeout=self.config.read_timeout,
        )
        header = response.data or {}
        items = (header.get("to_DeliveryDocumentItem") or {}).get("results") or []
        etag = response.headers.get("ETag")
        logger.debug(
            f"Delivery {delivery} fetched with {len(items)} items",
            context=context,
            extra_fields={"has_etag": bool(etag)},
        )
        return DeliverySnapshot(header=header, etag=etag, items=items)

    async def _conditional_action(
        self,
        session: SapSession,
        action: str,
        operation: str,
        delivery: str,
        context: Optional[CorrelationContext],
    ) -> StepCall:
        etag = await refresh_entity_tag(
            partial(self.fetch_delivery_with_items, context=context),
            delivery,
        )
        url = self.config.delivery_url(f"{action}?DeliveryDocument='{delivery}'", version="0002")
        payload: Dict[str, Any] = {}
        response = await self.client.request(
            "POST", url,
            operation=operation,
            context=context,
            headers=session.write_headers(if_match=etag),
            json_body=payload,
            timeout=self.config.write_timeout,
        )
        call = self._call("POST", url, payload, response, delivery)
        if response.status != 200 or response.body is None:
            call.response = {"success": True}
        return call

    async def pick_all_items(
        self,
        session: SapSession,
        delivery: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """Confirm picking of every delivery item (conditional on the fresh ETag)."""
        call = await self._conditional_action(session, "PickAllItems", "pick_all_items", delivery, context)
        logger.info(f"PickAllItems executed for delivery {delivery}", context=context)
        return call

    async def post_goods_issue(
        self,
        session: SapSession,
        delivery: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """Post goods issue for the delivery.

        Raises:
            SapPreconditionFailedError: 412, the delivery changed after the
                tag refresh. Not retried.
        """
        call = await self._conditional_action(session, "PostGoodsIssue", "post_goods_issue", delivery, context)
        logger.info(f"Goods issue posted for delivery {delivery}", context=context)
        return call

    # -------------------------------------------------------------------------
    # Billing and fiscal note (custom services)
    # -------------------------------------------------------------------------

    async def create_billing_document(
        self,
        session: SapSession,
        delivery: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """Create the billing document for a delivery.

        ``document_id`` is None when SAP accepted the call but returned no
        billing number; callers decide whether that is a failure.
        """
        url = self.config.custom_url("spaider/createbilldoc")
        payload = {"docReference": delivery, "categoryDoc": BILLING_CATEGORY_DELIVERY}
        response = await self.client.request(
            "POST", url,
            operation="create_billing_document",
            context=context,
            headers=session.write_headers(),
            json_body=payload,
            timeout=self.config.create_timeout,
        )

        result = response.body if isinstance(response.body, dict) else {}
        inner = result.get("response") if isinstance(result.get("response"), dict) else {}
        billing = (
            _text(inner.get("billingDocument"))
            or _text(result.get("billingDocument"))
            or _text(result.get("BillingDocument"))
        )
        logger.info(
            f"Billing document for delivery {delivery}: {billing or 'NOT_FOUND'}",
            context=context,
        )

        call = self._call("POST", url, payload, response, billing)
        call.response = {
            "BillingDocument": billing,
            "billingDocument": billing,
            "billingType": result.get("billingType") or "",
            "docReference": delivery,
            "categoryDoc": BILLING_CATEGORY_DELIVERY,
            "response": inner or result,
            "messages": inner.get("messages") or result.get("messages") or [],
        }
        return call

    async def fetch_fiscal_note(
        self,
        billing_document: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """GET the NF-e issued for a billing document."""
        number = format_billing_document(billing_document)
        url = self.config.custom_url(f"spaider/NfeDocument/BR_NFSourceDocumentNumber/{number}")
        response = await self.client.request(
            "GET", url,
            operation="fetch_fiscal_note",
            context=context,
            timeout=self.config.read_timeout,
        )
        result = response.body if isinstance(response.body, dict) else {}
        nfe = (
            _text(result.get("NFeNumber"))
            or _text(result.get("BRNFNumber"))
            or _text(result.get("nfeNumber"))
        )
        logger.info(f"NF-e for billing {number}: {nfe or 'N/A'}", context=context)
        return self._call("GET", url, None, response, nfe)

    async def fetch_bill_of_lading(
        self,
        delivery: str,
        context: Optional[CorrelationContext] = None,
    ) -> StepCall:
        """GET the bill of lading of a delivery.

        Raises:
            SapApiError: SAP answered but the delivery carries no bill of lading
        """
        url = self.config.delivery_url(f"A_OutbDeliveryHeader('{delivery}')/BillOfLading")
        response = await self.client.request(
            "GET", url,
            operation="fetch_bill_of_lading",
            context=context,
            timeout=self.config.read_timeout,
        )
        data = response.data if isinstance(response.data, dict) else {}
        bill_of_lading = _text(data.get("BillOfLading"))
        if not bill_of_lading:
            raise SapApiError(
                f"Bill of Lading not found for delivery {delivery}",
                status_code=response.status,
                response_body=response.text,
                endpoint=url,
                method="GET",
            )
        return self._call("GET", url, None, response, bill_of_lading)

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    async def test_connection(self, context: Optional[CorrelationContext] = None) -> ConnectionTestResult:
        """Read one sales order (``$top=1``) to check the service answers."""
        url = self.config.sales_order_url("A_SalesOrder?$top=1")
        started = time.monotonic()
        try:
            await self.client.request(
                "GET", url,
                operation="test_connection",
                context=context,
                timeout=self.config.read_timeout,
            )
        except SapError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            status = f"Error {e.status_code}: " if e.status_code else ""
            return ConnectionTestResult(
                success=False,
                message=f"{status}{e.to_record()['message'] or e.message}"[:200],
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        return ConnectionTestResult(
            success=True,
            message=f"Connection successful ({duration_ms}ms)",
            duration_ms=duration_ms,
        )
