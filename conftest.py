"""Shared fixtures: SAP sample orders, a fake step client and an SAP simulator."""

import copy
import json
import re
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from connectors.sap.sap_auth import SapSession
from connectors.sap.sap_client import SapApiError
from connectors.sap.sap_steps import ConnectionTestResult, StepCall
from core.models.reference import ReferenceDocument
from core.security.credentials import SapCapabilities, SapCredentials, StaticCredentialResolver
from core.storage.executions import InMemoryExecutionStore


# =============================================================================
# Sample documents
# =============================================================================

def _pricing(condition_type, rate=None, amount=None, manual=False, header_counter="0"):
    element = {
        "ConditionType": condition_type,
        "ConditionCurrency": "BRL",
        "ConditionIsManuallyChanged": manual,
        "PrcgProcedureCounterForHeader": header_counter,
    }
    if rate is not None:
        element["ConditionRateValue"] = rate
    if amount is not None:
        element["ConditionAmount"] = amount
    return element


def build_order(sales_order="0000012345", purchase_order="PO-778"):
    """A reference sales order as returned by the expanded OData GET (``d``)."""
    return {
        "SalesOrder": sales_order,
        "SalesOrderType": "ZVEN",
        "SalesOrganization": "1000",
        "DistributionChannel": "10",
        "OrganizationDivision": "00",
        "SoldToParty": "CUST-01",
        "PurchaseOrderByCustomer": purchase_order,
        "CustomerPaymentTerms": "Z030",
        "ShippingCondition": "01",
        "IncotermsClassification": "CIF",
        "IncotermsLocation1": "SAO PAULO",
        "TransactionCurrency": "BRL",
        "TotalNetAmount": "1500.00",
        "SalesOrderDate": "/Date(1700000000000)/",
        "to_Partner": {"results": [
            {"PartnerFunction": "SP", "Customer": "CUST-01"},
            {"PartnerFunction": "SL", "Supplier": "SUP-9"},
        ]},
        "to_Item": {"results": [
            {
                "SalesOrderItem": "10",
                "Material": "MAT-A",
                "RequestedQuantity": "5",
                "RequestedQuantityUnit": "PC",
                "NetAmount": "1000.00",
                "ShippingPoint": "SP01",
                "ProductionPlant": "P100",
                "SalesOrderItemCategory": "TAN",
                "MaterialGroup": "MG1",
                "ProductTaxClassification1": "1",
                "ProfitCenter": "PC100",
                "StorageLocation": "WH01",
                "to_PricingElement": {"results": [
                    _pricing("PR00", rate="200.00", amount="1000.00", manual=True),
                    _pricing("BX13", rate="18.00", amount="180.00"),
                    _pricing("ICBS", rate="100.00"),
                    _pricing("BPI1", rate="1.65"),
                    _pricing("BX72", amount="16.50"),
                ]},
            },
            {
                "SalesOrderItem": "20",
                "Material": "MAT-B",
                "RequestedQuantity": "1",
                "RequestedQuantityUnit": "PC",
                "NetAmount": "500.00",
                "ShippingPoint": "SP01",
                "ProductionPlant": "P100",
                "SalesOrderItemCategory": "TAN",
                "MaterialGroup": "MG2",
                "ProductTaxClassification1": "1",
                "ProfitCenter": "PC100",
                "StorageLocation": "WH01",
                "to_PricingElement": {"results": [
                    _pricing("BX13", rate="12.00", amount="60.00"),
                    _pricing("ZDSC", rate="-5.00", manual=True, header_counter="1"),
                ]},
            },
        ]},
    }


def build_replica(original, sales_order="0000099001", original_order_id="0000012345"):
    """What SAP gives back for a faithful replica of ``original``."""
    replica = copy.deepcopy(original)
    replica["SalesOrder"] = sales_order
    replica["PurchaseOrderByCustomer"] = f"REF_{original_order_id}"
    return replica


@pytest.fixture
def original_order():
    return build_order()


@pytest.fixture
def replica_order(original_order):
    return build_replica(original_order)


# =============================================================================
# Store, credentials, reference
# =============================================================================

@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def reference():
    return ReferenceDocument(order_id="0000012345", sap_domain="acme")


@pytest.fixture
def full_capabilities():
    return SapCapabilities(sales_order=True, delivery=True, billing=True, nfe=True)


@pytest.fixture
def credentials(full_capabilities):
    return SapCredentials(
        domain="acme",
        display_name="ACME S/4",
        base_url="http://sap.invalid",
        username="RFC_USER",
        password="secret",
        capabilities=full_capabilities,
    )


@pytest.fixture
def resolver(credentials):
    return StaticCredentialResolver([credentials])


# =============================================================================
# Fake step client (no HTTP)
# =============================================================================

class FakeStepClient:
    """In-memory stand-in for ``SapStepClient``.

    ``fail`` maps an operation name to the exception it raises; remove the
    entry to let a later (resumed) run succeed.
    """

    def __init__(self, orders, replica_id="0000099001", delivery_id="8000000001",
                 billing_id="0090000001", nfe_number="000000123", fail=None):
        self.orders = copy.deepcopy(orders)
        self.replica_id = replica_id
        self.delivery_id = delivery_id
        self.billing_id = billing_id
        self.nfe_number = nfe_number
        self.fail = dict(fail or {})
        self.calls = []

    def _enter(self, operation):
        self.calls.append(operation)
        if operation in self.fail:
            raise self.fail[operation]

    async def acquire_session(self, context=None):
        self._enter("acquire_session")
        return SapSession(csrf_token="token-1234567890", cookie_header="SAP_SESSIONID_X=abc")

    async def fetch_sales_order(self, order_id, context=None):
        self._enter("fetch_sales_order")
        order = self.orders.get(order_id)
        if order is None:
            raise SapApiError(f"Sales order {order_id} not found", status_code=404,
                              endpoint=f"/A_SalesOrder('{order_id}')", method="GET")
        return StepCall(f"/A_SalesOrder('{order_id}')", "GET", None, copy.deepcopy(order), order_id, 200)

    async def create_sales_order(self, session, payload, context=None):
        self._enter("create_sales_order")
        reference_id = payload["PurchaseOrderByCustomer"][len("REF_"):]
        self.orders[self.replica_id] = build_replica(self.orders[reference_id], self.replica_id, reference_id)
        return StepCall("/A_SalesOrder", "POST", payload, {"SalesOrder": self.replica_id}, self.replica_id, 201)

    async def create_outbound_delivery(self, session, sales_order, context=None):
        self._enter("create_outbound_delivery")
        payload = {"to_DeliveryDocumentItem": {"results": [{"ReferenceSDDocument": sales_order}]}}
        return StepCall("/A_OutbDeliveryHeader", "POST", payload,
                        {"DeliveryDocument": self.delivery_id}, self.delivery_id, 201)

    async def pick_all_items(self, session, delivery, context=None):
        self._enter("pick_all_items")
        return StepCall(f"/PickAllItems?DeliveryDocument='{delivery}'", "POST", {}, {"success": True}, delivery, 204)

    async def post_goods_issue(self, session, delivery, context=None):
        self._enter("post_goods_issue")
        return StepCall(f"/PostGoodsIssue?DeliveryDocument='{delivery}'", "POST", {}, {"success": True}, delivery, 204)

    async def create_billing_document(self, session, delivery, context=None):
        self._enter("create_billing_document")
        payload = {"docReference": delivery, "categoryDoc": "J"}
        return StepCall("/createbilldoc", "POST", payload,
                        {"BillingDocument": self.billing_id}, self.billing_id, 200)

    async def fetch_fiscal_note(self, billing_document, context=None):
        self._enter("fetch_fiscal_note")
        return StepCall(f"/NfeDocument/{billing_document}", "GET", None,
                        {"NFeNumber": self.nfe_number}, self.nfe_number, 200)

    async def fetch_bill_of_lading(self, delivery, context=None):
        self._enter("fetch_bill_of_lading")
        return StepCall(f"/A_OutbDeliveryHeader('{delivery}')/BillOfLading", "GET", None,
                        {"BillOfLading": "BOL-1"}, "BOL-1", 200)

    async def test_connection(self, context=None):
        self._enter("test_connection")
        return ConnectionTestResult(success=True, message="Connection successful (1ms)", duration_ms=1)


@pytest.fixture
def make_step_client(original_order):
    """Factory: ``make_step_client(fail={...}, billing_id=None, ...)``."""
    def factory(**kwargs):
        orders = kwargs.pop("orders", {original_order["SalesOrder"]: original_order})
        return FakeStepClient(orders, **kwargs)
    return factory


# =============================================================================
# SAP simulator (aiohttp.web)
# =============================================================================

class SapSimulator:
    """Minimal S/4HANA OData surface for the replication pipeline.

    ``failures`` maps an operation name to ``(status, body)``; the operation
    answers with that status instead of succeeding.
    """

    CSRF_TOKEN = "sim-csrf-token-0123456789"
    ETAG = 'W/"datetimeoffset\'2024-01-01T10:00:00Z\'"'

    def __init__(self, orders):
        self.orders = copy.deepcopy(orders)
        self.failures = {}
        self.requests = []
        self.next_order = 99001
        self.delivery_id = "8000000001"
        self.billing_id = "90000001"
        self.nfe_number = "000000123"
        self.bill_of_lading = "BOL-77"

    def app(self):
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    @asynccontextmanager
    async def serve(self):
        """Run the simulator; yields its base URL."""
        server = TestServer(self.app())
        await server.start_server()
        try:
            yield str(server.make_url("/")).rstrip("/")
        finally:
            await server.close()

    @staticmethod
    def _odata_error(status, message, code="SIM/001"):
        return web.json_response(
            {"error": {"code": code, "message": {"lang": "en", "value": message}}},
            status=status,
        )

    def _failure(self, operation):
        if operation not in self.failures:
            return None
        status, body = self.failures[operation]
        return web.Response(status=status, text=json.dumps(body), content_type="application/json")

    def _session_ok(self, request):
        return (
            request.headers.get("x-csrf-token") == self.CSRF_TOKEN
            and "SAP_SESSIONID_SIM=s1" in request.headers.get("Cookie", "")
        )

    async def handle(self, request):
        path = request.path
        self.requests.append({
            "method": request.method,
            "path": path,
            "query": request.query_string,
            "headers": {name.lower(): value for name, value in request.headers.items()},
        })

        if request.method == "GET" and request.headers.get("x-csrf-token") == "Fetch":
            return self._csrf(request)

        if path.endswith("/A_SalesOrder") and request.method == "GET":
            return web.json_response({"d": {"results": []}})
        if path.endswith("/A_SalesOrder") and request.method == "POST":
            return await self._create_order(request)
        match = re.search(r"A_SalesOrder\('([^']+)'\)$", path)
        if match and request.method == "GET":
            return self._get_order(match.group(1))

        if path.endswith("/A_OutbDeliveryHeader") and request.method == "POST":
            return self._create_delivery(request)
        if "BillOfLading" in path:
            return self._bill_of_lading()
        if "A_OutbDeliveryHeader(DeliveryDocument=" in path:
            return web.json_response(
                {"d": {"DeliveryDocument": self.delivery_id, "to_DeliveryDocumentItem": {"results": [{}]}}},
                headers={"ETag": self.ETAG},
            )
        if path.endswith("/PickAllItems"):
            return self._conditional(request, "pick_all_items")
        if path.endswith("/PostGoodsIssue"):
            return self._conditional(request, "post_goods_issue")

        if path.endswith("/spaider/createbilldoc"):
            return self._billing(request)
        if "/spaider/NfeDocument/" in path:
            return self._nfe()

        return self._odata_error(404, f"No route for {path}")

    def _csrf(self, request):
        failure = self._failure("fetch_csrf_token")
        if failure is not None:
            return failure
        response = self._odata_error(404, "Resource not found for segment 'A_SalesOrder'")
        response.headers["x-csrf-token"] = self.CSRF_TOKEN
        response.headers.add("Set-Cookie", "SAP_SESSIONID_SIM=s1; path=/; HttpOnly")
        response.headers.add("Set-Cookie", "sap-usercontext=sap-client=100; path=/")
        response.headers.add("Set-Cookie", "tracking=ignored; path=/")
        return response

    def _get_order(self, order_id):
        failure = self._failure("fetch_sales_order")
        if failure is not None:
            return failure
        order = self.orders.get(order_id)
        if order is None:
            return self._odata_error(404, f"Sales order {order_id} does not exist")
        return web.json_response({"d": order})

    async def _create_order(self, request):
        failure = self._failure("create_sales_order")
        if failure is not None:
            return failure
        if not self._session_ok(request):
            return self._odata_error(403, "CSRF token validation failed")
        payload = await request.json()
        reference_id = payload["PurchaseOrderByCustomer"][len("REF_"):]
        new_id = f"{self.next_order:010d}"
        self.next_order += 1
        self.orders[new_id] = build_replica(self.orders[reference_id], new_id, reference_id)
        return web.json_response({"d": {"SalesOrder": new_id}}, status=201)

    def _create_delivery(self, request):
        failure = self._failure("create_outbound_delivery")
        if failure is not None:
            return failure
        if not self._session_ok(request):
            return self._odata_error(403, "CSRF token validation failed")
        return web.json_response({"d": {"DeliveryDocument": self.delivery_id}}, status=201)

    def _conditional(self, request, operation):
        failure = self._failure(operation)
        if failure is not None:
            return failure
        if not self._session_ok(request):
            return self._odata_error(403, "CSRF token validation failed")
        if request.headers.get("If-Match") != self.ETAG:
            return self._odata_error(412, "Precondition failed")
        return web.Response(status=204)

    def _billing(self, request):
        failure = self._failure("create_billing_document")
        if failure is not None:
            return failure
        if not self._session_ok(request):
            return self._odata_error(403, "CSRF token validation failed")
        return web.json_response({"response": {"billingDocument": self.billing_id, "messages": []}})

    def _nfe(self):
        failure = self._failure("fetch_fiscal_note")
        if failure is not None:
            return failure
        return web.json_response({"NFeNumber": self.nfe_number, "BRNFNumber": self.nfe_number})

    def _bill_of_lading(self):
        return web.json_response({"d": {"DeliveryDocument": self.delivery_id, "BillOfLading": self.bill_of_lading}})


@pytest.fixture
def sap_simulator(original_order):
    return SapSimulator({original_order["SalesOrder"]: original_order})
