"""
Replication Runner Tests

Covers:
1. Full pipeline with a fake SAP step client, capability skips
2. Required and optional step failures, error records
3. Resume from the failed step without recreating the replica
4. Fire-and-forget dispatcher (start, resume, wait_idle)
5. End-to-end run against the SAP simulator
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager

import pytest

from connectors.sap.sap_client import SapApiError
from core.config import Settings
from core.models.reference import ReferenceDocument
from core.security.credentials import CredentialsNotFoundError, SapCapabilities
from core.storage.executions import InMemoryExecutionStore
from core.workflow import FlowExecution, FlowScope, FlowStep, GlobalStatus, ResumeError, StepStatus
from core.workflow.base import SKIP_CAPABILITY, SKIP_NOT_REQUESTED, SKIP_UPSTREAM_FAILED
from core.workflow.dispatcher import FlowDispatcher
from core.workflow.runner import ReplicationRunner, open_sap_runner, prepare_resume


def run_once(steps, store, reference, capabilities=None, **kwargs):
    """Create an execution, run it to the end and return the final state."""
    execution = FlowExecution.create(reference)
    store.create_execution(execution)
    runner = ReplicationRunner(steps, store, capabilities=capabilities, nfe_delay_seconds=0, **kwargs)
    return asyncio.run(runner.execute(execution))


def resume_once(steps, store, execution_id, capabilities=None):
    execution = store.get_execution(execution_id)
    start = prepare_resume(execution)
    store.update_execution(execution.id, execution.to_dict())
    runner = ReplicationRunner(steps, store, capabilities=capabilities, nfe_delay_seconds=0)
    return start, asyncio.run(runner.execute(execution))


def statuses(execution):
    return {step.value: record.status.value for step, record in execution.steps.items()}


class LockedOnceStore(InMemoryExecutionStore):
    """Fails the first write that moves ``step`` to processing."""

    def __init__(self, step):
        super().__init__()
        self.step = step
        self.locked = True

    def update_execution(self, execution_id, changes):
        step = (changes.get("steps") or {}).get(self.step) or {}
        if self.locked and step.get("status") == "processing":
            self.locked = False
            raise sqlite3.OperationalError("database is locked")
        super().update_execution(execution_id, changes)


class TestPipeline:

    def test_full_run(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client()
        execution = run_once(steps, store, reference, full_capabilities)

        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.completed_steps == 6
        assert execution.order_id == "0000099001"
        assert execution.delivery_id == "8000000001"
        assert execution.billing_id == "0090000001"
        assert execution.nfe_number == "000000123"
        assert steps.calls == [
            "fetch_sales_order",
            "acquire_session",
            "create_sales_order",
            "fetch_sales_order",
            "create_outbound_delivery",
            "pick_all_items",
            "post_goods_issue",
            "create_billing_document",
            "fetch_fiscal_note",
        ]

        stored = store.get_execution(execution.id)
        assert stored == execution
        order = stored.step(FlowStep.ORDER)
        assert order.method == "POST"
        assert order.request["PurchaseOrderByCustomer"] == "REF_0000012345"
        assert order.document_id == "0000099001"

    def test_comparison_attached_once(self, make_step_client, store, reference, full_capabilities):
        execution = run_once(make_step_client(), store, reference, full_capabilities)
        assert execution.total_differences == 0
        assert execution.sections_with_differences == []
        assert execution.comparison["orderId"] == "0000012345"
        assert execution.comparison["newOrderId"] == "0000099001"
        assert len(store.comparison_rows) == 1
        assert store.comparison_rows[0].stats == {"headerRecords": 11, "itemRecords": 22, "taxRecords": 12}

    def test_default_capabilities_skip_billing_and_nfe(self, make_step_client, store, reference):
        execution = run_once(make_step_client(), store, reference)
        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.completed_steps == 4
        assert execution.step(FlowStep.BILLING).skip_reason == SKIP_CAPABILITY
        assert execution.step(FlowStep.NFE).status == StepStatus.SKIPPED

    def test_nfe_needs_billing_capability(self, make_step_client, store, reference):
        caps = SapCapabilities(billing=False, nfe=True)
        execution = run_once(make_step_client(), store, reference, caps)
        assert execution.step(FlowStep.NFE).skip_reason == SKIP_CAPABILITY

    def test_order_only_tenant(self, make_step_client, store, reference):
        steps = make_step_client()
        execution = run_once(steps, store, reference, SapCapabilities(delivery=False))
        assert execution.global_status == GlobalStatus.COMPLETED
        assert statuses(execution) == {
            "order": "completed",
            "delivery": "skipped",
            "picking": "skipped",
            "pgi": "skipped",
            "billing": "skipped",
            "nfe": "skipped",
        }
        assert "create_outbound_delivery" not in steps.calls

    def test_warehouse_override_reaches_payload(self, make_step_client, store, full_capabilities):
        reference = ReferenceDocument(order_id="0000012345", sap_domain="acme", warehouse_code="WH99")
        execution = run_once(make_step_client(), store, reference, full_capabilities)
        items = execution.step(FlowStep.ORDER).request["to_Item"]["results"]
        assert {i["StorageLocation"] for i in items} == {"WH99"}

    def test_nfe_waits_before_fetch(self, make_step_client, store, reference, full_capabilities):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        execution = FlowExecution.create(reference)
        store.create_execution(execution)
        runner = ReplicationRunner(
            make_step_client(), store, capabilities=full_capabilities,
            nfe_delay_seconds=3, sleep=fake_sleep,
        )
        asyncio.run(runner.execute(execution))
        assert delays == [3]

    def test_missing_nfe_number_still_completes(self, make_step_client, store, reference, full_capabilities):
        execution = run_once(make_step_client(nfe_number=None), store, reference, full_capabilities)
        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.nfe_number is None

    def test_order_only_run(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client()
        execution = FlowExecution.create(reference, "run-order", FlowScope.ORDER_ONLY)
        store.create_execution(execution)
        runner = ReplicationRunner(steps, store, capabilities=full_capabilities, nfe_delay_seconds=0)
        final = asyncio.run(runner.execute(execution))

        assert final.global_status == GlobalStatus.COMPLETED
        assert (final.completed_steps, final.total_steps) == (1, 1)
        assert final.order_id == "0000099001"
        assert final.comparison["newOrderId"] == "0000099001"
        assert steps.calls == ["fetch_sales_order", "acquire_session", "create_sales_order", "fetch_sales_order"]
        assert len(store.comparison_rows) == 1
        stored = store.get_execution(execution.id)
        assert stored.test_type == FlowScope.ORDER_ONLY
        assert stored.step(FlowStep.DELIVERY).skip_reason == SKIP_NOT_REQUESTED


class TestFailures:

    def test_required_step_failure_halts(self, make_step_client, store, reference, full_capabilities):
        error = SapApiError(
            "Delivery creation failed",
            status_code=400,
            response_body='{"error": {"code": "VL/002", "message": {"value": "Order blocked"}}}',
            endpoint="/A_OutbDeliveryHeader",
            method="POST",
            request_payload={"to_DeliveryDocumentItem": {}},
        )
        steps = make_step_client(fail={"create_outbound_delivery": error})
        execution = run_once(steps, store, reference, full_capabilities)

        assert execution.global_status == GlobalStatus.FAILED
        assert execution.completed_steps == 1
        assert statuses(execution)["picking"] == "pending"
        delivery = execution.step(FlowStep.DELIVERY)
        assert delivery.status == StepStatus.FAILED
        assert delivery.error["code"] == "VL/002"
        assert delivery.error["message"] == "Order blocked"
        assert delivery.error["statusCode"] == 400
        assert delivery.endpoint == "/A_OutbDeliveryHeader"
        assert "pick_all_items" not in steps.calls

    def test_order_failure(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"create_sales_order": SapApiError("Bad request", status_code=400)})
        execution = run_once(steps, store, reference, full_capabilities)
        assert execution.global_status == GlobalStatus.FAILED
        assert execution.order_id is None
        assert execution.comparison is None

    def test_missing_reference_order(self, make_step_client, store, full_capabilities):
        reference = ReferenceDocument(order_id="0000000404", sap_domain="acme")
        execution = run_once(make_step_client(), store, reference, full_capabilities)
        assert execution.global_status == GlobalStatus.FAILED
        assert execution.step(FlowStep.ORDER).error["statusCode"] == 404

    def test_billing_failure_is_partial(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(billing_id=None)
        execution = run_once(steps, store, reference, full_capabilities)

        assert execution.global_status == GlobalStatus.PARTIAL
        billing = execution.step(FlowStep.BILLING)
        assert billing.status == StepStatus.FAILED
        assert billing.error["type"] == "protocol"
        assert billing.error["statusCode"] == 200
        nfe = execution.step(FlowStep.NFE)
        assert nfe.status == StepStatus.SKIPPED
        assert nfe.skip_reason == SKIP_UPSTREAM_FAILED
        assert "fetch_fiscal_note" not in steps.calls

    def test_unexpected_error_becomes_failed_step(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"pick_all_items": RuntimeError("boom")})
        execution = run_once(steps, store, reference, full_capabilities)
        picking = execution.step(FlowStep.PICKING)
        assert picking.status == StepStatus.FAILED
        assert picking.error["type"] == "internal"
        assert picking.error["code"] == "RuntimeError"
        assert execution.global_status == GlobalStatus.FAILED


class TestResume:

    def test_resume_continues_from_failed_step(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"create_outbound_delivery": SapApiError("down", status_code=503)})
        failed = run_once(steps, store, reference, full_capabilities)
        assert failed.global_status == GlobalStatus.FAILED

        steps.fail.clear()
        steps.calls.clear()
        start, execution = resume_once(steps, store, failed.id, full_capabilities)

        assert start == FlowStep.DELIVERY
        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.order_id == "0000099001"
        # no new replica, no second comparison
        assert "create_sales_order" not in steps.calls
        assert "fetch_sales_order" not in steps.calls
        assert len(store.comparison_rows) == 1
        assert execution.step(FlowStep.DELIVERY).error is None

    def test_resume_replans_skipped_steps(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"create_billing_document": SapApiError("busy", status_code=500)})
        partial = run_once(steps, store, reference, full_capabilities)
        assert partial.global_status == GlobalStatus.PARTIAL

        steps.fail.clear()
        start, execution = resume_once(steps, store, partial.id, full_capabilities)
        assert start == FlowStep.BILLING
        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.step(FlowStep.NFE).status == StepStatus.COMPLETED
        assert execution.completed_steps == 6

    def test_failed_step_without_capability_halts(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"create_billing_document": SapApiError("busy", status_code=500)})
        partial = run_once(steps, store, reference, full_capabilities)

        steps.calls.clear()
        _, execution = resume_once(steps, store, partial.id, SapCapabilities(billing=False))
        assert execution.step(FlowStep.BILLING).status == StepStatus.FAILED
        assert execution.global_status == GlobalStatus.PARTIAL
        assert steps.calls == []

    def test_order_retry_after_comparison_fetch_failure(self, make_step_client, store, reference, full_capabilities):
        execution = FlowExecution.create(reference)
        execution.order_id = "0000099001"
        execution.transition(FlowStep.ORDER, StepStatus.PROCESSING)
        execution.transition(FlowStep.ORDER, StepStatus.FAILED, error={"message": "timeout"})
        execution.refresh_status()
        store.create_execution(execution)

        steps = make_step_client()
        steps.orders["0000099001"] = dict(steps.orders["0000012345"], SalesOrder="0000099001",
                                          PurchaseOrderByCustomer="REF_0000012345")
        _, resumed = resume_once(steps, store, execution.id, full_capabilities)

        assert resumed.global_status == GlobalStatus.COMPLETED
        assert "create_sales_order" not in steps.calls
        assert resumed.comparison is not None

    def test_order_step_keeps_creation_call(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client()
        fetch = steps.fetch_sales_order
        timeouts = [SapApiError("Gateway timeout", status_code=504,
                                endpoint="/A_SalesOrder('0000099001')", method="GET")]

        async def replica_fetch_times_out_once(order_id, context=None):
            if order_id == "0000099001" and timeouts:
                raise timeouts.pop()
            return await fetch(order_id, context)

        steps.fetch_sales_order = replica_fetch_times_out_once
        failed = run_once(steps, store, reference, full_capabilities)
        order = failed.step(FlowStep.ORDER)
        assert order.status == StepStatus.FAILED
        assert order.error["statusCode"] == 504
        assert (order.endpoint, order.method) == ("/A_SalesOrder", "POST")
        assert order.request["PurchaseOrderByCustomer"] == "REF_0000012345"

        _, resumed = resume_once(steps, store, failed.id, full_capabilities)
        order = resumed.step(FlowStep.ORDER)
        assert resumed.global_status == GlobalStatus.COMPLETED
        assert (order.endpoint, order.method) == ("/A_SalesOrder", "POST")
        assert order.request["PurchaseOrderByCustomer"] == "REF_0000012345"
        assert order.response == {"SalesOrder": "0000099001"}
        assert steps.calls.count("create_sales_order") == 1

    def test_interrupted_step_is_run_again(self, make_step_client, store, reference, full_capabilities):
        execution = FlowExecution.create(reference)
        execution.order_id = "0000099001"
        execution.comparison = {"summary": {}}
        execution.transition(FlowStep.ORDER, StepStatus.PROCESSING)
        execution.transition(FlowStep.ORDER, StepStatus.COMPLETED, document_id="0000099001")
        execution.transition(FlowStep.DELIVERY, StepStatus.PROCESSING)
        execution.global_status = GlobalStatus.FAILED
        store.create_execution(execution)

        steps = make_step_client()
        start, resumed = resume_once(steps, store, execution.id, full_capabilities)
        assert start == FlowStep.DELIVERY
        assert resumed.global_status == GlobalStatus.COMPLETED
        assert steps.calls[0] == "acquire_session"
        assert "create_outbound_delivery" in steps.calls

    def test_known_idle_run_with_processing_step_can_resume(self, reference):
        execution = FlowExecution.create(reference)
        execution.transition(FlowStep.ORDER, StepStatus.PROCESSING)
        assert prepare_resume(execution, running=False) == FlowStep.ORDER
        assert execution.step(FlowStep.ORDER).error["code"] == "Interrupted"
        assert execution.global_status == GlobalStatus.PROCESSING

    def test_order_only_resume_stays_order_only(self, make_step_client, store, reference, full_capabilities):
        steps = make_step_client(fail={"create_sales_order": SapApiError("busy", status_code=503)})
        execution = FlowExecution.create(reference, test_type=FlowScope.ORDER_ONLY)
        store.create_execution(execution)
        runner = ReplicationRunner(steps, store, capabilities=full_capabilities, nfe_delay_seconds=0)
        assert asyncio.run(runner.execute(execution)).global_status == GlobalStatus.FAILED

        steps.fail.clear()
        start, resumed = resume_once(steps, store, execution.id, full_capabilities)
        assert start == FlowStep.ORDER
        assert resumed.global_status == GlobalStatus.COMPLETED
        assert resumed.step(FlowStep.DELIVERY).skip_reason == SKIP_NOT_REQUESTED
        assert "create_outbound_delivery" not in steps.calls

    def test_prepare_resume_rejects_finished_execution(self, make_step_client, store, reference):
        execution = run_once(make_step_client(), store, reference)
        with pytest.raises(ResumeError):
            prepare_resume(execution)

    def test_prepare_resume_rejects_running_execution(self, reference):
        execution = FlowExecution.create(reference)
        execution.transition(FlowStep.ORDER, StepStatus.PROCESSING)
        with pytest.raises(ResumeError):
            prepare_resume(execution)


def fake_runner_factory(steps, store):
    @asynccontextmanager
    async def factory(credentials):
        yield ReplicationRunner(steps, store, capabilities=credentials.capabilities, nfe_delay_seconds=0)
    return factory


class TestDispatcher:

    def test_start_returns_processing_and_runs_in_background(self, make_step_client, store, resolver, reference):
        dispatcher = FlowDispatcher(store, resolver, fake_runner_factory(make_step_client(), store))

        async def scenario():
            started = await dispatcher.start(reference, run_id="batch-1")
            running = dispatcher.is_running(started.id)
            await dispatcher.wait_idle()
            return started, running

        started, running = asyncio.run(scenario())
        assert started.global_status == GlobalStatus.PROCESSING
        assert started.run_id == "batch-1"
        assert running
        final = store.get_execution(started.id)
        assert final.global_status == GlobalStatus.COMPLETED
        assert not dispatcher.is_running(started.id)

    def test_unknown_domain_creates_nothing(self, make_step_client, store, resolver):
        dispatcher = FlowDispatcher(store, resolver, fake_runner_factory(make_step_client(), store))
        reference = ReferenceDocument(order_id="0000012345", sap_domain="other")

        with pytest.raises(CredentialsNotFoundError):
            asyncio.run(dispatcher.start(reference))
        assert store.list_executions() == []

    def test_resume_while_running_is_rejected(self, make_step_client, store, resolver, reference):
        dispatcher = FlowDispatcher(store, resolver, fake_runner_factory(make_step_client(), store))

        async def scenario():
            started = await dispatcher.start(reference)
            try:
                with pytest.raises(ResumeError):
                    await dispatcher.resume(started.id)
            finally:
                await dispatcher.wait_idle()

        asyncio.run(scenario())

    def test_resume_after_failure(self, make_step_client, store, resolver, reference):
        steps = make_step_client(fail={"post_goods_issue": SapApiError("locked", status_code=423)})
        dispatcher = FlowDispatcher(store, resolver, fake_runner_factory(steps, store))

        async def scenario():
            started = await dispatcher.start(reference)
            await dispatcher.wait_idle()
            failed = store.get_execution(started.id)
            steps.fail.clear()
            resumed = await dispatcher.resume(started.id)
            await dispatcher.wait_idle()
            return failed, resumed, store.get_execution(started.id)

        failed, resumed, final = asyncio.run(scenario())
        assert failed.global_status == GlobalStatus.FAILED
        assert resumed.global_status == GlobalStatus.PROCESSING
        assert final.global_status == GlobalStatus.COMPLETED

    def test_runner_that_cannot_open_fails_the_execution(self, store, resolver, reference):
        @asynccontextmanager
        async def broken_factory(credentials):
            raise RuntimeError("cannot connect")
            yield

        dispatcher = FlowDispatcher(store, resolver, broken_factory)

        async def scenario():
            started = await dispatcher.start(reference)
            await dispatcher.wait_idle()
            return started

        started = asyncio.run(scenario())
        stored = store.get_execution(started.id)
        assert stored.global_status == GlobalStatus.FAILED
        assert all(r.status == StepStatus.PENDING for r in stored.steps.values())

    def test_store_error_between_steps_fails_the_in_flight_step(self, make_step_client, resolver, reference):
        store = LockedOnceStore("delivery")
        steps = make_step_client()
        dispatcher = FlowDispatcher(store, resolver, fake_runner_factory(steps, store))

        async def scenario():
            started = await dispatcher.start(reference)
            await dispatcher.wait_idle()
            halted = store.get_execution(started.id)
            await dispatcher.resume(started.id)
            await dispatcher.wait_idle()
            return halted, store.get_execution(started.id)

        halted, final = asyncio.run(scenario())
        assert halted.global_status == GlobalStatus.FAILED
        assert statuses(halted)["delivery"] == "failed"
        assert statuses(halted)["picking"] == "pending"
        assert halted.step(FlowStep.DELIVERY).error["code"] == "OperationalError"
        assert halted.step(FlowStep.DELIVERY).error["message"] == "database is locked"

        assert final.global_status == GlobalStatus.COMPLETED
        assert final.delivery_id == "8000000001"
        assert steps.calls.count("create_outbound_delivery") == 1
        assert steps.calls.count("create_sales_order") == 1


class TestAgainstSimulator:

    def test_end_to_end(self, sap_simulator, store, reference, credentials):
        settings = Settings(nfe_delay_seconds=0)

        async def scenario():
            async with sap_simulator.serve() as base_url:
                live = credentials.model_copy(update={"base_url": base_url})
                execution = FlowExecution.create(reference)
                store.create_execution(execution)
                async with open_sap_runner(live, store, settings) as runner:
                    return await runner.execute(execution)

        execution = asyncio.run(scenario())
        assert execution.global_status == GlobalStatus.COMPLETED
        assert execution.order_id == "0000099001"
        assert execution.delivery_id == "8000000001"
        assert execution.billing_id == "90000001"
        assert execution.nfe_number == "000000123"
        assert execution.total_differences == 0

        csrf_fetches = [r for r in sap_simulator.requests if r["headers"].get("x-csrf-token") == "Fetch"]
        assert len(csrf_fetches) == 1
