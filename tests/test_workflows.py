"""
Tests for Temporal workflows.
"""
import asyncio
import uuid
import pytest
from unittest.mock import patch
from temporalio.worker import Worker
from temporalio.testing import WorkflowEnvironment

from workflows import OrderWorkflow, DailyJobWorkflow
from activities import (
    confirm_payment_activity, provision_order_activity, cancel_order_activity,
    generate_renewal_invoices_activity, send_reminders_activity, suspend_overdue_activity
)

ORDER_ACTIVITIES = [confirm_payment_activity, provision_order_activity, cancel_order_activity]


class Calls:
    """Records business function calls made by the activities."""

    def __init__(self, provision_statuses=("active",)):
        self.confirmed = []
        self.provisioned = []
        self.cancelled = []
        self.provision_statuses = list(provision_statuses)

    async def payment_confirmed(self, invoice_id, transaction_id, payload):
        self.confirmed.append((invoice_id, transaction_id))
        return {"invoice_id": invoice_id, "order_id": "order-1", "changed": True, "order_status": "paid",
                "payment_id": "pay-1", "warnings": []}

    async def provisioning_requested(self, order_id):
        self.provisioned.append(order_id)
        status = self.provision_statuses.pop(0) if len(self.provision_statuses) > 1 else self.provision_statuses[0]
        if status == "failed":
            return {"order_id": order_id, "status": "failed", "server_id": None,
                    "warnings": ["Panel create failed: connection refused"]}
        return {"order_id": order_id, "status": status, "server_id": "srv-1", "warnings": []}

    async def order_cancelled(self, order_id, reason):
        self.cancelled.append((order_id, reason))
        return {"order_id": order_id, "status": "cancelled", "warnings": []}

    def patches(self):
        return (
            patch("business_functions.payment_confirmed", self.payment_confirmed),
            patch("business_functions.provisioning_requested", self.provisioning_requested),
            patch("business_functions.order_cancelled", self.order_cancelled),
        )


async def wait_for_step(handle, step, attempts=50):
    for _ in range(attempts):
        status = await handle.query(OrderWorkflow.get_status)
        if status["current_step"] == step:
            return status
        await asyncio.sleep(0.1)
    raise AssertionError(f"workflow never reached {step}")


@pytest.mark.asyncio
async def test_order_workflow_paid_and_provisioned():
    """Payment signal (sent twice) leads to one confirmation and an active order."""
    task_queue_name = str(uuid.uuid4())
    calls = Calls()
    confirm_patch, provision_patch, cancel_patch = calls.patches()

    with confirm_patch, provision_patch, cancel_patch:
        async with await WorkflowEnvironment.start_time_skipping() as env:
            async with Worker(
                env.client,
                task_queue=task_queue_name,
                workflows=[OrderWorkflow],
                activities=ORDER_ACTIVITIES,
            ):
                handle = await env.client.start_workflow(
                    OrderWorkflow.run,
                    args=["order-1", "invoice-1"],
                    id=str(uuid.uuid4()),
                    task_queue=task_queue_name,
                )
                await handle.signal(OrderWorkflow.payment_confirmed, {"transaction_id": "txn-1", "source": "live"})
                await handle.signal(OrderWorkflow.payment_confirmed, {"transaction_id": "txn-1", "source": "poll"})

                result = await handle.result()

                assert result["status"] == "completed"
                assert result["order_status"] == "active"
                assert result["server_id"] == "srv-1"
                assert result["provisioning_attempts"] == 1
                assert calls.confirmed == [("invoice-1", "txn-1")]
                assert calls.provisioned == ["order-1"]


@pytest.mark.asyncio
async def test_order_workflow_cancelled_by_signal():
    task_queue_name = str(uuid.uuid4())
    calls = Calls()
    confirm_patch, provision_patch, cancel_patch = calls.patches()

    with confirm_patch, provision_patch, cancel_patch:
        async with await WorkflowEnvironment.start_time_skipping() as env:
            async with Worker(
                env.client,
                task_queue=task_queue_name,
                workflows=[OrderWorkflow],
                activities=ORDER_ACTIVITIES,
            ):
                handle = await env.client.start_workflow(
                    OrderWorkflow.run,
                    args=["order-2", "invoice-2"],
                    id=str(uuid.uuid4()),
                    task_queue=task_queue_name,
                )
                await handle.signal(OrderWorkflow.cancel_order, "Customer request")

                result = await handle.result()

                assert result["status"] == "cancelled"
                assert calls.cancelled == [("order-2", "Customer request")]
                assert calls.confirmed == []


@pytest.mark.asyncio
async def test_order_workflow_payment_window_expires():
    """Without a payment the order is cancelled once the invoice due window passes."""
    task_queue_name = str(uuid.uuid4())
    calls = Calls()
    confirm_patch, provision_patch, cancel_patch = calls.patches()

    with confirm_patch, provision_patch, cancel_patch:
        async with await WorkflowEnvironment.start_time_skipping() as env:
            async with Worker(
                env.client,
                task_queue=task_queue_name,
                workflows=[OrderWorkflow],
                activities=ORDER_ACTIVITIES,
            ):
                result = await env.client.execute_workflow(
                    OrderWorkflow.run,
                    args=["order-3", "invoice-3"],
                    id=str(uuid.uuid4()),
                    task_queue=task_queue_name,
                )

                assert result["status"] == "cancelled"
                assert calls.cancelled == [("order-3", "Payment window expired")]


@pytest.mark.asyncio
async def test_order_workflow_retries_failed_provisioning():
    task_queue_name = str(uuid.uuid4())
    calls = Calls(provision_statuses=["failed", "active"])
    confirm_patch, provision_patch, cancel_patch = calls.patches()

    with confirm_patch, provision_patch, cancel_patch:
        async with await WorkflowEnvironment.start_time_skipping() as env:
            async with Worker(
                env.client,
                task_queue=task_queue_name,
                workflows=[OrderWorkflow],
                activities=ORDER_ACTIVITIES,
            ):
                handle = await env.client.start_workflow(
                    OrderWorkflow.run,
                    args=["order-4", "invoice-4"],
                    id=str(uuid.uuid4()),
                    task_queue=task_queue_name,
                )
                await handle.signal(OrderWorkflow.payment_confirmed, {"transaction_id": "txn-4"})

                status = await wait_for_step(handle, "awaiting_retry")
                assert status["order_status"] == "failed"
                assert "connection refused" in status["last_error"]

                await handle.signal(OrderWorkflow.retry_provisioning)
                result = await handle.result()

                assert result["order_status"] == "active"
                assert result["provisioning_attempts"] == 2
                assert calls.provisioned == ["order-4", "order-4"]


async def mock_renewal_invoices_generated():
    return {"checked": 2, "generated": 1, "invoices": [{"order_id": "order-1", "invoice_number": "INV-000009"}]}


async def mock_reminders_sent():
    return {
        "checked": 3,
        "reminders_sent": 2,
        "sent": [],
        "breakdown": {"7_days": 1, "3_days": 1, "1_days": 0},
        "errors": [],
    }


async def mock_overdue_orders_suspended():
    return {
        "overdue": {"marked_overdue": 1, "invoices": ["INV-000004"]},
        "suspensions": {
            "overdue_count": 1,
            "suspended_count": 1,
            "suspended_orders": ["order-7"],
            "failures": [],
            "warnings": {},
        },
    }


@pytest.mark.asyncio
async def test_execute_daily_job_workflow():
    """Test the daily billing job merges the three passes into one summary."""
    task_queue_name = str(uuid.uuid4())

    with patch("business_functions.renewal_invoices_generated", mock_renewal_invoices_generated), \
         patch("business_functions.reminders_sent", mock_reminders_sent), \
         patch("business_functions.overdue_orders_suspended", mock_overdue_orders_suspended):

        async with await WorkflowEnvironment.start_time_skipping() as env:
            async with Worker(
                env.client,
                task_queue=task_queue_name,
                workflows=[DailyJobWorkflow],
                activities=[
                    generate_renewal_invoices_activity,
                    send_reminders_activity,
                    suspend_overdue_activity
                ],
            ):
                result = await env.client.execute_workflow(
                    DailyJobWorkflow.run,
                    id=str(uuid.uuid4()),
                    task_queue=task_queue_name,
                )

                assert result["renewals_generated"] == 1
                assert result["reminders_sent"] == 2
                assert result["breakdown"]["3_days"] == 1
                assert result["invoices_marked_overdue"] == 1
                assert result["suspended_count"] == 1
                assert result["suspension_failures"] == []
                assert "checked_at" in result
