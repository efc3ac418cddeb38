"""
Temporal workflows for game-server orders and the daily billing job.
OrderWorkflow follows one order from checkout to active service; DailyJobWorkflow
runs renewal invoices, reminders and overdue suspensions on the billing task queue.
"""
import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

# Import activities, passing them through the sandbox without reloading the module
with workflow.unsafe.imports_passed_through():
    import config
    from activities import (
        confirm_payment_activity, provision_order_activity, cancel_order_activity,
        generate_renewal_invoices_activity, send_reminders_activity, suspend_overdue_activity
    )
    from scheduler import merge_summary

PAYMENT_WINDOW = timedelta(days=config.INVOICE_DUE_DAYS)

# Store writes are idempotent, so they may be retried
STORE_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    maximum_attempts=5,
)

# A provisioning failure moves the order to failed; retries are an explicit admin signal
SINGLE_ATTEMPT = RetryPolicy(maximum_attempts=1)


def order_workflow_id(order_id: str) -> str:
    return f"order-workflow-{order_id}"


@workflow.defn
class OrderWorkflow:
    """Drives one order: payment, provisioning, and retries after a failed provisioning."""

    def __init__(self):
        self._order_id: str = ""
        self._invoice_id: str = ""
        self._payment: Optional[Dict[str, Any]] = None
        self._is_cancelled: bool = False
        self._cancel_reason: str = ""
        self._retry_requested: bool = False
        self._current_step: str = "initialized"
        self._order_status: str = "pending"
        self._server_id: Optional[str] = None
        self._provisioning_attempts: int = 0
        self._last_error: Optional[str] = None

    @workflow.signal
    def payment_confirmed(self, payment: Dict[str, Any]) -> None:
        """Payment hand-off from the watch loop or a gateway webhook; only the first one counts."""
        if self._payment is not None:
            workflow.logger.info(f"Duplicate payment signal for order {self._order_id} ignored")
            return
        self._payment = payment

    @workflow.signal
    def cancel_order(self, reason: str = "") -> None:
        """Signal to cancel the order before it is paid."""
        self._is_cancelled = True
        self._cancel_reason = reason

    @workflow.signal
    def retry_provisioning(self) -> None:
        self._retry_requested = True

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        return {
            "order_id": self._order_id,
            "invoice_id": self._invoice_id,
            "current_step": self._current_step,
            "order_status": self._order_status,
            "is_cancelled": self._is_cancelled,
            "payment_received": self._payment is not None,
            "server_id": self._server_id,
            "provisioning_attempts": self._provisioning_attempts,
            "last_error": self._last_error,
        }

    @workflow.run
    async def run(self, order_id: str, invoice_id: str) -> Dict[str, Any]:
        start_time = workflow.now()
        self._order_id = order_id
        self._invoice_id = invoice_id
        self._current_step = "awaiting_payment"
        workflow.logger.info(f"[WORKFLOW] Order {order_id} waiting for payment of invoice {invoice_id}")

        try:
            try:
                await workflow.wait_condition(
                    lambda: self._payment is not None or self._is_cancelled,
                    timeout=PAYMENT_WINDOW,
                )
            except asyncio.TimeoutError:
                self._is_cancelled = True
                self._cancel_reason = "Payment window expired"

            if self._payment is None:
                self._current_step = "cancelled"
                result = await workflow.execute_activity(
                    cancel_order_activity,
                    args=[order_id, self._cancel_reason],
                    start_to_close_timeout=timedelta(seconds=30),
                    retry_policy=STORE_RETRY_POLICY,
                )
                self._order_status = result["status"]
                workflow.logger.info(f"Order {order_id} cancelled before payment: {self._cancel_reason or 'by request'}")
                return {"status": "cancelled", "order_id": order_id, "step": "awaiting_payment"}

            self._current_step = "confirming_payment"
            payment_result = await workflow.execute_activity(
                confirm_payment_activity,
                args=[invoice_id, self._payment.get("transaction_id"), self._payment],
                start_to_close_timeout=timedelta(seconds=30),
                retry_policy=STORE_RETRY_POLICY,
            )
            self._order_status = payment_result.get("order_status") or self._order_status

            while self._order_status in ("paid", "failed"):
                self._current_step = "provisioning"
                self._provisioning_attempts += 1
                provision_result = await workflow.execute_activity(
                    provision_order_activity,
                    args=[order_id],
                    start_to_close_timeout=timedelta(minutes=2),
                    retry_policy=SINGLE_ATTEMPT,
                )
                self._order_status = provision_result["status"]
                self._server_id = provision_result.get("server_id")
                if self._order_status != "failed":
                    break

                self._last_error = "; ".join(provision_result.get("warnings") or [])
                self._current_step = "awaiting_retry"
                self._retry_requested = False
                workflow.logger.warning(f"[WORKFLOW] Provisioning failed for order {order_id}: {self._last_error}")
                await workflow.wait_condition(lambda: self._retry_requested or self._is_cancelled)
                if self._is_cancelled:
                    self._current_step = "abandoned"
                    return {"status": "failed", "order_id": order_id, "error": self._last_error}

            self._current_step = "completed"
            total_time = (workflow.now() - start_time).total_seconds()
            workflow.logger.info(f"[WORKFLOW] Order {order_id} reached {self._order_status} in {total_time:.2f}s")
            return {
                "status": "completed",
                "order_id": order_id,
                "order_status": self._order_status,
                "server_id": self._server_id,
                "payment_result": payment_result,
                "provisioning_attempts": self._provisioning_attempts,
                "execution_time": total_time,
            }

        except Exception as e:
            self._current_step = "failed"
            workflow.logger.error(f"Order {order_id} failed: {str(e)}")
            raise e


@workflow.defn
class DailyJobWorkflow:
    """Renewal invoices, payment reminders, then overdue suspensions."""

    @workflow.run
    async def run(self) -> Dict[str, Any]:
        options = dict(start_to_close_timeout=timedelta(minutes=10), retry_policy=STORE_RETRY_POLICY)

        renewals = await workflow.execute_activity(generate_renewal_invoices_activity, **options)
        reminders = await workflow.execute_activity(send_reminders_activity, **options)
        overdue = await workflow.execute_activity(suspend_overdue_activity, **options)

        summary = merge_summary(renewals, reminders, overdue["overdue"], overdue["suspensions"], workflow.now())
        workflow.logger.info(
            f"[WORKFLOW] Daily job: {summary['reminders_sent']} reminders, {summary['suspended_count']} suspended"
        )
        return summary
