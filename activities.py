"""
Temporal activities that call business functions.
Keep activities small: parameter unpacking, await the function, return its result.
"""
import logging
from typing import Any, Dict, Optional

from temporalio import activity

import business_functions


async def run_logged(name: str, func, *args):
    """Log the attempt number when an activity fails, then let Temporal decide on retries."""
    try:
        return await func(*args)
    except Exception as e:
        logging.warning(f"{name} failed on attempt {activity.info().attempt}: {e}")
        raise


@activity.defn
async def confirm_payment_activity(invoice_id: str, transaction_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
    return await run_logged("confirm_payment", business_functions.payment_confirmed, invoice_id, transaction_id, payload)


@activity.defn
async def provision_order_activity(order_id: str) -> Dict[str, Any]:
    return await run_logged("provision_order", business_functions.provisioning_requested, order_id)


@activity.defn
async def cancel_order_activity(order_id: str, reason: str) -> Dict[str, Any]:
    return await run_logged("cancel_order", business_functions.order_cancelled, order_id, reason)


@activity.defn
async def generate_renewal_invoices_activity() -> Dict[str, Any]:
    return await run_logged("generate_renewal_invoices", business_functions.renewal_invoices_generated)


@activity.defn
async def send_reminders_activity() -> Dict[str, Any]:
    return await run_logged("send_reminders", business_functions.reminders_sent)


@activity.defn
async def suspend_overdue_activity() -> Dict[str, Any]:
    return await run_logged("suspend_overdue", business_functions.overdue_orders_suspended)
