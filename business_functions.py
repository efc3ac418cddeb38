"""
Business functions called by the Temporal activities.
Each one runs a single lifecycle or scheduler operation against the configured
store and returns a plain dict the workflow can keep in its history.
"""
import logging
from typing import Any, Dict, Optional

from lifecycle import OrderLifecycle, build_lifecycle
from scheduler import BillingScheduler, build_scheduler

# Reduce SQLAlchemy logging noise - show errors but not all SQL
logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)
logging.getLogger('sqlalchemy.pool').setLevel(logging.ERROR)
logging.getLogger('sqlalchemy.dialects').setLevel(logging.ERROR)
logging.getLogger('sqlalchemy.orm').setLevel(logging.ERROR)

_lifecycle: Optional[OrderLifecycle] = None
_scheduler: Optional[BillingScheduler] = None


def get_lifecycle() -> OrderLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = build_lifecycle()
    return _lifecycle


def get_scheduler() -> BillingScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    return _scheduler


async def payment_confirmed(invoice_id: str, transaction_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
    result = await get_lifecycle().confirm_payment(
        invoice_id,
        transaction_id=transaction_id,
        gateway_payload=payload,
        payment_method=payload.get("payment_method") or "KHQR Gateway",
    )
    return result.to_dict()


async def provisioning_requested(order_id: str) -> Dict[str, Any]:
    result = await get_lifecycle().request_provisioning(order_id)
    return result.to_dict()


async def order_cancelled(order_id: str, reason: str) -> Dict[str, Any]:
    result = await get_lifecycle().cancel(order_id, reason=reason or None)
    return result.to_dict()


async def renewal_invoices_generated() -> Dict[str, Any]:
    return await get_scheduler().generate_renewal_invoices()


async def reminders_sent() -> Dict[str, Any]:
    return await get_scheduler().reminder_pass()


async def overdue_orders_suspended() -> Dict[str, Any]:
    scheduler = get_scheduler()
    overdue = await scheduler.mark_overdue_invoices()
    suspensions = await scheduler.suspension_pass()
    return {"overdue": overdue, "suspensions": suspensions}
