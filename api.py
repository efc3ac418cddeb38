"""
FastAPI application for the billing core.
Checkout and payment watch for customers, callbacks for the payment gateways and
the game panel, and admin actions that go through the lifecycle controller.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field
from temporalio.client import Client
from temporalio.service import RPCError

import business_functions
import config
from database import close_db
from gateway import ChargeExpired, GatewayError, PaymentGateway, build_gateways, verify_webhook_secret
from lifecycle import NoServerAssigned, OrderLifecycle
from order_states import BillingCycle, InvalidTransition, OrderStatus
from panel import PanelError
from scheduler import BillingScheduler
from watch_loop import WatcherRegistry
from workflows import OrderWorkflow, order_workflow_id

logger = logging.getLogger(__name__)


# Cached collaborators, replaced through dependency_overrides in tests
_temporal_client: Optional[Client] = None
_gateways: Optional[Dict[str, PaymentGateway]] = None
_registry = WatcherRegistry()


def get_lifecycle() -> OrderLifecycle:
    return business_functions.get_lifecycle()


def get_scheduler() -> BillingScheduler:
    return business_functions.get_scheduler()


def get_gateways(lifecycle: OrderLifecycle = Depends(get_lifecycle)) -> Dict[str, PaymentGateway]:
    global _gateways
    if _gateways is None:
        _gateways = build_gateways(resolve_md5=lifecycle.resolve_md5)
    return _gateways


def get_registry() -> WatcherRegistry:
    return _registry


async def get_temporal_client() -> Optional[Client]:
    """Get or create Temporal client; None when the server is unreachable."""
    global _temporal_client
    if _temporal_client is None:
        try:
            _temporal_client = await Client.connect(config.TEMPORAL_ADDRESS, namespace=config.TEMPORAL_NAMESPACE)
        except Exception as e:
            logger.warning(f"Temporal unavailable, orders will be driven directly: {e}")
            return None
    return _temporal_client


async def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    if config.ADMIN_TOKEN and x_admin_token != config.ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="Admin token required")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await _registry.stop_all()
    await close_db()


app = FastAPI(
    title="Game Server Billing API",
    description="Orders, QR payments, provisioning and renewals",
    version="1.0.0",
    lifespan=lifespan,
)


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, (InvalidTransition, NoServerAssigned)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ChargeExpired):
        return HTTPException(status_code=410, detail=str(e))
    if isinstance(e, (GatewayError, PanelError)):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception("Unhandled error")
    return HTTPException(status_code=500, detail=str(e))


# Request/Response Models
class CheckoutRequest(BaseModel):
    user_id: str
    customer_email: Optional[str] = None
    items: List[Dict[str, Any]]
    price: Decimal = Field(..., gt=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    currency: str = "USD"
    gateway: str = "standard"


class CheckoutResponse(BaseModel):
    order_id: str
    invoice_id: str
    invoice_number: str
    transaction_id: str
    qr_code: str
    amount: str
    live_channel_url: Optional[str] = None
    expires_in: int
    workflow_id: Optional[str] = None


class PaymentWebhook(BaseModel):
    transactionId: Optional[str] = None
    status: str = "paid"
    amount: Optional[Decimal] = None


class PanelCallback(BaseModel):
    status: str
    serverId: Optional[str] = None
    connectionInfo: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


class PowerRequest(BaseModel):
    signal: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class BulkRequest(BaseModel):
    action: str
    order_ids: List[str]
    reason: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    status: str


async def hand_off_payment(
    lifecycle: OrderLifecycle,
    client: Optional[Client],
    invoice_id: str,
    transaction_id: Optional[str],
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Route a confirmed payment to the order's workflow, or apply it directly when none is running."""
    invoice = await lifecycle.get_invoice(invoice_id)
    if invoice["status"] == "paid":
        return {"status": "already_paid", "invoice_id": invoice_id}

    order_id = invoice["order_id"]
    if order_id and client is not None:
        try:
            handle = client.get_workflow_handle(order_workflow_id(order_id))
            await handle.signal(OrderWorkflow.payment_confirmed, {**payload, "transaction_id": transaction_id})
            return {"status": "signalled", "invoice_id": invoice_id, "order_id": order_id}
        except RPCError as e:
            logger.info(f"No running workflow for order {order_id} ({e}); confirming directly")

    result = await lifecycle.confirm_payment(
        invoice_id,
        transaction_id=transaction_id,
        gateway_payload=payload,
        payment_method=payload.get("payment_method") or "KHQR Gateway",
    )
    if result.changed and result.order_id and result.order_status == OrderStatus.PAID.value:
        provisioned = await lifecycle.request_provisioning(result.order_id)
        result.order_status = provisioned.status
        result.warnings.extend(provisioned.warnings)
    return {"status": "confirmed", **result.to_dict()}


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    request: CheckoutRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    gateways: Dict[str, PaymentGateway] = Depends(get_gateways),
    registry: WatcherRegistry = Depends(get_registry),
    client: Optional[Client] = Depends(get_temporal_client),
):
    """Create the order and invoice, generate a QR charge and start watching it."""
    try:
        gateway = gateways.get(request.gateway)
        if gateway is None:
            raise ValueError(f"Unknown payment gateway '{request.gateway}'")

        order, invoice = await lifecycle.create_order(
            user_id=request.user_id,
            customer_email=request.customer_email,
            price=request.price,
            items=request.items,
            billing_cycle=request.billing_cycle.value,
            currency=request.currency,
        )
        charge = await gateway.generate_charge(
            invoice.total,
            invoice.currency,
            order.id,
            description=f"Invoice {invoice.invoice_number}",
            invoice_ref=invoice.id,
        )
        await lifecycle.record_charge(invoice.id, charge)

        workflow_id = None
        if client is not None:
            try:
                handle = await client.start_workflow(
                    OrderWorkflow.run,
                    args=[order.id, invoice.id],
                    id=order_workflow_id(order.id),
                    task_queue=config.ORDER_TASK_QUEUE,
                )
                workflow_id = handle.id
            except RPCError as e:
                logger.warning(f"Could not start workflow for order {order.id}: {e}")

        async def on_confirmed(transaction_ref: str, source: str):
            return await hand_off_payment(
                lifecycle,
                client,
                invoice.id,
                transaction_ref,
                {"source": source, "gateway": gateway.name, "payment_method": f"KHQR ({gateway.name})"},
            )

        registry.start(gateway, charge, on_confirmed)

        return CheckoutResponse(
            order_id=order.id,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            transaction_id=charge.transaction_ref,
            qr_code=charge.displayable_code,
            amount=charge.display_amount,
            live_channel_url=charge.live_channel_url,
            expires_in=charge.expires_in,
            workflow_id=workflow_id,
        )

    except Exception as e:
        raise to_http_error(e)


@app.get("/charges/{transaction_id}")
async def get_charge(transaction_id: str, registry: WatcherRegistry = Depends(get_registry)):
    watcher = registry.get(transaction_id)
    if watcher is None:
        raise HTTPException(status_code=404, detail=f"No active charge {transaction_id}")
    return watcher.snapshot()


@app.post("/charges/{transaction_id}/check")
async def check_charge(transaction_id: str, registry: WatcherRegistry = Depends(get_registry)):
    """Manual "I've completed payment" check."""
    try:
        watcher = registry.get(transaction_id)
        if watcher is None:
            raise HTTPException(status_code=404, detail=f"No active charge {transaction_id}")
        await watcher.check_now()
        return watcher.snapshot()
    except Exception as e:
        raise to_http_error(e)


@app.delete("/charges/{transaction_id}")
async def close_charge(transaction_id: str, registry: WatcherRegistry = Depends(get_registry)):
    stopped = await registry.stop(transaction_id)
    return {"transaction_id": transaction_id, "stopped": stopped}


@app.post("/webhooks/payments/{invoice_id}")
async def payment_webhook(
    invoice_id: str,
    body: PaymentWebhook,
    authorization: Optional[str] = Header(default=None),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    client: Optional[Client] = Depends(get_temporal_client),
):
    """Gateway callback: the charge for this invoice has been paid."""
    if not verify_webhook_secret(config.LIVE_GATEWAY_SECRET, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")
    if body.status not in ("paid", "completed", "success"):
        return {"status": "ignored", "invoice_id": invoice_id}
    try:
        return await hand_off_payment(
            lifecycle,
            client,
            invoice_id,
            body.transactionId,
            {"source": "webhook", "status": body.status, "amount": str(body.amount) if body.amount else None},
        )
    except Exception as e:
        raise to_http_error(e)


@app.post("/webhooks/panel/{order_id}")
async def panel_callback(
    order_id: str,
    body: PanelCallback,
    authorization: Optional[str] = Header(default=None),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Completion of an asynchronous provisioning request."""
    if not verify_webhook_secret(config.PANEL_API_KEY, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        if body.status == "success" and body.serverId:
            result = await lifecycle.complete_provisioning(order_id, body.serverId, body.connectionInfo, raw=body.dict())
        else:
            result = await lifecycle.fail_provisioning(order_id, body.message or "Provisioning failed", response=body.dict())
        return result.to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.get("/orders/{order_id}")
async def get_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return await lifecycle.get_order(order_id)
    except Exception as e:
        raise to_http_error(e)


@app.get("/orders/{order_id}/status")
async def get_workflow_status(order_id: str, client: Optional[Client] = Depends(get_temporal_client)):
    """Query workflow status."""
    if client is None:
        raise HTTPException(status_code=503, detail="Workflow service unavailable")
    try:
        handle = client.get_workflow_handle(order_workflow_id(order_id))
        return await handle.query(OrderWorkflow.get_status)
    except RPCError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/orders/{order_id}/signals/cancel")
async def cancel_order(
    order_id: str,
    request: ReasonRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    client: Optional[Client] = Depends(get_temporal_client),
):
    """Cancel an unpaid order through its workflow, or directly if none is running."""
    try:
        if client is not None:
            try:
                handle = client.get_workflow_handle(order_workflow_id(order_id))
                await handle.signal(OrderWorkflow.cancel_order, request.reason or "")
                return {"order_id": order_id, "status": "cancel_requested"}
            except RPCError as e:
                logger.info(f"No running workflow for order {order_id} ({e}); cancelling directly")
        result = await lifecycle.cancel(order_id, reason=request.reason)
        return result.to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.get("/orders/{order_id}/server")
async def server_status(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return asdict(await lifecycle.server_status(order_id))
    except Exception as e:
        raise to_http_error(e)


@app.post("/orders/{order_id}/power")
async def power(order_id: str, request: PowerRequest, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return await lifecycle.power(order_id, request.signal)
    except Exception as e:
        raise to_http_error(e)


# Admin

@app.post("/admin/orders/{order_id}/provision", dependencies=[Depends(require_admin)])
async def admin_provision(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.request_provisioning(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/retry", dependencies=[Depends(require_admin)])
async def admin_retry(
    order_id: str,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    client: Optional[Client] = Depends(get_temporal_client),
):
    """Retry a failed provisioning, through the order's workflow when it is waiting for one."""
    try:
        if client is not None:
            try:
                handle = client.get_workflow_handle(order_workflow_id(order_id))
                status = await handle.query(OrderWorkflow.get_status)
                if status.get("current_step") == "awaiting_retry":
                    await handle.signal(OrderWorkflow.retry_provisioning)
                    return {"order_id": order_id, "status": "retry_requested"}
            except RPCError as e:
                logger.info(f"No running workflow for order {order_id} ({e}); retrying directly")
        return (await lifecycle.retry_provisioning(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/suspend", dependencies=[Depends(require_admin)])
async def admin_suspend(order_id: str, request: ReasonRequest, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.suspend(order_id, reason=request.reason)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/unsuspend", dependencies=[Depends(require_admin)])
async def admin_unsuspend(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.unsuspend(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/renew", dependencies=[Depends(require_admin)])
async def admin_renew(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.renew(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/cancel", dependencies=[Depends(require_admin)])
async def admin_cancel(order_id: str, request: ReasonRequest, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.cancel(order_id, reason=request.reason)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/{order_id}/terminate", dependencies=[Depends(require_admin)])
async def admin_terminate(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.terminate(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.delete("/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
async def admin_delete(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.delete_service(order_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/orders/bulk", dependencies=[Depends(require_admin)])
async def admin_bulk(request: BulkRequest, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        if request.action == "suspend":
            result = await lifecycle.bulk_suspend(request.order_ids, reason=request.reason)
        elif request.action == "unsuspend":
            result = await lifecycle.bulk_unsuspend(request.order_ids)
        elif request.action == "delete":
            result = await lifecycle.bulk_delete(request.order_ids)
        else:
            raise ValueError("Invalid action. Must be one of: suspend, unsuspend, delete")
        return result.to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/payments/{payment_id}/status", dependencies=[Depends(require_admin)])
async def admin_payment_status(
    payment_id: str, request: PaymentStatusRequest, lifecycle: OrderLifecycle = Depends(get_lifecycle)
):
    try:
        return await lifecycle.set_payment_status(payment_id, request.status)
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/invoices/{invoice_id}/paid", dependencies=[Depends(require_admin)])
async def admin_invoice_paid(invoice_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    try:
        return (await lifecycle.mark_invoice_paid(invoice_id)).to_dict()
    except Exception as e:
        raise to_http_error(e)


@app.post("/admin/billing/daily-job", dependencies=[Depends(require_admin)])
async def admin_daily_job(scheduler: BillingScheduler = Depends(get_scheduler)):
    """Manual trigger of the daily job; the cron run goes through DailyJobWorkflow."""
    try:
        return await scheduler.run_daily_job()
    except Exception as e:
        raise to_http_error(e)


@app.get("/admin/billing/pending-reminders", dependencies=[Depends(require_admin)])
async def admin_pending_reminders(scheduler: BillingScheduler = Depends(get_scheduler)):
    try:
        return await scheduler.pending_reminders()
    except Exception as e:
        raise to_http_error(e)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format='%(levelname)s: %(message)s')
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    uvicorn.run(app, host="0.0.0.0", port=8000)
