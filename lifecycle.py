"""
Order lifecycle controller.

Owns every status change of an order and the side effects attached to it:
invoice and payment rows, panel calls, and customer emails. Panel and email
calls are best-effort and independent of each other; their failures are logged
and returned as warnings. Database errors are not caught here and propagate to
the caller.
"""
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

import config
from database import Invoice, Order, Payment, utcnow
from gateway import Charge, format_amount
from order_states import (
    BillingCycle,
    InvalidTransition,
    InvoiceStatus,
    OrderEvent,
    OrderStatus,
    PaymentStatus,
    next_invoice_status,
    next_status,
)

logger = logging.getLogger(__name__)

LOG_STARTED = "started"
LOG_SUCCESS = "success"
LOG_FAILED = "failed"

_SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization")

INVOICE_NUMBER_ATTEMPTS = 5


class OrderNotFound(LookupError):
    pass


class InvoiceNotFound(LookupError):
    pass


class PaymentNotFound(LookupError):
    pass


class NoServerAssigned(ValueError):
    pass


@dataclass
class TransitionResult:
    order_id: str
    previous_status: Optional[str]
    status: Optional[str]
    changed: bool = True
    server_id: Optional[str] = None
    panel_ok: bool = True
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentResult:
    invoice_id: str
    order_id: Optional[str]
    changed: bool
    order_status: Optional[str] = None
    payment_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BulkResult:
    action: str
    success_count: int = 0
    fail_count: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sanitize(value, max_depth: int = 6, max_length: int = 2000, _seen: frozenset = frozenset(), _depth: int = 0):
    """JSON-safe copy of a request/response value for audit logs."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_length else value[:max_length] + "...[truncated]"
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        if id(value) in _seen:
            return "[Circular]"
        if _depth >= max_depth:
            return "[Max depth]"
        seen = _seen | {id(value)}
        if isinstance(value, dict):
            cleaned = {}
            for key, item in value.items():
                key = str(key)
                if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
                    cleaned[key] = "[redacted]"
                else:
                    cleaned[key] = sanitize(item, max_depth, max_length, seen, _depth + 1)
            return cleaned
        return [sanitize(item, max_depth, max_length, seen, _depth + 1) for item in value]
    return repr(value)[:max_length]


def _append_log(server_details, status: str, message: str, request=None, response=None) -> Dict[str, Any]:
    # Always a fresh dict so the JSON column sees a new value
    details = dict(server_details or {})
    logs = list(details.get("provisioning_logs", []))
    logs.append({
        "status": status,
        "message": message,
        "request": sanitize(request),
        "response": sanitize(response),
        "timestamp": utcnow().isoformat(),
    })
    details["provisioning_logs"] = logs
    return details


def _panel_payload(server_details) -> Dict[str, Any]:
    return {k: v for k, v in (server_details or {}).items() if k != "provisioning_logs"}


def server_label(order: Order) -> str:
    details = order.server_details or {}
    items = details.get("items") or [details]
    first = items[0] if items else {}
    return first.get("server_name") or first.get("plan_name") or "Game Server"


def order_snapshot(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "price": str(order.price),
        "currency": order.currency,
        "display_price": format_amount(order.price, order.currency),
        "billing_cycle": order.billing_cycle,
        "server_id": order.server_id,
        "next_due_date": order.next_due_date.isoformat() if order.next_due_date else None,
        "server_details": order.server_details or {},
        "notes": order.notes,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def invoice_snapshot(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "order_id": invoice.order_id,
        "status": invoice.status,
        "subtotal": str(invoice.subtotal),
        "tax": str(invoice.tax),
        "discount": str(invoice.discount),
        "total": str(invoice.total),
        "currency": invoice.currency,
        "display_total": format_amount(invoice.total, invoice.currency),
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
    }


class OrderLifecycle:
    def __init__(
        self,
        session_factory,
        panel,
        notifier,
        billing_cycle_days: Optional[Dict[str, int]] = None,
        invoice_due_days: int = config.INVOICE_DUE_DAYS,
    ):
        self._session_factory = session_factory
        self.panel = panel
        self.notifier = notifier
        self.billing_cycle_days = billing_cycle_days or dict(config.BILLING_CYCLE_DAYS)
        self.invoice_due_days = invoice_due_days

    # ------------------------------------------------------------------ helpers

    async def _get_order(self, session, order_id: str) -> Order:
        order = await session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def _cycle_days(self, billing_cycle: str) -> int:
        return self.billing_cycle_days.get(billing_cycle, 30)

    async def _notify(self, warnings: List[str], action: str, to: Optional[str], **params) -> None:
        try:
            status = await self.notifier.send(action, to, **params)
        except Exception as e:
            logger.exception(f"Email '{action}' to {to} raised")
            warnings.append(f"Email '{action}' failed: {e}")
            return
        if status == "failed":
            warnings.append(f"Email '{action}' to {to} failed")

    async def _next_invoice_number(self, session) -> str:
        """One past the highest number issued so far; deleted invoices never lower it below a live one."""
        latest = await session.scalar(
            select(Invoice.invoice_number)
            .order_by(func.length(Invoice.invoice_number).desc(), Invoice.invoice_number.desc())
            .limit(1)
        )
        sequence = int(latest.rsplit("-", 1)[-1]) if latest else 0
        return f"INV-{sequence + 1:06d}"

    async def _add_numbered(self, build: Callable[[Any, str], Awaitable[Any]]) -> Any:
        """Run build(session, invoice_number) and commit; a number taken meanwhile is retried with the next one."""
        for attempt in range(1, INVOICE_NUMBER_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    created = await build(session, await self._next_invoice_number(session))
                    await session.commit()
                return created
            except IntegrityError:
                if attempt == INVOICE_NUMBER_ATTEMPTS:
                    raise
                logger.warning(f"Invoice number already taken, retrying (attempt {attempt})")

    # ----------------------------------------------------------------- checkout

    async def create_order(
        self,
        user_id: str,
        customer_email: Optional[str],
        price,
        items: List[Dict[str, Any]],
        billing_cycle: str = BillingCycle.MONTHLY.value,
        currency: str = "USD",
        tax=None,
        discount=None,
    ) -> Tuple[Order, Invoice]:
        """Checkout: a pending order plus its unpaid invoice."""
        cycle = BillingCycle(billing_cycle)
        amount = Decimal(str(price)).quantize(Decimal("0.01"))
        if amount <= 0:
            raise ValueError("Order price must be positive")

        async def build(session, invoice_number):
            order = Order(
                user_id=user_id,
                customer_email=customer_email,
                price=amount,
                currency=currency.upper(),
                billing_cycle=cycle.value,
                status=OrderStatus.PENDING.value,
                server_details={"items": items, "provisioning_logs": []},
            )
            session.add(order)
            await session.flush()

            invoice = Invoice(
                invoice_number=invoice_number,
                user_id=user_id,
                customer_email=customer_email,
                order_id=order.id,
                subtotal=amount,
                tax=Decimal(str(tax or 0)),
                discount=Decimal(str(discount or 0)),
                total=Invoice.compute_total(amount, tax, discount),
                currency=currency.upper(),
                status=InvoiceStatus.UNPAID.value,
                due_date=utcnow() + timedelta(days=self.invoice_due_days),
            )
            session.add(invoice)
            return order, invoice

        order, invoice = await self._add_numbered(build)
        logger.info(f"Order {order.id} created with invoice {invoice.invoice_number} ({format_amount(amount, currency)})")
        return order, invoice

    async def create_invoice(
        self,
        user_id: str,
        customer_email: Optional[str],
        subtotal,
        due_date: datetime,
        order_id: Optional[str] = None,
        currency: str = "USD",
        tax=None,
        discount=None,
        notes: Optional[str] = None,
    ) -> Invoice:
        async def build(session, invoice_number):
            invoice = Invoice(
                invoice_number=invoice_number,
                user_id=user_id,
                customer_email=customer_email,
                order_id=order_id,
                subtotal=Decimal(str(subtotal)),
                tax=Decimal(str(tax or 0)),
                discount=Decimal(str(discount or 0)),
                total=Invoice.compute_total(subtotal, tax, discount),
                currency=currency.upper(),
                status=InvoiceStatus.UNPAID.value,
                due_date=due_date,
                notes=notes,
            )
            session.add(invoice)
            return invoice

        return await self._add_numbered(build)

    async def record_charge(self, invoice_id: str, charge: Charge) -> Payment:
        async with self._session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice {invoice_id} not found")
            payment = Payment(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                amount=charge.amount,
                currency=charge.currency,
                gateway=charge.gateway,
                transaction_id=charge.transaction_ref,
                status=PaymentStatus.PENDING.value,
                gateway_response=sanitize(charge.gateway_response),
            )
            session.add(payment)
            await session.commit()
        return payment

    async def resolve_md5(self, transaction_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            payment = await session.scalar(
                select(Payment).where(Payment.transaction_id == transaction_id).order_by(Payment.created_at.desc())
            )
        if payment is None:
            return None
        return (payment.gateway_response or {}).get("md5_hash")

    # ------------------------------------------------------------------ payment

    async def confirm_payment(
        self,
        invoice_id: str,
        transaction_id: Optional[str] = None,
        amount=None,
        gateway_payload: Optional[Dict[str, Any]] = None,
        payment_method: str = "KHQR Gateway",
        payment_id: Optional[str] = None,
    ) -> PaymentResult:
        """pending -> paid. A second confirmation of the same invoice changes nothing."""
        start_time = time.time()
        warnings: List[str] = []
        renew_order_id = None

        async with self._session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice {invoice_id} not found")

            order = await session.get(Order, invoice.order_id) if invoice.order_id else None
            if invoice.status == InvoiceStatus.PAID.value:
                logger.info(f"Invoice {invoice.invoice_number} already paid")
                return PaymentResult(
                    invoice_id=invoice.id,
                    order_id=invoice.order_id,
                    changed=False,
                    order_status=order.status if order else None,
                )

            target = next_invoice_status(invoice.status, InvoiceStatus.PAID).value
            claimed = await session.execute(
                update(Invoice)
                .where(Invoice.id == invoice.id, Invoice.status == invoice.status)
                .values(
                    status=target,
                    paid_at=max(utcnow(), invoice.created_at),
                    payment_method=payment_method,
                    transaction_id=transaction_id or invoice.transaction_id,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                # Another confirmation got there first
                await session.commit()
                logger.info(f"Invoice {invoice.invoice_number} already paid")
                return PaymentResult(
                    invoice_id=invoice.id,
                    order_id=invoice.order_id,
                    changed=False,
                    order_status=order.status if order else None,
                )

            payment = None
            if payment_id:
                payment = await session.get(Payment, payment_id)
            elif transaction_id:
                payment = await session.scalar(select(Payment).where(Payment.transaction_id == transaction_id))
            if payment is None:
                payment = Payment(
                    invoice_id=invoice.id,
                    user_id=invoice.user_id,
                    amount=Decimal(str(amount)) if amount is not None else invoice.total,
                    currency=invoice.currency,
                    gateway=payment_method,
                    transaction_id=transaction_id,
                    status=PaymentStatus.COMPLETED.value,
                    gateway_response=sanitize(gateway_payload),
                )
                session.add(payment)
            else:
                payment.status = PaymentStatus.COMPLETED.value
                payment.invoice_id = payment.invoice_id or invoice.id
                if gateway_payload:
                    payment.gateway_response = {
                        **(payment.gateway_response or {}),
                        "confirmation": sanitize(gateway_payload),
                    }

            if order is not None:
                if order.status == OrderStatus.PENDING.value:
                    order.status = next_status(order.status, OrderEvent.PAYMENT_CONFIRMED).value
                    order.notes = f"Payment confirmed via {payment_method}. Transaction: {transaction_id or 'n/a'}"
                elif order.status in (OrderStatus.ACTIVE.value, OrderStatus.SUSPENDED.value):
                    renew_order_id = order.id

            await session.commit()
            order_status = order.status if order else None
            email = invoice.customer_email
            invoice_number = invoice.invoice_number
            display_total = format_amount(invoice.total, invoice.currency)

        elapsed = time.time() - start_time
        logger.info(f"Invoice {invoice_number} paid, transaction {transaction_id} (took {elapsed:.3f}s)")

        await self._notify(
            warnings,
            "payment-confirmation",
            email,
            invoice_number=invoice_number,
            amount=display_total,
            transaction_id=transaction_id,
        )

        if renew_order_id:
            renewal = await self.renew(renew_order_id)
            order_status = renewal.status
            warnings.extend(renewal.warnings)

        return PaymentResult(
            invoice_id=invoice_id,
            order_id=order.id if order else None,
            changed=True,
            order_status=order_status,
            payment_id=payment.id,
            warnings=warnings,
        )

    async def mark_invoice_paid(self, invoice_id: str) -> PaymentResult:
        return await self.confirm_payment(invoice_id, payment_method="Manual")

    async def set_payment_status(self, payment_id: str, status: str) -> Dict[str, Any]:
        """Admin override of a payment; completed cascades to the invoice."""
        new_status = PaymentStatus(status)
        async with self._session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(f"Payment {payment_id} not found")
            payment.status = new_status.value
            invoice_id = payment.invoice_id
            transaction_id = payment.transaction_id
            await session.commit()

        logger.info(f"Payment {payment_id} manually set to {new_status.value}")
        result = {"payment_id": payment_id, "status": new_status.value, "invoice": None}
        if new_status == PaymentStatus.COMPLETED and invoice_id:
            paid = await self.confirm_payment(
                invoice_id,
                transaction_id=transaction_id,
                payment_method="Manual",
                payment_id=payment_id,
            )
            result["invoice"] = paid.to_dict()
        return result

    # ------------------------------------------------------------- provisioning

    async def request_provisioning(self, order_id: str) -> TransitionResult:
        """paid|failed -> provisioning -> active|failed. No-op when a server already exists."""
        start_time = time.time()
        warnings: List[str] = []

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            if order.server_id:
                logger.info(f"Order {order_id} already has server {order.server_id}, skipping create")
                return TransitionResult(
                    order_id=order_id,
                    previous_status=order.status,
                    status=order.status,
                    changed=False,
                    server_id=order.server_id,
                )

            previous = order.status
            event = OrderEvent.RETRY_PROVISIONING if previous == OrderStatus.FAILED.value else OrderEvent.PROVISIONING_REQUESTED
            target = next_status(previous, event)
            payload = _panel_payload(order.server_details)
            request_snapshot = {"action": "create", "orderId": order_id, "serverDetails": payload}
            claimed = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == previous, Order.server_id.is_(None))
                .values(
                    status=target.value,
                    server_details=_append_log(
                        order.server_details, LOG_STARTED, "Server provisioning in progress...", request=request_snapshot
                    ),
                    notes="Server provisioning in progress...",
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if claimed.rowcount == 0:
                logger.info(f"Order {order_id} provisioning already claimed, skipping create")
                return TransitionResult(
                    order_id=order_id,
                    previous_status=previous,
                    status=OrderStatus.PROVISIONING.value,
                    changed=False,
                )
            email = order.customer_email

        try:
            result = await self.panel.create(order_id, payload)
        except Exception as e:
            logger.exception(f"Provisioning failed for order {order_id}")
            failed = await self.fail_provisioning(
                order_id,
                str(e),
                request=getattr(e, "request", None) or request_snapshot,
                response=getattr(e, "response", None),
            )
            failed.previous_status = previous
            return failed

        if result.status == "success" and result.server_id:
            activated = await self.complete_provisioning(order_id, result.server_id, result.connection_info, raw=result.raw)
            activated.previous_status = previous
            elapsed = time.time() - start_time
            logger.info(f"Order {order_id} provisioned as {result.server_id} (took {elapsed:.3f}s)")
            return activated

        logger.info(f"Order {order_id} provisioning accepted by panel, awaiting callback")
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=OrderStatus.PROVISIONING.value,
            warnings=warnings,
        )

    async def retry_provisioning(self, order_id: str) -> TransitionResult:
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            if order.status != OrderStatus.FAILED.value:
                raise InvalidTransition(order.status, OrderEvent.RETRY_PROVISIONING)
        return await self.request_provisioning(order_id)

    async def complete_provisioning(
        self, order_id: str, server_id: str, connection_info: Optional[Dict[str, Any]] = None, raw=None
    ) -> TransitionResult:
        warnings: List[str] = []
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            if order.server_id:
                return TransitionResult(
                    order_id=order_id,
                    previous_status=order.status,
                    status=order.status,
                    changed=False,
                    server_id=order.server_id,
                )
            previous = order.status
            target = next_status(previous, OrderEvent.PROVISIONING_SUCCEEDED)
            details = dict(order.server_details or {})
            details["connection"] = sanitize(connection_info or {})
            claimed = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == previous, Order.server_id.is_(None))
                .values(
                    status=target.value,
                    server_id=server_id,
                    next_due_date=utcnow() + timedelta(days=self._cycle_days(order.billing_cycle)),
                    server_details=_append_log(
                        details, LOG_SUCCESS, f"Server {server_id} created",
                        response=raw if raw is not None else connection_info,
                    ),
                    notes=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if claimed.rowcount == 0:
                logger.warning(f"Order {order_id} changed while completing provisioning, ignoring server {server_id}")
                await session.refresh(order)
                return TransitionResult(
                    order_id=order_id,
                    previous_status=previous,
                    status=order.status,
                    changed=False,
                    server_id=order.server_id,
                )
            email = order.customer_email
            server_name = server_label(order)

        connection = connection_info or {}
        await self._notify(
            warnings,
            "server-setup-complete",
            email,
            order_id=order_id,
            server_name=server_name,
            server_id=server_id,
            ip=connection.get("ip"),
            port=connection.get("port"),
            panel_url=connection.get("panelUrl") or connection.get("panel_url"),
        )
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=OrderStatus.ACTIVE.value,
            server_id=server_id,
            warnings=warnings,
        )

    async def fail_provisioning(self, order_id: str, message: str, request=None, response=None) -> TransitionResult:
        warnings = [message]
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            previous = order.status
            order.status = next_status(previous, OrderEvent.PROVISIONING_FAILED).value
            order.server_details = _append_log(
                order.server_details, LOG_FAILED, message, request=request, response=response
            )
            order.notes = f"Server creation failed: {message}"
            await session.commit()
            email = order.customer_email

        await self._notify(warnings, "provisioning-failed", email, order_id=order_id, error_message=message)
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=OrderStatus.FAILED.value,
            panel_ok=False,
            warnings=warnings,
        )

    # ------------------------------------------------------- suspend / unsuspend

    async def _panel_transition(
        self,
        order_id: str,
        event: OrderEvent,
        panel_call: Callable[[str], Awaitable[Any]],
        email_action: Optional[str],
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Validate, call the panel (non-blocking on failure), then record the status."""
        warnings: List[str] = []
        panel_ok = True

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            previous = order.status
            target = next_status(previous, event)
            server_id = order.server_id

        if server_id:
            try:
                await panel_call(server_id)
            except Exception as e:
                logger.warning(f"Panel {event.value} failed for order {order_id} ({server_id}): {e}", exc_info=True)
                warnings.append(f"Panel {event.value} failed: {e}")
                panel_ok = False

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            order.status = target.value
            if notes is not None:
                order.notes = notes
            if event == OrderEvent.TERMINATE and order.server_id:
                details = dict(order.server_details or {})
                details["terminated_server_id"] = order.server_id
                order.server_details = details
                order.server_id = None
            await session.commit()
            email = order.customer_email
            server_name = server_label(order)
            due = order.next_due_date

        logger.info(f"Order {order_id}: {previous} -> {target.value}")
        if email_action:
            await self._notify(
                warnings,
                email_action,
                email,
                order_id=order_id,
                server_name=server_name,
                due_date=due.date().isoformat() if due else None,
                reason=notes,
            )
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=target.value,
            server_id=server_id if event != OrderEvent.TERMINATE else None,
            panel_ok=panel_ok,
            warnings=warnings,
        )

    async def suspend(self, order_id: str, reason: Optional[str] = None) -> TransitionResult:
        return await self._panel_transition(order_id, OrderEvent.SUSPEND, self.panel.suspend, "service-suspended", reason)

    async def unsuspend(self, order_id: str) -> TransitionResult:
        return await self._panel_transition(order_id, OrderEvent.UNSUSPEND, self.panel.unsuspend, "service-reactivated")

    async def terminate(self, order_id: str) -> TransitionResult:
        return await self._panel_transition(order_id, OrderEvent.TERMINATE, self.panel.terminate, "service-terminated")

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> TransitionResult:
        warnings: List[str] = []
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            previous = order.status
            order.status = next_status(previous, OrderEvent.CANCEL).value
            order.notes = reason or order.notes
            open_invoices = (await session.scalars(
                select(Invoice).where(
                    Invoice.order_id == order_id,
                    Invoice.status.in_([InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value]),
                )
            )).all()
            for invoice in open_invoices:
                invoice.status = next_invoice_status(invoice.status, InvoiceStatus.CANCELLED).value
            await session.commit()
            email = order.customer_email

        await self._notify(warnings, "service-cancelled", email, order_id=order_id, reason=reason)
        return TransitionResult(
            order_id=order_id, previous_status=previous, status=OrderStatus.CANCELLED.value, warnings=warnings
        )

    async def renew(self, order_id: str) -> TransitionResult:
        """Extend the paid-through date by one billing cycle; a suspended order is reactivated."""
        warnings: List[str] = []
        panel_ok = True

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            previous = order.status
            target = next_status(previous, OrderEvent.RENEW)
            server_id = order.server_id

        if previous == OrderStatus.SUSPENDED.value and server_id:
            try:
                await self.panel.unsuspend(server_id)
            except Exception as e:
                logger.warning(f"Panel unsuspend failed while renewing order {order_id}: {e}", exc_info=True)
                warnings.append(f"Panel unsuspend failed: {e}")
                panel_ok = False

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            now = utcnow()
            base = order.next_due_date if order.next_due_date and order.next_due_date > now else now
            order.next_due_date = base + timedelta(days=self._cycle_days(order.billing_cycle))
            order.status = target.value
            await session.commit()
            email = order.customer_email
            server_name = server_label(order)
            new_due = order.next_due_date

        logger.info(f"Order {order_id} renewed until {new_due.isoformat()}")
        if previous == OrderStatus.SUSPENDED.value:
            await self._notify(
                warnings, "service-reactivated", email, order_id=order_id, server_name=server_name,
                due_date=new_due.date().isoformat(),
            )
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=target.value,
            server_id=server_id,
            panel_ok=panel_ok,
            warnings=warnings,
        )

    async def delete_service(self, order_id: str) -> TransitionResult:
        """Remove an order: email, terminate the instance, drop its invoices, then the row."""
        warnings: List[str] = []
        panel_ok = True

        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            previous = order.status
            next_status(previous, OrderEvent.DELETE)
            server_id = order.server_id
            email = order.customer_email
            server_name = server_label(order)

        # Termination email precedes panel terminate and row delete
        await self._notify(warnings, "service-terminated", email, order_id=order_id, server_name=server_name)

        if server_id:
            try:
                await self.panel.terminate(server_id)
            except Exception as e:
                logger.warning(f"Panel terminate failed for order {order_id} ({server_id}): {e}", exc_info=True)
                warnings.append(f"Panel terminate failed: {e}")
                panel_ok = False

        async with self._session_factory() as session:
            invoice_ids = (await session.scalars(select(Invoice.id).where(Invoice.order_id == order_id))).all()
            if invoice_ids:
                # payments stay as the audit trail
                await session.execute(
                    update(Payment).where(Payment.invoice_id.in_(invoice_ids)).values(invoice_id=None)
                )
                await session.execute(delete(Invoice).where(Invoice.id.in_(invoice_ids)))
            await session.execute(delete(Order).where(Order.id == order_id))
            await session.commit()

        logger.info(f"Order {order_id} deleted with {len(invoice_ids)} invoice(s)")
        return TransitionResult(
            order_id=order_id,
            previous_status=previous,
            status=None,
            server_id=server_id,
            panel_ok=panel_ok,
            warnings=warnings,
        )

    # --------------------------------------------------------------------- bulk

    async def _bulk(self, action: str, order_ids: Iterable[str], operation) -> BulkResult:
        result = BulkResult(action=action)
        for order_id in order_ids:
            try:
                outcome = await operation(order_id)
            except Exception as e:
                logger.warning(f"Bulk {action} failed for order {order_id}: {e}")
                result.fail_count += 1
                result.failures[order_id] = str(e)
                continue
            if outcome.warnings:
                result.warnings[order_id] = outcome.warnings
            if outcome.panel_ok:
                result.success_count += 1
            else:
                result.fail_count += 1
                result.failures[order_id] = "; ".join(outcome.warnings)
        logger.info(f"Bulk {action}: {result.success_count} succeeded, {result.fail_count} failed")
        return result

    async def bulk_suspend(self, order_ids: Iterable[str], reason: Optional[str] = None) -> BulkResult:
        return await self._bulk("suspend", order_ids, lambda order_id: self.suspend(order_id, reason))

    async def bulk_unsuspend(self, order_ids: Iterable[str]) -> BulkResult:
        return await self._bulk("unsuspend", order_ids, self.unsuspend)

    async def bulk_delete(self, order_ids: Iterable[str]) -> BulkResult:
        return await self._bulk("delete", order_ids, self.delete_service)

    # -------------------------------------------------------------------- reads

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            invoices = (await session.scalars(
                select(Invoice).where(Invoice.order_id == order_id).order_by(Invoice.created_at)
            )).all()
            snapshot = order_snapshot(order)
            snapshot["invoices"] = [invoice_snapshot(invoice) for invoice in invoices]
        return snapshot

    async def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        async with self._session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice {invoice_id} not found")
            return invoice_snapshot(invoice)

    async def _server_of(self, order_id: str) -> str:
        async with self._session_factory() as session:
            order = await self._get_order(session, order_id)
            if not order.server_id:
                raise NoServerAssigned(f"Order {order_id} has no server")
            return order.server_id

    async def server_status(self, order_id: str):
        return await self.panel.status(await self._server_of(order_id))

    async def power(self, order_id: str, signal: str) -> Dict[str, Any]:
        server_id = await self._server_of(order_id)
        await self.panel.power(server_id, signal)
        return {"success": True, "signal": signal, "server_id": server_id}


def build_lifecycle(session_factory=None) -> OrderLifecycle:
    """Controller wired to the configured store, panel and mailer."""
    from database import AsyncSessionLocal
    from notifier import EmailNotifier
    from panel import PanelClient

    factory = session_factory or AsyncSessionLocal
    return OrderLifecycle(factory, PanelClient(), EmailNotifier(factory))
