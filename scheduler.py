"""
Renewal / suspension batch ("daily job").

Every pass is safe to re-run: renewal invoices are only created for orders
without an open invoice, reminders are claimed in reminder_logs before they
are sent, and the suspension pass only picks up orders that are still active.
"""
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

import config
from database import Invoice, Order, ReminderLog, utcnow
from gateway import format_amount
from lifecycle import server_label
from notifier import EMAIL_FAILED
from order_states import InvoiceStatus, OrderStatus, next_invoice_status

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_until(due_date: datetime, now: datetime) -> int:
    """Whole days left before a due date, rounded up; negative once overdue."""
    return math.ceil((due_date - now).total_seconds() / SECONDS_PER_DAY)


def reminder_threshold(days_until_due: int, thresholds: Sequence[int]) -> Optional[int]:
    """Smallest threshold the invoice has crossed, or None if it is outside all of them."""
    crossed = [t for t in thresholds if days_until_due <= t]
    return min(crossed) if crossed else None


def _breakdown_key(threshold: int) -> str:
    return f"{threshold}_days"


class BillingScheduler:
    def __init__(
        self,
        session_factory,
        lifecycle,
        notifier,
        grace_period_days: int = config.GRACE_PERIOD_DAYS,
        reminder_thresholds: Sequence[int] = config.REMINDER_THRESHOLDS,
        lookahead_days: int = config.REMINDER_LOOKAHEAD_DAYS,
    ):
        self._session_factory = session_factory
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.grace_period_days = grace_period_days
        self.reminder_thresholds = tuple(sorted(reminder_thresholds, reverse=True))
        self.lookahead_days = lookahead_days

    async def generate_renewal_invoices(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        window_end = now + timedelta(days=self.lookahead_days)
        open_statuses = [InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value]

        async with self._session_factory() as session:
            orders = (await session.scalars(
                select(Order).where(
                    Order.status == OrderStatus.ACTIVE.value,
                    Order.next_due_date.is_not(None),
                    Order.next_due_date >= now,
                    Order.next_due_date <= window_end,
                )
            )).all()
            has_open = set((await session.scalars(
                select(Invoice.order_id).where(
                    Invoice.order_id.in_([order.id for order in orders]),
                    Invoice.status.in_(open_statuses),
                )
            )).all()) if orders else set()

        generated: List[Dict[str, Any]] = []
        for order in orders:
            if order.id in has_open:
                continue
            invoice = await self.lifecycle.create_invoice(
                user_id=order.user_id,
                customer_email=order.customer_email,
                subtotal=order.price,
                due_date=order.next_due_date,
                order_id=order.id,
                currency=order.currency,
                notes=f"Renewal for billing period starting {order.next_due_date.date().isoformat()}",
            )
            generated.append({"order_id": order.id, "invoice_number": invoice.invoice_number})
            logger.info(f"Renewal invoice {invoice.invoice_number} created for order {order.id}")

        return {"checked": len(orders), "generated": len(generated), "invoices": generated}

    async def _claim_reminder(self, invoice_id: str, threshold: int) -> bool:
        try:
            async with self._session_factory() as session:
                session.add(ReminderLog(invoice_id=invoice_id, threshold_days=threshold))
                await session.commit()
        except IntegrityError:
            return False
        return True

    async def _release_reminder(self, invoice_id: str, threshold: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ReminderLog).where(
                    ReminderLog.invoice_id == invoice_id,
                    ReminderLog.threshold_days == threshold,
                )
            )
            await session.commit()

    async def reminder_pass(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One reminder per (invoice, threshold) for unpaid invoices due inside the lookahead window."""
        now = now or utcnow()
        window_end = now + timedelta(days=self.lookahead_days)

        async with self._session_factory() as session:
            rows = (await session.execute(
                select(Invoice, Order)
                .outerjoin(Order, Invoice.order_id == Order.id)
                .where(
                    Invoice.status == InvoiceStatus.UNPAID.value,
                    Invoice.due_date >= now,
                    Invoice.due_date <= window_end,
                )
                .order_by(Invoice.due_date)
            )).all()
            sent_keys = set((await session.execute(
                select(ReminderLog.invoice_id, ReminderLog.threshold_days).where(
                    ReminderLog.invoice_id.in_([invoice.id for invoice, _ in rows])
                )
            )).all()) if rows else set()

        breakdown = {_breakdown_key(t): 0 for t in self.reminder_thresholds}
        sent: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        for invoice, order in rows:
            days_left = days_until(invoice.due_date, now)
            threshold = reminder_threshold(days_left, self.reminder_thresholds)
            if threshold is None or (invoice.id, threshold) in sent_keys:
                continue
            if not await self._claim_reminder(invoice.id, threshold):
                continue

            try:
                status = await self.notifier.send(
                    "payment-reminder",
                    invoice.customer_email,
                    invoice_number=invoice.invoice_number,
                    server_name=server_label(order) if order is not None else "Game Server",
                    due_date=invoice.due_date.date().isoformat(),
                    amount=format_amount(invoice.total, invoice.currency),
                    days_until_due=days_left,
                    payment_url=f"{config.SITE_URL}/client",
                )
            except Exception as e:
                logger.exception(f"Reminder for invoice {invoice.invoice_number} raised")
                status, error = EMAIL_FAILED, str(e)
            else:
                error = "Email delivery failed"

            if status == EMAIL_FAILED:
                await self._release_reminder(invoice.id, threshold)
                errors.append({"invoice_number": invoice.invoice_number, "error": error})
                continue

            breakdown[_breakdown_key(threshold)] += 1
            sent.append({
                "invoice_number": invoice.invoice_number,
                "threshold_days": threshold,
                "days_until_due": days_left,
            })
            logger.info(f"Reminder sent for invoice {invoice.invoice_number} ({days_left} days until due)")

        return {
            "checked": len(rows),
            "reminders_sent": len(sent),
            "sent": sent,
            "breakdown": breakdown,
            "errors": errors,
        }

    async def mark_overdue_invoices(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        async with self._session_factory() as session:
            invoices = (await session.scalars(
                select(Invoice).where(
                    Invoice.status == InvoiceStatus.UNPAID.value,
                    Invoice.due_date < now,
                )
            )).all()
            for invoice in invoices:
                invoice.status = next_invoice_status(invoice.status, InvoiceStatus.OVERDUE).value
            await session.commit()

        numbers = [invoice.invoice_number for invoice in invoices]
        if numbers:
            logger.info(f"Marked {len(numbers)} invoice(s) overdue: {', '.join(numbers)}")
        return {"marked_overdue": len(numbers), "invoices": numbers}

    async def suspension_pass(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Suspend active orders whose due date passed more than the grace period ago."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.grace_period_days)

        async with self._session_factory() as session:
            order_ids = (await session.scalars(
                select(Order.id).where(
                    Order.status == OrderStatus.ACTIVE.value,
                    Order.next_due_date.is_not(None),
                    Order.next_due_date < cutoff,
                )
            )).all()

        suspended: List[str] = []
        failures: List[Dict[str, str]] = []
        warnings: Dict[str, List[str]] = {}
        for order_id in order_ids:
            try:
                result = await self.lifecycle.suspend(order_id, reason="billing_overdue")
            except Exception as e:
                logger.warning(f"Could not suspend overdue order {order_id}: {e}")
                failures.append({"order_id": order_id, "error": str(e)})
                continue
            suspended.append(order_id)
            if result.warnings:
                warnings[order_id] = result.warnings

        return {
            "overdue_count": len(order_ids),
            "suspended_count": len(suspended),
            "suspended_orders": suspended,
            "failures": failures,
            "warnings": warnings,
        }

    async def pending_reminders(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-only view of unpaid and overdue invoices due within the window."""
        now = now or utcnow()
        window_end = now + timedelta(days=self.lookahead_days)
        async with self._session_factory() as session:
            invoices = (await session.scalars(
                select(Invoice)
                .where(
                    Invoice.status.in_([InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value]),
                    Invoice.due_date <= window_end,
                )
                .order_by(Invoice.due_date)
            )).all()

        pending = []
        for invoice in invoices:
            days_left = days_until(invoice.due_date, now)
            pending.append({
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "user_id": invoice.user_id,
                "order_id": invoice.order_id,
                "amount": format_amount(invoice.total, invoice.currency),
                "due_date": invoice.due_date.isoformat(),
                "days_until_due": days_left,
                "status": invoice.status,
                "is_overdue": days_left < 0,
            })
        return {
            "total_pending": len(pending),
            "overdue_count": sum(1 for item in pending if item["is_overdue"]),
            "due_soon_count": sum(1 for item in pending if not item["is_overdue"] and item["days_until_due"] <= 3),
            "reminders": pending,
        }

    async def run_daily_job(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Renewal invoices, reminders, overdue marking and suspensions in one summary."""
        start_time = time.time()
        now = now or utcnow()

        renewals = await self.generate_renewal_invoices(now)
        reminders = await self.reminder_pass(now)
        overdue = await self.mark_overdue_invoices(now)
        suspensions = await self.suspension_pass(now)

        summary = merge_summary(renewals, reminders, overdue, suspensions, now)
        elapsed = time.time() - start_time
        logger.info(
            f"Daily job: {summary['reminders_sent']} reminders, {summary['suspended_count']} suspended, "
            f"{summary['renewals_generated']} renewal invoices (took {elapsed:.3f}s)"
        )
        return summary


def merge_summary(renewals, reminders, overdue, suspensions, now: datetime) -> Dict[str, Any]:
    return {
        "renewals_generated": renewals["generated"],
        "reminders_sent": reminders["reminders_sent"],
        "breakdown": reminders["breakdown"],
        "reminder_errors": reminders["errors"],
        "invoices_marked_overdue": overdue["marked_overdue"],
        "overdue_count": suspensions["overdue_count"],
        "suspended_count": suspensions["suspended_count"],
        "suspension_failures": suspensions["failures"],
        "suspension_warnings": suspensions["warnings"],
        "checked_at": now.isoformat(),
    }


def build_scheduler(session_factory=None) -> BillingScheduler:
    from database import AsyncSessionLocal
    from lifecycle import build_lifecycle

    factory = session_factory or AsyncSessionLocal
    lifecycle = build_lifecycle(factory)
    return BillingScheduler(factory, lifecycle, lifecycle.notifier)
