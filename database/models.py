import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, JSON, Text, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    billing_cycle = Column(String(16), nullable=False, default="monthly")
    status = Column(String(16), nullable=False, default="pending", index=True)
    server_id = Column(String(64), nullable=True, index=True)
    server_details = Column(JSON, nullable=False, default=dict)
    next_due_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def provisioning_logs(self) -> list:
        return list((self.server_details or {}).get("provisioning_logs", []))


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(String(32), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default="unpaid", index=True)
    due_date = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(64), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @staticmethod
    def compute_total(subtotal, tax=None, discount=None) -> Decimal:
        total = Decimal(subtotal) + Decimal(tax or 0) - Decimal(discount or 0)
        return total.quantize(Decimal("0.01"))


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    gateway = Column(String(32), nullable=True)
    transaction_id = Column(String(128), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="pending")
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=True)
    subject = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ReminderLog(Base):
    __tablename__ = "reminder_logs"
    __table_args__ = (UniqueConstraint("invoice_id", "threshold_days", name="uq_reminder_threshold"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(36), nullable=False, index=True)
    threshold_days = Column(Integer, nullable=False)
    sent_at = Column(DateTime, nullable=False, default=utcnow)
