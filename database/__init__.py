from .connection import init_db, close_db, create_session_factory, AsyncSessionLocal, DATABASE_URL
from .models import Order, Invoice, Payment, EmailLog, ReminderLog, Base, utcnow

__all__ = [
    "init_db", "close_db", "create_session_factory", "AsyncSessionLocal",
    "Order", "Invoice", "Payment", "EmailLog", "ReminderLog", "Base", "utcnow", "DATABASE_URL",
]
