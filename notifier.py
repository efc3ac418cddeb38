"""
Transactional email, fire-and-forget.

Every attempt is written to email_logs as sent, failed or simulated (no API key
configured). send() reports the outcome instead of raising.
"""
import logging
from typing import Any, Dict, Optional

import httpx

import config
from database import EmailLog

logger = logging.getLogger(__name__)

EMAIL_SENT = "sent"
EMAIL_FAILED = "failed"
EMAIL_SIMULATED = "simulated"

SUBJECTS = {
    "payment-confirmation": "Payment Received - Invoice #{invoice_number}",
    "server-setup-complete": "Your Server is Ready!",
    "provisioning-failed": "We hit a problem setting up your server",
    "payment-reminder": "Payment Reminder - Invoice #{invoice_number} due in {days_until_due} day(s)",
    "service-suspended": "Service Suspended - Action Required",
    "service-reactivated": "Service Reactivated",
    "service-terminated": "Service Terminated",
    "service-cancelled": "Order Cancelled",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render(action: str, params: Dict[str, Any]) -> tuple:
    """Return (subject, html) for an email action."""
    subject = SUBJECTS.get(action, action.replace("-", " ").title()).format_map(_SafeDict(params))
    rows = "".join(
        f"<tr><td><strong>{key.replace('_', ' ').title()}</strong></td><td>{value}</td></tr>"
        for key, value in params.items()
        if value not in (None, "") and not isinstance(value, (dict, list))
    )
    html = (
        f"<h2>{subject}</h2>"
        f"<table>{rows}</table>"
        f"<p><a href=\"{config.SITE_URL}/client\">Open your client area</a></p>"
    )
    return subject, html


class EmailNotifier:
    def __init__(
        self,
        session_factory,
        api_key: str = config.RESEND_API_KEY,
        sender: str = config.EMAIL_FROM,
        api_url: str = config.RESEND_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_factory = session_factory
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self._transport = transport

    async def send(self, action: str, to: Optional[str], **params) -> str:
        subject, html = render(action, params)
        status, error = EMAIL_SIMULATED, None

        if not to:
            status, error = EMAIL_FAILED, "No recipient address"
        elif self.api_key:
            try:
                async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                    response = await client.post(
                        self.api_url,
                        json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                        headers={"Authorization": f"Bearer {self.api_key}"},
                    )
                response.raise_for_status()
                status = EMAIL_SENT
            except httpx.HTTPError as e:
                status, error = EMAIL_FAILED, str(e)
        else:
            logger.info(f"Email '{action}' to {to} simulated (no RESEND_API_KEY): {subject}")

        if status == EMAIL_FAILED:
            logger.warning(f"Email '{action}' to {to} failed: {error}")
        await self._log(action, to, subject, status, error)
        return status

    async def _log(self, action, to, subject, status, error) -> None:
        try:
            async with self._session_factory() as session:
                session.add(EmailLog(
                    action=action,
                    recipient=to,
                    subject=subject[:255],
                    status=status,
                    error_message=error,
                ))
                await session.commit()
        except Exception:
            logger.exception(f"Could not write email log for '{action}' to {to}")
