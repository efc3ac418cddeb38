"""
QR payment gateway adapters.

Both backends share one contract: generate_charge() returns a scannable Charge and
check_status() answers "pending" or "paid". The standard backend builds the KHQR
payload itself and asks the bank API by MD5; the live backend delegates to a
companion API that also pushes payment events over a WebSocket.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

import config

logger = logging.getLogger(__name__)

CHARGE_PENDING = "pending"
CHARGE_PAID = "paid"

# Currencies quoted in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({"KHR", "JPY", "KRW", "VND", "IDR"})

# ISO 4217 numeric codes used in the KHQR payload
_KHQR_CURRENCY_CODES = {"USD": "840", "KHR": "116"}


class GatewayError(RuntimeError):
    """The gateway refused or could not be reached."""


class ChargeExpired(GatewayError):
    """The charge's QR code is no longer valid."""


@dataclass
class Charge:
    displayable_code: str
    transaction_ref: str
    amount: Decimal
    currency: str
    order_ref: str
    invoice_ref: Optional[str] = None
    live_channel_url: Optional[str] = None
    expires_in: int = config.CHARGE_EXPIRES_IN
    gateway: str = ""
    gateway_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_amount(self) -> str:
        return format_amount(self.amount, self.currency)


def quantize_amount(amount, currency: str) -> Decimal:
    places = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    return Decimal(str(amount)).quantize(places, rounding=ROUND_HALF_UP)


def format_amount(amount, currency: str) -> str:
    """Display an amount without touching the stored value: whole units or two decimals."""
    value = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return f"{value.quantize(Decimal('1'), rounding=ROUND_HALF_UP):,} {currency.upper()}"
    return f"{value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):,.2f} {currency.upper()}"


def crc16_ccitt(data: str) -> str:
    """CRC-16/CCITT-FALSE (poly 0x1021, init 0xFFFF), as four upper-case hex digits."""
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def _tlv(tag: str, value: str) -> str:
    return f"{tag}{len(value):02d}{value}"


def build_khqr(
    merchant_id: str,
    merchant_name: str,
    merchant_city: str,
    amount: str,
    currency: str,
    bill_number: str,
) -> str:
    """Build a KHQR (EMV merchant-presented) payload string ending in its CRC."""
    merchant_info = _tlv("00", "bakong") + _tlv("01", merchant_id)
    payload = (
        _tlv("00", "01")
        + _tlv("01", "12")
        + _tlv("29", merchant_info)
        + _tlv("52", "5411")
        + _tlv("53", _KHQR_CURRENCY_CODES.get(currency.upper(), "116"))
        + _tlv("54", amount)
        + _tlv("58", "KH")
        + _tlv("59", merchant_name[:25])
        + _tlv("60", merchant_city[:15])
        + _tlv("62", _tlv("01", bill_number[:25]))
        + "6304"
    )
    return payload + crc16_ccitt(payload)


def verify_webhook_secret(expected: str, authorization: Optional[str]) -> bool:
    """Bearer-token check for gateway callbacks. No configured secret means no check."""
    if not expected:
        return True
    token = (authorization or "").replace("Bearer ", "", 1).strip()
    return hmac.compare_digest(token, expected)


class PaymentGateway:
    name = "base"

    async def generate_charge(
        self,
        amount,
        currency: str,
        order_ref: str,
        description: Optional[str] = None,
        invoice_ref: Optional[str] = None,
    ) -> Charge:
        raise NotImplementedError

    async def check_status(self, transaction_ref: str) -> str:
        raise NotImplementedError


class KHQRGateway(PaymentGateway):
    """Standard backend: local KHQR payload, bank API lookup by payload MD5."""

    name = "standard"

    def __init__(
        self,
        api_url: str = config.BAKONG_API_URL,
        token: str = config.BAKONG_TOKEN,
        merchant_id: str = config.KHQR_MERCHANT_ID,
        merchant_name: str = config.KHQR_MERCHANT_NAME,
        merchant_city: str = config.KHQR_MERCHANT_CITY,
        merchant_currency: str = config.KHQR_CURRENCY,
        usd_to_khr_rate: int = config.USD_TO_KHR_RATE,
        resolve_md5: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.merchant_id = merchant_id
        self.merchant_name = merchant_name
        self.merchant_city = merchant_city
        self.merchant_currency = merchant_currency.upper()
        self.usd_to_khr_rate = usd_to_khr_rate
        self._resolve_md5 = resolve_md5
        self._transport = transport
        self._md5_by_ref: Dict[str, str] = {}

    async def generate_charge(self, amount, currency, order_ref, description=None, invoice_ref=None) -> Charge:
        if not amount or not order_ref:
            raise GatewayError("Missing required fields: amount, order_ref")

        requested_currency = currency.upper()
        final_currency = self.merchant_currency
        final_amount = Decimal(str(amount))
        exchange_rate = None
        if final_currency == "KHR" and requested_currency == "USD":
            exchange_rate = self.usd_to_khr_rate
            final_amount = final_amount * exchange_rate
        final_amount = quantize_amount(final_amount, final_currency)

        transaction_ref = order_ref[:25]
        qr_string = build_khqr(
            self.merchant_id,
            self.merchant_name,
            self.merchant_city,
            str(final_amount),
            final_currency,
            transaction_ref,
        )
        md5_hash = hashlib.md5(qr_string.encode("utf-8")).hexdigest()
        self._md5_by_ref[transaction_ref] = md5_hash
        logger.info(f"KHQR generated for {transaction_ref}: {format_amount(final_amount, final_currency)}")

        return Charge(
            displayable_code=qr_string,
            transaction_ref=transaction_ref,
            amount=final_amount,
            currency=final_currency,
            order_ref=order_ref,
            invoice_ref=invoice_ref,
            gateway=self.name,
            gateway_response={
                "qr_string": qr_string,
                "md5_hash": md5_hash,
                "description": description or f"Order {order_ref[:20]}",
                "exchange_rate": exchange_rate,
                "original_amount": str(amount),
                "original_currency": requested_currency,
            },
        )

    async def check_status(self, transaction_ref: str) -> str:
        if not self.token:
            raise GatewayError("BAKONG_TOKEN not configured")
        md5_hash = self._md5_by_ref.get(transaction_ref)
        if md5_hash is None and self._resolve_md5 is not None:
            md5_hash = await self._resolve_md5(transaction_ref)
        if not md5_hash:
            raise GatewayError(f"No MD5 hash found for transaction {transaction_ref}")

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/v1/check_transaction_by_md5",
                    json={"md5": md5_hash},
                    headers={"Authorization": f"Bearer {self.token}"},
                )
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(f"Payment status check failed for {transaction_ref}: {e}") from e

        return CHARGE_PAID if result.get("responseCode") == 0 else CHARGE_PENDING


class LiveQRGateway(PaymentGateway):
    """Live backend: companion API generates the QR and pushes payment events."""

    name = "live"

    def __init__(
        self,
        api_url: str = config.LIVE_GATEWAY_API_URL,
        ws_url: str = config.LIVE_GATEWAY_WS_URL,
        secret: str = config.LIVE_GATEWAY_SECRET,
        callback_base_url: str = config.PUBLIC_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.ws_url = ws_url or None
        self.secret = secret
        self.callback_base_url = callback_base_url.rstrip("/")
        self._transport = transport

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_url:
            raise GatewayError("Live payment API URL not configured")
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(f"{self.api_url}{path}", json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"Failed to contact payment API: {e}") from e
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            raise GatewayError(data.get("error") or f"Payment API returned {response.status_code}")
        return data

    async def generate_charge(self, amount, currency, order_ref, description=None, invoice_ref=None) -> Charge:
        reference = invoice_ref or order_ref
        # KHQR bill numbers are capped at 25 characters
        transaction_ref = f"INV-{reference[:8]}-{str(int(time.time() * 1000))[-6:]}"
        data = await self._post(
            "/generate-khqr",
            {
                "amount": float(quantize_amount(amount, currency)),
                "transactionId": transaction_ref,
                "callbackUrl": f"{self.callback_base_url}/webhooks/payments/{reference}",
                "secret": self.secret,
                "description": description or "",
            },
        )
        qr_code = data.get("qrCodeData") or data.get("qrCode")
        if not qr_code:
            raise GatewayError("Payment API did not return QR code data")

        return Charge(
            displayable_code=qr_code,
            transaction_ref=transaction_ref,
            amount=quantize_amount(amount, currency),
            currency=currency.upper(),
            order_ref=order_ref,
            invoice_ref=invoice_ref,
            live_channel_url=data.get("wsUrl") or self.ws_url,
            expires_in=int(data.get("expiresIn") or config.CHARGE_EXPIRES_IN),
            gateway=self.name,
            gateway_response={k: v for k, v in data.items() if k != "qrCodeData"},
        )

    async def check_status(self, transaction_ref: str) -> str:
        data = await self._post("/check-status", {"transactionId": transaction_ref})
        return CHARGE_PAID if data.get("status") in ("paid", "completed", "success") else CHARGE_PENDING


def build_gateways(resolve_md5: Optional[Callable[[str], Awaitable[Optional[str]]]] = None) -> Dict[str, PaymentGateway]:
    """Configured backends keyed by the name a checkout selects."""
    return {KHQRGateway.name: KHQRGateway(resolve_md5=resolve_md5), LiveQRGateway.name: LiveQRGateway()}
