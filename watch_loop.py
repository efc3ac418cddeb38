"""
Payment watch loop.

One PaymentWatcher per pending charge. It listens on the gateway's live channel
when there is one, polls check_status() while the channel is not connected,
and counts the charge's TTL down once per tick. Push, poll and the manual
"I've paid" check all go through _confirm(), which hands off to the
on_confirmed callback at most once.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp

import config
from gateway import CHARGE_PAID, Charge, ChargeExpired, PaymentGateway

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
LIVE = "live"
RECONNECTING = "reconnecting"
POLLING = "polling"
CONFIRMED = "confirmed"
EXPIRED = "expired"
CLOSED = "closed"

PAID_MESSAGE_TYPES = ("payment_received", "payment_success")
PAID_STATUSES = ("paid", "completed", "success")

OnConfirmed = Callable[[str, str], Awaitable[Any]]


async def _json_messages(ws) -> AsyncIterator[Dict[str, Any]]:
    async for msg in ws:
        if msg.type == aiohttp.WSMsgType.TEXT:
            try:
                yield json.loads(msg.data)
            except ValueError:
                logger.warning(f"Ignoring non-JSON live channel message: {msg.data[:200]}")
        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
            break


@asynccontextmanager
async def aiohttp_channel(url: str):
    """Open a WebSocket and yield its decoded JSON messages."""
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(url, heartbeat=30) as ws:
            yield _json_messages(ws)


def is_paid_message(message: Any, transaction_ref: str) -> bool:
    if not isinstance(message, dict):
        return False
    reference = message.get("transactionId") or message.get("transaction_id")
    if reference and reference != transaction_ref:
        return False
    kind = message.get("type")
    if kind in PAID_MESSAGE_TYPES:
        return True
    return kind == "payment_status" and message.get("status") in PAID_STATUSES


class PaymentWatcher:
    def __init__(
        self,
        gateway: PaymentGateway,
        charge: Charge,
        on_confirmed: OnConfirmed,
        channel_factory=aiohttp_channel,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        reconnect_delay: float = config.RECONNECT_DELAY_SECONDS,
        tick_seconds: float = 1.0,
    ):
        self.gateway = gateway
        self.charge = charge
        self._on_confirmed = on_confirmed
        self._channel_factory = channel_factory
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.tick_seconds = tick_seconds

        self.state = DISCONNECTED
        self.remaining = int(charge.expires_in)
        self.confirmed = False
        self.confirmed_by: Optional[str] = None
        self.result: Any = None
        self.closed = False
        self._confirming = False
        self._tasks: List[asyncio.Task] = []
        self._done = asyncio.Event()

    @property
    def transaction_ref(self) -> str:
        return self.charge.transaction_ref

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    @property
    def finished(self) -> bool:
        return self.confirmed or self.expired or self.closed

    def start(self) -> "PaymentWatcher":
        if self._tasks:
            return self
        self._tasks.append(asyncio.create_task(self._run_countdown()))
        self._tasks.append(asyncio.create_task(self._run_poll()))
        if self.charge.live_channel_url and self._channel_factory is not None:
            self.state = CONNECTING
            self._tasks.append(asyncio.create_task(self._run_live_channel()))
        else:
            self.state = POLLING
        logger.info(f"Watching charge {self.transaction_ref} ({self.state}, expires in {self.remaining}s)")
        return self

    async def wait(self, timeout: Optional[float] = None) -> bool:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.confirmed

    async def stop(self) -> None:
        """Tear down the channel and every timer."""
        self.closed = True
        if self.state not in (CONFIRMED, EXPIRED):
            self.state = CLOSED
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._done.set()

    async def check_now(self) -> bool:
        """Manual "I've paid" check. GatewayError propagates to the caller."""
        if self.confirmed:
            return True
        if self.expired:
            raise ChargeExpired(f"Charge {self.transaction_ref} has expired")
        status = await self.gateway.check_status(self.transaction_ref)
        if status == CHARGE_PAID:
            await self._confirm("manual")
        return self.confirmed

    def snapshot(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_ref,
            "state": self.state,
            "remaining_seconds": max(self.remaining, 0),
            "confirmed": self.confirmed,
            "confirmed_by": self.confirmed_by,
            "expired": self.expired and not self.confirmed,
            "amount": self.charge.display_amount,
        }

    async def _confirm(self, source: str) -> bool:
        # The flag is set before the first await so a second signal never gets past it
        if self.confirmed or self._confirming:
            logger.debug(f"Ignoring duplicate {source} confirmation for {self.transaction_ref}")
            return False
        self._confirming = True
        try:
            self.result = await self._on_confirmed(self.transaction_ref, source)
        except Exception:
            logger.exception(f"Payment hand-off failed for {self.transaction_ref} ({source})")
            self._confirming = False
            if self.expired:
                self._shutdown()
            return False

        self.confirmed = True
        self.confirmed_by = source
        self.state = CONFIRMED
        logger.info(f"Payment confirmed for {self.transaction_ref} via {source}")
        self._done.set()
        self._shutdown()
        return True

    def _shutdown(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    async def _run_countdown(self) -> None:
        while self.remaining > 0 and not self.confirmed and not self.closed:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1
        if self.confirmed or self.closed:
            return
        self.state = EXPIRED
        logger.info(f"Charge {self.transaction_ref} expired")
        self._done.set()
        if not self._confirming:
            self._shutdown()

    async def _run_poll(self) -> None:
        while not self.finished:
            await asyncio.sleep(self.poll_interval)
            if self.finished:
                return
            if self.state == LIVE:
                continue
            try:
                status = await self.gateway.check_status(self.transaction_ref)
            except Exception as e:
                logger.warning(f"Status check for {self.transaction_ref} failed: {e}")
                continue
            if status == CHARGE_PAID:
                await self._confirm("poll")

    async def _run_live_channel(self) -> None:
        url = self.charge.live_channel_url
        while not self.finished:
            try:
                async with self._channel_factory(url) as messages:
                    self.state = LIVE
                    logger.info(f"Live channel open for {self.transaction_ref}")
                    async for message in messages:
                        if is_paid_message(message, self.transaction_ref):
                            await self._confirm("live")
                        if self.finished:
                            return
            except Exception as e:
                logger.warning(f"Live channel for {self.transaction_ref} failed: {e}")

            if self.finished:
                return
            self.state = RECONNECTING
            logger.info(f"Live channel for {self.transaction_ref} closed, reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)


class WatcherRegistry:
    """Running watchers keyed by transaction reference."""

    def __init__(self, **watcher_kwargs):
        self._watchers: Dict[str, PaymentWatcher] = {}
        self._watcher_kwargs = watcher_kwargs

    def __len__(self) -> int:
        return len(self._watchers)

    def get(self, transaction_ref: str) -> Optional[PaymentWatcher]:
        return self._watchers.get(transaction_ref)

    def start(self, gateway: PaymentGateway, charge: Charge, on_confirmed: OnConfirmed) -> PaymentWatcher:
        self.prune()
        existing = self._watchers.get(charge.transaction_ref)
        if existing is not None and not existing.finished:
            return existing
        watcher = PaymentWatcher(gateway, charge, on_confirmed, **self._watcher_kwargs).start()
        self._watchers[charge.transaction_ref] = watcher
        return watcher

    async def stop(self, transaction_ref: str) -> bool:
        watcher = self._watchers.pop(transaction_ref, None)
        if watcher is None:
            return False
        await watcher.stop()
        return True

    async def stop_all(self) -> None:
        watchers = list(self._watchers.values())
        self._watchers.clear()
        await asyncio.gather(*(watcher.stop() for watcher in watchers), return_exceptions=True)

    def prune(self) -> int:
        """Drop confirmed, expired and closed watchers."""
        finished = [ref for ref, watcher in self._watchers.items() if watcher.finished]
        for ref in finished:
            del self._watchers[ref]
        return len(finished)
