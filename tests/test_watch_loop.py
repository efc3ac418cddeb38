"""
Tests for the payment watch loop.
"""
import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from gateway import CHARGE_PAID, CHARGE_PENDING, Charge, ChargeExpired
from watch_loop import (
    CLOSED, CONFIRMED, EXPIRED, PaymentWatcher, WatcherRegistry, is_paid_message,
)

PAID = {"type": "payment_received", "transactionId": "txn-1", "status": "paid"}


class FakeGateway:
    name = "fake"

    def __init__(self, statuses=(CHARGE_PENDING,)):
        self.statuses = list(statuses)
        self.checks = 0

    async def check_status(self, transaction_ref):
        self.checks += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class FakeChannel:
    """Each connection follows the next script entry: an exception, or (connect_delay, messages).
    Once the script is used up, connections stay open without messages."""

    def __init__(self, *script):
        self.script = list(script)
        self.connections = 0

    @asynccontextmanager
    async def __call__(self, url):
        self.connections += 1
        entry = self.script.pop(0) if self.script else None
        if isinstance(entry, Exception):
            raise entry
        delay, messages = entry if entry is not None else (0, None)
        if delay:
            await asyncio.sleep(delay)

        async def stream():
            if messages is None:
                await asyncio.Event().wait()
            for message in messages:
                await asyncio.sleep(0)
                yield message

        yield stream()


class HandOff:
    def __init__(self, delay=0.0, failures=0):
        self.calls = []
        self.delay = delay
        self.failures = failures

    async def __call__(self, transaction_ref, source):
        self.calls.append(source)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("store unavailable")
        return {"status": "confirmed"}


def make_charge(live=True, expires_in=900, ref="txn-1"):
    return Charge(
        displayable_code="000201010212",
        transaction_ref=ref,
        amount=Decimal("10.00"),
        currency="USD",
        order_ref="order-1",
        live_channel_url="wss://pay.example/ws" if live else None,
        expires_in=expires_in,
    )


def make_watcher(gateway, handoff, channel=None, live=True, expires_in=900, **kwargs):
    options = dict(poll_interval=0.01, reconnect_delay=0.01, tick_seconds=0.01)
    options.update(kwargs)
    return PaymentWatcher(gateway, make_charge(live, expires_in), handoff, channel_factory=channel, **options)


def test_paid_message_matching():
    assert is_paid_message(PAID, "txn-1")
    assert is_paid_message({"type": "payment_success"}, "txn-1")
    assert is_paid_message({"type": "payment_status", "status": "paid", "transactionId": "txn-1"}, "txn-1")
    assert not is_paid_message({"type": "payment_status", "status": "pending"}, "txn-1")
    assert not is_paid_message({**PAID, "transactionId": "txn-2"}, "txn-1")
    assert not is_paid_message("paid", "txn-1")


@pytest.mark.asyncio
async def test_live_message_confirms_payment():
    handoff = HandOff()
    channel = FakeChannel((0, [{"type": "heartbeat"}, PAID]))
    watcher = make_watcher(FakeGateway(), handoff, channel, poll_interval=60).start()

    assert await watcher.wait(timeout=2)
    assert watcher.confirmed_by == "live"
    assert watcher.state == CONFIRMED
    assert handoff.calls == ["live"]
    await asyncio.sleep(0.01)
    assert all(task.done() for task in watcher._tasks)


@pytest.mark.asyncio
async def test_polls_when_there_is_no_live_channel():
    gateway = FakeGateway([CHARGE_PENDING, CHARGE_PENDING, CHARGE_PAID])
    handoff = HandOff()
    watcher = make_watcher(gateway, handoff, live=False).start()

    assert await watcher.wait(timeout=2)
    assert watcher.confirmed_by == "poll"
    assert gateway.checks == 3
    assert handoff.calls == ["poll"]


@pytest.mark.asyncio
async def test_push_and_poll_together_hand_off_once():
    # Poll sees "paid" while the channel is still connecting; the push arrives during the hand-off
    gateway = FakeGateway([CHARGE_PAID])
    handoff = HandOff(delay=0.1)
    channel = FakeChannel((0.03, [PAID, PAID]))
    watcher = make_watcher(gateway, handoff, channel).start()

    await asyncio.sleep(0.05)
    await watcher.check_now()
    assert await watcher.wait(timeout=2)

    assert len(handoff.calls) == 1
    assert watcher.confirmed


@pytest.mark.asyncio
async def test_reconnects_after_channel_closes():
    handoff = HandOff()
    channel = FakeChannel((0, []), ConnectionError("refused"), (0, [PAID]))
    watcher = make_watcher(FakeGateway(), handoff, channel, poll_interval=60).start()

    assert await watcher.wait(timeout=2)
    assert channel.connections == 3
    assert watcher.confirmed_by == "live"


@pytest.mark.asyncio
async def test_expiry_stops_reconnects_and_manual_checks():
    gateway = FakeGateway()
    channel = FakeChannel(*[(0, []) for _ in range(1000)])
    watcher = make_watcher(gateway, HandOff(), channel, expires_in=5, reconnect_delay=0.02).start()

    assert await watcher.wait(timeout=2) is False
    assert watcher.state == EXPIRED
    connections = channel.connections
    await asyncio.sleep(0.1)
    assert channel.connections == connections
    assert all(task.done() for task in watcher._tasks)
    with pytest.raises(ChargeExpired):
        await watcher.check_now()
    assert watcher.snapshot()["expired"] is True


@pytest.mark.asyncio
async def test_failed_hand_off_is_retried_by_next_signal():
    handoff = HandOff(failures=1)
    watcher = make_watcher(FakeGateway([CHARGE_PAID]), handoff, live=False).start()

    assert await watcher.wait(timeout=2)
    assert handoff.calls == ["poll", "poll"]


@pytest.mark.asyncio
async def test_stop_cancels_everything():
    gateway = FakeGateway()
    handoff = HandOff()
    watcher = make_watcher(gateway, handoff, FakeChannel()).start()
    await asyncio.sleep(0.03)

    await watcher.stop()
    checks = gateway.checks
    gateway.statuses = [CHARGE_PAID]
    await asyncio.sleep(0.05)

    assert watcher.state == CLOSED
    assert all(task.done() for task in watcher._tasks)
    assert gateway.checks == checks
    assert handoff.calls == []


@pytest.mark.asyncio
async def test_registry_keeps_one_watcher_per_transaction():
    registry = WatcherRegistry(poll_interval=60, tick_seconds=60)
    gateway = FakeGateway()
    charge = make_charge(live=False)

    first = registry.start(gateway, charge, HandOff())
    second = registry.start(gateway, charge, HandOff())

    assert first is second
    assert registry.get("txn-1") is first
    assert await registry.stop("txn-1")
    assert registry.get("txn-1") is None
    assert not await registry.stop("txn-1")

    registry.start(gateway, charge, HandOff())
    await registry.stop_all()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_registry_drops_finished_watchers_on_start():
    registry = WatcherRegistry(poll_interval=0.01, tick_seconds=0.01)
    done = registry.start(FakeGateway([CHARGE_PAID]), make_charge(live=False), HandOff())
    assert await done.wait(timeout=2)

    waiting = registry.start(FakeGateway(), make_charge(live=False, ref="txn-2"), HandOff())

    assert len(registry) == 1
    assert registry.get("txn-1") is None
    assert registry.get("txn-2") is waiting
    await registry.stop_all()
