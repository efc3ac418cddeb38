"""
Shared fixtures: an in-memory store and in-process fakes for the panel and the mailer.
"""
import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from database import Order, create_session_factory, init_db
from lifecycle import OrderLifecycle
from panel import PanelError, ProvisionResult, ServerResources, ServerStatus


class FakePanel:
    """Records every call; `fail_on[action]` is True or a set of server/order ids that raise."""

    def __init__(self, events=None):
        self.calls = []
        self.events = events if events is not None else []
        self.fail_on = {}
        self.create_status = "success"
        self._created = 0

    def _record(self, action, key):
        self.calls.append((action, key))
        self.events.append(("panel", action))
        targets = self.fail_on.get(action)
        if targets is True or (targets and key in targets):
            raise PanelError(
                f"Panel '{action}' failed: connection refused",
                action=action,
                request={"action": action, "key": key},
                response={"status_code": 502, "body": {"error": "connection refused"}},
            )

    def count(self, action):
        return sum(1 for name, _ in self.calls if name == action)

    async def create(self, order_id, server_details):
        self._record("create", order_id)
        if self.create_status != "success":
            return ProvisionResult(status="provisioning", raw={"status": "provisioning"})
        self._created += 1
        server_id = f"srv-{self._created}"
        return ProvisionResult(
            status="success",
            server_id=server_id,
            connection_info={"ip": "10.0.0.5", "port": 25565},
            raw={"status": "success", "serverId": server_id},
        )

    async def suspend(self, server_id):
        self._record("suspend", server_id)
        return {"success": True}

    async def unsuspend(self, server_id):
        self._record("unsuspend", server_id)
        return {"success": True}

    async def terminate(self, server_id):
        self._record("terminate", server_id)
        return {"success": True}

    async def power(self, server_id, signal):
        self._record("power", server_id)
        return {"success": True, "signal": signal}

    async def status(self, server_id):
        self._record("status", server_id)
        return ServerStatus(current_state="running", is_suspended=False, resources=ServerResources(uptime=42))


class FakeNotifier:
    def __init__(self, events=None):
        self.sent = []
        self.events = events if events is not None else []
        self.fail_actions = set()

    async def send(self, action, to, **params):
        self.sent.append((action, to, params))
        self.events.append(("email", action))
        return "failed" if action in self.fail_actions else "sent"

    def actions(self):
        return [action for action, _, _ in self.sent]


@pytest_asyncio.fixture
async def session_factory():
    factory = create_session_factory(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    engine = factory.kw["bind"]
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def events():
    return []


@pytest.fixture
def panel(events):
    return FakePanel(events)


@pytest.fixture
def notifier(events):
    return FakeNotifier(events)


@pytest.fixture
def lifecycle(session_factory, panel, notifier):
    return OrderLifecycle(session_factory, panel, notifier)


@pytest.fixture
def fetch_order(session_factory):
    async def _fetch(order_id):
        async with session_factory() as session:
            return await session.get(Order, order_id)
    return _fetch


@pytest.fixture
def new_order(lifecycle):
    async def _new(price="10.00", email="player@example.com", billing_cycle="monthly"):
        return await lifecycle.create_order(
            "user-1",
            email,
            price,
            [{"plan_name": "Minecraft 4GB", "server_name": "survival"}],
            billing_cycle=billing_cycle,
        )
    return _new


@pytest.fixture
def active_order(lifecycle, new_order):
    """Order taken through payment and provisioning; returns its id."""
    async def _active(**kwargs):
        order, invoice = await new_order(**kwargs)
        await lifecycle.confirm_payment(invoice.id, transaction_id=f"txn-{order.id[:8]}")
        await lifecycle.request_provisioning(order.id)
        return order.id
    return _active
