"""
Tests for the HTTP API, run against the in-memory store with Temporal unavailable.
"""
import httpx
import pytest
import pytest_asyncio

import api
from gateway import CHARGE_PAID, KHQRGateway
from scheduler import BillingScheduler
from watch_loop import WatcherRegistry


class PaidKHQRGateway(KHQRGateway):
    async def check_status(self, transaction_ref):
        return CHARGE_PAID


@pytest.fixture
def registry():
    return WatcherRegistry(poll_interval=60, tick_seconds=60, channel_factory=None)


@pytest_asyncio.fixture
async def client(session_factory, lifecycle, notifier, registry):
    gateways = {
        "standard": KHQRGateway(merchant_currency="USD"),
        "paid": PaidKHQRGateway(merchant_currency="USD"),
    }

    async def no_temporal():
        return None

    api.app.dependency_overrides[api.get_lifecycle] = lambda: lifecycle
    api.app.dependency_overrides[api.get_scheduler] = lambda: BillingScheduler(session_factory, lifecycle, notifier)
    api.app.dependency_overrides[api.get_gateways] = lambda: gateways
    api.app.dependency_overrides[api.get_registry] = lambda: registry
    api.app.dependency_overrides[api.get_temporal_client] = no_temporal

    transport = httpx.ASGITransport(app=api.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    await registry.stop_all()
    api.app.dependency_overrides.clear()


async def checkout(client, gateway="standard"):
    response = await client.post("/checkout", json={
        "user_id": "user-1",
        "customer_email": "player@example.com",
        "items": [{"plan_name": "Minecraft 4GB", "server_name": "survival"}],
        "price": "10.00",
        "gateway": gateway,
    })
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_checkout_creates_order_charge_and_watcher(client, registry):
    data = await checkout(client)

    assert data["qr_code"].startswith("000201")
    assert data["amount"] == "10.00 USD"
    assert data["invoice_number"] == "INV-000001"
    assert data["workflow_id"] is None
    assert registry.get(data["transaction_id"]) is not None

    charge = await client.get(f"/charges/{data['transaction_id']}")
    assert charge.json()["state"] == "polling"
    assert charge.json()["confirmed"] is False

    order = await client.get(f"/orders/{data['order_id']}")
    assert order.json()["status"] == "pending"
    assert order.json()["invoices"][0]["status"] == "unpaid"


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_gateway(client):
    response = await client.post("/checkout", json={
        "user_id": "user-1", "items": [], "price": "10.00", "gateway": "cash",
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_payment_webhook_confirms_and_provisions_once(client, panel):
    data = await checkout(client)
    body = {"transactionId": data["transaction_id"], "status": "paid"}

    first = await client.post(f"/webhooks/payments/{data['invoice_id']}", json=body)
    second = await client.post(f"/webhooks/payments/{data['invoice_id']}", json=body)

    assert first.json()["status"] == "confirmed"
    assert first.json()["order_status"] == "active"
    assert second.json()["status"] == "already_paid"
    assert panel.count("create") == 1


@pytest.mark.asyncio
async def test_payment_webhook_ignores_unpaid_status(client):
    data = await checkout(client)
    response = await client.post(f"/webhooks/payments/{data['invoice_id']}", json={"status": "pending"})
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_manual_check_hands_off_payment(client):
    data = await checkout(client, gateway="paid")

    response = await client.post(f"/charges/{data['transaction_id']}/check")

    assert response.status_code == 200
    assert response.json()["confirmed"] is True
    assert response.json()["confirmed_by"] == "manual"
    order = await client.get(f"/orders/{data['order_id']}")
    assert order.json()["status"] == "active"


@pytest.mark.asyncio
async def test_unknown_charge_and_order_are_404(client):
    assert (await client.post("/charges/nope/check")).status_code == 404
    assert (await client.get("/orders/missing")).status_code == 404


@pytest.mark.asyncio
async def test_close_charge_stops_watcher(client, registry):
    data = await checkout(client)
    response = await client.delete(f"/charges/{data['transaction_id']}")
    assert response.json()["stopped"] is True
    assert registry.get(data["transaction_id"]) is None


@pytest.mark.asyncio
async def test_panel_callback_completes_async_provisioning(client, panel):
    panel.create_status = "provisioning"
    data = await checkout(client)
    confirmed = await client.post(f"/webhooks/payments/{data['invoice_id']}", json={"status": "paid"})
    assert confirmed.json()["order_status"] == "provisioning"

    response = await client.post(f"/webhooks/panel/{data['order_id']}", json={
        "status": "success", "serverId": "srv-42", "connectionInfo": {"ip": "10.0.0.9", "port": 25565},
    })

    assert response.json()["status"] == "active"
    assert response.json()["server_id"] == "srv-42"


@pytest.mark.asyncio
async def test_invalid_transition_is_409(client):
    data = await checkout(client)
    assert (await client.post(f"/admin/orders/{data['order_id']}/suspend", json={})).status_code == 409
    assert (await client.post(f"/orders/{data['order_id']}/power", json={"signal": "start"})).status_code == 409


@pytest.mark.asyncio
async def test_cancel_without_workflow_cancels_directly(client):
    data = await checkout(client)
    response = await client.post(f"/orders/{data['order_id']}/signals/cancel", json={"reason": "changed my mind"})
    assert response.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_workflow_status_unavailable_without_temporal(client):
    assert (await client.get("/orders/any/status")).status_code == 503


@pytest.mark.asyncio
async def test_admin_bulk_actions(client, active_order):
    order_id = await active_order()

    invalid = await client.post("/admin/orders/bulk", json={"action": "reboot", "order_ids": [order_id]})
    assert invalid.status_code == 400

    response = await client.post("/admin/orders/bulk", json={"action": "suspend", "order_ids": [order_id, "missing"]})
    result = response.json()
    assert result["success_count"] == 1
    assert result["fail_count"] == 1
    assert "missing" in result["failures"]


@pytest.mark.asyncio
async def test_admin_billing_endpoints(client):
    await checkout(client)

    summary = (await client.post("/admin/billing/daily-job")).json()
    assert {"reminders_sent", "suspended_count", "renewals_generated", "checked_at"} <= set(summary)

    pending = (await client.get("/admin/billing/pending-reminders")).json()
    assert pending["total_pending"] == 1
