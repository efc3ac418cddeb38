"""
Tests for the game panel client.
"""
import json

import httpx
import pytest

from panel import PanelClient, PanelError


def client_for(handler):
    return PanelClient(endpoint="https://panel.example/rpc", api_key="k", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_create_posts_action_and_parses_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={
            "status": "success",
            "serverId": "a1b2c3",
            "connectionInfo": {"ip": "192.0.2.10", "port": 25565},
        })

    result = await client_for(handler).create("order-1", {"plan_name": "Minecraft 4GB"})

    assert seen["body"] == {"action": "create", "orderId": "order-1", "serverDetails": {"plan_name": "Minecraft 4GB"}}
    assert seen["auth"] == "Bearer k"
    assert result.status == "success"
    assert result.server_id == "a1b2c3"
    assert result.connection_info["port"] == 25565


@pytest.mark.asyncio
async def test_create_without_server_id_is_still_provisioning():
    result = await client_for(lambda request: httpx.Response(200, json={"status": "provisioning"})).create("o", {})
    assert result.status == "provisioning"
    assert result.server_id is None


@pytest.mark.asyncio
async def test_error_response_raises_with_snapshots():
    client = client_for(lambda request: httpx.Response(500, json={"error": "Node out of memory"}))

    with pytest.raises(PanelError) as excinfo:
        await client.suspend("a1b2c3")

    error = excinfo.value
    assert error.action == "suspend"
    assert error.request == {"action": "suspend", "serverId": "a1b2c3"}
    assert error.response["status_code"] == 500
    assert "Node out of memory" in str(error)


@pytest.mark.asyncio
async def test_unreachable_panel_raises_panel_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PanelError, match="unreachable"):
        await client_for(handler).terminate("a1b2c3")


@pytest.mark.asyncio
async def test_power_validates_signal():
    client = client_for(lambda request: httpx.Response(200, json={"success": True}))
    assert (await client.power("a1b2c3", "restart"))["success"] is True
    with pytest.raises(ValueError):
        await client.power("a1b2c3", "reboot")


@pytest.mark.asyncio
async def test_status_parses_resources():
    def handler(request):
        return httpx.Response(200, json={
            "current_state": "running",
            "is_suspended": False,
            "resources": {"memory_bytes": 1024, "cpu_absolute": 12.5, "uptime": 3600},
        })

    status = await client_for(handler).status("a1b2c3")

    assert status.current_state == "running"
    assert status.resources.memory_bytes == 1024
    assert status.resources.cpu_absolute == 12.5
    assert status.resources.disk_bytes == 0
