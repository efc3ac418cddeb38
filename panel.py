"""
Client for the game panel control plane.
Every call is an `action` plus payload posted to a single RPC-style endpoint.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

import config

logger = logging.getLogger(__name__)

POWER_SIGNALS = ("start", "stop", "restart", "kill")


class PanelError(RuntimeError):
    """A panel call failed; request/response snapshots are kept for the provisioning log."""

    def __init__(self, message: str, action: str = "", request: Any = None, response: Any = None):
        super().__init__(message)
        self.action = action
        self.request = request
        self.response = response


@dataclass
class ProvisionResult:
    status: str  # "success" or "provisioning" (completed later by callback)
    server_id: Optional[str] = None
    connection_info: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerResources:
    memory_bytes: int = 0
    cpu_absolute: float = 0.0
    disk_bytes: int = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    uptime: int = 0


@dataclass
class ServerStatus:
    current_state: str
    is_suspended: bool
    resources: ServerResources


class PanelClient:
    def __init__(
        self,
        endpoint: str = config.PANEL_API_URL,
        api_key: str = config.PANEL_API_KEY,
        timeout: float = config.PANEL_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def call(self, action: str, **payload) -> Dict[str, Any]:
        body = {"action": action, **payload}
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise PanelError(f"Panel '{action}' unreachable: {e}", action=action, request=body) from e

        try:
            data = response.json()
        except ValueError:
            data = {"body": response.text}

        if response.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            message = data.get("error") if isinstance(data, dict) else None
            raise PanelError(
                f"Panel '{action}' failed: {message or response.status_code}",
                action=action,
                request=body,
                response={"status_code": response.status_code, "body": data},
            )

        elapsed = time.time() - start_time
        logger.info(f"Panel '{action}' ok (took {elapsed:.3f}s)")
        return data

    async def create(self, order_id: str, server_details: Dict[str, Any]) -> ProvisionResult:
        data = await self.call("create", orderId=order_id, serverDetails=server_details)
        status = data.get("status") or ("success" if data.get("serverId") else "provisioning")
        return ProvisionResult(
            status=status,
            server_id=data.get("serverId"),
            connection_info=data.get("connectionInfo") or data.get("serverDetails") or {},
            raw=data,
        )

    async def power(self, server_id: str, signal: str) -> Dict[str, Any]:
        if signal not in POWER_SIGNALS:
            raise ValueError(f"Invalid power signal. Must be one of: {', '.join(POWER_SIGNALS)}")
        return await self.call("power", serverId=server_id, signal=signal)

    async def suspend(self, server_id: str) -> Dict[str, Any]:
        return await self.call("suspend", serverId=server_id)

    async def unsuspend(self, server_id: str) -> Dict[str, Any]:
        return await self.call("unsuspend", serverId=server_id)

    async def terminate(self, server_id: str) -> Dict[str, Any]:
        return await self.call("terminate", serverId=server_id)

    async def status(self, server_id: str) -> ServerStatus:
        data = await self.call("status", serverId=server_id)
        resources = data.get("resources") or {}
        return ServerStatus(
            current_state=data.get("current_state", "unknown"),
            is_suspended=bool(data.get("is_suspended", False)),
            resources=ServerResources(
                memory_bytes=int(resources.get("memory_bytes", 0)),
                cpu_absolute=float(resources.get("cpu_absolute", 0.0)),
                disk_bytes=int(resources.get("disk_bytes", 0)),
                network_rx_bytes=int(resources.get("network_rx_bytes", 0)),
                network_tx_bytes=int(resources.get("network_tx_bytes", 0)),
                uptime=int(resources.get("uptime", 0)),
            ),
        )
