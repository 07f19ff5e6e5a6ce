"""
Default protocol client: JSON-RPC 2.0 over HTTP.

Speaks the tool/prompt/resource subset of the Model Context Protocol that the
protocol-client strategy needs. Connections are opened lazily by the
ExecutionContext (one per platform id) and closed by ``ExecutionContext.aclose``.

Usage:
    client = HttpProtocolClient("https://mcp.example.com", headers={"Authorization": "Bearer xxx"})
    await client.connect()
    result = await client.call_tool("search", {"query": "test"})
    await client.close()
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import aiohttp

from agentexec.agents.exceptions import ProtocolClientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
PROTOCOL_VERSION = "2024-11-05"


class ProtocolClient:
    """Interface the protocol-client strategy relies on."""

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def get_prompt(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def read_resource(self, uri: str) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        return None


ProtocolClientFactory = Callable[[str], Awaitable[ProtocolClient]]


class HttpProtocolClient(ProtocolClient):
    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        platform_id: Optional[str] = None,
    ):
        self.url = url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self.platform_id = platform_id
        self.server_info: Optional[Dict[str, Any]] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        """Open the HTTP session and perform the initialize handshake."""
        if self.is_connected:
            return
        logger.info(f"Connecting to protocol server: {self.url}")
        self._session = aiohttp.ClientSession(
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )
        try:
            result = await self._send_request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "agentexec", "version": "0.1.0"},
                },
            )
            self.server_info = result.get("serverInfo", {})
            await self._send_notification("notifications/initialized", {})
        except BaseException:
            await self.close()
            raise
        logger.info(f"Protocol server connected: {self.server_info}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _send_request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Send a JSON-RPC request and return its ``result`` member."""
        if self._session is None:
            raise ProtocolClientError("Protocol client is not connected", platform_id=self.platform_id)

        self._request_id += 1
        request = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._request_id}
        logger.debug(f"Protocol request: {json.dumps(request)}")

        try:
            async with self._session.post(self.url, json=request) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ProtocolClientError(
                        f"Protocol request '{method}' failed with status {response.status}",
                        platform_id=self.platform_id,
                        context={"status": response.status, "body": body[:500]},
                    )
                payload = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProtocolClientError(
                f"Protocol request '{method}' timed out after {self.timeout}s", platform_id=self.platform_id
            ) from e
        except aiohttp.ClientError as e:
            raise ProtocolClientError(
                f"Protocol request '{method}' error: {e}", platform_id=self.platform_id
            ) from e

        logger.debug(f"Protocol response: {json.dumps(payload, default=str)}")
        if payload.get("error"):
            error = payload["error"]
            raise ProtocolClientError(
                f"Protocol error {error.get('code')}: {error.get('message')}",
                platform_id=self.platform_id,
                context={"error": error},
            )
        return payload.get("result") or {}

    async def _send_notification(self, method: str, params: Dict[str, Any]) -> None:
        if self._session is None:
            return
        try:
            async with self._session.post(self.url, json={"jsonrpc": "2.0", "method": method, "params": params}):
                pass
        except aiohttp.ClientError as e:
            logger.warning(f"Protocol notification '{method}' failed: {e}")

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self._send_request("tools/list", {})
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        logger.info(f"Calling protocol tool: {name}")
        result = await self._send_request("tools/call", {"name": name, "arguments": arguments})
        if result.get("isError"):
            raise ProtocolClientError(
                f"Tool '{name}' returned an error: {_content_text(result.get('content', []))}",
                platform_id=self.platform_id,
            )
        return result

    async def get_prompt(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send_request(
            "prompts/get", {"name": name, "arguments": {k: str(v) for k, v in arguments.items()}}
        )

    async def read_resource(self, uri: str) -> Any:
        return await self._send_request("resources/read", {"uri": uri})


def _content_text(content: List[Dict[str, Any]]) -> str:
    return "\n".join(part.get("text", "") for part in content if part.get("type") == "text")


def http_protocol_client_factory(
    urls: Mapping[str, str], headers: Optional[Mapping[str, Dict[str, str]]] = None
) -> ProtocolClientFactory:
    """
    Build a factory that connects an HttpProtocolClient for a platform id.

    Args:
        urls: platform id -> JSON-RPC endpoint
        headers: optional platform id -> request headers
    """

    async def factory(platform_id: str) -> ProtocolClient:
        url = urls.get(platform_id)
        if not url:
            raise ProtocolClientError(f"No protocol endpoint configured for {platform_id}", platform_id=platform_id)
        client = HttpProtocolClient(url, headers=(headers or {}).get(platform_id), platform_id=platform_id)
        await client.connect()
        return client

    return factory
