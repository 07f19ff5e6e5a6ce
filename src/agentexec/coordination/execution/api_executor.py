"""
HTTP API strategy and the shared outbound request helper.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from agentexec.agents.definitions import HttpApiAgent, ParameterType
from agentexec.agents.exceptions import AgentConfigurationError, HttpRequestError
from agentexec.utils.templates import render_string

from .base import AgentExecutorBase

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _parse_body(text: str, content_type: str) -> Any:
    if not text:
        return None
    if "json" in content_type or text.lstrip()[:1] in ("{", "["):
        try:
            return json.loads(text)
        except ValueError:
            pass
    return text


async def send_http_request(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Any = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """
    Send one HTTP request and return the parsed response body.

    JSON responses are decoded; anything else is returned as text.

    Raises:
        HttpRequestError: Transport failure, timeout or a status >= 400. The
            error carries the status and response body when there was one.
    """
    method = (method or "GET").upper()
    query = {k: _query_value(v) for k, v in (params or {}).items() if v is not None}

    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                headers=headers,
                params=query or None,
                json=json_body,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                text = await response.text()
                body = _parse_body(text, response.headers.get("Content-Type", ""))
                if response.status >= 400:
                    logger.error(f"{method} {url} returned HTTP {response.status}")
                    raise HttpRequestError(
                        f"{method} {url} failed with HTTP {response.status}",
                        status=response.status,
                        body=body,
                        url=url,
                    )
                return body
    except asyncio.TimeoutError as e:
        logger.error(f"{method} {url} timed out after {timeout}s")
        raise HttpRequestError(f"{method} {url} timed out after {timeout}s", url=url) from e
    except aiohttp.ClientError as e:
        logger.error(f"{method} {url} failed: {e}")
        raise HttpRequestError(f"{method} {url} failed: {e}", url=url) from e


class HttpApiExecutor(AgentExecutorBase):
    """Issues one request; GET parameters go in the query string, others in a JSON body."""

    agent: HttpApiAgent

    def request_data(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            p.key: inputs.get(p.key)
            for p in self.agent.parameters
            if not p.hidden and p.type != ParameterType.SECRET and inputs.get(p.key) is not None
        }

    async def process(self, inputs: Dict[str, Any]) -> Any:
        if not self.agent.url:
            raise AgentConfigurationError(
                "HTTP API agent url is required",
                config_field="url",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        variables = self.template_variables()
        url = render_string(self.agent.url, variables)
        headers = {
            **self.context.user_headers(),
            **{k: render_string(v, variables) for k, v in self.agent.headers.items()},
        }
        method = self.agent.method.upper()
        data = self.request_data(inputs)

        logger.info(f"{method} {url}", extra={"agent_id": self.agent.id})
        if method == "GET":
            return await send_http_request(method, url, headers=headers, params=data)
        return await send_http_request(method, url, headers=headers, json_body=data)
