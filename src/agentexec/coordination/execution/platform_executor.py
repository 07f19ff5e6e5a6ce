"""
External-platform strategy: calls one operation from a platform's
discovered operation catalogue.
"""

import logging
from typing import Any, Dict

from agentexec.agents.definitions import ExternalPlatformAgent, PlatformOperation
from agentexec.agents.exceptions import AgentConfigurationError, InputValidationError
from agentexec.utils.templates import render_value

from .api_executor import send_http_request
from .base import AgentExecutorBase

logger = logging.getLogger(__name__)


def build_operation_request(operation: PlatformOperation, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Split ``values`` across the operation's url, headers, query and body.

    Values the operation does not declare travel in the query for GET and in
    the body otherwise.

    Raises:
        InputValidationError: If a required operation parameter has no value.
    """
    method = operation.method.upper()
    url = operation.url
    headers: Dict[str, str] = {}
    query: Dict[str, Any] = {}
    body: Dict[str, Any] = {}

    declared = {p.name for p in operation.parameters}
    for parameter in operation.parameters:
        value = values.get(parameter.name)
        if value is None or value == "":
            if parameter.required:
                raise InputValidationError(
                    f"Missing required parameter {parameter.name} for operation {operation.id}",
                    parameter_key=parameter.name,
                )
            continue
        if parameter.location == "path":
            url = url.replace("{" + parameter.name + "}", str(value))
        elif parameter.location == "header":
            headers[parameter.name] = str(value)
        elif parameter.location == "body":
            body[parameter.name] = value
        else:
            query[parameter.name] = value

    extra = {k: v for k, v in values.items() if k not in declared and v is not None}
    if method == "GET":
        query.update(extra)
    else:
        body.update(extra)

    return {
        "method": method,
        "url": url,
        "headers": headers,
        "params": query or None,
        "json_body": body if method != "GET" else None,
    }


class ExternalPlatformExecutor(AgentExecutorBase):
    agent: ExternalPlatformAgent

    async def find_operation(self) -> PlatformOperation:
        operations = await self.context.platform_operations(self.agent.platform_id)
        operation = next((o for o in operations if o.id == self.agent.operation_id), None)
        if operation is None:
            raise AgentConfigurationError(
                f"Operation {self.agent.operation_id} not found on platform {self.agent.platform_id}",
                config_field="operation_id",
                config_value=self.agent.operation_id,
                agent_id=self.agent.id,
                task_id=self.task_id,
            )
        return operation

    async def process(self, inputs: Dict[str, Any]) -> Any:
        if not self.agent.operation_id:
            raise AgentConfigurationError(
                "External platform agent requires an operation id",
                config_field="operation_id",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        operation = await self.find_operation()
        values = render_value(dict(inputs), self.template_variables(self.options.variables))
        request = build_operation_request(operation, values)
        request["headers"] = {**self.context.user_headers(), **request["headers"]}

        logger.info(
            f"Calling {operation.id} ({request['method']} {request['url']})",
            extra={"agent_id": self.agent.id},
        )
        return await send_http_request(**request)
