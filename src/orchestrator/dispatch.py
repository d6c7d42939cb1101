"""Tool call dispatch for the orchestrator.

Maps tool names from the catalog to invocation closures that check
arguments against the tool's declared schema before calling out.
Every outcome, including failure, becomes text for the conversation.
"""

import json
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from shared.logging import get_logger
from shared.models import ToolCallRequest, ToolDescriptor
from shared.schema import validate_schema
from mcp_client.client import MCPClient, ToolInvocationError
from mcp_client.discovery import ToolCatalog

logger = get_logger(__name__)


ToolInvoker = Callable[[dict[str, Any]], Awaitable[Any]]


class ArgumentParseError(ValueError):
    """Tool call arguments from the model are not a usable JSON object."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ArgumentValidationError(ArgumentParseError):
    """Tool call arguments do not match the tool's input schema."""

    def __init__(self, tool_name: str, errors: list[str]) -> None:
        super().__init__(tool_name, f"Validation failed: {'; '.join(errors)}")
        self.errors = errors


def parse_arguments(request: ToolCallRequest) -> dict[str, Any]:
    """
    Decode the raw argument string of a tool call.

    An empty string means no arguments.

    Raises:
        ArgumentParseError: If the arguments are not a JSON object
    """
    raw = request.raw_arguments.strip()
    if not raw:
        return {}

    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ArgumentParseError(request.tool_name, f"Malformed JSON arguments: {e}") from e

    if not isinstance(arguments, dict):
        raise ArgumentParseError(
            request.tool_name,
            f"Arguments must be a JSON object, got {type(arguments).__name__}"
        )
    return arguments


def format_tool_result(result: Any) -> str:
    """Format a tool result for conversation context."""
    if isinstance(result, str):
        return result
    return json.dumps(result, separators=(",", ":"), ensure_ascii=False, default=str)


def format_tool_error(tool_name: str, error: BaseException) -> str:
    """Human-readable error text the model can react to."""
    if isinstance(error, ArgumentParseError):
        return (
            f"Error executing {tool_name}: {error}. "
            "Call the tool again with arguments as a JSON object matching its schema."
        )
    return f"Error executing {tool_name}: {error}"


class ToolBinding:
    """A catalog tool bound to the closure that invokes it."""

    def __init__(self, descriptor: ToolDescriptor, invoke: ToolInvoker) -> None:
        self.descriptor = descriptor
        self._invoke = invoke

    @property
    def name(self) -> str:
        return self.descriptor.name

    def validate(self, arguments: dict[str, Any]) -> None:
        """
        Check arguments against the tool's input schema.

        Raises:
            ArgumentValidationError: If the arguments do not match
        """
        is_valid, errors = validate_schema(arguments, self.descriptor.input_schema)
        if not is_valid:
            raise ArgumentValidationError(self.name, errors)

    async def __call__(self, arguments: dict[str, Any]) -> Any:
        self.validate(arguments)
        return await self._invoke(arguments)


class ToolDispatcher:
    """
    Routes model tool calls to the tool host.

    Responsibilities:
    - Parse and validate tool call arguments
    - Invoke the bound tool through the MCP Client
    - Turn every outcome into tool-role message text

    One failing call never affects any other call.
    """

    def __init__(self, client: MCPClient, catalog: ToolCatalog) -> None:
        self.client = client
        self._bindings: dict[str, ToolBinding] = {
            tool.name: ToolBinding(tool, partial(client.call_tool, tool.name))
            for tool in catalog
        }

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def get(self, name: str) -> ToolBinding | None:
        return self._bindings.get(name)

    async def _invoke(self, request: ToolCallRequest, arguments: dict[str, Any]) -> Any:
        binding = self._bindings.get(request.tool_name)
        if binding is not None:
            return await binding(arguments)

        # Not advertised: the host still decides whether it exists
        logger.warning("Tool not in catalog, forwarding to host", tool=request.tool_name)
        return await self.client.call_tool(request.tool_name, arguments)

    async def dispatch(self, request: ToolCallRequest) -> str:
        """
        Execute one tool call and return the text to record for it.

        Never raises for failures local to the call.
        """
        tool_name = request.tool_name
        logger.info("Executing tool", tool=tool_name, call_id=request.id)

        try:
            arguments = parse_arguments(request)
            result = await self._invoke(request, arguments)
        except ArgumentParseError as e:
            logger.warning("Rejected tool arguments", tool=tool_name, error=str(e))
            return format_tool_error(tool_name, e)
        except ToolInvocationError as e:
            logger.warning("Tool reported an error", tool=tool_name, error=e.message)
            return format_tool_error(tool_name, e)
        except Exception as e:
            logger.error("Tool execution failed", tool=tool_name, error=str(e), exc_info=True)
            return format_tool_error(tool_name, e)

        logger.info("Tool executed", tool=tool_name)
        return format_tool_result(result)

    async def dispatch_batch(
        self,
        requests: list[ToolCallRequest]
    ) -> list[tuple[ToolCallRequest, str]]:
        """
        Execute a batch sequentially, in the order the model emitted it.

        Returns:
            One (request, content) pair per request, in order
        """
        results = []
        for request in requests:
            results.append((request, await self.dispatch(request)))
        return results
