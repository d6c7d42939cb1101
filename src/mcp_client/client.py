"""MCP Client for tool discovery and execution.

Owns the connection to an out-of-process tool host (spawned over
stdio, or reached over streamable HTTP), performs the handshake,
caches the tool catalog and exposes a typed call surface.
"""

import asyncio
import json
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, METHOD_NOT_FOUND, CallToolResult, Implementation
from pydantic import AnyUrl
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import ToolHostSettings
from shared.logging import get_logger
from shared.models import ConnectionState, ResourceDescriptor, ToolDescriptor
from mcp_client.discovery import ToolCatalog

logger = get_logger(__name__)

# Raised by the SDK streams when the child process goes away mid-session
_TRANSPORT_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError, ConnectionError):
    """Tool host could not be started, or the handshake did not complete."""
    pass


class NotConnectedError(MCPClientError):
    """Operation attempted without a live connection."""
    pass


class ToolInvocationError(MCPClientError):
    """The tool host reported an error for a specific call."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


def decode_text(text: str) -> Any:
    """Decode a text payload as JSON, returning the text itself if it isn't JSON."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def decode_tool_result(result: CallToolResult) -> Any:
    """
    Decode the payload of a successful tool call.

    The first content item decides the shape: text is JSON-decoded
    when possible, anything else is returned as a plain dict. A call
    with no content falls back to its structured content.
    """
    if result.content:
        first = result.content[0]
        if first.type == "text":
            return decode_text(first.text)
        return first.model_dump(mode="json", exclude_none=True)

    structured = getattr(result, "structuredContent", None)
    return structured if structured is not None else {}


def _error_text(result: CallToolResult) -> str:
    texts = [c.text for c in result.content if c.type == "text"]
    return "\n".join(texts) or "Tool reported an error"


class MCPClient:
    """
    Client for a single MCP tool host.

    Provides methods for:
    - Connecting to and disconnecting from the host
    - Discovering tools and resources
    - Executing tool calls and reading resources

    One client owns at most one connection. Reconnecting after a
    teardown is always an explicit call to ``connect()``.
    """

    def __init__(self, settings: Optional[ToolHostSettings] = None) -> None:
        """
        Initialize MCP Client.

        Args:
            settings: Tool host connection settings
        """
        self.settings = settings or ToolHostSettings()

        self._state = ConnectionState.DISCONNECTED
        self._exit_stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None
        self._catalog: Optional[ToolCatalog] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        """Current connection lifecycle state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the client holds a live, handshaken connection."""
        return self._state == ConnectionState.READY

    @property
    def catalog(self) -> ToolCatalog:
        """The tool catalog discovered during the handshake."""
        self._require_session()
        if self._catalog is None:
            raise NotConnectedError("Tool catalog not loaded")
        return self._catalog

    async def __aenter__(self) -> "MCPClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.disconnect()

    def _require_session(self) -> ClientSession:
        if self._state != ConnectionState.READY or self._session is None:
            raise NotConnectedError("Not connected to MCP server")
        return self._session

    async def _open_transport(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        """Open the configured transport and return its read/write streams."""
        if self.settings.transport == "http":
            read, write, _ = await stack.enter_async_context(
                streamablehttp_client(self.settings.url, headers=self.settings.headers)
            )
            return read, write

        params = StdioServerParameters(
            command=self.settings.command,
            args=self.settings.args,
            env=self.settings.env,
            cwd=self.settings.cwd,
        )
        return await stack.enter_async_context(stdio_client(params))

    async def _open_session(self, stack: AsyncExitStack) -> ClientSession:
        """Open the transport and complete the MCP handshake."""
        read, write = await self._open_transport(stack)
        session = await stack.enter_async_context(
            ClientSession(
                read,
                write,
                read_timeout_seconds=timedelta(seconds=self.settings.request_timeout_seconds),
                client_info=Implementation(
                    name=self.settings.client_name,
                    version=self.settings.client_version,
                ),
            )
        )
        await session.initialize()
        return session

    async def _fetch_tools(self, session: ClientSession) -> list[ToolDescriptor]:
        tools: list[ToolDescriptor] = []
        result = await session.list_tools()
        while True:
            tools.extend(
                ToolDescriptor(
                    name=t.name,
                    description=t.description,
                    input_schema=t.inputSchema or {},
                )
                for t in result.tools
            )
            if not result.nextCursor:
                return tools
            result = await session.list_tools(cursor=result.nextCursor)

    async def _close_stack(self, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception as e:
            logger.error("Error during tool host teardown", error=str(e))

    async def _establish(self) -> None:
        stack = AsyncExitStack()
        try:
            session = await self._open_session(stack)
            tools = await self._fetch_tools(session)
        except Exception as e:
            await self._close_stack(stack)
            logger.warning("Tool host handshake failed", error=str(e))
            raise MCPConnectionError(f"Failed to connect to MCP server: {e}") from e

        self._exit_stack = stack
        self._session = session
        self._catalog = ToolCatalog(tools)

    def _mark_lost(self, error: BaseException) -> None:
        """Record that the transport died underneath an open session."""
        logger.error("Tool host connection lost", error=repr(error))
        self._state = ConnectionState.DISCONNECTED
        self._session = None
        self._catalog = None

    async def connect(self) -> None:
        """
        Spawn or attach to the tool host and perform the handshake.

        Calling while already connected is a no-op.

        Raises:
            MCPConnectionError: If the host cannot be started or the
                handshake does not complete
        """
        async with self._lock:
            if self._state == ConnectionState.READY:
                logger.info("Already connected to MCP server")
                return

            self._state = ConnectionState.CONNECTING
            logger.info(
                "Connecting to MCP server",
                transport=self.settings.transport,
                target=self.settings.url if self.settings.transport == "http" else self.settings.command,
            )

            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.settings.connect_attempts),
                    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                    retry=retry_if_exception_type(MCPConnectionError),
                    reraise=True,
                ):
                    with attempt:
                        await self._establish()
            except BaseException:
                self._state = ConnectionState.DISCONNECTED
                raise

            self._state = ConnectionState.READY
            logger.info("Connected to MCP server", tools=self._catalog.names)

    async def disconnect(self) -> None:
        """
        Tear down the session and transport.

        Safe to call when already disconnected. Must be called on every
        exit path so a spawned host process is not leaked.
        """
        async with self._lock:
            stack, self._exit_stack = self._exit_stack, None
            self._session = None
            self._catalog = None
            self._state = ConnectionState.DISCONNECTED

            if stack is None:
                return

            await self._close_stack(stack)
            logger.info("Disconnected from MCP server")

    async def list_tools(self) -> list[ToolDescriptor]:
        """
        List the tools discovered during the handshake.

        Raises:
            NotConnectedError: If called without a live connection
        """
        return list(self.catalog)

    async def list_resources(self) -> list[ResourceDescriptor]:
        """
        List addressable resources exposed by the tool host.

        Hosts that do not implement resources yield an empty list.

        Raises:
            NotConnectedError: If called without a live connection
            MCPClientError: If the host rejects the request
        """
        session = self._require_session()
        resources: list[ResourceDescriptor] = []

        try:
            result = await session.list_resources()
            while True:
                resources.extend(
                    ResourceDescriptor(
                        uri=str(r.uri),
                        name=r.name,
                        description=r.description,
                        mime_type=r.mimeType,
                    )
                    for r in result.resources
                )
                if not result.nextCursor:
                    return resources
                result = await session.list_resources(cursor=result.nextCursor)
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                self._mark_lost(e)
                raise MCPConnectionError(f"Connection lost while listing resources: {e}") from e
            if e.error.code == METHOD_NOT_FOUND:
                logger.debug("Tool host does not expose resources")
                return []
            raise MCPClientError(f"Error listing resources: {e}") from e
        except _TRANSPORT_ERRORS as e:
            self._mark_lost(e)
            raise MCPConnectionError(f"Connection lost while listing resources: {e!r}") from e

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None
    ) -> Any:
        """
        Execute a tool on the host.

        The name is not checked against the local catalog; the host
        decides whether it exists.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            The decoded tool payload

        Raises:
            NotConnectedError: If called without a live connection
            ToolInvocationError: If the host reports an error
            MCPConnectionError: If the transport dies during the call
        """
        session = self._require_session()
        arguments = arguments or {}

        logger.debug("Calling tool", tool=name, arguments=arguments)

        try:
            result = await session.call_tool(name, arguments)
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                self._mark_lost(e)
                raise MCPConnectionError(f"Connection lost while calling {name}: {e}") from e
            raise ToolInvocationError(name, str(e)) from e
        except _TRANSPORT_ERRORS as e:
            self._mark_lost(e)
            raise MCPConnectionError(f"Connection lost while calling {name}: {e!r}") from e

        if result.isError:
            raise ToolInvocationError(name, _error_text(result))

        return decode_tool_result(result)

    async def read_resource(self, uri: str) -> dict[str, Any]:
        """
        Read a single resource from the host.

        Args:
            uri: Resource URI

        Returns:
            The first contents item of the resource, or an empty dict

        Raises:
            NotConnectedError: If called without a live connection
            MCPClientError: If the host rejects the request
        """
        session = self._require_session()

        try:
            result = await session.read_resource(AnyUrl(uri))
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                self._mark_lost(e)
                raise MCPConnectionError(f"Connection lost while reading {uri}: {e}") from e
            raise MCPClientError(f"Error reading resource {uri}: {e}") from e
        except _TRANSPORT_ERRORS as e:
            self._mark_lost(e)
            raise MCPConnectionError(f"Connection lost while reading {uri}: {e!r}") from e

        if result.contents:
            return result.contents[0].model_dump(mode="json", exclude_none=True)
        return {}
