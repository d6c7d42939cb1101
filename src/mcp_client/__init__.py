"""MCP Client - Tool host connection, discovery and execution.

The MCP Client owns the connection to an out-of-process tool host,
discovers its tool catalog and executes tool calls. It knows nothing
about language models or conversations.
"""

from mcp_client.client import (
    MCPClient,
    MCPClientError,
    MCPConnectionError,
    NotConnectedError,
    ToolInvocationError,
)
from mcp_client.discovery import ToolCatalog

__all__ = [
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "NotConnectedError",
    "ToolInvocationError",
    "ToolCatalog",
]
