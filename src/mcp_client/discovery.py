"""Tool catalog for the MCP Client.

Holds the tools a host advertised during the handshake and
provides lookup and filtering over them.
"""

from collections.abc import Iterable, Iterator
from typing import Any, Optional

from shared.models import ToolDescriptor


class ToolCatalog:
    """
    Read-only snapshot of a tool host's catalog.

    Provides:
    - Lookup by name
    - Case-insensitive search over names and descriptions
    - Translation into the LLM function calling schema

    A catalog is built once per connection and never mutated.
    """

    def __init__(self, tools: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: tuple[ToolDescriptor, ...] = tuple(tools)
        self._by_name: dict[str, ToolDescriptor] = {t.name: t for t in self._tools}

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> list[str]:
        """Tool names in the order the host listed them."""
        return [t.name for t in self._tools]

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Get a tool by name, or None if the host did not advertise it."""
        return self._by_name.get(name)

    def search(self, query: str) -> list[ToolDescriptor]:
        """
        Search tools by name or description.

        Args:
            query: Search query (case-insensitive)

        Returns:
            List of matching tool descriptors
        """
        query_lower = query.lower()
        return [
            t for t in self._tools
            if query_lower in t.name.lower()
            or query_lower in (t.description or "").lower()
        ]

    def to_llm_tools(self) -> list[dict[str, Any]]:
        """Get all tools in OpenAI function calling format."""
        return [t.to_llm_tool() for t in self._tools]
