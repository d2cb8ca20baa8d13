"""Merged tool registry for the dual MCP client.

The registry is rebuilt from the per-endpoint listings after every
connection outcome, never patched in place.
"""

from typing import Iterator, NamedTuple, Optional

from shared.logging import get_logger
from shared.models import EndpointName, Tool

logger = get_logger(__name__)

# Later entries win name collisions: scoped tools shadow primary ones
ROUTING_ORDER = (EndpointName.PRIMARY, EndpointName.SCOPED)


class RegisteredTool(NamedTuple):
    tool: Tool
    endpoint: EndpointName


class ToolRegistry:
    """
    Read-only mapping of tool name to (tool, owning endpoint).

    Use ``ToolRegistry.merge`` to build one from per-endpoint listings.
    """

    def __init__(self, entries: Optional[dict[str, RegisteredTool]] = None) -> None:
        self._entries: dict[str, RegisteredTool] = dict(entries or {})

    @classmethod
    def merge(cls, listings: dict[EndpointName, list[Tool]]) -> "ToolRegistry":
        """
        Merge per-endpoint tool listings.

        On a name collision the scoped endpoint's tool wins routing.
        """
        entries: dict[str, RegisteredTool] = {}
        for endpoint in ROUTING_ORDER:
            for tool in listings.get(endpoint, []):
                previous = entries.get(tool.name)
                if previous is not None and previous.endpoint != endpoint:
                    logger.debug(
                        "Tool name collision",
                        tool=tool.name,
                        shadowed=previous.endpoint.value,
                        winner=endpoint.value
                    )
                entries[tool.name] = RegisteredTool(tool, endpoint)
        return cls(entries)

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._entries.get(name)

    def endpoint_for(self, name: str) -> Optional[EndpointName]:
        entry = self._entries.get(name)
        return entry.endpoint if entry else None

    def tools(self) -> list[Tool]:
        """Deduplicated tool list, in registration order."""
        return [entry.tool for entry in self._entries.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
