"""Decorator-based tool registration that keeps track of what was registered.

Usage:
    registry = ToolRegistry(server)

    @registry.tool()
    async def gmeet_list_sessions() -> str:
        ...

    return registry.count
"""

from typing import Any, Callable


class ToolRegistry:
    """Wraps ``FastMCP.tool`` and records each registered tool name."""

    def __init__(self, server: Any):
        self.server = server
        self.tools: list[str] = []

    def tool(self, **kwargs) -> Callable[[Callable], Callable]:
        """Register a function as an MCP tool.

        All kwargs are passed through to ``server.tool()``. The recorded name
        is ``kwargs["name"]`` when given, else the function name.
        """

        def decorator(func: Callable) -> Callable:
            registered = self.server.tool(**kwargs)(func)
            self.tools.append(kwargs.get("name", func.__name__))
            return registered

        return decorator

    @property
    def count(self) -> int:
        return len(self.tools)

    def list_tools(self) -> list[str]:
        return list(self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    def __contains__(self, name: str) -> bool:
        return name in self.tools
