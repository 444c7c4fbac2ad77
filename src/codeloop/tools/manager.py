"""ToolManager — the registry of tools available to a session."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from codeloop.tools.bash import BashTool
from codeloop.tools.edit import EditTool
from codeloop.tools.glob import GlobTool
from codeloop.tools.grep import GrepTool
from codeloop.tools.read import ReadTool
from codeloop.tools.write import WriteTool
from codeloop.types.tools import Tool, ToolDef


class ToolManager:
    """Owns the tool list for a session.

    Usage::

        manager = ToolManager()
        manager.register_defaults()
        ctx = ExecutionContext(cancel_token=token, tools=manager.tools)
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._registry: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: Tool) -> None:
        """Add a tool under its name, replacing any tool with the same name."""
        self._registry[tool.name] = tool

    def register_defaults(self, blocked_commands: tuple[str, ...] = ()) -> None:
        """Create and register the six built-in tools."""
        for tool in (
            ReadTool(),
            WriteTool(),
            EditTool(),
            BashTool(blocked_commands),
            GlobTool(),
            GrepTool(),
        ):
            self.register(tool)

    def unregister(self, name: str) -> Tool | None:
        return self._registry.pop(name, None)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Tool | None:
        """Return the tool with the given name, or None."""
        return self._registry.get(name)

    @property
    def tools(self) -> list[Tool]:
        return list(self._registry.values())

    def get_definitions(self) -> list[ToolDef]:
        """Return all registered tool definitions (for the model's tool schema)."""
        return [tool.definition for tool in self._registry.values()]

    def read_only(self) -> ToolManager:
        """A manager holding only the read-only tools."""
        return ToolManager(t for t in self._registry.values() if t.is_read_only())

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def filter(self, names: Iterable[str]) -> ToolManager:
        """Return a new ToolManager containing only the named tools.

        Tools not present in this manager are silently omitted.
        """
        return ToolManager(
            tool for name in names if (tool := self._registry.get(name)) is not None
        )

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._registry.values())

    def __len__(self) -> int:
        return len(self._registry)

    def __contains__(self, name: object) -> bool:
        return name in self._registry

    def __repr__(self) -> str:
        return f"ToolManager(tools={sorted(self._registry)})"
