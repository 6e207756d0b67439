"""Name-to-tool lookup for a session."""

# The list() method shadows the builtin inside the class body, so
# annotations must not be evaluated there.
from __future__ import annotations

from typing import TYPE_CHECKING, Type

from codeloop.tools.base import DuplicateName, Tool, ToolDescriptor, ToolError, UnknownTool

if TYPE_CHECKING:
    from codeloop.config import Config
    from codeloop.workspace import Workspace


class ToolRegistry:
    """Tools by unique name, in registration order.

    Tools registered by class share the registry's config and workspace.
    Once frozen, the set of tools is fixed for the rest of the session.
    """

    def __init__(
        self,
        workspace: "Workspace" = None,
        config: "Config" = None,
    ):
        self._tools: dict[str, Tool] = {}
        self._workspace = workspace
        self._config = config
        self._frozen = False

    def register(self, tool_class: Type[Tool]) -> Tool:
        """Instantiate tool_class with the shared config and workspace and add it.

        Returns:
            The new tool instance.

        Raises:
            DuplicateName: The name is taken.
            ToolError: The registry is frozen.
        """
        tool = tool_class(config=self._config, workspace=self._workspace)
        self.register_instance(tool)
        return tool

    def register_instance(self, tool: Tool) -> None:
        if self._frozen:
            raise ToolError(f"cannot register '{tool.name}': registry is frozen")
        if tool.name in self._tools:
            raise DuplicateName(tool.name)
        self._tools[tool.name] = tool

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> Tool:
        """The tool registered as name.

        Raises:
            UnknownTool: Nothing is registered under that name.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def list(self) -> list[ToolDescriptor]:
        """Descriptors for the model, in registration order."""
        return [tool.describe() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def to_anthropic_tools(self) -> list[dict]:
        from codeloop.llm.anthropic import to_anthropic_tools
        return to_anthropic_tools(self.list())

    def to_openai_tools(self) -> list[dict]:
        from codeloop.llm.openai import to_openai_tools
        return to_openai_tools(self.list())

    def get_tool_descriptions(self) -> str:
        """One "- name: description" line per tool, for the system prompt."""
        return "\n".join(
            f"- {tool.name}: {tool.description}"
            + (" (requires approval)" if tool.requires_approval else "")
            for tool in self._tools.values()
        )


def build_default_registry(
    workspace: "Workspace" = None,
    config: "Config" = None,
    read_only: bool = False,
) -> ToolRegistry:
    """A registry of the built-in tools, in the order the model sees them.

    With read_only=True only tools that never modify anything are included.
    """
    from codeloop.tools.edit import EditFileTool
    from codeloop.tools.execute import ExecuteCommandTool
    from codeloop.tools.read import ReadFileTool
    from codeloop.tools.search import SearchFilesTool
    from codeloop.tools.write import WriteFileTool

    builtin = (ReadFileTool, WriteFileTool, EditFileTool, SearchFilesTool, ExecuteCommandTool)
    registry = ToolRegistry(workspace=workspace, config=config)
    for tool_class in builtin:
        if not read_only or tool_class.read_only:
            registry.register(tool_class)
    return registry
