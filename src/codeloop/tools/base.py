"""Tool base class with LLM schema support and argument validation."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from codeloop.config import Config
    from codeloop.workspace import Workspace


class ToolError(Exception):
    """Base class for tool-level errors."""
    pass


class InvalidArguments(ToolError):
    """Arguments did not match the tool's input schema."""

    def __init__(self, tool_name: str, problems: list[str]):
        self.tool_name = tool_name
        self.problems = problems
        super().__init__(
            f"invalid arguments for {tool_name}: {'; '.join(problems)}"
        )


class UnknownTool(ToolError):
    """No tool is registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown tool: {name}")


class DuplicateName(ToolError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"tool '{name}' is already registered")


class ToolExecutionFailure(ToolError):
    """Raised by tools that want to abort with a message for the model."""
    pass


class CancelToken:
    """Thread-safe cancellation flag shared by a turn and its tools."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout elapses. Returns the flag."""
        return self._event.wait(timeout)


@dataclass
class ToolOutcome:
    """Result of a tool execution.

    Attributes:
        success: Whether the tool succeeded.
        output: Output of the tool (partial output on failure).
        error: Error message if failed.
    """
    success: bool
    output: str
    error: str = ""

    @property
    def llm_output(self) -> str:
        """Text sent back to the model as the tool result."""
        if self.success:
            return self.output
        if self.output:
            return f"Error: {self.error}\n\n{self.output}"
        return f"Error: {self.error}"

    @classmethod
    def ok(cls, output: str = "") -> "ToolOutcome":
        """Create a successful result."""
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: str = "") -> "ToolOutcome":
        """Create a failed result."""
        return cls(success=False, output=output, error=error)


@dataclass(frozen=True)
class ToolDescriptor:
    """What the model is told about a tool."""
    name: str
    description: str
    input_schema: dict = field(default_factory=dict)


_JSON_TYPES: dict[str, tuple] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def validate_arguments(tool_name: str, schema: dict, arguments: Any) -> None:
    """Check arguments against a tool's input schema.

    Raises:
        InvalidArguments: Listing every problem found.
    """
    if not isinstance(arguments, dict):
        raise InvalidArguments(tool_name, ["arguments must be an object"])

    properties = schema.get("properties", {})
    problems = []

    for name in schema.get("required", []):
        if name not in arguments:
            problems.append(f"missing required field '{name}'")

    for name, value in arguments.items():
        if name not in properties:
            problems.append(f"unknown field '{name}'")
            continue
        expected = properties[name].get("type")
        if expected not in _JSON_TYPES:
            continue
        # bool is an int subclass; keep it out of integer/number
        if isinstance(value, bool) and expected != "boolean":
            ok = False
        else:
            ok = isinstance(value, _JSON_TYPES[expected])
        if not ok:
            problems.append(
                f"field '{name}' must be of type {expected}, "
                f"got {type(value).__name__}"
            )

    if problems:
        raise InvalidArguments(tool_name, problems)


class Tool(ABC):
    """Base class for all tools.

    To create a new tool:
    1. Subclass Tool
    2. Set name and description
    3. Declare parameters and required, implement execute()
    4. Register it with a ToolRegistry
    """

    name: str = "base"
    description: str = "Base tool"
    requires_approval: bool = False
    read_only: bool = True
    cancellable: bool = False
    # argument name -> description
    parameters: dict[str, str] = {}
    required: tuple[str, ...] = ()

    def __init__(
        self,
        config: "Config" = None,
        workspace: "Workspace" = None,
    ):
        self.config = config
        self.workspace = workspace

    def _resolve_path(self, path: str) -> Path:
        """Resolve path within workspace boundaries.

        Raises:
            ValueError: If path is outside workspace boundaries.
        """
        if self.workspace:
            from codeloop.workspace import WorkspaceError
            try:
                return self.workspace.resolve_path(path)
            except WorkspaceError as e:
                raise ValueError(str(e))

        p = Path(path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return p.resolve()

    def _display_path(self, path: Path) -> str:
        if self.workspace:
            return self.workspace.relative_path(path)
        return str(path)

    @abstractmethod
    def execute(self, **kwargs) -> ToolOutcome:
        """Execute the tool with given arguments.

        Args:
            **kwargs: Tool-specific arguments.

        Returns:
            ToolOutcome with success status and output/error.
        """
        pass

    def get_schema(self) -> dict:
        """Input schema as {"properties": ..., "required": [...]}.

        Built from ``parameters`` (all strings) unless a tool overrides it.
        """
        return {
            "properties": {
                name: {"type": "string", "description": text}
                for name, text in self.parameters.items()
            },
            "required": list(self.required),
        }

    def describe(self) -> ToolDescriptor:
        schema = self.get_schema()
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema={
                "type": "object",
                "properties": schema.get("properties", {}),
                "required": list(schema.get("required", [])),
            },
        )

    def approval_message(self, arguments: dict) -> str:
        """Human-readable description shown when asking for approval."""
        shown = ", ".join(f"{k}={v!r}" for k, v in arguments.items())
        return f"{self.name}({shown})"

    def run(
        self,
        arguments: dict,
        cancel: Optional[CancelToken] = None,
    ) -> ToolOutcome:
        """Validate arguments and execute. Never raises for tool-level problems."""
        try:
            validate_arguments(self.name, self.get_schema(), arguments)
        except InvalidArguments as e:
            return ToolOutcome.fail(str(e))

        kwargs = dict(arguments)
        if self.cancellable:
            kwargs["cancel"] = cancel

        try:
            return self.execute(**kwargs)
        except ToolExecutionFailure as e:
            return ToolOutcome.fail(str(e))
        except (OSError, ValueError) as e:
            return ToolOutcome.fail(f"{self.name} failed: {e}")
