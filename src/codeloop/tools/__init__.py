"""Modular tool system.

Provides:
- Tool base class and ToolOutcome
- ToolRegistry
- Built-in tools: read_file, write_file, edit_file, search_files, execute_command

Adding a new tool:
1. Create tools/mytool.py
2. Subclass Tool, declare its parameters and implement execute()
3. Register it with ToolRegistry.register()
"""

from codeloop.tools.base import (
    CancelToken,
    DuplicateName,
    InvalidArguments,
    Tool,
    ToolDescriptor,
    ToolError,
    ToolExecutionFailure,
    ToolOutcome,
    UnknownTool,
)
from codeloop.tools.registry import ToolRegistry, build_default_registry
from codeloop.tools.read import ReadFileTool
from codeloop.tools.edit import EditFileTool
from codeloop.tools.write import WriteFileTool
from codeloop.tools.search import SearchFilesTool
from codeloop.tools.execute import ExecuteCommandTool

__all__ = [
    "CancelToken",
    "DuplicateName",
    "InvalidArguments",
    "Tool",
    "ToolDescriptor",
    "ToolError",
    "ToolExecutionFailure",
    "ToolOutcome",
    "UnknownTool",
    "ToolRegistry",
    "build_default_registry",
    "ReadFileTool",
    "EditFileTool",
    "WriteFileTool",
    "SearchFilesTool",
    "ExecuteCommandTool",
]
