"""write_file: create a file or replace its whole content."""

import difflib

from codeloop.tools.base import Tool, ToolOutcome


def _diff_lines(text: str) -> list[str]:
    lines = text.splitlines(keepends=True)
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    return lines


def generate_unified_diff(old_content: str, new_content: str, path: str) -> str:
    """Unified diff with a/ and b/ headers; empty when nothing changed."""
    hunks = difflib.unified_diff(
        _diff_lines(old_content),
        _diff_lines(new_content),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        lineterm="",
    )
    return "\n".join(line.rstrip("\n") for line in hunks)


class WriteFileTool(Tool):
    name = "write_file"
    description = (
        "Write content to a file, creating it (and any parent directories) "
        "if it doesn't exist or overwriting it if it does"
    )
    requires_approval = True
    read_only = False
    parameters = {
        "path": "File to write, relative to the workspace root",
        "content": "The complete new content of the file",
    }
    required = ("path", "content")

    def execute(self, path: str, content: str) -> ToolOutcome:
        """Write content to path. Overwrites report a diff against the old content."""
        try:
            target = self._resolve_path(path)
        except ValueError as e:
            return ToolOutcome.fail(str(e))
        if target.is_dir():
            return ToolOutcome.fail(f"Cannot write {path}: it is a directory")

        previous = target.read_text(encoding="utf-8", errors="replace") if target.exists() else None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

        size = f"{len(content.encode('utf-8'))} bytes"
        if previous is None:
            return ToolOutcome.ok(f"Created {path} ({size})")
        changes = generate_unified_diff(previous, content, path)
        if not changes:
            return ToolOutcome.ok(f"Overwrote {path} ({size}, no changes)")
        return ToolOutcome.ok(f"Overwrote {path} ({size})\n\n{changes}")

    def approval_message(self, arguments: dict) -> str:
        return (
            f"Write {len(arguments.get('content', ''))} characters "
            f"to {arguments.get('path', '?')}"
        )
