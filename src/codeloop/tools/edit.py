"""edit_file: replace one exact, unique region of a file."""

from codeloop.tools.base import Tool, ToolOutcome
from codeloop.tools.write import generate_unified_diff


def _preview(text: str, limit: int = 50) -> str:
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[:limit] + "..."


class EditFileTool(Tool):
    """Find-and-replace where the search text must occur exactly once."""

    name = "edit_file"
    description = (
        "Edit a file by replacing old_string with new_string. "
        "old_string must match exactly one region of the file; "
        "include surrounding lines to make it unique"
    )
    requires_approval = True
    read_only = False
    parameters = {
        "path": "File to edit, relative to the workspace root",
        "old_string": "Exact text to replace; must occur exactly once in the file",
        "new_string": "Replacement text",
    }
    required = ("path", "old_string", "new_string")

    def execute(self, path: str, old_string: str, new_string: str) -> ToolOutcome:
        """Replace the single occurrence of old_string with new_string.

        Returns:
            ToolOutcome with a diff of the change. Zero or several matches
            fail and leave the file untouched.
        """
        try:
            target = self._resolve_path(path)
        except ValueError as e:
            return ToolOutcome.fail(str(e))

        if not target.exists():
            return ToolOutcome.fail(f"File not found: {path}")
        if not target.is_file():
            return ToolOutcome.fail(f"Not a file: {path}")
        if not old_string:
            return ToolOutcome.fail(f"old_string must not be empty when editing {path}")

        before = target.read_text(encoding="utf-8")
        matches = before.count(old_string)
        if matches != 1:
            if not matches:
                return ToolOutcome.fail(f"no matching region found in {path}")
            return ToolOutcome.fail(
                f"ambiguous: '{_preview(old_string)}' matches {matches} regions in {path}; "
                "provide more context to make it unique"
            )

        after = before.replace(old_string, new_string, 1)
        target.write_text(after, encoding="utf-8")
        return ToolOutcome.ok(f"Edited {path}\n\n{generate_unified_diff(before, after, path)}")

    def approval_message(self, arguments: dict) -> str:
        removed = _preview(arguments.get("old_string", ""), 60)
        added = _preview(arguments.get("new_string", ""), 60)
        return f"Edit {arguments.get('path', '?')}\n- {removed}\n+ {added}"
