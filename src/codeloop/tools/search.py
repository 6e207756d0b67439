"""Search tool for finding files by name and, optionally, by content."""

import fnmatch
import os
import re
from pathlib import Path

from codeloop.tools.base import Tool, ToolOutcome


MAX_RESULTS = 50


class SearchFilesTool(Tool):
    """Find files matching a filename wildcard, optionally filtered by content."""

    name = "search_files"
    description = (
        "Find files whose name matches a wildcard pattern (e.g. '*.py', 'test_?.txt'), "
        "searching recursively. Optionally give a regex in `content` to list only "
        "files (and lines) containing it"
    )
    parameters = {
        "pattern": "Filename wildcard to match (e.g. '*.py', 'README*')",
        "path": "Optional directory to search in (defaults to the workspace root)",
        "content": "Optional regex; only list files whose content matches",
    }
    required = ("pattern",)

    def execute(self, pattern: str, path: str = None, content: str = None) -> ToolOutcome:
        """Find files matching a wildcard pattern.

        Args:
            pattern: Filename wildcard (`*` and `?`).
            path: Optional directory to search in (defaults to workspace root).
            content: Optional regex; only files containing a match are listed.

        Returns:
            ToolOutcome with matching paths relative to the search root.
        """
        if path:
            try:
                search_root = self._resolve_path(path)
            except ValueError as e:
                return ToolOutcome.fail(str(e))
        elif self.workspace and self.workspace.root:
            search_root = self.workspace.root
        else:
            search_root = Path.cwd()

        if not search_root.is_dir():
            return ToolOutcome.fail(f"Not a directory: {path or search_root}")

        regex = None
        if content:
            try:
                regex = re.compile(content)
            except re.error as e:
                return ToolOutcome.fail(f"Invalid regex in content '{content}': {e}")

        results = []
        truncated = False
        for file_path in self._walk(search_root, pattern):
            if regex is not None:
                hits = self._grep(file_path, regex)
                if not hits:
                    continue
                rel = self._relative(file_path, search_root)
                results.extend(f"{rel}:{num}: {line}" for num, line in hits)
            else:
                results.append(self._relative(file_path, search_root))

            if len(results) > MAX_RESULTS:
                truncated = True
                break

        if not results:
            what = f"matching '{pattern}'"
            if content:
                what += f" containing /{content}/"
            return ToolOutcome.ok(f"No files found {what}")

        if truncated:
            results = results[:MAX_RESULTS]
        output = "\n".join(results)
        if truncated:
            output += f"\n\n... results truncated (showing first {MAX_RESULTS})"
        return ToolOutcome.ok(output)

    def _walk(self, root: Path, pattern: str):
        """Yield files under root whose name matches pattern, in sorted order."""
        for dirpath, dirnames, filenames in os.walk(root):
            # Skip hidden directories
            dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
            for filename in sorted(filenames):
                if fnmatch.fnmatch(filename, pattern):
                    yield Path(dirpath) / filename

    def _grep(self, file_path: Path, regex: re.Pattern) -> list[tuple[int, str]]:
        try:
            text = file_path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            return []
        return [
            (num, line.strip())
            for num, line in enumerate(text.splitlines(), 1)
            if regex.search(line)
        ]

    @staticmethod
    def _relative(file_path: Path, root: Path) -> str:
        try:
            return file_path.relative_to(root).as_posix()
        except ValueError:
            return str(file_path)
