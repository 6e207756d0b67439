"""Read file tool."""

from pathlib import Path

from codeloop.tools.base import Tool, ToolOutcome


# Larger files are cut off with a note
MAX_READ_BYTES = 256 * 1024


class ReadFileTool(Tool):
    """Read file contents, optionally restricted to a line range."""

    name = "read_file"
    description = (
        "Read the contents of a text file. "
        "Use lines=\"N\" or lines=\"N-M\" (1-based, inclusive) to read part of a file."
    )
    parameters = {
        "path": "File to read, relative to the workspace root",
        "lines": "Optional line range, e.g. \"10\" or \"10-20\" (1-based, inclusive)",
    }
    required = ("path",)

    def execute(self, path: str, lines: str = None) -> ToolOutcome:
        """Read a file's contents.

        Args:
            path: Path to the file.
            lines: Optional line range (e.g., "10-20" or "10").

        Returns:
            ToolOutcome with the file contents, verbatim.
        """
        try:
            file_path = self._resolve_path(path)
        except ValueError as e:
            return ToolOutcome.fail(str(e))

        if not file_path.exists():
            return ToolOutcome.fail(f"File not found: {path}")

        if not file_path.is_file():
            return ToolOutcome.fail(f"Not a file: {path}")

        size = file_path.stat().st_size
        with open(file_path, "rb") as f:
            raw = f.read(MAX_READ_BYTES)
        truncated = size > MAX_READ_BYTES

        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            if not truncated:
                return self._binary_failure(file_path, size)
            # The cut may land inside a multi-byte sequence
            content = raw.decode("utf-8", errors="ignore")
            if "\x00" in content:
                return self._binary_failure(file_path, size)

        if lines:
            file_lines = content.splitlines(keepends=True)
            try:
                start, end = self._parse_line_range(lines, len(file_lines))
            except ValueError:
                return ToolOutcome.fail(
                    f"Invalid line range '{lines}' for {path}: expected \"N\" or \"N-M\""
                )
            if start >= len(file_lines) and file_lines:
                return ToolOutcome.fail(
                    f"Line range '{lines}' is past the end of {path} "
                    f"({len(file_lines)} lines)"
                )
            content = "".join(file_lines[start:end])

        if truncated:
            content += (
                f"\n\n[TRUNCATED: showing first {MAX_READ_BYTES:,} of {size:,} bytes]"
            )

        return ToolOutcome.ok(content)

    def _binary_failure(self, file_path: Path, size: int) -> ToolOutcome:
        return ToolOutcome.fail(
            f"Cannot read {file_path.name}: not a UTF-8 text file ({size:,} bytes)"
        )

    def _parse_line_range(self, lines: str, total: int) -> tuple[int, int]:
        """Parse a line range like '10-20' or '10' into 0-indexed slice bounds."""
        lines = lines.strip()
        if "-" in lines:
            first, last = lines.split("-", 1)
            start = int(first) - 1
            end = int(last)
        else:
            start = int(lines) - 1
            end = start + 1
        if start < 0 or end <= start:
            raise ValueError(lines)
        return start, min(total, end)
