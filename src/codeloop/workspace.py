"""Workspace discovery and the file access boundary for tools.

A workspace is a directory holding a `.codeloop/` folder with a
`workspace.json` marker. Every path a tool touches must resolve (after
following symlinks) to somewhere under the workspace root.
"""

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


WORKSPACE_DIR = ".codeloop"
WORKSPACE_FILE = "workspace.json"
WORKSPACE_VERSION = "1.0"

LOCAL_CONFIG_TEMPLATE = """# codeloop settings for this workspace
# Values here override the global config; environment variables override both.

[llm]
# provider = "anthropic"
# model = "claude-sonnet-4-20250514"

[execution]
# tool_timeout = 30
# auto_approve = false

[session]
# max_round_trips = 25
"""

# Files under .codeloop/ that stay out of version control
_GITIGNORE = "config.toml\nhistory\n"


class WorkspaceError(Exception):
    """A path falls outside the workspace, or the workspace is unusable."""
    pass


@dataclass
class WorkspaceMetadata:
    """Contents of .codeloop/workspace.json."""
    root: str
    created: str
    version: str = WORKSPACE_VERSION

    @classmethod
    def read(cls, path: Path) -> "WorkspaceMetadata":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(root=data["root"], created=data["created"],
                       version=data.get("version", WORKSPACE_VERSION))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise WorkspaceError(f"Unreadable workspace file {path}: {e}") from e

    def write(self, path: Path) -> None:
        path.write_text(json.dumps(asdict(self), indent=2), encoding="utf-8")


def find_workspace_root(start: Path) -> Optional[Path]:
    """Walk up from start to the nearest directory holding a workspace marker."""
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / WORKSPACE_DIR / WORKSPACE_FILE).is_file():
            return candidate
    return None


class Workspace:
    """The project directory tools operate in.

    Created with an explicit root, or discovered from the current directory
    upwards. An undiscovered workspace has no root and imposes no boundary.
    """

    def __init__(self, root: Optional[Path] = None):
        if root is None:
            root = find_workspace_root(Path.cwd())
        self.root: Optional[Path] = Path(root).resolve() if root else None
        self.config_dir: Optional[Path] = self.root / WORKSPACE_DIR if self.root else None

    @property
    def is_initialized(self) -> bool:
        return self.root is not None

    @property
    def local_config_path(self) -> Optional[Path]:
        return self.config_dir / "config.toml" if self.config_dir else None

    @property
    def metadata_path(self) -> Optional[Path]:
        return self.config_dir / WORKSPACE_FILE if self.config_dir else None

    def metadata(self) -> Optional[WorkspaceMetadata]:
        """workspace.json contents, or None when init has not run here."""
        path = self.metadata_path
        if path is None or not path.exists():
            return None
        return WorkspaceMetadata.read(path)

    @staticmethod
    def global_config_dir() -> Path:
        """~/.codeloop, or %APPDATA%/codeloop on Windows."""
        appdata = os.environ.get("APPDATA") if os.name == "nt" else None
        if appdata:
            return Path(appdata) / "codeloop"
        return Path.home() / ".codeloop"

    @staticmethod
    def global_config_path() -> Path:
        return Workspace.global_config_dir() / "config.toml"

    def init(self, path: Optional[Path] = None) -> Path:
        """Create .codeloop/ in path (default: cwd) and make it this workspace's root.

        The marker file is always rewritten; an existing local config or
        .gitignore is left alone.

        Returns:
            The workspace root.
        """
        root = Path(path or Path.cwd()).resolve()
        config_dir = root / WORKSPACE_DIR
        config_dir.mkdir(parents=True, exist_ok=True)

        WorkspaceMetadata(
            root=str(root), created=datetime.now().isoformat()
        ).write(config_dir / WORKSPACE_FILE)

        for name, content in (("config.toml", LOCAL_CONFIG_TEMPLATE), (".gitignore", _GITIGNORE)):
            target = config_dir / name
            if not target.exists():
                target.write_text(content, encoding="utf-8")

        self.root = root
        self.config_dir = config_dir
        return root

    def is_within_bounds(self, path: Path) -> bool:
        """Whether path resolves to somewhere under the root. Always true without a root."""
        if self.root is None:
            return True
        resolved = Path(path).resolve()
        return resolved == self.root or self.root in resolved.parents

    def resolve_path(self, path: str) -> Path:
        """Turn a tool-supplied path into an absolute path inside the workspace.

        Relative paths are taken from the root (or the cwd without one).
        `~` is expanded and symlinks are followed before the bounds check.

        Raises:
            WorkspaceError: If the result lies outside the workspace.
        """
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = (self.root or Path.cwd()) / candidate
        resolved = candidate.resolve()

        if not self.is_within_bounds(resolved):
            raise WorkspaceError(
                f"Access denied: '{path}' is outside workspace boundaries "
                f"(workspace root: {self.root})"
            )
        return resolved

    def relative_path(self, path: Path) -> str:
        """Root-relative form of path for display; other paths are returned as is."""
        if self.root is None:
            return str(path)
        try:
            return str(Path(path).relative_to(self.root))
        except ValueError:
            return str(path)
