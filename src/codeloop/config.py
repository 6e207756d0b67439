"""User configuration: defaults, then global TOML, then workspace TOML, then environment."""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from codeloop.workspace import Workspace

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib as tomli
else:
    import tomli


DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "custom": "llama3",
}

_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off")


def _default_safe_commands() -> list[str]:
    """Read-only commands that may run without approval."""
    commands = [
        "ls", "pwd", "cat", "head", "tail",
        "echo", "which", "whoami", "date", "wc", "file",
        "tree", "grep", "rg",
        "git status", "git log", "git diff", "git branch", "git show",
        "python --version", "python3 --version",
        "node --version", "npm --version",
    ]
    if os.name == 'nt':
        commands.extend(["dir", "type", "where", "hostname", "ver"])
    return commands


def names_outside_path(command: str) -> bool:
    """Whether an argument of command points outside the working directory.

    Absolute, home-relative and drive-letter paths count, as does any
    ``..`` component, including in ``--option=value`` forms.
    """
    for word in command.split()[1:]:
        for part in word.strip("'\"").split("="):
            if part.startswith(("/", "~", "\\")):
                return True
            if len(part) > 2 and part[0].isalpha() and part[1:3] in (":\\", ":/"):
                return True
            if ".." in part.replace("\\", "/").split("/"):
                return True
    return False


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


# (table, key) -> (attribute, converter). Empty strings never override.
_FILE_FIELDS: dict[tuple[str, str], tuple[str, Callable[[Any], Any]]] = {
    ("llm", "provider"): ("llm_provider", str),
    ("llm", "model"): ("llm_model", str),
    ("llm", "api_key"): ("api_key", str),
    ("llm", "base_url"): ("base_url", str),
    ("llm", "max_tokens"): ("max_tokens", int),
    ("ssl", "cert_path"): ("ssl_cert_path", str),
    ("ssl", "verify"): ("ssl_verify", _flag),
    ("execution", "tool_timeout"): ("tool_timeout", float),
    ("execution", "max_output_bytes"): ("max_output_bytes", int),
    ("execution", "auto_approve"): ("auto_approve", _flag),
    ("execution", "auto_execute_safe"): ("auto_execute_safe", _flag),
    ("execution", "safe_commands"): ("safe_commands", list),
    ("session", "max_round_trips"): ("max_round_trips", int),
    ("session", "max_retries"): ("max_retries", int),
    ("session", "retry_delay"): ("retry_delay", float),
    ("session", "memory_max_messages"): ("memory_max_messages", int),
    ("session", "memory_max_tokens"): ("memory_max_tokens", int),
}

# Environment variables with a plain attribute behind them
_ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "CODELOOP_LLM_PROVIDER": ("llm_provider", str),
    "CODELOOP_LLM_MODEL": ("llm_model", str),
    "CODELOOP_BASE_URL": ("base_url", str),
    "CODELOOP_TOOL_TIMEOUT": ("tool_timeout", float),
    "CODELOOP_MAX_ROUND_TRIPS": ("max_round_trips", int),
    "CODELOOP_SSL_VERIFY": ("ssl_verify", lambda v: v.strip().lower() not in _FALSY),
}

# First one set wins
_CERT_ENV_VARS = ("CODELOOP_SSL_CERT_PATH", "SSL_CERT_FILE", "REQUESTS_CA_BUNDLE")


@dataclass
class ConfigSource:
    """Which layers contributed to a Config, and what went wrong loading them."""
    global_config: Optional[Path] = None
    local_config: Optional[Path] = None
    loaded_from: str = "default"  # "default", "global", "local", "env"
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        parts = []
        if self.global_config:
            parts.append(f"Global: {self.global_config}")
        if self.local_config:
            parts.append(f"Local: {self.local_config}")
        parts.append(f"Active: {self.loaded_from}")
        if self.errors:
            parts.append(f"Errors: {', '.join(self.errors)}")
        return " | ".join(parts)


@dataclass
class Config:
    """codeloop configuration."""

    # LLM settings
    llm_provider: str = "anthropic"  # "anthropic", "openai", or "custom"
    llm_model: str = DEFAULT_MODELS["anthropic"]
    api_key: str = ""
    base_url: str = ""  # For custom OpenAI-compatible endpoints
    max_tokens: int = 4096

    # SSL/TLS settings (for enterprise environments)
    ssl_cert_path: str = ""
    ssl_verify: bool = True

    # Execution settings
    tool_timeout: float = 30
    max_output_bytes: int = 64 * 1024
    auto_approve: bool = False
    auto_execute_safe: bool = True
    safe_commands: list[str] = field(default_factory=_default_safe_commands)

    # Session settings
    max_round_trips: int = 25
    max_retries: int = 3
    retry_delay: float = 1.0
    memory_max_messages: int = 200
    memory_max_tokens: int = 100_000

    debug: bool = False

    _source: ConfigSource = field(default_factory=ConfigSource)

    @property
    def source(self) -> ConfigSource:
        return self._source

    def get_ssl_context(self) -> str | bool:
        """SSL verification setting for the provider HTTP clients.

        Returns:
            The CA bundle path when ssl_cert_path points at an existing file
            (tried as given, then next to each loaded config file); False
            when verification is off; True otherwise.
        """
        if self.ssl_cert_path:
            candidates = [Path(self.ssl_cert_path).expanduser()]
            for config_file in (self._source.global_config, self._source.local_config):
                if config_file:
                    candidates.append(config_file.parent / self.ssl_cert_path)
            for candidate in candidates:
                if candidate.exists():
                    return str(candidate)
        return True if self.ssl_verify else False

    @classmethod
    def get_global_config_path(cls) -> Path:
        from codeloop.workspace import Workspace
        return Workspace.global_config_path()

    @classmethod
    def load(cls, workspace: "Optional[Workspace]" = None, debug: bool = False) -> "Config":
        """Build a config from every layer, later layers winning.

        1. Global config (~/.codeloop/config.toml or %APPDATA%/codeloop/config.toml)
        2. Local config (.codeloop/config.toml in the workspace)
        3. Environment variables

        A malformed file is skipped and recorded in source.errors.
        """
        config = cls()

        config._load_layer("global", cls.get_global_config_path(), debug)
        if workspace is not None and workspace.is_initialized:
            config._load_layer("local", workspace.local_config_path, debug)

        env_overrides = config._load_from_env()
        if env_overrides:
            config._source.loaded_from = "env"
            _debug(debug, f"Env overrides: {', '.join(env_overrides)}")

        _debug(debug, f"Provider: {config.llm_provider}, Model: {config.llm_model}")
        _debug(debug, f"API Key: {'set' if config.api_key else 'NOT SET'}")
        return config

    def _load_layer(self, layer: str, path: Optional[Path], debug: bool) -> None:
        if path is None or not path.exists():
            _debug(debug, f"No {layer} config at: {path}")
            return
        error = self._load_from_file(path)
        if error:
            self._source.errors.append(f"{layer}: {error}")
            _debug(debug, f"Error loading {layer}: {error}", warning=True)
            return
        setattr(self._source, f"{layer}_config", path)
        self._source.loaded_from = layer
        _debug(debug, f"Loaded {layer}: {path}")

    def _load_from_file(self, path: Path) -> str:
        """Apply one TOML file.

        Returns:
            Empty string on success, otherwise an error message.
        """
        try:
            with open(path, "rb") as f:
                data = tomli.load(f)
        except FileNotFoundError:
            return f"File not found: {path}"
        except (OSError, tomli.TOMLDecodeError) as e:
            return str(e)

        try:
            self._apply(data)
        except (TypeError, ValueError) as e:
            return f"{path}: {e}"
        return ""

    def _apply(self, data: dict) -> None:
        updates = {}
        for (table, key), (attr, convert) in _FILE_FIELDS.items():
            section = data.get(table, {})
            if not isinstance(section, dict) or key not in section:
                continue
            value = section[key]
            if value == "" or value == []:
                continue
            updates[attr] = convert(value)
        if "debug" in data:
            updates["debug"] = _flag(data["debug"])

        # A provider switch without a model picks that provider's default
        if "llm_provider" in updates and "llm_model" not in updates:
            updates["llm_model"] = DEFAULT_MODELS.get(updates["llm_provider"], self.llm_model)

        for attr, value in updates.items():
            setattr(self, attr, value)

    def _load_from_env(self) -> list[str]:
        """Apply environment variables.

        Returns:
            Names of the variables that were applied.
        """
        applied = []

        for var, (attr, convert) in _ENV_FIELDS.items():
            raw = os.environ.get(var)
            if not raw:
                continue
            try:
                setattr(self, attr, convert(raw))
            except ValueError:
                self._source.errors.append(f"env: {var}={raw!r} is not a valid {convert.__name__}")
                continue
            applied.append(var)

        # A base URL alone means an OpenAI-compatible server
        if "CODELOOP_BASE_URL" in applied and self.llm_provider == "anthropic":
            self.llm_provider = "custom"

        key_var = self._api_key_var()
        if key_var:
            self.api_key = os.environ[key_var]
            applied.append(key_var)
            if key_var == "OPENAI_API_KEY" and self.llm_provider == "anthropic":
                self.llm_provider = "openai"
                self.llm_model = DEFAULT_MODELS["openai"]

        for var in _CERT_ENV_VARS:
            if os.environ.get(var):
                self.ssl_cert_path = os.environ[var]
                applied.append(var)
                break

        if os.environ.get("CODELOOP_DEBUG", "").lower() in _TRUTHY:
            self.debug = True
            applied.append("CODELOOP_DEBUG")

        return applied

    def _api_key_var(self) -> Optional[str]:
        """Pick the environment variable to take the API key from, if any."""
        if os.environ.get("CODELOOP_API_KEY"):
            return "CODELOOP_API_KEY"
        provider_var = {"openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY"}.get(
            self.llm_provider
        )
        if provider_var and os.environ.get(provider_var):
            return provider_var
        if self.api_key:
            return None
        for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
            if os.environ.get(var):
                return var
        return None

    def is_safe_command(self, command: str) -> bool:
        """Whether command starts with a whitelisted command and does nothing else.

        Chaining, pipes, redirection and substitution all make a command
        unsafe regardless of how it starts. So do arguments that reach
        outside the workspace, such as absolute paths or "..".
        """
        cmd = command.strip().lower()
        if not cmd or any(token in cmd for token in (";", "&", "|", ">", "<", "`", "$(", "\n")):
            return False
        if names_outside_path(cmd):
            return False
        return any(
            cmd == safe or cmd.startswith(safe + " ")
            for safe in (s.lower() for s in self.safe_commands)
        )

    def show_config_info(self) -> str:
        """Human-readable summary of the active settings and where they came from."""
        src = self._source
        lines = [
            "Configuration:",
            f"  Provider: {self.llm_provider}",
            f"  Model: {self.llm_model}",
            f"  API Key: {'configured' if self.api_key else 'NOT SET'}",
            f"  Base URL: {self.base_url or '(default)'}",
            f"  SSL Cert: {self.ssl_cert_path or '(system default)'}",
            f"  SSL Verify: {self.ssl_verify}",
            f"  Tool timeout: {self.tool_timeout:g}s",
            f"  Max output: {self.max_output_bytes} bytes",
            f"  Auto approve: {self.auto_approve}",
            f"  Max round trips: {self.max_round_trips}",
            f"  Memory: {self.memory_max_messages or 'unlimited'} messages, "
            f"{self.memory_max_tokens or 'unlimited'} tokens",
            "",
            "Sources:",
            f"  Global: {src.global_config or f'(not found at {self.get_global_config_path()})'}",
            f"  Local: {src.local_config or '(none)'}",
            f"  Active source: {src.loaded_from}",
        ]
        if src.errors:
            lines.append(f"  Errors: {', '.join(src.errors)}")
        return "\n".join(lines)

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the settings as a commented TOML file (default: the global config)."""
        path = Path(path) if path is not None else self.get_global_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        def toml_bool(value: bool) -> str:
            return "true" if value else "false"

        if self.ssl_cert_path or not self.ssl_verify:
            ssl_lines = [
                "[ssl]",
                f'cert_path = "{self.ssl_cert_path}"',
                f"verify = {toml_bool(self.ssl_verify)}",
            ]
        else:
            ssl_lines = ["# [ssl]", '# cert_path = "/path/to/ca-bundle.crt"', "# verify = true"]

        lines = []
        if self.debug:
            # Top-level keys must come before any table
            lines += ["debug = true", ""]
        lines += [
            "# codeloop configuration",
            "# Environment variables override the local .codeloop/config.toml,",
            "# which overrides this file.",
            "",
            "[llm]",
            '# "anthropic", "openai", or "custom" (OpenAI-compatible base_url)',
            f'provider = "{self.llm_provider}"',
            f'model = "{self.llm_model}"',
            f"max_tokens = {self.max_tokens}",
            "# Keys are read from ANTHROPIC_API_KEY, OPENAI_API_KEY or CODELOOP_API_KEY",
            '# api_key = "sk-..."',
            f'base_url = "{self.base_url}"' if self.base_url else '# base_url = ""',
            "",
            *ssl_lines,
            "",
            "[execution]",
            "# Seconds before a shell command is killed",
            f"tool_timeout = {self.tool_timeout:g}",
            "# Bytes of command output kept for the model",
            f"max_output_bytes = {self.max_output_bytes}",
            "# Run every tool without asking",
            f"auto_approve = {toml_bool(self.auto_approve)}",
            "# Run whitelisted read-only commands without asking",
            f"auto_execute_safe = {toml_bool(self.auto_execute_safe)}",
            "safe_commands = [" + ", ".join(f'"{c}"' for c in self.safe_commands) + "]",
            "",
            "[session]",
            "# Tool round trips allowed per user turn",
            f"max_round_trips = {self.max_round_trips}",
            f"max_retries = {self.max_retries}",
            f"retry_delay = {self.retry_delay:g}",
            "# History kept for the model; 0 means no limit",
            f"memory_max_messages = {self.memory_max_messages}",
            f"memory_max_tokens = {self.memory_max_tokens}",
        ]

        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path


def _debug(enabled: bool, message: str, warning: bool = False) -> None:
    if enabled:
        color = "33" if warning else "90"
        print(f"\033[{color}m[Config] {message}\033[0m")
