"""CLI entry point and chat REPL."""

import itertools
import platform
import sys
import threading
from pathlib import Path
from typing import Optional

import click

from codeloop import __version__
from codeloop.config import Config
from codeloop.events import (
    AssistantMessage,
    AssistantNote,
    AwaitingModel,
    EventHandler,
    ToolCallFinished,
    ToolCallStarted,
    TurnAborted,
)
from codeloop.llm import LLMProvider, ToolCall, create_provider
from codeloop.memory import ConversationMemory, RetentionPolicy
from codeloop.permissions import PermissionGate
from codeloop.session import ChatSession
from codeloop.style import (
    approval_box, assistant_footer, assistant_header, bold, cyan, dim, green, red,
    tool_header, yellow,
)
from codeloop.tools import ToolRegistry, build_default_registry
from codeloop.workspace import Workspace, WorkspaceError

# Arrow-key history where the platform has readline
try:
    import readline
except ImportError:
    readline = None


SYSTEM_PROMPT = """You are codeloop, a coding assistant working in the user's terminal.

# Environment
- Workspace: {root}
- Platform: {platform}
- Shell commands run in the workspace root with a {timeout:g}s timeout.

# Tools
{tools}

# Guidelines
- Read files before editing them. edit_file needs an old_string that matches exactly one region.
- Prefer edit_file over write_file for changes to existing files.
- Keep tool calls focused; explain what you changed when you are done.
- If a tool fails, read the error and adjust instead of repeating the same call.
"""

NO_PROVIDER_HELP = """
Set credentials for one of the providers, then start codeloop again:

  Anthropic (default)   export ANTHROPIC_API_KEY='...'
  OpenAI                export OPENAI_API_KEY='...'
  Local server          export CODELOOP_BASE_URL='http://localhost:11434/v1'
                        export CODELOOP_LLM_MODEL='llama3'
"""

MAX_TOOL_OUTPUT_LINES = 20
HISTORY_LENGTH = 1000

# Typed key -> approval reply. Upper case remembers the choice for the session.
_APPROVAL_KEYS = {
    "a": "allow", "y": "allow", "allow": "allow",
    "A": "always", "always": "always",
    "d": "deny", "deny": "deny",
    "N": "never", "n": "never", "never": "never",
}


def build_system_prompt(registry: ToolRegistry, workspace: Workspace, config: Config) -> str:
    return SYSTEM_PROMPT.format(
        root=workspace.root or Path.cwd(),
        platform=f"{platform.system()} {platform.release()}",
        timeout=config.tool_timeout,
        tools=registry.get_tool_descriptions(),
    )


class Spinner:
    """Animated "Thinking..." line shown while the model is working."""

    def __init__(self, message: str = "Thinking", interval: float = 0.1):
        self.message = message
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def _animate(self) -> None:
        for frame in itertools.cycle("-\\|/"):
            sys.stdout.write(f"\r[{frame}] {self.message}...")
            sys.stdout.flush()
            if self._stop.wait(self.interval):
                break

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._animate, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if not self.running:
            return
        self._stop.set()
        self._thread.join(timeout=0.5)
        self._thread = None
        width = len(self.message) + 8
        sys.stdout.write("\r" + " " * width + "\r")
        sys.stdout.flush()


def _truncate_lines(text: str, limit: int = MAX_TOOL_OUTPUT_LINES) -> str:
    lines = text.splitlines()
    if len(lines) <= limit:
        return text
    return "\n".join(lines[:limit]) + "\n" + dim(f"   ... ({len(lines) - limit} more lines)")


def _ask(prompt: str = "  > ") -> Optional[str]:
    """One line from the user, or None at end of input."""
    try:
        return input(prompt).strip()
    except EOFError:
        return None


class TerminalEventHandler(EventHandler):
    """Prints session events to the terminal and asks for approvals."""

    def __init__(self, spinner: bool = True):
        self._spinner = Spinner() if spinner and sys.stdout.isatty() else None

    def _stop_spinner(self) -> None:
        if self._spinner:
            self._spinner.stop()

    def handle_event(self, event) -> None:
        if isinstance(event, AwaitingModel):
            if self._spinner:
                self._spinner.message = "Thinking" if event.round_trip == 1 else "Continuing"
                self._spinner.start()
            return

        self._stop_spinner()

        if isinstance(event, ToolCallStarted):
            print(tool_header(event.call.name))
            summary = ", ".join(f"{k}={v!r}"[:80] for k, v in event.call.arguments.items())
            print(dim(f"{event.call.name}({summary})"))
        elif isinstance(event, ToolCallFinished):
            if not event.outcome.success:
                print(red(f"[Error] {event.outcome.error}"))
            if event.outcome.output:
                print(_truncate_lines(event.outcome.output))
        elif isinstance(event, AssistantMessage):
            print(yellow(event.text) if event.synthetic else event.text)
        elif isinstance(event, AssistantNote):
            print(event.text)
        elif isinstance(event, TurnAborted):
            print(red(f"\n[Turn aborted: {event.reason}]"))

    def request_approval(self, call: ToolCall, description: str) -> str:
        """Show the approval box and read the user's choice.

        Anything unrecognized, end of input, or a non-interactive stdin
        denies.
        """
        self._stop_spinner()
        print()
        print(approval_box(call.name, description))

        if not sys.stdin.isatty():
            print("  > [Denying in non-interactive mode]")
            return "deny"

        raw = _ask()
        if raw is None:
            return "deny"
        if raw.lower() not in ("f", "feedback"):
            return _APPROVAL_KEYS.get(raw, _APPROVAL_KEYS.get(raw.lower(), "deny"))

        print(cyan("  What should the assistant do instead?"))
        feedback = _ask()
        if not feedback:
            print("  [No feedback given, denying]")
            return "deny"
        return f"feedback:{feedback}"


class InputHistory:
    """Persists readline history to a file between sessions."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> None:
        if readline is None:
            return
        readline.set_history_length(HISTORY_LENGTH)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                readline.read_history_file(str(self.path))
        except OSError as e:
            print(dim(f"[Could not load input history: {e}]"))

    def save(self) -> None:
        if readline is None:
            return
        try:
            readline.write_history_file(str(self.path))
        except OSError as e:
            print(dim(f"[Could not save input history: {e}]"))


class CodeloopREPL:
    """Interactive chat REPL."""

    # name -> (method, help line); aliases share a method and have no help
    COMMANDS = {
        "help": ("_cmd_help", "Show this help"),
        "quit": ("_cmd_quit", "Exit (also /exit, Ctrl+D)"),
        "exit": ("_cmd_quit", None),
        "clear": ("_cmd_clear", "Forget the conversation so far"),
        "tools": ("_cmd_tools", "List the tools the assistant can use"),
        "config": ("_cmd_config", "Show the active configuration"),
        "auto": ("_cmd_auto", "Toggle running tools without asking"),
        "history": ("_cmd_history", "Show the conversation so far"),
    }

    def __init__(
        self,
        config: Config = None,
        workspace: Workspace = None,
        read_only: bool = False,
        auto: bool = False,
        provider: Optional[LLMProvider] = None,
    ):
        self.workspace = workspace or Workspace()
        self.config = config or Config.load(workspace=self.workspace)
        self.read_only = read_only

        self.permission_gate = PermissionGate(config=self.config, auto_mode=auto)
        self.registry = build_default_registry(
            workspace=self.workspace, config=self.config, read_only=read_only
        )
        self.handler = TerminalEventHandler()
        self.llm = provider or create_provider(self.config)
        self.session = self._new_session() if self.llm else None

        history_dir = self.workspace.config_dir or Workspace.global_config_dir()
        self.history = InputHistory(history_dir / "history")
        self.history.load()
        self._running = False

    def _new_session(self) -> ChatSession:
        # A limit of 0 in the config means unlimited
        policy = RetentionPolicy(
            max_messages=self.config.memory_max_messages or None,
            max_tokens=self.config.memory_max_tokens or None,
        )
        return ChatSession(
            provider=self.llm,
            registry=self.registry,
            handler=self.handler,
            memory=ConversationMemory(policy),
            max_round_trips=self.config.max_round_trips,
            system_prompt=build_system_prompt(self.registry, self.workspace, self.config),
            permission_gate=self.permission_gate,
            debug=self.config.debug,
        )

    def _get_prompt(self) -> str:
        flags = [
            name for name, on in (
                ("auto", self.permission_gate.auto_mode),
                ("read-only", self.read_only),
            ) if on
        ]
        return f"[{' '.join(flags)}] > " if flags else "> "

    def _print_banner(self) -> None:
        print(bold(f"codeloop v{__version__}"))
        print(f"Provider: {self.config.llm_provider} | Model: {self.config.llm_model}")
        if self.workspace.is_initialized:
            print(f"Workspace: {self.workspace.root}")
        else:
            print(f"Workspace: {Path.cwd()} (not initialized, run 'codeloop init')")

    def run(self) -> None:
        """Read and handle lines until /quit or end of input."""
        self._print_banner()
        if not self.session:
            print(red("\n[Error] No LLM provider configured."))
            print(NO_PROVIDER_HELP)
            return

        for error in self.config.source.errors:
            print(yellow(f"[Config] {error}"))
        print("\nType /help for commands, /quit to exit. Ctrl+C cancels a running turn.\n")

        self._running = True
        try:
            while self._running:
                try:
                    line = input(self._get_prompt()).strip()
                except KeyboardInterrupt:
                    print("\n[Use /quit to exit]")
                    continue
                except EOFError:
                    break
                if line:
                    self.handle_input(line)
        finally:
            self.history.save()

        print("\nGoodbye.")

    def handle_input(self, line: str) -> None:
        if line.startswith("/"):
            self._handle_command(line)
        else:
            self._handle_chat(line)

    def _handle_chat(self, text: str) -> None:
        print(assistant_header())
        if self.session.send(text).aborted:
            print(dim("[You can keep chatting; the conversation so far is kept]"))
        print(assistant_footer())

    def _handle_command(self, line: str) -> None:
        name, _, args = line[1:].partition(" ")
        name = name.lower()
        entry = self.COMMANDS.get(name)
        if entry is None:
            print(f"Unknown command: /{name}")
            print("Type /help for available commands")
            return
        getattr(self, entry[0])(args.strip())

    def _cmd_help(self, args: str) -> None:
        print(bold("Commands:"))
        for name, (_, text) in self.COMMANDS.items():
            if text:
                print(f"  /{name:<9} {text}")
        print()
        print(dim("Ctrl+C while the assistant is working cancels the turn."))

    def _cmd_quit(self, args: str) -> None:
        self._running = False

    def _cmd_clear(self, args: str) -> None:
        self.session.memory.clear()
        print(green("Conversation cleared."))

    def _cmd_tools(self, args: str) -> None:
        for tool in self.registry.list():
            print(f"  {bold(tool.name)}: {tool.description}")

    def _cmd_config(self, args: str) -> None:
        print(self.config.show_config_info())

    def _cmd_auto(self, args: str) -> None:
        gate = self.permission_gate
        gate.auto_mode = not gate.auto_mode
        if gate.auto_mode:
            print(yellow("Auto mode ON: tools run without asking."))
        else:
            print(green("Auto mode OFF: risky tools ask first."))

    def _cmd_history(self, args: str) -> None:
        messages = self.session.memory.snapshot()
        if not messages:
            print(dim("(no messages yet)"))
        for msg in messages:
            if msg.role == "user":
                print(f"{bold('user')}: {msg.content[:200]}")
            elif msg.role == "assistant":
                calls = ", ".join(c.name for c in msg.tool_calls)
                print(f"{cyan('assistant')}: {msg.content[:200]}" + (dim(f" -> {calls}") if calls else ""))
            else:
                marker = red("tool!") if msg.is_error else dim("tool")
                first_line = msg.content.splitlines()[0] if msg.content else ""
                print(f"{marker} [{msg.tool_call_id}] {first_line[:100]}")


HELP_EPILOG = """
\b
Settings are read from, in increasing priority:
  ~/.codeloop/config.toml      global
  .codeloop/config.toml        this workspace
  environment variables        ANTHROPIC_API_KEY, OPENAI_API_KEY, CODELOOP_API_KEY,
                               CODELOOP_LLM_PROVIDER, CODELOOP_LLM_MODEL, CODELOOP_BASE_URL,
                               CODELOOP_TOOL_TIMEOUT, CODELOOP_MAX_ROUND_TRIPS, CODELOOP_DEBUG
"""


@click.group(invoke_without_command=True, epilog=HELP_EPILOG)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx, version):
    """codeloop: a terminal coding assistant.

    Without a subcommand, starts the REPL with the configured settings.
    """
    if version:
        click.echo(f"codeloop v{__version__}")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command("init")
@click.argument("path", required=False, type=click.Path(file_okay=False))
def init_cmd(path):
    """Make PATH (default: the current directory) a workspace.

    Tools may only touch files inside the workspace. Settings in its
    .codeloop/config.toml override the global ones.
    """
    target = Path(path).resolve() if path else Path.cwd()
    workspace = Workspace(target)
    try:
        existing = workspace.metadata()
    except WorkspaceError as e:
        click.echo(red(f"[Warning] {e}; reinitializing"))
        existing = None
    if existing:
        click.echo(f"Workspace already initialized at: {target} (created {existing.created})")
        return

    workspace.init(target)
    click.echo(f"Workspace initialized at: {workspace.root}")
    click.echo("Created .codeloop/ with config.toml and workspace.json")


def _apply_overrides(config: Config, provider, model, base_url, max_round_trips) -> None:
    """Command-line options win over every config layer."""
    if provider:
        config.llm_provider = provider
    if model:
        config.llm_model = model
    if base_url:
        config.base_url = base_url
        # A bare base URL points at an OpenAI-compatible server
        if not provider and config.llm_provider == "anthropic":
            config.llm_provider = "custom"
    if max_round_trips:
        config.max_round_trips = max_round_trips


@cli.command("run")
@click.option("--provider", "-p", type=click.Choice(["anthropic", "openai", "custom"]),
              help="LLM provider")
@click.option("--model", type=str, help="Model name (e.g. gpt-4o, claude-sonnet-4-20250514, llama3)")
@click.option("--base-url", type=str, help="Base URL of an OpenAI-compatible API")
@click.option("--auto", "-a", is_flag=True, help="Run tools without asking for approval")
@click.option("--read-only", is_flag=True, help="Only offer tools that cannot change anything")
@click.option("--max-round-trips", type=click.IntRange(min=1),
              help="Tool round trips allowed per message")
def run(provider, model, base_url, auto, read_only, max_round_trips):
    """Start the REPL, overriding settings for this run.

    \b
    codeloop run -p openai --model gpt-4o
    codeloop run --read-only
    codeloop run --model llama3 --base-url http://localhost:11434/v1
    """
    workspace = Workspace()
    if not workspace.is_initialized:
        # Outside any workspace the current directory is the boundary
        workspace = Workspace(Path.cwd())

    config = Config.load(workspace=workspace)
    _apply_overrides(config, provider, model, base_url, max_round_trips)
    CodeloopREPL(config=config, workspace=workspace, read_only=read_only, auto=auto).run()


@cli.command("config")
@click.option("--global", "global_", is_flag=True, help="Print the global config file")
def config_cmd(global_):
    """Show the active settings and where they came from."""
    if not global_:
        click.echo(Config.load(workspace=Workspace()).show_config_info())
        return

    path = Workspace.global_config_path()
    if not path.exists():
        click.echo(f"Config not found: {path}")
        return
    click.echo(f"Config: {path}\n")
    click.echo(path.read_text(encoding="utf-8"))


def main():
    cli()


if __name__ == "__main__":
    main()
