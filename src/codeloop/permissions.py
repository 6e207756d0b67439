"""Approval gate: decides whether a tool call may run."""

from enum import Enum
from typing import Callable, Optional, TYPE_CHECKING

from codeloop.config import names_outside_path

if TYPE_CHECKING:
    from codeloop.config import Config
    from codeloop.tools.base import Tool


# (tool_name, description) -> "allow" | "always" | "deny" | "never" | "feedback:<text>"
PromptFn = Callable[[str, str], str]

FEEDBACK_PREFIX = "feedback:"


class Permission(Enum):
    """Standing rule for a tool."""
    ASK = "ask"
    ALLOW = "allow"
    DENY = "deny"


class PermissionDenied(Exception):
    """The call may not run."""
    pass


class FeedbackProvided(Exception):
    """The user declined and said what to do instead."""

    def __init__(self, feedback: str):
        self.feedback = feedback
        super().__init__(f"User feedback: {feedback}")


# Used when there is no Config to ask
_FALLBACK_SAFE_COMMANDS = frozenset({
    "ls", "pwd", "cat", "head", "tail", "echo",
    "which", "whoami", "date", "wc", "file", "tree",
})
_SHELL_METACHARACTERS = frozenset(";&|><`$\n")

# reply -> (permits the call, rule remembered for the tool)
_REPLIES: dict[str, tuple[bool, Optional[Permission]]] = {
    "allow": (True, None),
    "always": (True, Permission.ALLOW),
    "deny": (False, None),
    "never": (False, Permission.DENY),
}


class PermissionGate:
    """Holds per-tool rules for one session and asks the user when none applies.

    In auto mode every call is allowed without asking. Tools that never
    change anything skip the gate entirely (see check_tool).
    """

    def __init__(
        self,
        config: "Config" = None,
        auto_mode: bool = False,
        default: Permission = Permission.ASK,
    ):
        self._config = config
        self._default = default
        self._rules: dict[str, Permission] = {}
        self.auto_mode = auto_mode or bool(config and config.auto_approve)

    def set_rule(self, tool_name: str, permission: Permission) -> None:
        self._rules[tool_name] = permission

    def get_permission(self, tool_name: str) -> Permission:
        return self._rules.get(tool_name, self._default)

    def is_safe_command(self, command: str) -> bool:
        """Whether a shell command is on the read-only whitelist."""
        if self._config:
            return self._config.is_safe_command(command)
        words = command.split()
        if not words or _SHELL_METACHARACTERS.intersection(command):
            return False
        if names_outside_path(command):
            return False
        return words[0].lower() in _FALLBACK_SAFE_COMMANDS

    def check(self, tool_name: str, description: str, prompt_fn: PromptFn) -> bool:
        """Apply the standing rule for tool_name, asking via prompt_fn if there is none.

        Returns:
            True when the call may run.

        Raises:
            PermissionDenied: Denied by rule, by the user, or by an
                unrecognized reply.
            FeedbackProvided: The user replied with feedback.
        """
        if self.auto_mode:
            return True

        rule = self.get_permission(tool_name)
        if rule is Permission.ALLOW:
            return True
        if rule is Permission.DENY:
            raise PermissionDenied(f"Tool '{tool_name}' is denied by policy.")

        reply = (prompt_fn(tool_name, description) or "").strip()
        if reply.startswith(FEEDBACK_PREFIX):
            raise FeedbackProvided(reply[len(FEEDBACK_PREFIX):].strip())
        if reply not in _REPLIES:
            raise PermissionDenied(f"Unrecognized reply {reply!r}, denying '{tool_name}'.")

        permitted, remember = _REPLIES[reply]
        if remember is not None:
            self.set_rule(tool_name, remember)
        if not permitted:
            suffix = " from now on" if remember else ""
            raise PermissionDenied(f"User denied '{tool_name}'{suffix}.")
        return True

    def check_tool(
        self,
        tool: "Tool",
        arguments: dict,
        prompt_fn: Optional[PromptFn],
    ) -> bool:
        """Gate one concrete call.

        Calls to tools without requires_approval pass, as do whitelisted
        shell commands while auto_execute_safe is on. Without a prompt_fn
        anything else is denied.
        """
        if not tool.requires_approval or self.auto_mode:
            return True

        command = arguments.get("command")
        auto_safe = self._config.auto_execute_safe if self._config else True
        if (
            tool.name == "execute_command"
            and isinstance(command, str)
            and auto_safe
            and self.is_safe_command(command)
        ):
            return True

        if prompt_fn is None:
            raise PermissionDenied(f"No one to approve '{tool.name}'.")
        return self.check(tool.name, tool.approval_message(arguments), prompt_fn)
