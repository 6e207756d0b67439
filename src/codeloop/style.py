"""Terminal styling for the REPL.

Colors are ANSI escapes when the terminal supports them. Otherwise each
color falls back to a plain-text prefix so errors and prompts stay
distinguishable in logs and dumb terminals.
"""

import os
import sys


def _supports_color() -> bool:
    """Check if stdout is a terminal that understands ANSI colors."""
    if os.environ.get("FORCE_COLOR"):
        return True
    if os.environ.get("NO_COLOR"):
        return False
    if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
        return False
    if os.name == "nt":
        # Windows Terminal, VS Code, ConEmu and anything setting TERM
        return bool(
            os.environ.get("WT_SESSION")
            or os.environ.get("TERM_PROGRAM") == "vscode"
            or os.environ.get("ConEmuANSI") == "ON"
            or os.environ.get("TERM")
        )
    return True


USE_COLOR = _supports_color()

RULE_WIDTH = 60
_RULE = "─" if USE_COLOR else "-"


def _paint(code: str, text: str, fallback: str = "") -> str:
    if USE_COLOR:
        return f"\033[{code}m{text}\033[0m"
    return f"{fallback}{text}"


def dim(text: str) -> str:
    return _paint("90", text)


def bold(text: str) -> str:
    return _paint("1", text)


def green(text: str) -> str:
    """Success and allow choices."""
    return _paint("32", text, "+ ")


def red(text: str) -> str:
    """Errors, aborts and deny choices."""
    return _paint("31", text, "! ")


def yellow(text: str) -> str:
    """Warnings and synthetic messages."""
    return _paint("33", text, "* ")


def cyan(text: str) -> str:
    return _paint("36", text, "$ ")


def _labelled_rule(label: str, color: str) -> str:
    """A rule of RULE_WIDTH characters with a label in the middle."""
    label = f" {label} "
    left = (RULE_WIDTH - len(label)) // 2
    right = RULE_WIDTH - len(label) - left
    if USE_COLOR:
        return (
            f"\033[{color}m{_RULE * left}\033[0m"
            f"\033[1;{color}m{label}\033[0m"
            f"\033[{color}m{_RULE * right}\033[0m"
        )
    return f"{_RULE * left}{label}{_RULE * right}"


def assistant_header() -> str:
    """Marks the start of a turn's output."""
    return "\n" + _labelled_rule("ASSISTANT", "36")


def assistant_footer() -> str:
    return dim(_RULE * RULE_WIDTH) + "\n"


def tool_header(tool_name: str) -> str:
    """Marks the start of one tool call's output."""
    return _labelled_rule(tool_name.upper()[:24], "33")


def approval_box(tool_name: str, description: str) -> str:
    """The framed prompt shown before a tool that needs approval runs."""
    inner = RULE_WIDTH - 2
    title = f"-- PERMISSION: {tool_name} "
    lines = [yellow("+" + title + "-" * max(0, inner - len(title)) + "+")]
    lines.extend(f"|  {line}" for line in description.split("\n"))
    lines.append("+" + "-" * inner + "+")
    lines.append(
        f"|  {green('[a]llow')}  {green('[A]lways')}  {red('[d]eny')}  "
        f"{red('[N]ever')}  {cyan('[f]eedback')}"
    )
    lines.append("+" + "-" * inner + "+")
    return "\n".join(lines)
