"""Shell command tool."""

import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

from codeloop.tools.base import CancelToken, Tool, ToolOutcome


DEFAULT_TIMEOUT = 30
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024

# Seconds to wait for the process to die after kill signals
_KILL_WAIT_TIMEOUT = 5
# Seconds the reader gets to hit end of output once the tree is dead
_DRAIN_TIMEOUT = 2
# How often the wait loop checks the cancel token
_POLL_INTERVAL = 0.1


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill whatever is left of a command's process tree, then reap it.

    On Unix the command runs in its own session, so killing the process
    group also stops background jobs the shell left behind, even after
    the shell itself has exited. On Windows taskkill /T takes down the
    tree while the shell is still running.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # group already gone
    elif proc.poll() is None:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError:
            pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


class _OutputCollector:
    """Drains a pipe on a background thread, keeping at most `limit` bytes."""

    def __init__(self, pipe, limit: int):
        self._pipe = pipe
        self._limit = limit
        self._chunks: list[bytes] = []
        self._total = 0
        self.truncated = False
        self._thread = threading.Thread(target=self._read, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _read(self) -> None:
        try:
            while True:
                chunk = self._pipe.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining so the child never blocks on a full pipe
                remaining = self._limit - self._total
                if len(chunk) > remaining:
                    chunk = chunk[:remaining]
                    self.truncated = True
                self._chunks.append(chunk)
                self._total += len(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def finish(self) -> str:
        """Output read so far, after waiting briefly for end of stream."""
        self._thread.join(timeout=_DRAIN_TIMEOUT)
        # Closing while the reader is blocked would wait on its buffer lock
        if not self._thread.is_alive():
            self._pipe.close()
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class ExecuteCommandTool(Tool):
    """Execute shell commands in the workspace root."""

    name = "execute_command"
    description = (
        "Execute a shell command in the workspace root and return its combined "
        "stdout and stderr. Commands that run longer than the configured timeout "
        "are killed, and background processes are stopped when the command exits"
    )
    requires_approval = True
    read_only = False
    cancellable = True
    parameters = {"command": "Shell command to run from the workspace root"}
    required = ("command",)

    @property
    def timeout(self) -> float:
        if self.config:
            return self.config.tool_timeout
        return DEFAULT_TIMEOUT

    @property
    def max_output_bytes(self) -> int:
        if self.config:
            return self.config.max_output_bytes
        return DEFAULT_MAX_OUTPUT_BYTES

    def _cwd(self) -> Path:
        if self.workspace and self.workspace.root:
            return self.workspace.root
        return Path.cwd()

    def execute(self, command: str, cancel: CancelToken = None) -> ToolOutcome:
        """Execute a shell command.

        Args:
            command: The shell command to run.
            cancel: Token checked while the command runs.

        Returns:
            ToolOutcome with command output. Non-zero exit, timeout and
            cancellation are failures carrying whatever output was captured.
        """
        if not command.strip():
            return ToolOutcome.fail("command must not be empty")

        timeout = self.timeout
        popen_kwargs: dict = dict(
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=str(self._cwd()),
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        proc = subprocess.Popen(command, **popen_kwargs)
        collector = _OutputCollector(proc.stdout, self.max_output_bytes)
        collector.start()

        timed_out = False
        cancelled = False
        try:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    proc.wait(timeout=_POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    break
        finally:
            # Also reaps background jobs that outlived the shell
            _kill_process_tree(proc)

        output = collector.finish()
        if collector.truncated:
            output += f"\n[output truncated at {self.max_output_bytes} bytes]"

        if timed_out:
            return ToolOutcome.fail(f"timed out after {timeout:g}s", output=output)
        if cancelled:
            return ToolOutcome.fail("command cancelled", output=output)
        if proc.returncode != 0:
            return ToolOutcome.fail(f"exit code {proc.returncode}", output=output)
        return ToolOutcome.ok(output if output else "(no output)")

    def approval_message(self, arguments: dict) -> str:
        return f"Run: {arguments.get('command', '')}"
