"""Shared fixtures for the codeloop test suite."""

from pathlib import Path

import pytest

from codeloop.config import Config
from codeloop.llm.base import ToolCall, ToolCalls
from codeloop.workspace import Workspace

# Variables Config._load_from_env reads
_ENV_VARS = (
    "CODELOOP_API_KEY", "CODELOOP_LLM_PROVIDER", "CODELOOP_LLM_MODEL",
    "CODELOOP_BASE_URL", "CODELOOP_TOOL_TIMEOUT", "CODELOOP_MAX_ROUND_TRIPS",
    "CODELOOP_SSL_CERT_PATH", "CODELOOP_SSL_VERIFY", "CODELOOP_DEBUG",
    "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "SSL_CERT_FILE", "REQUESTS_CA_BUNDLE",
)

SAMPLE_SOURCE = '''def hello():
    print("Hello, World!")

class Greeter:
    def greet(self, name):
        return f"Hello, {name}!"

if __name__ == "__main__":
    hello()
'''

SAMPLE_CONFIG = '''[llm]
provider = "openai"
model = "gpt-4o-mini"

[execution]
auto_execute_safe = false
tool_timeout = 60
max_output_bytes = 1024

[session]
max_round_trips = 7
retry_delay = 0.5
'''


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """No real credentials or ~/.codeloop leak into a test."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    home = tmp_path / "home"
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("APPDATA", str(home))


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    """An empty directory, symlinks resolved."""
    path = tmp_path / "work"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def temp_workspace(temp_dir) -> Workspace:
    """An initialized workspace rooted at temp_dir."""
    workspace = Workspace(root=temp_dir)
    workspace.init(temp_dir)
    return workspace


@pytest.fixture
def sample_file(temp_dir) -> Path:
    path = temp_dir / "sample.py"
    path.write_text(SAMPLE_SOURCE)
    return path


@pytest.fixture
def config_file(temp_dir) -> Path:
    """A config.toml that changes one setting in each table."""
    path = temp_dir / "config.toml"
    path.write_text(SAMPLE_CONFIG)
    return path


@pytest.fixture
def fast_config() -> Config:
    """Short timeouts for tests that run real commands."""
    return Config(tool_timeout=5, max_output_bytes=4096)


@pytest.fixture
def make_calls():
    """Build a ToolCalls response from (name, arguments) pairs, numbering ids call_1, call_2, ..."""
    ids = (f"call_{n}" for n in range(1, 10_000))

    def _make(*pairs, text=""):
        calls = tuple(ToolCall(next(ids), name, arguments) for name, arguments in pairs)
        return ToolCalls(calls=calls, text=text)

    return _make
