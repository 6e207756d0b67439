"""Tests for Config: defaults, TOML files, environment overrides and saving."""

import pytest

from codeloop.config import DEFAULT_MODELS, Config, _default_safe_commands


class TestSafeCommandWhitelist:
    """Tests for the built-in whitelist."""

    def test_read_only_basics_listed(self):
        """Listing, reading and git inspection are whitelisted."""
        whitelist = _default_safe_commands()

        assert {"ls", "pwd", "cat", "echo", "git status"} <= set(whitelist)

    def test_nothing_destructive(self):
        """No command that writes or deletes is on the list."""
        whitelist = _default_safe_commands()

        assert not {"rm", "mv", "cp", "git push", "git commit"} & set(whitelist)


class TestConfigFile:
    """Tests for defaults and TOML loading."""

    def test_defaults(self):
        """A bare Config uses Anthropic with the documented limits."""
        config = Config()

        assert config.llm_provider == "anthropic"
        assert config.llm_model == DEFAULT_MODELS["anthropic"]
        assert config.api_key == ""
        assert config.tool_timeout == 30
        assert config.max_output_bytes == 64 * 1024
        assert config.max_round_trips == 25
        assert config.max_retries == 3
        assert config.retry_delay == 1.0
        assert config.auto_approve is False

    def test_whitelisted_with_arguments(self):
        """Whitelisted commands match with or without arguments."""
        config = Config()

        assert config.is_safe_command("ls") is True
        assert config.is_safe_command("ls -la") is True
        assert config.is_safe_command("git log --oneline") is True
        assert config.is_safe_command("Git Status") is True

    def test_is_safe_command_needs_word_boundary(self):
        """A whitelisted prefix must be a whole word."""
        config = Config()

        assert config.is_safe_command("lsblk") is False
        assert config.is_safe_command("git push --force") is False

    @pytest.mark.parametrize("command", [
        "ls; rm -rf /",
        "cat a && rm b",
        "echo hi | sh",
        "echo hi > file",
        "cat < /etc/shadow",
        "echo `whoami`",
        "echo $(whoami)",
        "ls\nrm -rf /",
        "",
    ])
    def test_is_safe_command_rejects_chaining(self, command):
        """Chaining, redirection and substitution are never safe."""
        assert Config().is_safe_command(command) is False

    @pytest.mark.parametrize("command", [
        "cat /etc/shadow",
        "cat ../secret",
        "ls src/../..",
        "head ~/.bashrc",
        "grep --file=/etc/passwd x",
        "type C:\\secrets.txt",
        "git show '../other'",
    ])
    def test_is_safe_command_rejects_outside_paths(self, command):
        """Arguments that reach outside the workspace need approval."""
        assert Config().is_safe_command(command) is False

    def test_is_safe_command_allows_inner_paths(self):
        config = Config()

        assert config.is_safe_command("cat src/main.py") is True
        assert config.is_safe_command("ls ./tests") is True
        assert config.is_safe_command("grep -n ..foo src") is True

    def test_every_table_applied(self, config_file):
        """Settings from [llm], [execution] and [session] all take effect."""
        config = Config()
        error = config._load_from_file(config_file)

        assert error == ""
        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o-mini"
        assert config.auto_execute_safe is False
        assert config.tool_timeout == 60
        assert config.max_output_bytes == 1024
        assert config.max_round_trips == 7
        assert config.retry_delay == 0.5

    def test_provider_without_model_uses_default(self, temp_dir):
        """Switching provider without a model picks that provider's default."""
        path = temp_dir / "c.toml"
        path.write_text('[llm]\nprovider = "openai"\n')

        config = Config()
        config._load_from_file(path)

        assert config.llm_model == DEFAULT_MODELS["openai"]

    def test_missing_file_reported(self, temp_dir):
        """A missing file is an error message, not an exception."""
        config = Config()
        error = config._load_from_file(temp_dir / "nonexistent.toml")

        assert "not found" in error

    def test_malformed_toml_reported(self, temp_dir):
        """Broken TOML is reported and leaves the defaults alone."""
        broken = temp_dir / "broken.toml"
        broken.write_text("[llm\nprovider = ")

        config = Config()
        assert config._load_from_file(broken) != ""
        assert config.llm_provider == "anthropic"

    def test_load_bad_value(self, temp_dir):
        """Values of the wrong kind are reported."""
        path = temp_dir / "bad.toml"
        path.write_text('[execution]\ntool_timeout = "soon"\n')

        assert Config()._load_from_file(path) != ""


class TestConfigEnv:
    """Tests for environment variable overrides."""

    def test_codeloop_variables(self, monkeypatch):
        """CODELOOP_* variables set their settings, converting numbers."""
        monkeypatch.setenv("CODELOOP_LLM_PROVIDER", "openai")
        monkeypatch.setenv("CODELOOP_LLM_MODEL", "gpt-4o")
        monkeypatch.setenv("CODELOOP_API_KEY", "test-key")
        monkeypatch.setenv("CODELOOP_TOOL_TIMEOUT", "12.5")
        monkeypatch.setenv("CODELOOP_MAX_ROUND_TRIPS", "4")

        config = Config()
        overrides = config._load_from_env()

        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o"
        assert config.api_key == "test-key"
        assert config.tool_timeout == 12.5
        assert config.max_round_trips == 4
        assert "CODELOOP_API_KEY" in overrides

    def test_base_url_changes_provider(self, monkeypatch):
        """A base URL with the anthropic provider means a custom endpoint."""
        monkeypatch.setenv("CODELOOP_BASE_URL", "http://localhost:11434/v1")

        config = Config()
        config._load_from_env()

        assert config.llm_provider == "custom"
        assert config.base_url == "http://localhost:11434/v1"

    def test_anthropic_key_keeps_provider(self, monkeypatch):
        """ANTHROPIC_API_KEY is used as is for the default provider."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")

        config = Config()
        config._load_from_env()

        assert config.api_key == "sk-ant-test"
        assert config.llm_provider == "anthropic"

    def test_openai_api_key_switches_provider(self, monkeypatch):
        """Only an OpenAI key available means the OpenAI provider."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        config = Config()
        config._load_from_env()

        assert config.api_key == "sk-test"
        assert config.llm_provider == "openai"
        assert config.llm_model == DEFAULT_MODELS["openai"]

    def test_codeloop_api_key_takes_priority(self, monkeypatch):
        """CODELOOP_API_KEY wins over provider-specific keys."""
        monkeypatch.setenv("CODELOOP_API_KEY", "primary-key")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic-key")
        monkeypatch.setenv("OPENAI_API_KEY", "openai-key")

        config = Config()
        config._load_from_env()

        assert config.api_key == "primary-key"

    def test_invalid_number_is_recorded(self, monkeypatch):
        """Bad numbers keep the default and show up as errors."""
        monkeypatch.setenv("CODELOOP_TOOL_TIMEOUT", "soon")

        config = Config()
        config._load_from_env()

        assert config.tool_timeout == 30
        assert any("CODELOOP_TOOL_TIMEOUT" in e for e in config.source.errors)

    def test_debug_flag(self, monkeypatch):
        """CODELOOP_DEBUG turns on debug output."""
        monkeypatch.setenv("CODELOOP_DEBUG", "yes")

        config = Config()
        config._load_from_env()

        assert config.debug is True


class TestConfigLoad:
    """Tests for Config.load and its layering."""

    def test_defaults_without_files(self):
        """No files and no env means defaults."""
        config = Config.load()

        assert config.source.loaded_from == "default"
        assert config.llm_provider == "anthropic"

    def test_local_overrides_global(self, temp_workspace, monkeypatch):
        """Local settings win over global ones; env wins over both."""
        global_path = Config.get_global_config_path()
        global_path.parent.mkdir(parents=True, exist_ok=True)
        global_path.write_text(
            '[llm]\nmodel = "global-model"\n\n[execution]\ntool_timeout = 11\n'
        )
        temp_workspace.local_config_path.write_text('[llm]\nmodel = "local-model"\n')

        config = Config.load(temp_workspace)
        assert config.llm_model == "local-model"
        assert config.tool_timeout == 11
        assert config.source.loaded_from == "local"
        assert config.source.global_config == global_path

        monkeypatch.setenv("CODELOOP_LLM_MODEL", "env-model")
        config = Config.load(temp_workspace)
        assert config.llm_model == "env-model"
        assert config.source.loaded_from == "env"

    def test_broken_local_file_is_recorded(self, temp_workspace):
        """A malformed local file is skipped and reported."""
        temp_workspace.local_config_path.write_text("[[[")

        config = Config.load(temp_workspace)

        assert config.source.local_config is None
        assert any(e.startswith("local:") for e in config.source.errors)


class TestConfigSave:
    """Tests for Config.save."""

    def test_save_and_reload(self, temp_dir):
        """Saved settings load back unchanged."""
        config = Config(
            llm_provider="openai",
            llm_model="gpt-4o",
            tool_timeout=12.5,
            max_round_trips=9,
            auto_approve=True,
            debug=True,
        )
        path = config.save(temp_dir / "config.toml")

        loaded = Config()
        assert loaded._load_from_file(path) == ""
        assert loaded.llm_provider == "openai"
        assert loaded.llm_model == "gpt-4o"
        assert loaded.tool_timeout == 12.5
        assert loaded.max_round_trips == 9
        assert loaded.auto_approve is True
        assert loaded.debug is True
        assert loaded.safe_commands == config.safe_commands

    def test_save_defaults_to_global_path(self):
        """Without a path, save writes the global config."""
        path = Config().save()

        assert path == Config.get_global_config_path()
        assert path.exists()


class TestSSLContext:
    """Tests for get_ssl_context."""

    def test_default_verifies(self):
        assert Config().get_ssl_context() is True

    def test_verify_disabled(self):
        assert Config(ssl_verify=False).get_ssl_context() is False

    def test_cert_path(self, temp_dir):
        cert = temp_dir / "ca.pem"
        cert.write_text("cert")

        assert Config(ssl_cert_path=str(cert)).get_ssl_context() == str(cert)

    def test_missing_cert_falls_back(self, temp_dir):
        config = Config(ssl_cert_path=str(temp_dir / "missing.pem"))

        assert config.get_ssl_context() is True
