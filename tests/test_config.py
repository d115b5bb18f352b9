"""Tests for configuration loading and validation."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from codexgate.config import (
    Config,
    format_config_summary,
    normalize_phone_number,
    parse_bool,
    parse_positive_int,
    parse_string_list,
)
from codexgate.exceptions import ConfigurationError

SETTING_NAMES = (
    "ALLOWED_WHATSAPP_NUMBER", "CODEX_COMMAND", "CODEX_EXTRA_ARGS_JSON",
    "CODEX_WORKDIR", "CODEX_TIMEOUT_MS", "MAX_QUEUE", "MAX_RESPONSE_CHARS",
    "CHUNK_SIZE", "RECONNECT_DELAY_MS", "STATE_ROOT", "AUTH_DIR",
    "RUNTIME_DIR", "WHATSAPP_BRIDGE_URL", "PC_TERMINAL_COMMAND", "LOG_LEVEL",
    "LOG_DIR", "LOG_RAW_EVENTS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in SETTING_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _config(tmp_path, yaml_text: str = "") -> Config:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    if yaml_text:
        (config_dir / "settings.yaml").write_text(yaml_text)
    # An empty .env keeps load_dotenv away from the working directory
    (config_dir / ".env").write_text("")
    return Config(config_dir)


class TestParsers:

    def test_positive_int(self):
        assert parse_positive_int("X", None, 7) == 7
        assert parse_positive_int("X", "42", 7) == 42
        for bad in ("0", "-3", "abc"):
            with pytest.raises(ConfigurationError, match="X must be a positive integer"):
                parse_positive_int("X", bad, 7)

    def test_string_list(self):
        assert parse_string_list("X", None) == []
        assert parse_string_list("X", '["a", "b"]') == ["a", "b"]
        assert parse_string_list("X", ["c"]) == ["c"]
        with pytest.raises(ConfigurationError, match="valid JSON"):
            parse_string_list("X", "[oops")
        with pytest.raises(ConfigurationError, match="array of strings"):
            parse_string_list("X", "[1]")

    def test_bool(self):
        assert parse_bool("true") is True
        assert parse_bool("0") is False
        assert parse_bool(None, True) is True

    def test_phone_number(self):
        assert normalize_phone_number("+49 151 234-567") == "49151234567"
        assert normalize_phone_number("0049151234567") == "49151234567"
        with pytest.raises(ConfigurationError, match="ALLOWED_WHATSAPP_NUMBER is required"):
            normalize_phone_number("")


class TestConfig:

    def test_defaults(self, tmp_path, clean_env):
        clean_env.setenv("ALLOWED_WHATSAPP_NUMBER", "15551234567")
        config = _config(tmp_path)
        config.validate()
        assert config.allowed_jid == "15551234567@s.whatsapp.net"
        assert config.codex_timeout_ms == 300000
        assert config.max_queue == 10
        assert config.max_response_chars == 14000
        assert config.chunk_size == 3200
        assert config.reconnect_delay_ms == 5000
        assert config.codex_extra_args == []
        assert config.pc_terminal_command == []
        assert config.bridge_url == "http://127.0.0.1:3000"
        assert config.codex_workdir == Path.cwd().resolve()
        expected_root = (Path.home() / "memory" / "whatsapp-codex").resolve()
        assert config.state_root == expected_root
        assert config.auth_dir == expected_root / "session"
        assert config.runtime_dir == expected_root / "runtime"
        assert config.log_raw_events is False

    def test_env_overrides_yaml(self, tmp_path, clean_env):
        clean_env.setenv("ALLOWED_WHATSAPP_NUMBER", "15551234567")
        clean_env.setenv("MAX_QUEUE", "3")
        config = _config(tmp_path, "max_queue: 7\nchunk_size: 1000\n")
        assert config.max_queue == 3
        assert config.chunk_size == 1000

    def test_yaml_paths_and_lists(self, tmp_path, clean_env):
        config = _config(tmp_path, "\n".join([
            "allowed_whatsapp_number: '0015551234567'",
            f"state_root: {tmp_path / 'state'}",
            "codex_extra_args: ['--model', 'o4']",
            "pc_terminal_command: ['x-terminal-emulator', '-e']",
            "logging:",
            "  level: DEBUG",
        ]))
        assert config.allowed_number == "15551234567"
        assert config.runtime_dir == (tmp_path / "state" / "runtime").resolve()
        assert config.codex_extra_args == ["--model", "o4"]
        assert config.pc_terminal_command == ["x-terminal-emulator", "-e"]
        assert config.logging_level == "DEBUG"

    def test_missing_number_fails_validation(self, tmp_path, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            _config(tmp_path).validate()
        assert exc_info.value.setting_name == "ALLOWED_WHATSAPP_NUMBER"

    def test_malformed_value_fails_validation(self, tmp_path, clean_env):
        clean_env.setenv("ALLOWED_WHATSAPP_NUMBER", "15551234567")
        clean_env.setenv("CODEX_TIMEOUT_MS", "soon")
        with pytest.raises(ConfigurationError, match="CODEX_TIMEOUT_MS"):
            _config(tmp_path).validate()

    def test_bad_bridge_scheme(self, tmp_path, clean_env):
        clean_env.setenv("ALLOWED_WHATSAPP_NUMBER", "15551234567")
        clean_env.setenv("WHATSAPP_BRIDGE_URL", "ftp://bridge")
        with pytest.raises(ConfigurationError, match="WHATSAPP_BRIDGE_URL"):
            _config(tmp_path).validate()

    def test_windows_command_uses_npm_shim(self, tmp_path, clean_env):
        shim_dir = tmp_path / ".npm-global"
        shim_dir.mkdir()
        (shim_dir / "codex.cmd").write_text("")
        config = _config(tmp_path)
        with patch("codexgate.config.sys.platform", "win32"), \
                patch("codexgate.config.Path.home", return_value=tmp_path):
            assert config.codex_command == str(shim_dir / "codex.cmd")

    def test_summary_masks_number(self, tmp_path, clean_env):
        clean_env.setenv("ALLOWED_WHATSAPP_NUMBER", "15551234567")
        summary = format_config_summary(_config(tmp_path))
        assert "Allowed number: ***4567" in summary
        assert "15551234567" not in summary
        assert "Max queue: 10" in summary
