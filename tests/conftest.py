"""Shared fixtures for codexgate tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from codexgate.state import GatewayState
from codexgate.store import FileStore

ALLOWED_NUMBER = "15551234567"
ALLOWED_JID = f"{ALLOWED_NUMBER}@s.whatsapp.net"


def build_config(root: Path, **overrides):
    """MagicMock config with real values for everything the gateway reads."""
    workdir = root / "work"
    workdir.mkdir(parents=True, exist_ok=True)
    config = MagicMock()
    config.allowed_number = ALLOWED_NUMBER
    config.allowed_jid = ALLOWED_JID
    config.codex_command = "codex"
    config.codex_extra_args = []
    config.codex_workdir = workdir
    config.codex_timeout_ms = 300000
    config.pc_terminal_command = []
    config.max_queue = 10
    config.max_response_chars = 14000
    config.chunk_size = 3200
    config.command_prefix = "/"
    config.bridge_url = "http://127.0.0.1:3000"
    config.reconnect_delay_ms = 5000
    config.runtime_dir = root / "runtime"
    config.auth_dir = root / "session"
    config.log_raw_events = False
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


@pytest.fixture
def config(tmp_path):
    return build_config(tmp_path)


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "runtime")


@pytest.fixture
def state(config, store):
    return GatewayState(store, config.codex_workdir, config.max_queue)


@pytest.fixture
def make_config(tmp_path):
    """Factory for configs rooted in tmp_path with per-test overrides."""
    def _make(**overrides):
        return build_config(tmp_path, **overrides)
    return _make
