"""Configuration management for codexgate.

Loads environment variables (.env) and optional YAML settings
(settings.yaml) into a typed Config object. Environment variables
take precedence over settings.yaml keys, so a plain .env file is
enough to run the gateway. Property getters parse and validate every
value; malformed values raise ConfigurationError.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
    format_config_summary: Human-readable summary for --verify-config.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = structlog.get_logger("codexgate.gateway")

_TRUE_VALUES = ("1", "true", "yes", "on")


def parse_positive_int(name: str, value: Any, fallback: int) -> int:
    """Parse a positive integer setting, returning fallback when unset."""
    if value is None or value == "":
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(
            f'{name} must be a positive integer, got "{value}"',
            setting_name=name,
        ) from None
    if parsed <= 0:
        raise ConfigurationError(
            f'{name} must be a positive integer, got "{value}"',
            setting_name=name,
        )
    return parsed


def parse_string_list(name: str, value: Any, fallback: Optional[List[str]] = None) -> List[str]:
    """Parse a JSON array of strings (or an already-decoded YAML list)."""
    if value is None or value == "":
        return list(fallback or [])
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"{name} must be valid JSON: {e}", setting_name=name,
            ) from None
    if not isinstance(value, list) or any(not isinstance(v, str) for v in value):
        raise ConfigurationError(
            f"{name} must be a JSON array of strings", setting_name=name,
        )
    return value


def parse_bool(value: Any, fallback: bool = False) -> bool:
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def normalize_phone_number(raw: Any) -> str:
    """Reduce a phone number to digits, accepting the 00 international prefix."""
    digits = "".join(ch for ch in str(raw or "") if ch.isdigit())
    if not digits:
        raise ConfigurationError(
            "ALLOWED_WHATSAPP_NUMBER is required (country code + number, digits only)",
            setting_name="ALLOWED_WHATSAPP_NUMBER",
        )
    if digits.startswith("00") and len(digits) > 2:
        digits = digits[2:]
    return digits


class Config:
    """Central configuration manager for codexgate.

    Loads .env and settings.yaml from the config directory. Every
    setting is exposed as a property that reads the environment
    variable first, then the lowercase settings.yaml key, then a
    default. Reads only; nothing mutates a Config after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = Path(config_dir)

        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)
        else:
            # Fall back to a .env in the working directory
            load_dotenv()

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(
                    f"{filename} must contain a mapping", setting_name=filename,
                )
            return loaded
        return {}

    def _raw(self, env_name: str, key: Optional[str] = None) -> Any:
        """Environment variable first, then settings.yaml key."""
        value = os.environ.get(env_name)
        if value is not None and value != "":
            return value
        return self.settings.get(key or env_name.lower())

    def _path(self, env_name: str, fallback: Path, key: Optional[str] = None) -> Path:
        raw = self._raw(env_name, key)
        selected = str(raw).strip() if raw is not None and str(raw).strip() else str(fallback)
        return Path(selected).expanduser().resolve()

    # --- Identity ---

    @property
    def allowed_number(self) -> str:
        """Authorized WhatsApp number, digits only."""
        return normalize_phone_number(self._raw("ALLOWED_WHATSAPP_NUMBER"))

    @property
    def allowed_jid(self) -> str:
        """Authorized direct-chat JID."""
        return f"{self.allowed_number}@s.whatsapp.net"

    # --- Codex CLI ---

    @property
    def codex_command(self) -> str:
        """Codex CLI command.

        On Windows, a default ``codex`` resolves to the npm user shim
        ``~/.npm-global/codex.cmd`` when it exists.
        """
        raw = self._raw("CODEX_COMMAND")
        selected = str(raw).strip() if raw else ""
        selected = selected or "codex"
        if sys.platform != "win32":
            return selected
        if selected.lower() == "codex":
            user_shim = Path.home() / ".npm-global" / "codex.cmd"
            if user_shim.exists():
                return str(user_shim)
        return selected

    @property
    def codex_extra_args(self) -> List[str]:
        """Extra arguments inserted before the prompt marker."""
        return parse_string_list(
            "CODEX_EXTRA_ARGS_JSON",
            self._raw("CODEX_EXTRA_ARGS_JSON", "codex_extra_args"),
        )

    @property
    def codex_workdir(self) -> Path:
        """Default workdir for Codex runs (default: current directory)."""
        return self._path("CODEX_WORKDIR", Path.cwd())

    @property
    def codex_timeout_ms(self) -> int:
        """Per-job timeout in milliseconds (default 5 minutes)."""
        return parse_positive_int(
            "CODEX_TIMEOUT_MS", self._raw("CODEX_TIMEOUT_MS"), 300000
        )

    @property
    def pc_terminal_command(self) -> List[str]:
        """Terminal launcher prefix for /pc on non-Windows hosts."""
        return parse_string_list(
            "PC_TERMINAL_COMMAND", self._raw("PC_TERMINAL_COMMAND"),
        )

    # --- Queue and replies ---

    @property
    def max_queue(self) -> int:
        """Maximum number of waiting jobs (default 10)."""
        return parse_positive_int("MAX_QUEUE", self._raw("MAX_QUEUE"), 10)

    @property
    def max_response_chars(self) -> int:
        """Reply text budget before truncation (default 14000)."""
        return parse_positive_int(
            "MAX_RESPONSE_CHARS", self._raw("MAX_RESPONSE_CHARS"), 14000
        )

    @property
    def chunk_size(self) -> int:
        """Maximum characters per outgoing message (default 3200)."""
        return parse_positive_int("CHUNK_SIZE", self._raw("CHUNK_SIZE"), 3200)

    @property
    def command_prefix(self) -> str:
        return "/"

    # --- Transport ---

    @property
    def bridge_url(self) -> str:
        """Base URL of the local WhatsApp bridge service."""
        raw = self._raw("WHATSAPP_BRIDGE_URL")
        return (str(raw).strip() if raw else "") or "http://127.0.0.1:3000"

    @property
    def reconnect_delay_ms(self) -> int:
        """Delay before reconnecting after a recoverable drop (default 5s)."""
        return parse_positive_int(
            "RECONNECT_DELAY_MS", self._raw("RECONNECT_DELAY_MS"), 5000
        )

    # --- State directories ---

    @property
    def state_root(self) -> Path:
        return self._path(
            "STATE_ROOT", Path.home() / "memory" / "whatsapp-codex"
        )

    @property
    def auth_dir(self) -> Path:
        """Bridge credentials directory."""
        return self._path("AUTH_DIR", self.state_root / "session")

    @property
    def runtime_dir(self) -> Path:
        """Directory for persisted state and transient output files."""
        return self._path("RUNTIME_DIR", self.state_root / "runtime")

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        return self._path("LOG_DIR", Path(__file__).parent.parent / "logs")

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO)."""
        env = os.environ.get("LOG_LEVEL")
        if env:
            return env
        log_config = self.settings.get("logging", {})
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"runner": "DEBUG"}."""
        log_config = self.settings.get("logging", {})
        return log_config.get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("backup_count", 5)

    @property
    def log_raw_events(self) -> bool:
        """Log every raw inbound bridge event at DEBUG."""
        return parse_bool(self._raw("LOG_RAW_EVENTS"), False)

    def validate(self) -> None:
        """Validate every setting at startup.

        Unlike runtime reads, this raises on the first malformed
        value so the process exits before touching the transport.

        Raises:
            ConfigurationError: If any setting is malformed.
        """
        for name in (
            "allowed_number", "codex_command", "codex_extra_args",
            "codex_workdir", "codex_timeout_ms", "pc_terminal_command",
            "max_queue", "max_response_chars", "chunk_size",
            "reconnect_delay_ms", "auth_dir", "runtime_dir", "bridge_url",
        ):
            getattr(self, name)
        if not self.bridge_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "WHATSAPP_BRIDGE_URL must start with http:// or https://",
                setting_name="WHATSAPP_BRIDGE_URL",
            )


def format_config_summary(config: Config) -> str:
    """Summarize the effective configuration with the number masked."""
    number = config.allowed_number
    masked = f"***{number[-4:]}" if len(number) > 4 else number
    return "\n".join([
        f"Allowed number: {masked}",
        f"Codex command: {config.codex_command}",
        f"Codex workdir: {config.codex_workdir}",
        f"Bridge URL: {config.bridge_url}",
        f"Auth dir: {config.auth_dir}",
        f"Runtime dir: {config.runtime_dir}",
        f"Max queue: {config.max_queue}",
        f"Timeout ms: {config.codex_timeout_ms}",
    ])


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
