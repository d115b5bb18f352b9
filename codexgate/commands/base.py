"""Base classes for the command handler framework.

Defines the abstractions for registering and dispatching gateway
commands. Command handlers are grouped into classes that extend
BaseCommandHandler, then registered with a HandlerRegistry that
maps command names to async callables.

Key classes:
    GatewayContext: Dependency container shared by all handlers.
    BaseCommandHandler: ABC that handler groups must implement.
    HandlerRegistry: Maps command names to handler callables.

Functions:
    parse_command: Split "/name args" into (name, args).
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Tuple

import structlog

if TYPE_CHECKING:
    from ..codex_runner import CodexRunner
    from ..config import Config
    from ..state import GatewayState

logger = structlog.get_logger("codexgate.gateway")

CommandHandler = Callable[[str, str], Awaitable[Optional[str]]]


def parse_command(text: str, prefix: str = "/") -> Optional[Tuple[str, str]]:
    """Split a control message into a lowercased name and argument text.

    Returns:
        (command, args), or None if text does not start with prefix.
    """
    if not text.startswith(prefix):
        return None
    line = text[len(prefix):].strip()
    parts = re.split(r"\s+", line, maxsplit=1)
    args = parts[1] if len(parts) > 1 else ""
    return parts[0].lower(), args.strip()


@dataclass
class GatewayContext:
    """Dependency container for command handlers.

    Gives handlers typed access to shared services without coupling
    them to the Gateway itself.
    """

    config: "Config"
    state: "GatewayState"
    runner: "CodexRunner"
    send_message: Callable[[str, str], Awaitable[None]]


class BaseCommandHandler(ABC):
    """Abstract base class for command handler groups.

    Subclasses implement get_commands() to return a dict mapping
    command names to async handler functions. Each handler receives
    (sender, args) and returns an optional response string.

    Args:
        ctx: Shared GatewayContext dependency container.
    """

    def __init__(self, ctx: GatewayContext):
        self.ctx = ctx

    @abstractmethod
    def get_commands(self) -> Dict[str, CommandHandler]:
        """Return {command_name: async_handler} mapping.

        Handler signature: async (sender: str, args: str) -> Optional[str]
        Returning None means the handler already replied itself.
        """
        ...

    def get_help_lines(self) -> str:
        """Return help text section for this handler group."""
        return ""


class HandlerRegistry:
    """Maps command names to handler callables."""

    def __init__(self):
        self._handlers: Dict[str, CommandHandler] = {}

    def register(self, handler: BaseCommandHandler) -> None:
        """Register all commands from a BaseCommandHandler subclass.

        Args:
            handler: Handler instance whose get_commands() dict
                will be merged into the registry.
        """
        for cmd_name, method in handler.get_commands().items():
            if cmd_name in self._handlers:
                logger.warning(
                    "command_handler_conflict",
                    command=cmd_name,
                    handler=type(handler).__name__,
                )
            self._handlers[cmd_name] = method

    def get(self, command: str) -> Optional[CommandHandler]:
        """Look up a handler for a command name."""
        return self._handlers.get(command)

    @property
    def command_names(self) -> frozenset:
        """All registered command names."""
        return frozenset(self._handlers.keys())
