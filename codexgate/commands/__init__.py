"""Command handler framework for codexgate.

Provides the BaseCommandHandler ABC, GatewayContext dependency
container, HandlerRegistry for mapping command names to async
handlers, and the core gateway commands.
"""

from .base import BaseCommandHandler, GatewayContext, HandlerRegistry, parse_command
from .core import UNKNOWN_COMMAND_REPLY, CoreCommandHandler

__all__ = [
    "BaseCommandHandler",
    "CoreCommandHandler",
    "GatewayContext",
    "HandlerRegistry",
    "UNKNOWN_COMMAND_REPLY",
    "parse_command",
]
