"""Main entry point for codexgate.

Initializes logging in two phases (defaults then config-driven),
takes the single-instance lock, creates the Gateway, and runs the
async event loop with graceful shutdown on SIGTERM/SIGINT. Supports
both Unix signal handlers and a Windows SIGINT fallback.

Key functions:
    main: Async entry point -- sets up logging, config, lock, gateway
        and signal handlers, then waits for shutdown.
    verify_config: Handles --verify-config.
    run: Synchronous wrapper for the ``codexgate`` console script.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import structlog

from .logging_config import setup_logging

EXIT_OK = 0
EXIT_ERROR = 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="codexgate",
        description="Relay WhatsApp messages from one number to the Codex CLI.",
    )
    parser.add_argument(
        "--verify-config",
        action="store_true",
        help="validate configuration, print a summary and exit",
    )
    return parser.parse_args(argv)


def verify_config() -> int:
    """Validate the configuration and print a summary.

    Returns:
        Process exit code: 0 when the configuration is valid.
    """
    from .config import format_config_summary, get_config
    from .exceptions import ConfigurationError

    try:
        config = get_config()
        config.validate()
        summary = format_config_summary(config)
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_ERROR
    print("Config OK")
    print(summary)
    return EXIT_OK


async def main() -> int:
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("codexgate.gateway")

    # Import here to ensure logging is configured first
    from .config import get_config
    from .exceptions import ConfigurationError, LockConflict
    from .gateway import Gateway
    from .instance_lock import InstanceLock, default_lock_path

    try:
        config = get_config()
        config.validate()
    except ConfigurationError as e:
        logger.error("config_invalid", error=str(e), setting=e.setting_name)
        return EXIT_ERROR

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)
    logger.info("codexgate_starting")

    lock = InstanceLock(default_lock_path(config.allowed_number), config.allowed_jid)
    try:
        lock.acquire()
    except LockConflict as e:
        logger.error("instance_lock_conflict", error=str(e), path=e.lock_path)
        return EXIT_ERROR

    gateway = Gateway(config)

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            # Fall back to signal.signal for SIGINT (Ctrl+C).
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: loop.call_soon_threadsafe(handle_shutdown, signal.SIGINT),
                )

    exit_code = EXIT_OK
    try:
        gateway_task = asyncio.create_task(gateway.run())
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        await asyncio.wait(
            {gateway_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED,
        )

        if gateway_task.done():
            terminal = gateway_task.result()
            if terminal is not None:
                logger.error(
                    "connection_terminated",
                    status_code=terminal.status_code,
                    reason=terminal.reason,
                )
                exit_code = EXIT_ERROR
        else:
            await gateway.stop()
            gateway_task.cancel()
            try:
                await gateway_task
            except asyncio.CancelledError:
                pass
        shutdown_task.cancel()

    except Exception as e:
        logger.error("gateway_error", error=str(e), exc_type=type(e).__name__)
        raise
    finally:
        await gateway.stop()
        lock.release()
        logger.info("codexgate_stopped")
    return exit_code


def run(argv: Optional[List[str]] = None):
    """Synchronous entry point for the ``codexgate`` console script."""
    args = parse_args(argv)
    if args.verify_config:
        sys.exit(verify_config())
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
