"""Connection lifecycle for codexgate.

ConnectionManager owns the current transport and reconnects after
recoverable drops. Every connect() bumps an epoch counter; the reader
for a transport carries the (epoch, transport) pair it was started
with, and its events are dropped once either no longer matches. A
superseded transport can therefore never deliver a late event.

States::

    disconnected -> connecting -> open -> disconnected
        -> (reconnect scheduled) -> connecting ...

A logout (status 401) or a conflict/replaced disconnect is terminal,
as is shutdown().
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
import structlog
from pydantic import ValidationError

from .exceptions import TransportDisconnect
from .transport import (
    CONNECTION_UPDATE,
    MESSAGES_UPSERT,
    BridgeEvent,
    ConnectionUpdate,
    InboundMessage,
    MessagesUpsert,
    render_qr,
)

logger = structlog.get_logger("codexgate.transport")


class Transport(Protocol):
    async def open(self) -> None: ...

    def events(self) -> Any: ...

    async def send_text(self, jid: str, text: str) -> Optional[str]: ...

    async def close(self) -> None: ...


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"  # terminal


def should_reconnect(disconnect: TransportDisconnect) -> bool:
    return not disconnect.is_terminal


class ConnectionManager:
    """Supervises the bridge connection.

    Args:
        transport_factory: Returns a new, unopened transport.
        on_message: Async callback for each live inbound message.
        reconnect_delay_ms: Delay before a scheduled reconnect.
        log_raw_events: Log every messages.upsert payload at DEBUG.
        qr_renderer: Called with each pairing challenge.
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        on_message: Callable[[InboundMessage], Awaitable[None]],
        reconnect_delay_ms: int = 5000,
        log_raw_events: bool = False,
        qr_renderer: Callable[[str], None] = render_qr,
    ):
        self.transport_factory = transport_factory
        self.on_message = on_message
        self.reconnect_delay_ms = reconnect_delay_ms
        self.log_raw_events = log_raw_events
        self.qr_renderer = qr_renderer

        self.epoch = 0
        self.transport: Optional[Transport] = None
        self.state = ConnectionState.DISCONNECTED
        self.terminal_disconnect: Optional[TransportDisconnect] = None
        self._connect_in_progress = False
        self._shutting_down = False
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def connect_in_progress(self) -> bool:
        return self._connect_in_progress

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def is_current(self, epoch: int, transport: Optional[Transport]) -> bool:
        return epoch == self.epoch and transport is not None and transport is self.transport

    # --- Connecting ---

    async def connect(self) -> None:
        """Start a new connection attempt.

        No-op during shutdown, after a terminal disconnect, or while
        another attempt is in progress. A failed attempt schedules a
        reconnect.
        """
        if self._shutting_down or self.is_closed:
            return
        if self._connect_in_progress:
            logger.debug("connect_skipped_in_progress", epoch=self.epoch)
            return
        self._connect_in_progress = True
        self.epoch += 1
        epoch = self.epoch
        transport: Optional[Transport] = None
        try:
            await self._teardown_transport()
            self.state = ConnectionState.CONNECTING
            transport = self.transport_factory()
            self.transport = transport
            await transport.open()
            self._reader = asyncio.create_task(self._read_events(epoch, transport))
            logger.info("transport_started", epoch=epoch)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.error(
                "connect_failed", epoch=epoch, error=str(e), exc_type=type(e).__name__,
            )
            if transport is not None and transport is self.transport:
                self.transport = None
                await self._close_quietly(transport)
            self.state = ConnectionState.DISCONNECTED
            self.schedule_reconnect(str(e) or "connect_error")
        finally:
            self._connect_in_progress = False

    def schedule_reconnect(self, reason: str) -> None:
        """Arrange one reconnect after the configured delay.

        An already scheduled reconnect is not duplicated.
        """
        if self._shutting_down or self.is_closed:
            return
        if self.reconnect_scheduled:
            return
        logger.info("reconnect_scheduled", delay_ms=self.reconnect_delay_ms, reason=reason)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay_ms / 1000)
        self._reconnect_task = None
        await self.connect()

    async def _teardown_transport(self) -> None:
        previous, self.transport = self.transport, None
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if previous is not None:
            await self._close_quietly(previous)

    @staticmethod
    async def _close_quietly(transport: Transport) -> None:
        try:
            await transport.close()
        except (aiohttp.ClientError, OSError) as e:
            logger.warning("transport_close_failed", error=str(e))

    # --- Events ---

    async def _read_events(self, epoch: int, transport: Transport) -> None:
        reason = "bridge_socket_closed"
        try:
            try:
                async for event in transport.events():
                    await self.handle_event(epoch, transport, event)
                    if not self.is_current(epoch, transport):
                        break
            except (aiohttp.ClientError, OSError) as e:
                logger.error("transport_read_error", epoch=epoch, error=str(e))
                reason = str(e) or reason

            # The stream ended without an explicit close from the bridge
            if self.is_current(epoch, transport):
                await self.handle_event(epoch, transport, BridgeEvent(
                    event=CONNECTION_UPDATE,
                    data={"connection": "close", "lastDisconnect": {"reason": reason}},
                ))
        finally:
            await self._close_quietly(transport)

    async def handle_event(self, epoch: int, transport: Transport, event: BridgeEvent) -> None:
        """Dispatch one event if it belongs to the current connection."""
        if not self.is_current(epoch, transport):
            logger.debug("stale_event_ignored", epoch=epoch, current_epoch=self.epoch, event_type=event.event)
            return
        try:
            if event.event == CONNECTION_UPDATE:
                await self._on_connection_update(ConnectionUpdate.model_validate(event.data))
            elif event.event == MESSAGES_UPSERT:
                await self._on_messages_upsert(MessagesUpsert.model_validate(event.data))
        except ValidationError as e:
            logger.warning("invalid_event_payload", event_type=event.event, error=str(e)[:200])

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            logger.info("qr_challenge", hint="scan this QR code with WhatsApp linked devices")
            self.qr_renderer(update.qr)

        if update.connection == "open":
            self.state = ConnectionState.OPEN
            logger.info("transport_connected", epoch=self.epoch)
            return

        if update.connection != "close":
            return

        info = update.last_disconnect
        disconnect = TransportDisconnect(
            status_code=info.status_code if info else None,
            reason=info.reason if info else "",
        )
        self.transport = None
        self.state = ConnectionState.DISCONNECTED
        reconnect = should_reconnect(disconnect)
        logger.warning(
            "transport_closed",
            reconnect=reconnect,
            status_code=disconnect.status_code,
            reason=disconnect.reason,
        )

        if not reconnect:
            if disconnect.is_conflict:
                logger.error(
                    "session_conflict",
                    hint="another client replaced this session; stop other "
                         "gateway instances, clear the session, then re-link",
                )
            self.terminal_disconnect = disconnect
            self.state = ConnectionState.CLOSED
            self._closed.set()
            return

        if self._shutting_down:
            return
        self.schedule_reconnect(disconnect.reason or "socket_closed")

    async def _on_messages_upsert(self, upsert: MessagesUpsert) -> None:
        if upsert.type != "notify":
            return
        if self.log_raw_events:
            logger.debug("raw_messages_upsert", payload=upsert.model_dump(by_alias=True))
        for message in upsert.messages:
            try:
                await self.on_message(message)
            except Exception as e:
                logger.error(
                    "message_handling_error",
                    error=str(e),
                    exc_type=type(e).__name__,
                    message_id=message.key.id,
                )

    # --- Sending ---

    async def send_text(self, jid: str, text: str) -> Optional[str]:
        """Send through whichever transport is current right now."""
        transport = self.transport
        if transport is None:
            logger.warning("send_without_transport")
            return None
        return await transport.send_text(jid, text)

    # --- Shutdown ---

    async def shutdown(self) -> None:
        """Stop reconnecting and close the current transport."""
        if self._shutting_down:
            return
        self._shutting_down = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        await self._teardown_transport()
        self.state = ConnectionState.CLOSED
        self._closed.set()
        logger.info("connection_shutdown", epoch=self.epoch)

    async def wait_closed(self) -> None:
        """Block until shutdown or a terminal disconnect."""
        await self._closed.wait()
