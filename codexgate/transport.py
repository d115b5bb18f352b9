"""WhatsApp bridge transport for codexgate.

The WhatsApp protocol itself is spoken by a local bridge service. This
module is the thin aiohttp client for it:

    GET  {bridge}/v1/events     WebSocket; one JSON frame per event
    POST {bridge}/v1/messages   {"jid": ..., "text": ...} -> {"key": {"id": ...}}

Event frames have the shape ``{"event": <name>, "data": {...}}`` where
name is ``connection.update`` or ``messages.upsert``. Payloads are
validated with pydantic models; frames that fail validation are logged
and skipped.

Key classes:
    BridgeEvent, ConnectionUpdate, MessagesUpsert, InboundMessage:
        Event payload models.
    BridgeTransport: One WebSocket connection plus the send endpoint.

Key functions:
    render_qr: Print a pairing QR challenge to the terminal.
"""

import asyncio
import json
import sys
from typing import Any, AsyncIterator, Dict, List, Optional, TextIO

import aiohttp
import qrcode
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger("codexgate.transport")

CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"

SEND_TIMEOUT_SECONDS = 30
WS_HEARTBEAT_SECONDS = 30


class _BridgeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DisconnectInfo(_BridgeModel):
    """Why the bridge lost its WhatsApp connection."""

    status_code: Optional[int] = Field(default=None, alias="statusCode")
    reason: str = Field(default="", description="Free-text disconnect reason")


class ConnectionUpdate(_BridgeModel):
    """Payload of a connection.update event."""

    connection: Optional[str] = Field(
        default=None, description="connecting, open or close"
    )
    qr: Optional[str] = Field(default=None, description="Pairing challenge")
    last_disconnect: Optional[DisconnectInfo] = Field(
        default=None, alias="lastDisconnect"
    )


class MessageKey(_BridgeModel):
    remote_jid: str = Field(default="", alias="remoteJid")
    remote_jid_alt: str = Field(default="", alias="remoteJidAlt")
    id: Optional[str] = None
    from_me: bool = Field(default=False, alias="fromMe")


class InboundMessage(_BridgeModel):
    """One message from a messages.upsert batch.

    ``message`` is the raw content tree (conversation,
    extendedTextMessage, imageMessage, ...) as the bridge delivers it.
    """

    key: MessageKey
    message: Optional[Dict[str, Any]] = None


class MessagesUpsert(_BridgeModel):
    """Payload of a messages.upsert event."""

    type: str = Field(default="notify", description="notify for live messages")
    messages: List[InboundMessage] = Field(default_factory=list)


class BridgeEvent(_BridgeModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


def render_qr(data: str, out: Optional[TextIO] = None) -> None:
    """Print a QR code for the pairing challenge."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    qr.print_ascii(out=out or sys.stdout, invert=True)


def _ws_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    base = base.replace("http://", "ws://", 1).replace("https://", "wss://", 1)
    return f"{base}/v1/events"


class BridgeTransport:
    """One connection to the local WhatsApp bridge.

    A transport is used for a single connection attempt; the
    connection manager creates a fresh one for every reconnect.

    Args:
        base_url: Bridge base URL (http or https).
        session: Optional shared aiohttp session. When omitted the
            transport creates and owns one.
    """

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        """Open the event WebSocket.

        Raises:
            aiohttp.ClientError: If the bridge is unreachable.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()
        url = _ws_url(self.base_url)
        logger.info("transport_connecting", url=url)
        self._ws = await self._session.ws_connect(url, heartbeat=WS_HEARTBEAT_SECONDS)
        logger.info("transport_socket_open", url=url)

    async def events(self) -> AsyncIterator[BridgeEvent]:
        """Yield validated events until the socket closes."""
        if self._ws is None:
            return
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield BridgeEvent.model_validate(json.loads(msg.data))
                except json.JSONDecodeError:
                    logger.warning("invalid_json", data=str(msg.data)[:100])
                except ValidationError as e:
                    logger.warning("invalid_event", error=str(e)[:200])
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("transport_socket_error", error=str(self._ws.exception()))
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                logger.info("transport_socket_closed")
                break

    async def send_text(self, jid: str, text: str) -> Optional[str]:
        """Send one text message.

        Returns:
            The id the bridge assigned to the sent message, or None
            when the send failed (the failure is logged).
        """
        if self._session is None or self._closed:
            logger.warning("send_on_closed_transport")
            return None
        url = f"{self.base_url}/v1/messages"
        try:
            async with self._session.post(
                url,
                json={"jid": jid, "text": text},
                timeout=aiohttp.ClientTimeout(total=SEND_TIMEOUT_SECONDS),
            ) as resp:
                if resp.status not in (200, 201):
                    body = await resp.text()
                    logger.warning("send_failed", status=resp.status, body=body[:200])
                    return None
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("send_error", error=str(e), exc_type=type(e).__name__)
            return None

        key = payload.get("key") if isinstance(payload, dict) else None
        if isinstance(key, dict):
            return key.get("id")
        if isinstance(payload, dict):
            return payload.get("id")
        return None

    async def close(self) -> None:
        """Close the socket (and owned session). Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._ws is not None:
                await self._ws.close()
            if self._owns_session and self._session is not None:
                await self._session.close()
        except (aiohttp.ClientError, OSError) as e:
            logger.warning("transport_close_error", error=str(e))
