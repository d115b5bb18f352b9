"""Gateway orchestration for codexgate.

Gateway wires the pieces together: inbound bridge messages pass the
dedup registry and the sender filter, control messages go to the
command registry, everything else becomes a Job. A single drain task
runs queued jobs through the CodexRunner and replies in chunks.

Key classes:
    Gateway: Lifecycle (start/run/stop) plus message routing.
"""

import asyncio
from typing import Optional

import aiohttp
import structlog

from .codex_runner import CodexRunner, format_run_reply
from .commands import (
    UNKNOWN_COMMAND_REPLY,
    CoreCommandHandler,
    GatewayContext,
    HandlerRegistry,
    parse_command,
)
from .config import Config, get_config
from .connection import ConnectionManager
from .dedup import SentMessageRegistry
from .exceptions import GatewayError, QueueFull, TransportDisconnect
from .formatting import normalize_text, split_chunks
from .job_queue import ActiveJob, Job
from .security import SenderInfo, extract_text, is_authorized, mask_jid, sanitize_input
from .state import GatewayState
from .store import FileStore
from .transport import BridgeTransport, InboundMessage

logger = structlog.get_logger("codexgate.gateway")

# Seconds a stopping gateway waits for the drain task to report a killed run
STOP_REPORT_TIMEOUT = 5.0


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


class Gateway:
    """WhatsApp to Codex gateway.

    Args:
        config: Config instance. Defaults to the global config.
        state: Pre-built GatewayState (tests). Built from config
            when omitted.
        runner: CodexRunner. Built from config when omitted.
        connection: ConnectionManager. Built from config when omitted.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        state: Optional[GatewayState] = None,
        runner: Optional[CodexRunner] = None,
        connection: Optional[ConnectionManager] = None,
    ):
        self.config = config or get_config()
        self.state = state or GatewayState(
            FileStore(self.config.runtime_dir),
            self.config.codex_workdir,
            self.config.max_queue,
        )
        self.runner = runner or CodexRunner(self.config)
        self.sent_messages = SentMessageRegistry()
        self.connection = connection or ConnectionManager(
            self._new_transport,
            self.handle_incoming,
            reconnect_delay_ms=self.config.reconnect_delay_ms,
            log_raw_events=self.config.log_raw_events,
        )
        self.session: Optional[aiohttp.ClientSession] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._stopping = False

        self.ctx = GatewayContext(
            config=self.config,
            state=self.state,
            runner=self.runner,
            send_message=self.send_text,
        )
        self._registry = HandlerRegistry()
        self._registry.register(CoreCommandHandler(self.ctx))

    def _new_transport(self) -> BridgeTransport:
        return BridgeTransport(self.config.bridge_url, session=self.session)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Load persisted state and open the first connection."""
        self.config.runtime_dir.mkdir(parents=True, exist_ok=True)
        self.config.auth_dir.mkdir(parents=True, exist_ok=True)
        self.state.load()
        if self.session is None:
            self.session = aiohttp.ClientSession()
        logger.info(
            "gateway_started",
            workdir=str(self.state.workdir),
            session_id=self.state.session_token,
            max_queue=self.config.max_queue,
        )
        await self.connection.connect()

    async def run(self) -> Optional[TransportDisconnect]:
        """Start, then wait until the connection is closed for good.

        Returns:
            The terminal disconnect, or None after a normal shutdown.
        """
        await self.start()
        try:
            await self.connection.wait_closed()
        finally:
            await self.stop()
        return self.connection.terminal_disconnect

    async def stop(self) -> None:
        """Drop the queue, kill any active run, close the connection."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("gateway_stopping")

        self.state.queue.shutdown()
        active = self.state.active_job
        if active is not None:
            await self.runner.stop(active)

        drain = self._drain_task
        if drain is not None and not drain.done():
            done, _ = await asyncio.wait({drain}, timeout=STOP_REPORT_TIMEOUT)
            if not done:
                drain.cancel()
                await asyncio.gather(drain, return_exceptions=True)

        await self.connection.shutdown()
        if self.session is not None:
            await self.session.close()
            self.session = None
        logger.info("gateway_stopped")

    # --- Sending ---

    async def send_text(self, jid: str, text: str) -> None:
        """Normalize, chunk and send text; remember every sent id."""
        normalized = normalize_text(text)
        if not normalized:
            return
        for chunk in split_chunks(normalized, self.config.chunk_size):
            message_id = await self.connection.send_text(jid, chunk)
            self.sent_messages.remember(message_id)

    # --- Inbound routing ---

    async def handle_incoming(self, message: InboundMessage) -> None:
        """Filter one inbound message and route it.

        Order: own echo, direct-chat and identity filter, text
        extraction, then command or prompt.
        """
        key = message.key
        sender = SenderInfo(primary=key.remote_jid, alt=key.remote_jid_alt)
        if not sender.reply_jid:
            return
        if self.sent_messages.consume(key.id):
            return
        if not is_authorized(sender, self.config.allowed_jid):
            return

        text = normalize_text(extract_text(message.message))
        if not text:
            return

        logger.info(
            "processing_message",
            sender=mask_jid(sender.reply_jid),
            length=len(text),
            message_id=key.id,
        )
        await self.handle_text(sender.reply_jid, text)

    async def handle_text(self, jid: str, text: str) -> None:
        """Route already-authorized text: command, or enqueue a prompt."""
        parsed = parse_command(text, self.config.command_prefix)
        if parsed is not None:
            command, args = parsed
            response = await self._handle_command(command, args, jid)
            if response:
                await self.send_text(jid, response)
            return

        job = Job(reply_to=jid, prompt=sanitize_input(text))
        try:
            position = self.state.queue.enqueue(job)
        except QueueFull as e:
            logger.warning("queue_full", max_size=e.max_size)
            await self.send_text(jid, f"Queue full ({e.max_size}). Use /stop or wait.")
            return

        logger.info("job_queued", job_id=job.id, position=position)
        await self.send_text(jid, f"Queued #{job.short_id} (position {position}).")
        self.kick_queue()

    async def _handle_command(self, command: str, args: str, sender: str) -> Optional[str]:
        """Route a /command to the handler registry.

        Returns:
            Response string, or None if the handler replied itself.
        """
        logger.debug("command_routing", command=command, has_args=bool(args))
        handler = self._registry.get(command)
        if handler is None:
            return UNKNOWN_COMMAND_REPLY
        return await handler(sender, args)

    # --- Queue consumer ---

    def kick_queue(self) -> None:
        """Make sure a drain task is running."""
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self.state.queue.drain(self._run_job))
        self._drain_task.add_done_callback(log_task_exception)

    async def _run_job(self, job: Job) -> None:
        """Run one job to completion and report the outcome."""
        state = self.state
        active = ActiveJob(job=job, output_file=self.runner.output_file_for(job.id))
        state.active_job = active
        try:
            await self.send_text(job.reply_to, f"Running #{job.short_id}...")
            try:
                result = await self.runner.run(active, state.workdir, state.session_token)
            except (GatewayError, OSError) as e:
                logger.error(
                    "codex_execution_failed",
                    job_id=job.id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
                await self.send_text(job.reply_to, f"Execution error on #{job.short_id}: {e}")
                return

            if result.session_id:
                state.set_session_token(result.session_id)
            reply = format_run_reply(active, result, self.config.max_response_chars)
            await self.send_text(job.reply_to, reply)
        finally:
            state.active_job = None
