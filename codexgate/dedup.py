"""Sent-message dedup registry for codexgate.

The bridge echoes the gateway's own outgoing messages back as inbound
events. Every id returned by a send is remembered here; when that id
shows up again it is consumed once and the event is skipped.
"""

import time
from collections import OrderedDict
from typing import Callable, Optional

import structlog

logger = structlog.get_logger("codexgate.gateway")

SENT_MESSAGE_TTL_SECONDS = 30 * 60


class SentMessageRegistry:
    """Time-bounded set of message ids the gateway produced.

    Args:
        ttl_seconds: How long an id is remembered.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = SENT_MESSAGE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sent: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sent)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._sent

    def remember(self, message_id: Optional[str]) -> None:
        if not message_id:
            return
        self._sent[message_id] = self._clock()
        self._sent.move_to_end(message_id)

    def _prune(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        while self._sent:
            oldest_id, sent_at = next(iter(self._sent.items()))
            if sent_at >= cutoff:
                break
            self._sent.pop(oldest_id)

    def consume(self, message_id: Optional[str]) -> bool:
        """Return True (once) if the gateway itself sent this message."""
        if not message_id:
            return False
        self._prune()
        if message_id in self._sent:
            del self._sent[message_id]
            logger.debug("own_message_skipped", message_id=message_id)
            return True
        return False
