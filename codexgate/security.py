"""Security module for codexgate.

Provides the inbound sender filter (direct chats from the single
allowed identity only), message text extraction, input sanitization
before a prompt reaches the Codex process, and JID masking for logs.
"""

import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger("codexgate.gateway")

DIRECT_CHAT_SUFFIXES = ("@s.whatsapp.net", "@lid")

# Container types that wrap the real message one level down
_WRAPPER_TYPES = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Keys that can sit next to the content but never are the content
_NON_CONTENT_KEYS = frozenset({"senderKeyDistributionMessage", "messageContextInfo"})

MAX_PROMPT_LENGTH = 10000

_BIDI_CHARS = frozenset("\u202a\u202b\u202c\u202d\u202e\u2066\u2067\u2068\u2069")


def is_direct_chat_jid(jid: Optional[str]) -> bool:
    """True for one-to-one chat ids (phone or linked-identity)."""
    if not jid:
        return False
    return jid.endswith(DIRECT_CHAT_SUFFIXES)


def mask_jid(jid: Optional[str]) -> str:
    """Mask a JID down to the last 4 digits of its user part."""
    if not jid:
        return ""
    user, _, server = jid.partition("@")
    masked = "..." + user[-4:]
    return f"{masked}@{server}" if server else masked


@dataclass
class SenderInfo:
    """Chat ids attached to one inbound message.

    Attributes:
        primary: The chat id the message arrived on.
        alt: Alternate id for the same chat (phone vs. linked identity).
    """
    primary: str = ""
    alt: str = ""

    @property
    def all(self) -> List[str]:
        return [jid for jid in (self.primary, self.alt) if jid]

    @property
    def reply_jid(self) -> str:
        return self.primary or self.alt

    @property
    def is_direct_chat(self) -> bool:
        return any(is_direct_chat_jid(jid) for jid in self.all)

    def matches(self, allowed_jid: str) -> bool:
        return allowed_jid in self.all


def is_authorized(sender: SenderInfo, allowed_jid: str) -> bool:
    """Check a direct-chat sender against the allowed identity.

    Group and broadcast chats are rejected without logging; direct
    chats from anyone else are logged as a warning.
    """
    if not sender.is_direct_chat:
        return False
    if sender.matches(allowed_jid):
        return True
    logger.warning(
        "unauthorized_access_attempt",
        jids=[mask_jid(jid) for jid in sender.all],
    )
    return False


def _unwrap(message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    current = message
    for _ in range(len(_WRAPPER_TYPES) + 1):
        if not isinstance(current, dict):
            return None
        for wrapper in _WRAPPER_TYPES:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                current = inner["message"]
                break
        else:
            return current
    return current


def _content_type(message: Dict[str, Any]) -> Optional[str]:
    for key, value in message.items():
        if key in _NON_CONTENT_KEYS or value in (None, "", {}):
            continue
        return key
    return None


def extract_text(message: Optional[Dict[str, Any]]) -> str:
    """Pull the user-visible text out of a message payload.

    Handles plain and extended text, image/video captions and the
    selection of button, list and template replies. Anything else
    yields "".
    """
    content = _unwrap(message)
    if not content:
        return ""
    content_type = _content_type(content)
    if content_type is None:
        return ""

    body = content.get(content_type)
    if content_type == "conversation":
        return body if isinstance(body, str) else ""
    if not isinstance(body, dict):
        return ""

    if content_type == "extendedTextMessage":
        return body.get("text") or ""
    if content_type in ("imageMessage", "videoMessage"):
        return body.get("caption") or ""
    if content_type == "buttonsResponseMessage":
        return body.get("selectedDisplayText") or body.get("selectedButtonId") or ""
    if content_type == "listResponseMessage":
        single = body.get("singleSelectReply") or {}
        return body.get("title") or single.get("selectedRowId") or ""
    if content_type == "templateButtonReplyMessage":
        return body.get("selectedDisplayText") or body.get("selectedId") or ""
    return ""


def sanitize_input(text: str) -> str:
    """Sanitize user input: strip control characters and enforce length limit."""
    # Remove all control characters except newline, tab, carriage return
    text = "".join(
        ch for ch in text
        if ch in ("\n", "\r", "\t") or not unicodedata.category(ch).startswith("C")
    )
    text = "".join(ch for ch in text if ch not in _BIDI_CHARS)
    if len(text) > MAX_PROMPT_LENGTH:
        logger.warning("prompt_truncated", original_length=len(text))
        text = text[:MAX_PROMPT_LENGTH]
    return text
