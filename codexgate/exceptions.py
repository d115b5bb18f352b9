"""Custom exception hierarchy for codexgate.

Provides precise error classification across the gateway so callers
can tell fatal startup problems apart from per-job or per-message
failures that are reported back to the chat and then forgotten.

Startup-fatal: ConfigurationError, LockConflict.
Recoverable (user notified): QueueFull, PathResolutionError,
FavoriteNameInvalid, FavoriteNotFound, ProcessSpawnError,
ProcessTimeout, ProcessNonZeroExit.
Transport: TransportDisconnect (terminal when logged out or replaced).
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for recovery decisions."""
    TRANSIENT = "transient"          # Retry / reconnect is worthwhile
    PERMANENT = "permanent"          # Bad input, report and move on
    INFRASTRUCTURE = "infrastructure"  # Environment problem, fatal at startup


class GatewayError(Exception):
    """Base exception for all codexgate errors.

    Attributes:
        message: Human-readable error description. This is what gets
            relayed to the chat for recoverable errors.
        category: Error classification for recovery decisions.
        module: Originating module name (e.g. "codex_runner").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        return self.message or self.__class__.__name__

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Startup exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(GatewayError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )


class LockConflict(GatewayError):
    """Another gateway instance holds the single-instance lock.

    Attributes:
        lock_path: Path of the existing lock marker.
    """

    def __init__(
        self,
        message: str = "",
        *,
        lock_path: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.lock_path = lock_path
        super().__init__(
            message, category=category, module=module or "instance_lock", **context
        )


# ---------------------------------------------------------------------------
# Queue and command exceptions
# ---------------------------------------------------------------------------

class QueueFull(GatewayError):
    """The job queue is at capacity; the prompt is dropped.

    Attributes:
        max_size: Configured queue capacity.
    """

    def __init__(
        self,
        message: str = "",
        *,
        max_size: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.max_size = max_size
        super().__init__(
            message or f"Queue full ({max_size})",
            category=category,
            module=module or "job_queue",
            **context,
        )


class PathResolutionError(GatewayError):
    """A requested directory is missing, malformed, or not a directory."""

    def __init__(
        self,
        message: str = "",
        *,
        path: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.path = path
        super().__init__(
            message, category=category, module=module or "workdirs", **context
        )


class FavoriteNameInvalid(GatewayError):
    """A favorite name does not match the naming pattern."""

    def __init__(
        self,
        message: str = "Favorite name must match [a-z0-9._-], max 32 chars.",
        *,
        name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.name = name
        super().__init__(
            message, category=category, module=module or "workdirs", **context
        )


class FavoriteNotFound(GatewayError):
    """No favorite is stored under the requested name."""

    def __init__(
        self,
        message: str = "",
        *,
        name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.name = name
        super().__init__(
            message or f"Favorite not found: {name}",
            category=category,
            module=module or "state",
            **context,
        )


# ---------------------------------------------------------------------------
# Codex process exceptions
# ---------------------------------------------------------------------------

class CodexProcessError(GatewayError):
    """Base class for failures of a single Codex run.

    Attributes:
        job_id: Id of the job whose run failed (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        job_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.job_id = job_id
        super().__init__(
            message, category=category, module=module or "codex_runner", **context
        )


class ProcessSpawnError(CodexProcessError):
    """The Codex process could not be started."""


class ProcessTimeout(CodexProcessError):
    """The Codex process exceeded its timeout and was killed.

    Attributes:
        timeout_ms: The configured timeout that expired.
    """

    def __init__(
        self,
        message: str = "",
        *,
        timeout_ms: Optional[int] = None,
        job_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            message, job_id=job_id, category=category, module=module, **context
        )


class ProcessNonZeroExit(CodexProcessError):
    """The Codex process exited with a non-zero status.

    Attributes:
        exit_code: Process exit code (-1 when killed by a signal).
        error_text: stderr, or stdout when stderr was empty.
    """

    def __init__(
        self,
        message: str = "",
        *,
        exit_code: Optional[int] = None,
        error_text: str = "",
        job_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.exit_code = exit_code
        self.error_text = error_text
        super().__init__(
            message, job_id=job_id, category=category, module=module, **context
        )


# ---------------------------------------------------------------------------
# Transport exceptions
# ---------------------------------------------------------------------------

class TransportDisconnect(GatewayError):
    """The chat transport connection closed.

    Attributes:
        status_code: Disconnect status reported by the bridge.
        reason: Free-text disconnect reason.
    """

    LOGGED_OUT = 401

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        reason: str = "",
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.status_code = status_code
        self.reason = reason
        if self._terminal(status_code, reason):
            category = ErrorCategory.PERMANENT
        super().__init__(
            message or reason or "connection closed",
            category=category,
            module=module or "connection",
            **context,
        )

    @staticmethod
    def _terminal(status_code: Optional[int], reason: str) -> bool:
        lowered = (reason or "").lower()
        if "conflict" in lowered or "replaced" in lowered:
            return True
        return status_code == TransportDisconnect.LOGGED_OUT

    @property
    def is_conflict(self) -> bool:
        """Another client replaced this session."""
        lowered = (self.reason or "").lower()
        return "conflict" in lowered or "replaced" in lowered

    @property
    def is_terminal(self) -> bool:
        """Logged out or replaced: reconnecting would fight another instance."""
        return self.category == ErrorCategory.PERMANENT
