"""Single-instance lock for codexgate.

Two gateways linked to the same WhatsApp identity would keep
replacing each other's session. The lock is a marker file in the
system temp directory, created with exclusive-create semantics so
the check and the claim are one filesystem operation.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from .exceptions import LockConflict

logger = structlog.get_logger("codexgate.gateway")


def default_lock_path(allowed_number: str) -> Path:
    return Path(tempfile.gettempdir()) / f"codexgate-{allowed_number}.lock"


class InstanceLock:
    """Exclusive marker file holding {pid, started_at, allowed_jid}.

    Args:
        path: Lock file location.
        allowed_jid: Identity recorded in the marker for diagnostics.
    """

    def __init__(self, path: Path, allowed_jid: str = ""):
        self.path = Path(path)
        self.allowed_jid = allowed_jid
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Create the lock file.

        Raises:
            LockConflict: If the file already exists.
        """
        payload = {
            "pid": os.getpid(),
            "started_at": datetime.now(timezone.utc).isoformat(),
            "allowed_jid": self.allowed_jid,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "x", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
        except FileExistsError:
            raise LockConflict(
                f"Gateway lock exists at {self.path}. Another instance is likely "
                "running. Stop it or remove the stale lock file.",
                lock_path=str(self.path),
            ) from None
        self._held = True
        logger.info("instance_lock_acquired", path=str(self.path), pid=payload["pid"])

    def read(self) -> Optional[dict]:
        """Return the marker contents, or None if absent or unreadable."""
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        """Remove the lock file. Never raises."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("instance_lock_release_failed", path=str(self.path), error=str(e))
            return
        logger.info("instance_lock_released", path=str(self.path))

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
