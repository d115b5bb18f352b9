"""Flat per-key file store for codexgate.

Each key maps to one small UTF-8 file under the runtime directory.
Writes go to a temporary sibling first and are renamed into place,
so a crash mid-write leaves either the old value or the new one.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

import structlog

logger = structlog.get_logger("codexgate.state")

WORKDIR_KEY = "workdir"
SESSION_KEY = "session"
FAVORITES_KEY = "favorites"

DEFAULT_FILENAMES: Dict[str, str] = {
    WORKDIR_KEY: "codex-workdir.txt",
    SESSION_KEY: "codex-session-id.txt",
    FAVORITES_KEY: "codex-workdir-favorites.json",
}


class FileStore:
    """Durable get/set/delete over one file per key.

    Args:
        root: Directory holding the files. Created on first write.
        filenames: Mapping of key -> file name. Unknown keys raise
            KeyError so typos fail loudly.
    """

    def __init__(self, root: Path, filenames: Optional[Dict[str, str]] = None):
        self.root = Path(root)
        self.filenames = dict(filenames or DEFAULT_FILENAMES)

    def path(self, key: str) -> Path:
        return self.root / self.filenames[key]

    def get(self, key: str) -> Optional[str]:
        """Return the stored text, or None if it is missing or unreadable."""
        path = self.path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("store_read_failed", key=key, path=str(path), error=str(e))
            return None

    def set(self, key: str, value: str) -> None:
        """Atomically replace the value for a key."""
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.debug("store_write", key=key, path=str(target))

    def delete(self, key: str) -> bool:
        """Remove a key. Returns False when it did not exist."""
        try:
            self.path(key).unlink()
        except FileNotFoundError:
            return False
        logger.debug("store_delete", key=key)
        return True
