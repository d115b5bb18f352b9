"""Gateway state for codexgate.

GatewayState is the single owner of mutable gateway data: the job
queue, the active job record, the active workdir, the resumable
Codex session token, and the favorites map. The three durable values
are mirrored to a FileStore on every change and reloaded on start.

Key classes:
    GatewayState: Context object with explicit accessors.
"""

import json
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from .exceptions import FavoriteNotFound, PathResolutionError
from .job_queue import ActiveJob, JobQueue
from .store import FAVORITES_KEY, SESSION_KEY, WORKDIR_KEY, FileStore
from .workdirs import (
    is_valid_favorite_name,
    normalize_favorite_name,
    validate_directory,
    validate_favorite_name,
)

logger = structlog.get_logger("codexgate.state")


class GatewayState:
    """Owns every piece of mutable gateway state.

    Only ever touched from the event loop thread, so no locking is
    needed. Workdir changes always clear the session token.

    Args:
        store: FileStore for the durable values.
        default_workdir: Configured default workdir.
        max_queue: Queue capacity.
    """

    def __init__(self, store: FileStore, default_workdir: Path, max_queue: int):
        self.store = store
        self.default_workdir = Path(default_workdir)
        self.queue = JobQueue(max_queue)
        self.active_job: Optional[ActiveJob] = None
        self.workdir: Path = self.default_workdir
        self.session_token: Optional[str] = None
        self.favorites: Dict[str, str] = {}
        self.started_at = time.monotonic()

    # --- Loading ---

    def load(self) -> None:
        """Load session token, workdir and favorites from the store."""
        self._load_session_token()
        self._load_workdir()
        self._load_favorites()

    def _load_session_token(self) -> None:
        value = (self.store.get(SESSION_KEY) or "").strip()
        if value:
            self.session_token = value
            logger.info("session_token_loaded", session_id=value)

    def _load_workdir(self) -> None:
        stored = (self.store.get(WORKDIR_KEY) or "").replace("\r\n", "\n").strip()
        if not stored:
            return
        try:
            self.workdir = validate_directory(Path(stored))
        except PathResolutionError as e:
            logger.warning("stored_workdir_invalid", path=stored, error=str(e))
            return
        logger.info("workdir_loaded", workdir=str(self.workdir))

    def _load_favorites(self) -> None:
        raw = self.store.get(FAVORITES_KEY)
        if not raw:
            return
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("favorites_invalid_json", error=str(e))
            return
        if not isinstance(parsed, dict):
            logger.warning("favorites_not_a_mapping", type=type(parsed).__name__)
            return

        loaded: Dict[str, str] = {}
        for name, path in parsed.items():
            normalized = normalize_favorite_name(str(name))
            if not isinstance(path, str) or not path.strip():
                continue
            if not is_valid_favorite_name(normalized):
                continue
            loaded[normalized] = path
        self.favorites = loaded
        logger.info("favorites_loaded", count=len(loaded))

    # --- Work tracking ---

    @property
    def has_work_in_progress(self) -> bool:
        return self.active_job is not None or len(self.queue) > 0

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self.started_at)

    # --- Session token ---

    def set_session_token(self, token: str) -> None:
        self.session_token = token
        self.store.set(SESSION_KEY, f"{token}\n")
        logger.info("session_token_updated", session_id=token)

    def clear_session_token(self) -> None:
        self.session_token = None
        self.store.delete(SESSION_KEY)
        logger.info("session_token_cleared")

    # --- Workdir ---

    def change_workdir(self, new_workdir: Path) -> Optional[Path]:
        """Commit a new workdir and clear the session token.

        Args:
            new_workdir: Already-resolved absolute directory.

        Returns:
            The previous workdir, or None when new_workdir equals the
            current one (nothing is changed in that case).

        Raises:
            PathResolutionError: If new_workdir is no longer a directory.
        """
        new_workdir = validate_directory(Path(new_workdir))
        if new_workdir == self.workdir:
            return None
        previous = self.workdir
        self.workdir = new_workdir
        self.store.set(WORKDIR_KEY, f"{new_workdir}\n")
        self.clear_session_token()
        logger.info("workdir_changed", previous=str(previous), workdir=str(new_workdir))
        return previous

    def reset_workdir(self) -> Optional[Path]:
        """Revert to the default workdir and forget the persisted one.

        Returns:
            The previous workdir, or None when already at the default.
        """
        previous = self.change_workdir(self.default_workdir)
        self.store.delete(WORKDIR_KEY)
        return previous

    # --- Favorites ---

    def sorted_favorites(self) -> List[Tuple[str, str]]:
        return sorted(self.favorites.items())

    def get_favorite(self, name: str) -> str:
        """Return the stored path for a favorite.

        Raises:
            FavoriteNotFound: If no favorite has that name.
        """
        normalized = normalize_favorite_name(name)
        try:
            return self.favorites[normalized]
        except KeyError:
            raise FavoriteNotFound(name=normalized) from None

    def add_favorite(self, name: str, path: Path) -> str:
        """Validate the name and persist name -> path.

        Returns:
            The normalized name the favorite was stored under.

        Raises:
            FavoriteNameInvalid: If the name does not match the pattern.
        """
        normalized = validate_favorite_name(name)
        self.favorites[normalized] = str(path)
        self._save_favorites()
        logger.info("favorite_added", name=normalized, path=str(path))
        return normalized

    def remove_favorite(self, name: str) -> str:
        """Remove a favorite.

        Raises:
            FavoriteNotFound: If no favorite has that name.
        """
        normalized = normalize_favorite_name(name)
        if normalized not in self.favorites:
            raise FavoriteNotFound(name=normalized)
        del self.favorites[normalized]
        self._save_favorites()
        logger.info("favorite_removed", name=normalized)
        return normalized

    def _save_favorites(self) -> None:
        self.store.set(FAVORITES_KEY, json.dumps(self.favorites, indent=2) + "\n")
