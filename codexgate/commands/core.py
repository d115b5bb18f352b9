"""Core command handler for codexgate.

Handles: help, guide, status, session, pwd, cd, cd-reset, fav-list,
fav-add, fav-rm, fav, pc/openpc, stop, new.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

import structlog

from ..exceptions import (
    FavoriteNameInvalid,
    FavoriteNotFound,
    PathResolutionError,
    ProcessSpawnError,
)
from ..workdirs import normalize_favorite_name, resolve_directory, validate_favorite_name
from .base import BaseCommandHandler

logger = structlog.get_logger("codexgate.gateway")

UNKNOWN_COMMAND_REPLY = "Unknown command. Use /help."
WORK_IN_PROGRESS_REPLY = (
    "Cannot change workdir while jobs are running/queued. Use /stop first."
)

_FAV_ADD_ARGS = re.compile(r"^(\S+)\s+(.+)$", re.DOTALL)

HELP_TEXT = "\n".join([
    "Gateway commands:",
    "/help - quick command list",
    "/guide - simple step-by-step guide",
    "/status - queue and runtime status",
    "/session - show tracked Codex session id",
    "/pwd - show current Codex workdir",
    "/cd <path> - change Codex workdir",
    "/cd-reset - reset workdir to the configured default",
    "/fav-list - list favorite workdirs",
    "/fav-add <name> <path> - save favorite workdir",
    "/fav-rm <name> - remove favorite workdir",
    "/fav <name> - switch workdir to favorite",
    "/pc - open Codex terminal on this PC (resume current session if available)",
    "/stop - stop active run and clear queue",
    "/new - reset Codex session context",
    "",
    "Any message without leading '/' is sent to Codex.",
])

GUIDE_TEXT = "\n".join([
    "Quick guide:",
    "1) Check status: /status",
    "2) See current folder: /pwd",
    "3) Change folder: /cd ~/projects/some-project",
    "4) Save folder as favorite: /fav-add proj ~/projects/some-project",
    "5) Switch to favorite later: /fav proj",
    "6) Send normal text (without /) to run Codex in that folder.",
    "",
    "Useful commands:",
    "- /pc : open Codex terminal on your PC (resumes current session when possible)",
    "- /stop : stop running job + clear queue",
    "- /new : reset chat context with Codex",
    "- /cd-reset : go back to the default folder",
    "- /fav-list : show all favorites",
    "- /fav-rm <name> : delete one favorite",
    "",
    "Example workflow:",
    "A) /fav proj",
    'B) "Please list all files in this folder."',
    'C) "Create a README for this project."',
])


class CoreCommandHandler(BaseCommandHandler):
    """Handles the gateway's control commands."""

    def get_commands(self):
        return {
            "help": self.handle_help,
            "guide": self.handle_guide,
            "status": self.handle_status,
            "session": self.handle_session,
            "pwd": self.handle_pwd,
            "cd": self.handle_cd,
            "cd-reset": self.handle_cd_reset,
            "fav-list": self.handle_fav_list,
            "fav-add": self.handle_fav_add,
            "fav-rm": self.handle_fav_rm,
            "fav": self.handle_fav,
            "pc": self.handle_pc,
            "openpc": self.handle_pc,
            "stop": self.handle_stop,
            "new": self.handle_new,
        }

    def get_help_lines(self) -> str:
        return HELP_TEXT

    # --- Informational commands ---

    async def handle_help(self, sender: str, args: str) -> str:
        """Show the command list.

        WhatsApp usage::

            /help
        """
        return self.get_help_lines()

    async def handle_guide(self, sender: str, args: str) -> str:
        return GUIDE_TEXT

    async def handle_status(self, sender: str, args: str) -> str:
        """Show time, uptime, queue length, running job, session and workdir.

        WhatsApp usage::

            /status

        Args:
            sender: Chat id of the message sender.
            args: Unused.

        Returns:
            Multi-line status string.
        """
        state = self.ctx.state
        active = state.active_job
        running = f"yes (#{active.short_id})" if active else "no"
        return "\n".join([
            "Gateway status:",
            f"- time: {datetime.now().astimezone().isoformat(timespec='seconds')}",
            f"- uptime_s: {state.uptime_seconds}",
            f"- queue_len: {len(state.queue)}",
            f"- running: {running}",
            f"- session_id: {state.session_token or '(none)'}",
            f"- workdir: {state.workdir}",
        ])

    async def handle_session(self, sender: str, args: str) -> str:
        token = self.ctx.state.session_token
        if token:
            return f"Tracked session id:\n{token}"
        return "No tracked session id yet."

    async def handle_pwd(self, sender: str, args: str) -> str:
        return f"Current workdir:\n{self.ctx.state.workdir}"

    # --- Workdir commands ---

    def _apply_workdir_change(self, new_workdir: Path, header: str) -> str:
        """Commit a workdir change and describe it.

        Raises:
            PathResolutionError: If new_workdir stopped being a directory.
        """
        state = self.ctx.state
        previous = state.change_workdir(new_workdir)
        if previous is None:
            return f"Workdir unchanged:\n{state.workdir}"
        return "\n".join([
            header,
            f"from: {previous}",
            f"to: {state.workdir}",
            "Session context reset.",
        ])

    async def handle_cd(self, sender: str, args: str) -> str:
        """Change the Codex workdir and reset the session.

        WhatsApp usage::

            /cd ~/projects/api
            /cd "../other repo"
            /cd $HOME/work

        Relative paths resolve against the current workdir. Refused
        while a job is running or queued.

        Args:
            sender: Chat id of the message sender.
            args: Path text, optionally quoted.

        Returns:
            Change summary, "Workdir unchanged", or an error message.
        """
        if not args:
            return "Usage: /cd <path>"
        state = self.ctx.state
        if state.has_work_in_progress:
            return WORK_IN_PROGRESS_REPLY
        try:
            resolved = resolve_directory(args, state.workdir)
            return self._apply_workdir_change(resolved, "Workdir updated.")
        except PathResolutionError as e:
            return f"Could not set workdir: {e}"

    async def handle_cd_reset(self, sender: str, args: str) -> str:
        """Revert to the configured default workdir.

        WhatsApp usage::

            /cd-reset
        """
        state = self.ctx.state
        if state.has_work_in_progress:
            return WORK_IN_PROGRESS_REPLY
        try:
            previous = state.reset_workdir()
        except PathResolutionError as e:
            return f"Could not set workdir: {e}"
        if previous is None:
            return f"Workdir unchanged:\n{state.workdir}"
        return "\n".join([
            "Workdir reset to default.",
            f"from: {previous}",
            f"to: {state.workdir}",
            "Session context reset.",
        ])

    # --- Favorites ---

    async def handle_fav_list(self, sender: str, args: str) -> str:
        favorites = self.ctx.state.sorted_favorites()
        if not favorites:
            return "No favorites set. Use /fav-add <name> <path>."
        lines = ["Favorites:"]
        lines.extend(f"- {name}: {path}" for name, path in favorites)
        return "\n".join(lines)

    async def handle_fav_add(self, sender: str, args: str) -> str:
        """Save a directory under a short name.

        WhatsApp usage::

            /fav-add api ~/projects/api

        Args:
            sender: Chat id of the message sender.
            args: ``<name> <path>``. Names are lowercased and must match
                ``[a-z0-9][a-z0-9._-]{0,31}``.

        Returns:
            Confirmation with the resolved path, or an error message.
        """
        match = _FAV_ADD_ARGS.match(args)
        if not match:
            return "Usage: /fav-add <name> <path>"
        state = self.ctx.state
        try:
            name = validate_favorite_name(match.group(1))
            resolved = resolve_directory(match.group(2), state.workdir)
            name = state.add_favorite(name, resolved)
        except (FavoriteNameInvalid, PathResolutionError) as e:
            return f"Could not save favorite: {e}"
        return f"Favorite saved: {name}\n{resolved}"

    async def handle_fav_rm(self, sender: str, args: str) -> str:
        name = normalize_favorite_name(args)
        if not name:
            return "Usage: /fav-rm <name>"
        try:
            self.ctx.state.remove_favorite(name)
        except FavoriteNotFound as e:
            return str(e)
        return f"Favorite removed: {name}"

    async def handle_fav(self, sender: str, args: str) -> str:
        """Switch the workdir to a saved favorite.

        WhatsApp usage::

            /fav api

        The stored path is resolved again, so a favorite whose
        directory has since disappeared is reported instead of used.
        """
        name = normalize_favorite_name(args)
        if not name:
            return "Usage: /fav <name>"
        state = self.ctx.state
        try:
            stored = state.get_favorite(name)
        except FavoriteNotFound as e:
            return str(e)
        if state.has_work_in_progress:
            return WORK_IN_PROGRESS_REPLY
        try:
            resolved = resolve_directory(stored, state.workdir)
            return self._apply_workdir_change(
                resolved, f"Workdir changed to favorite: {name}",
            )
        except PathResolutionError as e:
            return f'Could not switch to favorite "{name}": {e}'

    # --- Process control ---

    async def handle_pc(self, sender: str, args: str) -> str:
        """Open an interactive Codex terminal on the host machine.

        WhatsApp usage::

            /pc
            /openpc

        Resumes the tracked session when there is one, otherwise the
        most recent session in the active workdir.
        """
        state = self.ctx.state
        try:
            launch = self.ctx.runner.open_interactive(state.workdir, state.session_token)
        except ProcessSpawnError as e:
            return f"Could not open PC terminal: {e}"
        if launch.resumed:
            return (
                f"Opened Codex terminal on PC and resumed session {launch.session_id}.\n"
                f"workdir: {launch.workdir}"
            )
        return (
            "Opened Codex terminal on PC.\n"
            "No tracked session id found, trying latest session in:\n"
            f"{launch.workdir}"
        )

    async def handle_stop(self, sender: str, args: str) -> str:
        """Kill the active run and discard the queue.

        WhatsApp usage::

            /stop

        Returns:
            What was stopped or cleared, or "Nothing running.".
        """
        state = self.ctx.state
        active = state.active_job
        if active is not None:
            stopped = await self.ctx.runner.stop(active)
            dropped = state.queue.clear()
            if not stopped:
                return "Could not stop active run cleanly."
            return f"Stopped active run. Cleared {dropped} queued item(s)."

        if len(state.queue) > 0:
            dropped = state.queue.clear()
            return f"Cleared {dropped} queued item(s)."

        return "Nothing running."

    async def handle_new(self, sender: str, args: str) -> str:
        """Drop queued prompts and forget the Codex session.

        WhatsApp usage::

            /new
        """
        state = self.ctx.state
        dropped = state.queue.clear()
        state.clear_session_token()
        return f"Started a fresh Codex session context. Cleared {dropped} queued item(s)."
