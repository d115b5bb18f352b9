"""Forceful process-tree termination for codexgate.

Codex is launched in its own session (POSIX) or process group
(Windows), and may spawn helpers of its own. terminate_tree() kills
the whole tree: every descendant psutil can find, plus the process
group on POSIX so reparented grandchildren go too.

Key functions:
    terminate_tree: Blocking best-effort kill, returns success.
    terminate_tree_async: Same, run in a worker thread.
"""

import asyncio
import os
import signal
import sys
from typing import List, Optional

import psutil
import structlog

logger = structlog.get_logger("codexgate.runner")

# Seconds to wait for killed processes to be reaped
KILL_WAIT_TIMEOUT = 3.0


def _kill_process_group(pid: int) -> None:
    """SIGKILL the process group led by pid, if pid leads one."""
    if sys.platform == "win32":
        return
    try:
        if os.getpgid(pid) != pid:
            return
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_tree(pid: Optional[int], timeout: float = KILL_WAIT_TIMEOUT) -> bool:
    """Kill a process and all of its descendants.

    Args:
        pid: Root process id. None or 0 is a no-op.
        timeout: Seconds to wait for the killed processes to exit.

    Returns:
        True if nothing from the tree is left running, False if pid
        was empty or some process survived or could not be signalled.

    The root process is only signalled, never waited on: it is the
    caller's child and the caller reaps it.
    """
    if not pid:
        return False

    try:
        root = psutil.Process(pid)
        descendants: List[psutil.Process] = root.children(recursive=True)
    except psutil.NoSuchProcess:
        logger.debug("terminate_tree_already_gone", pid=pid)
        return True

    _kill_process_group(pid)

    denied = False
    for proc in descendants + [root]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            denied = True
            logger.warning("terminate_tree_access_denied", pid=proc.pid)

    _, alive = psutil.wait_procs(descendants, timeout=timeout)
    if alive:
        logger.warning(
            "terminate_tree_survivors", pid=pid, survivors=[p.pid for p in alive],
        )
    else:
        logger.info("terminate_tree_done", pid=pid, count=len(descendants) + 1)
    return not alive and not denied


async def terminate_tree_async(
    pid: Optional[int], timeout: float = KILL_WAIT_TIMEOUT,
) -> bool:
    """terminate_tree() without blocking the event loop."""
    return await asyncio.to_thread(terminate_tree, pid, timeout)
