"""Codex CLI runner for codexgate.

Wraps ``codex exec`` as an async subprocess for one job at a time.
The prompt goes in on stdin; the final answer is written by Codex to
a per-job ``-o`` file, which is treated as authoritative because the
stdout stream also carries progress chatter. The resumable session
id is recovered from the log lines on stdout/stderr.

Key classes:
    RunResult -- structured outcome of one Codex process.
    CodexRunner -- builds the command line, runs it with timeout and
        tree-kill, opens interactive terminals for /pc.

Module-level functions:
    extract_session_id -- last session id mentioned in the logs.
    format_run_reply -- turn a RunResult into the chat reply text.
"""

import asyncio
import re
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog

from .config import Config, get_config
from .exceptions import ProcessNonZeroExit, ProcessSpawnError, ProcessTimeout
from .formatting import normalize_text, trim_output
from .job_queue import ActiveJob
from .process_tree import terminate_tree_async

logger = structlog.get_logger("codexgate.runner")

# Seconds to wait for a killed process to be reaped
REAP_TIMEOUT = 5.0

# Seconds to wait for stdout/stderr readers after the process exits.
# A surviving grandchild can hold the pipes open.
PIPE_DRAIN_TIMEOUT = 5.0

READ_CHUNK_SIZE = 4096

# Checked in order; the first pattern with any match wins and the
# last match of that pattern is used.
SESSION_ID_PATTERNS = (
    re.compile(r"session id:\s*([0-9a-f-]{36})", re.IGNORECASE),
    re.compile(r'"thread_id"\s*:\s*"([0-9a-f-]{36})"', re.IGNORECASE),
)


def extract_session_id(stdout: str, stderr: str) -> Optional[str]:
    """Find the most recent session id in combined stdout/stderr."""
    haystack = f"{stdout or ''}\n{stderr or ''}"
    for pattern in SESSION_ID_PATTERNS:
        matches = pattern.findall(haystack)
        if matches:
            return matches[-1]
    return None


@dataclass
class RunResult:
    """Outcome of one Codex process.

    Attributes:
        exit_code: Process exit status, -1 when killed by a signal.
        signal: Name of the terminating signal, or "".
        stdout: Raw decoded stdout.
        stderr: Raw decoded stderr.
        final_text: Contents of the -o output file ("" if missing).
        session_id: Session id detected in the logs, if any.
        timed_out: True if the timeout fired and the tree was killed.
        runtime_ms: Wall time from spawn to exit.
        timeout_ms: The timeout that applied to this run.
        job_id: Id of the job this run belonged to.
    """
    exit_code: int
    signal: str
    stdout: str
    stderr: str
    final_text: str
    session_id: Optional[str]
    timed_out: bool
    runtime_ms: int = 0
    timeout_ms: int = 0
    job_id: str = ""

    @property
    def output_text(self) -> str:
        """The answer: output file when non-empty, else stdout."""
        if self.final_text and self.final_text.strip():
            return self.final_text
        return self.stdout

    @property
    def error_text(self) -> str:
        return self.stderr or self.stdout or "Unknown error"

    def raise_for_status(self) -> None:
        """Raise if the run did not finish normally.

        Raises:
            ProcessTimeout: If the run was killed by the timeout.
            ProcessNonZeroExit: If the process exited non-zero.
        """
        if self.timed_out:
            raise ProcessTimeout(
                f"Timed out after {self.timeout_ms} ms",
                timeout_ms=self.timeout_ms,
                job_id=self.job_id,
            )
        if self.exit_code != 0:
            raise ProcessNonZeroExit(
                f"Codex exited with code {self.exit_code}",
                exit_code=self.exit_code,
                error_text=self.error_text,
                job_id=self.job_id,
                signal=self.signal,
            )


@dataclass
class InteractiveLaunch:
    """What /pc opened."""
    resumed: bool
    session_id: Optional[str]
    workdir: Path


def format_run_reply(active: ActiveJob, result: RunResult, max_chars: int) -> str:
    """Build the chat reply for a finished run.

    Precedence: manually stopped, timed out, non-zero exit, empty
    output, success.
    """
    short_id = active.short_id
    if active.manually_stopped:
        return f"Stopped #{short_id}."
    try:
        result.raise_for_status()
    except ProcessTimeout as e:
        return f"Timeout on #{short_id} after {e.timeout_ms} ms."
    except ProcessNonZeroExit as e:
        error_text = trim_output(normalize_text(e.error_text), max_chars)
        return "\n".join([
            f"Codex failed on #{short_id}.",
            f"exit_code: {e.exit_code}",
            error_text,
        ])

    output = trim_output(normalize_text(result.output_text), max_chars)
    if not output:
        return f"No output for #{short_id}."
    return f"Done #{short_id} in {result.runtime_ms} ms.\n\n{output}"


class CodexRunner:
    """Runs the Codex CLI for one job at a time.

    Args:
        config: Config instance. Defaults to the global config.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def output_file_for(self, job_id: str) -> Path:
        return self.config.runtime_dir / f"codex-last-message-{job_id}.txt"

    def build_args(
        self,
        workdir: Path,
        output_file: Path,
        session_token: Optional[str] = None,
    ) -> List[str]:
        """Build the ``codex exec`` argument list (without the command).

        The trailing ``-`` tells Codex to read the prompt from stdin.
        """
        args = [
            "exec",
            "-C", str(workdir),
            "--skip-git-repo-check",
            "-o", str(output_file),
            *self.config.codex_extra_args,
        ]
        if session_token:
            args.extend(["resume", session_token])
        args.append("-")
        return args

    def build_command(
        self,
        workdir: Path,
        output_file: Path,
        session_token: Optional[str] = None,
    ) -> List[str]:
        """Full argv, wrapped in cmd.exe on Windows so .cmd shims resolve."""
        command = self.config.codex_command
        args = self.build_args(workdir, output_file, session_token)
        if sys.platform != "win32":
            return [command, *args]
        return ["cmd.exe", "/d", "/s", "/c", subprocess.list2cmdline([command, *args])]

    @staticmethod
    def _process_group_kwargs() -> dict:
        if sys.platform == "win32":
            return {
                "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP
                | subprocess.CREATE_NO_WINDOW,
            }
        return {"start_new_session": True}

    async def run(
        self,
        active: ActiveJob,
        workdir: Path,
        session_token: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> RunResult:
        """Run Codex for the active job and wait for it to finish.

        Fills in active.process, active.pid and active.started_at as
        soon as the process exists so /stop can reach it. The output
        file is deleted before returning, whatever the outcome.

        Args:
            active: The job being executed.
            workdir: Directory Codex runs against.
            session_token: Session to resume, or None for a fresh one.
            timeout_ms: Per-job timeout (default from config).

        Returns:
            RunResult describing the process outcome.

        Raises:
            ProcessSpawnError: If the process could not be started.
        """
        if timeout_ms is None:
            timeout_ms = self.config.codex_timeout_ms
        try:
            return await self._execute(active, Path(workdir), session_token, timeout_ms)
        finally:
            self._discard_output_file(active.output_file)

    async def _execute(
        self,
        active: ActiveJob,
        workdir: Path,
        session_token: Optional[str],
        timeout_ms: int,
    ) -> RunResult:
        job = active.job
        active.output_file.parent.mkdir(parents=True, exist_ok=True)
        if active.manually_stopped:
            logger.info("codex_run_skipped_stopped", job_id=job.id)
            return RunResult(
                exit_code=-1,
                signal="",
                stdout="",
                stderr="",
                final_text="",
                session_id=None,
                timed_out=False,
                timeout_ms=timeout_ms,
                job_id=job.id,
            )
        cmd = self.build_command(workdir, active.output_file, session_token)

        logger.info(
            "codex_run_start",
            job_id=job.id,
            workdir=str(workdir),
            resume=bool(session_token),
            prompt_length=len(job.prompt),
            timeout_ms=timeout_ms,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                **self._process_group_kwargs(),
            )
        except OSError as e:
            logger.error(
                "codex_spawn_error", job_id=job.id, error=str(e),
                exc_type=type(e).__name__,
            )
            raise ProcessSpawnError(str(e), job_id=job.id) from e

        active.process = process
        active.pid = process.pid
        active.started_at = time.monotonic()
        if active.manually_stopped:
            # /stop arrived while the process was being created
            await terminate_tree_async(process.pid)

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.create_task(self._pump(process.stdout, stdout_chunks)),
            asyncio.create_task(self._pump(process.stderr, stderr_chunks)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(self._feed_stdin(process, job.prompt), process.wait()),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("codex_timeout", job_id=job.id, timeout_ms=timeout_ms)
            await terminate_tree_async(process.pid)
            await self._reap(process, job.id)
        except asyncio.CancelledError:
            await terminate_tree_async(process.pid)
            for reader in readers:
                reader.cancel()
            raise

        runtime_ms = int((time.monotonic() - active.started_at) * 1000)
        await self._finish_readers(readers)

        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")

        returncode = process.returncode
        signal_name = ""
        exit_code = returncode if returncode is not None else -1
        if returncode is not None and returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
            exit_code = -1

        result = RunResult(
            exit_code=exit_code,
            signal=signal_name,
            stdout=stdout,
            stderr=stderr,
            final_text=self._read_output_file(active.output_file),
            session_id=extract_session_id(stdout, stderr),
            timed_out=timed_out,
            runtime_ms=runtime_ms,
            timeout_ms=timeout_ms,
            job_id=job.id,
        )

        logger.info(
            "codex_run_complete",
            job_id=job.id,
            exit_code=result.exit_code,
            signal=result.signal,
            timed_out=timed_out,
            runtime_ms=runtime_ms,
            stdout_length=len(stdout),
            stderr_length=len(stderr),
            output_length=len(result.final_text),
            session_id=result.session_id,
        )
        return result

    @staticmethod
    async def _pump(stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
        """Collect a pipe incrementally until EOF."""
        if stream is None:
            return
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            sink.append(data)

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        """Write the prompt and close stdin to signal end of input."""
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("codex_stdin_closed_early", error=str(e))
        finally:
            process.stdin.close()

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process, job_id: str) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error("codex_process_unreaped", job_id=job_id, pid=process.pid)

    @staticmethod
    async def _finish_readers(readers: List[asyncio.Task]) -> None:
        done, pending = await asyncio.wait(readers, timeout=PIPE_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("codex_pipes_left_open", count=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    def _read_output_file(output_file: Path) -> str:
        try:
            return output_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.warning("codex_output_file_unreadable", path=str(output_file), error=str(e))
            return ""

    @staticmethod
    def _discard_output_file(output_file: Path) -> None:
        try:
            output_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("codex_output_file_cleanup_failed", path=str(output_file), error=str(e))

    async def stop(self, active: ActiveJob) -> bool:
        """Mark the active job as manually stopped and kill its tree.

        A job whose process has not been spawned yet is never launched.

        Returns:
            True if the process tree is gone or was never started.
        """
        active.manually_stopped = True
        if not active.pid:
            logger.info("codex_run_stopped_before_launch", job_id=active.id)
            return True
        stopped = await terminate_tree_async(active.pid)
        logger.info("codex_run_stopped", job_id=active.id, pid=active.pid, stopped=stopped)
        return stopped

    def build_interactive_command(
        self, workdir: Path, session_token: Optional[str] = None,
    ) -> List[str]:
        """argv for an interactive Codex terminal on the host.

        Raises:
            ProcessSpawnError: If no terminal launcher is configured on
                a non-Windows host.
        """
        args = ["-C", str(workdir), "resume"]
        args.append(session_token if session_token else "--last")
        command = self.config.codex_command
        if sys.platform == "win32":
            return ["cmd.exe", "/d", "/c", "start", "", "cmd.exe", "/k", command, *args]
        launcher = self.config.pc_terminal_command
        if not launcher:
            raise ProcessSpawnError(
                "Opening a terminal window needs PC_TERMINAL_COMMAND on this host"
                ' (for example ["x-terminal-emulator", "-e"]).'
            )
        return [*launcher, command, *args]

    def open_interactive(
        self, workdir: Path, session_token: Optional[str] = None,
    ) -> InteractiveLaunch:
        """Open a detached interactive Codex terminal.

        Resumes session_token when known, else the most recent session.

        Raises:
            ProcessSpawnError: If the terminal could not be launched.
        """
        cmd = self.build_interactive_command(workdir, session_token)
        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS
        else:
            kwargs["start_new_session"] = True
        try:
            subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=str(workdir),
                **kwargs,
            )
        except OSError as e:
            logger.error("codex_interactive_spawn_error", error=str(e))
            raise ProcessSpawnError(str(e)) from e
        logger.info(
            "codex_interactive_opened",
            workdir=str(workdir),
            resumed=bool(session_token),
        )
        return InteractiveLaunch(
            resumed=bool(session_token), session_id=session_token, workdir=Path(workdir),
        )
