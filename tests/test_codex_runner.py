"""Tests for the Codex process runner.

Process tests run a small Python script in place of the Codex CLI.
The script reads the prompt from stdin and behaves according to its
first word.
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import patch

import psutil
import pytest

from codexgate.codex_runner import (
    CodexRunner,
    RunResult,
    extract_session_id,
    format_run_reply,
)
from codexgate.exceptions import ProcessNonZeroExit, ProcessSpawnError, ProcessTimeout
from codexgate.job_queue import ActiveJob, Job

SESSION_A = "11111111-2222-3333-4444-555555555555"
SESSION_B = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake CLI is a POSIX script")

FAKE_CODEX = '''\
#!{python}
import json, os, subprocess, sys, time

args = sys.argv[1:]
out = args[args.index("-o") + 1]
prompt = sys.stdin.read()
mode, _, rest = prompt.partition(" ")

if mode == "echo":
    with open(out, "w") as f:
        f.write(rest)
    sys.stderr.write("session id: {session}\\n")
elif mode == "stdout":
    sys.stdout.write(rest)
elif mode == "argv":
    with open(out, "w") as f:
        json.dump({{"argv": args, "cwd": os.getcwd()}}, f)
elif mode == "fail":
    sys.stderr.write("boom")
    sys.exit(3)
elif mode == "sleep":
    time.sleep(30)
elif mode == "spawn":
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    with open(rest.strip(), "w") as f:
        f.write(str(child.pid))
    time.sleep(30)
'''


@pytest.fixture
def fake_codex(tmp_path):
    script = tmp_path / "fake-codex"
    script.write_text(FAKE_CODEX.format(python=sys.executable, session=SESSION_A))
    script.chmod(0o755)
    return script


@pytest.fixture
def runner(make_config, fake_codex):
    config = make_config(codex_command=str(fake_codex))
    return CodexRunner(config)


def _active(runner, prompt: str) -> ActiveJob:
    job = Job(reply_to="15551234567@s.whatsapp.net", prompt=prompt)
    return ActiveJob(job=job, output_file=runner.output_file_for(job.id))


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class TestExtractSessionId:

    def test_session_id_line(self):
        assert extract_session_id(f"session id: {SESSION_A}", "") == SESSION_A

    def test_last_match_wins(self):
        stdout = f"Session ID: {SESSION_A}\n...\nsession id: {SESSION_B}"
        assert extract_session_id(stdout, "") == SESSION_B

    def test_stderr_is_searched(self):
        assert extract_session_id("", f"session id: {SESSION_B}") == SESSION_B

    def test_thread_id_fallback(self):
        stdout = json.dumps({"type": "thread.started", "thread_id": SESSION_B})
        assert extract_session_id(stdout, "") == SESSION_B

    def test_session_id_pattern_takes_precedence(self):
        stdout = json.dumps({"thread_id": SESSION_B})
        assert extract_session_id(stdout, f"session id: {SESSION_A}") == SESSION_A

    def test_no_match(self):
        assert extract_session_id("nothing here", "") is None


class TestBuildCommand:

    def test_fresh_session(self, make_config):
        runner = CodexRunner(make_config(codex_extra_args=["--model", "x"]))
        args = runner.build_args(Path("/work"), Path("/rt/out.txt"))
        assert args == [
            "exec", "-C", "/work", "--skip-git-repo-check",
            "-o", "/rt/out.txt", "--model", "x", "-",
        ]

    def test_resume(self, make_config):
        runner = CodexRunner(make_config())
        args = runner.build_args(Path("/work"), Path("/rt/out.txt"), SESSION_A)
        assert args[-3:] == ["resume", SESSION_A, "-"]

    def test_windows_wraps_in_cmd(self, make_config):
        runner = CodexRunner(make_config())
        with patch("codexgate.codex_runner.sys.platform", "win32"):
            cmd = runner.build_command(Path("C:/work dir"), Path("C:/rt/out.txt"))
        assert cmd[:4] == ["cmd.exe", "/d", "/s", "/c"]
        assert '"C:/work dir"' in cmd[4]

    def test_output_file_location(self, make_config, tmp_path):
        runner = CodexRunner(make_config())
        assert runner.output_file_for("17-1") == tmp_path / "runtime" / "codex-last-message-17-1.txt"


class TestRunReply:

    def _result(self, **overrides) -> RunResult:
        values = dict(
            exit_code=0, signal="", stdout="", stderr="", final_text="",
            session_id=None, timed_out=False, runtime_ms=42, timeout_ms=1000,
        )
        values.update(overrides)
        return RunResult(**values)

    def _active(self, tmp_path) -> ActiveJob:
        return ActiveJob(job=Job(reply_to="x", prompt="p"), output_file=tmp_path / "o")

    def test_done(self, tmp_path):
        active = self._active(tmp_path)
        reply = format_run_reply(active, self._result(final_text="answer\r\n"), 100)
        assert reply == f"Done #{active.short_id} in 42 ms.\n\nanswer"

    def test_stdout_used_when_output_file_blank(self, tmp_path):
        active = self._active(tmp_path)
        reply = format_run_reply(active, self._result(final_text="  ", stdout="out"), 100)
        assert reply.endswith("\n\nout")

    def test_truncated(self, tmp_path):
        active = self._active(tmp_path)
        reply = format_run_reply(active, self._result(final_text="x" * 50), 10)
        assert reply.endswith("x" * 10 + "\n\n[truncated to 10 chars]")

    def test_no_output(self, tmp_path):
        active = self._active(tmp_path)
        assert format_run_reply(active, self._result(), 100) == f"No output for #{active.short_id}."

    def test_failure_uses_stderr_then_stdout(self, tmp_path):
        active = self._active(tmp_path)
        reply = format_run_reply(active, self._result(exit_code=2, stdout="so"), 100)
        assert reply == f"Codex failed on #{active.short_id}.\nexit_code: 2\nso"
        reply = format_run_reply(active, self._result(exit_code=2), 100)
        assert reply.endswith("Unknown error")

    def test_timeout_precedes_failure(self, tmp_path):
        active = self._active(tmp_path)
        result = self._result(exit_code=-1, signal="SIGKILL", timed_out=True)
        assert format_run_reply(active, result, 100) == (
            f"Timeout on #{active.short_id} after 1000 ms."
        )

    def test_stopped_precedes_everything(self, tmp_path):
        active = self._active(tmp_path)
        active.manually_stopped = True
        result = self._result(exit_code=-1, timed_out=True)
        assert format_run_reply(active, result, 100) == f"Stopped #{active.short_id}."

    def test_raise_for_status(self):
        with pytest.raises(ProcessTimeout):
            self._result(timed_out=True).raise_for_status()
        with pytest.raises(ProcessNonZeroExit) as exc_info:
            self._result(exit_code=5, stderr="bad").raise_for_status()
        assert exc_info.value.exit_code == 5
        assert exc_info.value.error_text == "bad"
        self._result().raise_for_status()


@posix_only
class TestRun:

    @pytest.mark.asyncio
    async def test_success_reads_output_file_and_session(self, runner, tmp_path):
        active = _active(runner, "echo final answer")
        result = await runner.run(active, tmp_path)

        assert result.exit_code == 0
        assert result.final_text == "final answer"
        assert result.session_id == SESSION_A
        assert result.timed_out is False
        assert active.pid is not None
        assert not active.output_file.exists()

    @pytest.mark.asyncio
    async def test_stdout_fallback(self, runner, tmp_path):
        result = await runner.run(_active(runner, "stdout from stdout"), tmp_path)
        assert result.final_text == ""
        assert result.output_text == "from stdout"

    @pytest.mark.asyncio
    async def test_arguments_and_cwd(self, runner, tmp_path):
        workdir = tmp_path / "work"
        active = _active(runner, "argv")
        output_file = active.output_file

        result = await runner.run(active, workdir, SESSION_B)

        payload = json.loads(result.final_text)
        assert payload["cwd"] == str(workdir)
        assert payload["argv"] == [
            "exec", "-C", str(workdir), "--skip-git-repo-check",
            "-o", str(output_file), "resume", SESSION_B, "-",
        ]

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, runner, tmp_path):
        result = await runner.run(_active(runner, "fail"), tmp_path)
        assert result.exit_code == 3
        assert result.stderr == "boom"
        with pytest.raises(ProcessNonZeroExit):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, runner, tmp_path):
        active = _active(runner, "sleep")
        result = await runner.run(active, tmp_path, timeout_ms=300)

        assert result.timed_out is True
        assert result.exit_code == -1
        assert result.signal == "SIGKILL"
        assert format_run_reply(active, result, 100) == (
            f"Timeout on #{active.short_id} after 300 ms."
        )

    @pytest.mark.asyncio
    async def test_timeout_kills_grandchildren(self, runner, tmp_path):
        pid_file = tmp_path / "grandchild.pid"
        result = await runner.run(_active(runner, f"spawn {pid_file}"), tmp_path, timeout_ms=1500)

        assert result.timed_out is True
        grandchild = int(pid_file.read_text())
        for _ in range(50):
            if _gone(grandchild):
                break
            await asyncio.sleep(0.05)
        assert _gone(grandchild)

    @pytest.mark.asyncio
    async def test_stop_marks_and_kills(self, runner, tmp_path):
        active = _active(runner, "sleep")
        task = asyncio.create_task(runner.run(active, tmp_path))
        for _ in range(200):
            if active.pid is not None:
                break
            await asyncio.sleep(0.01)

        assert await runner.stop(active) is True
        result = await task

        assert active.manually_stopped is True
        assert result.exit_code == -1
        assert format_run_reply(active, result, 100) == f"Stopped #{active.short_id}."

    @pytest.mark.asyncio
    async def test_stop_before_spawn_skips_launch(self, runner, tmp_path):
        active = _active(runner, "echo hi")
        assert await runner.stop(active) is True

        with patch("codexgate.codex_runner.asyncio.create_subprocess_exec") as spawn:
            result = await runner.run(active, tmp_path)

        spawn.assert_not_called()
        assert active.pid is None
        assert result.exit_code == -1
        assert format_run_reply(active, result, 100) == f"Stopped #{active.short_id}."

    @pytest.mark.asyncio
    async def test_timeout_covers_unread_stdin(self, make_config, tmp_path):
        script = tmp_path / "deaf-codex"
        script.write_text(f"#!{sys.executable}\nimport time\ntime.sleep(30)\n")
        script.chmod(0o755)
        runner = CodexRunner(make_config(codex_command=str(script)))
        active = _active(runner, "x" * (4 * 1024 * 1024))

        result = await asyncio.wait_for(runner.run(active, tmp_path, timeout_ms=300), timeout=10)

        assert result.timed_out is True
        assert result.exit_code == -1

    @pytest.mark.asyncio
    async def test_spawn_error(self, make_config, tmp_path):
        runner = CodexRunner(make_config(codex_command=str(tmp_path / "missing")))
        active = _active(runner, "echo hi")
        with pytest.raises(ProcessSpawnError):
            await runner.run(active, tmp_path)
        assert not active.output_file.exists()


class TestOpenInteractive:

    def test_requires_launcher_outside_windows(self, make_config, tmp_path):
        runner = CodexRunner(make_config())
        with patch("codexgate.codex_runner.sys.platform", "linux"):
            with pytest.raises(ProcessSpawnError, match="PC_TERMINAL_COMMAND"):
                runner.open_interactive(tmp_path, None)

    def test_launches_with_resume(self, make_config, tmp_path):
        runner = CodexRunner(make_config(
            pc_terminal_command=["x-terminal-emulator", "-e"],
        ))
        with patch("codexgate.codex_runner.sys.platform", "linux"), \
                patch("codexgate.codex_runner.subprocess.Popen") as mock_popen:
            launch = runner.open_interactive(tmp_path, SESSION_A)

        cmd = mock_popen.call_args[0][0]
        assert cmd == [
            "x-terminal-emulator", "-e", "codex", "-C", str(tmp_path), "resume", SESSION_A,
        ]
        assert launch.resumed is True
        assert launch.session_id == SESSION_A

    def test_resume_last_without_session(self, make_config, tmp_path):
        runner = CodexRunner(make_config())
        with patch("codexgate.codex_runner.sys.platform", "win32"):
            cmd = runner.build_interactive_command(tmp_path, None)
        assert cmd[:7] == ["cmd.exe", "/d", "/c", "start", "", "cmd.exe", "/k"]
        assert cmd[-2:] == ["resume", "--last"]

    def test_popen_failure(self, make_config, tmp_path):
        runner = CodexRunner(make_config(pc_terminal_command=["term"]))
        with patch("codexgate.codex_runner.sys.platform", "linux"), \
                patch("codexgate.codex_runner.subprocess.Popen", side_effect=OSError("nope")):
            with pytest.raises(ProcessSpawnError, match="nope"):
                runner.open_interactive(tmp_path, None)
