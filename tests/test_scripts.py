"""Tests for subprocess execution and cancellation.

These tests exercise start_process()/wait_process() directly with real
child processes, so most of them are Unix-only.
"""

import asyncio
import os
import sys
import time

import pytest

from hlscript.scripts import (
    CancelPolicy,
    ProcessResult,
    is_unix,
    is_windows,
    look_path,
    start_process,
    terminate_process,
    wait_process,
)


HOST_PATH = {"PATH": os.environ.get("PATH", "")}


def host_getenv(key):
    return os.environ.get(key, "")


class TestPlatformDetection:
    """Tests for platform detection functions."""

    def test_is_unix_and_is_windows_are_mutually_exclusive(self):
        assert is_unix() != is_windows()

    def test_is_windows_matches_sys_platform(self):
        assert is_windows() == sys.platform.startswith('win')


class TestLookPath:
    """Tests for look_path()."""

    @pytest.mark.unix
    def test_finds_program_on_path(self):
        path = look_path("sh", host_getenv)
        assert os.path.isabs(path)
        assert os.path.basename(path) == "sh"

    def test_missing_program_raises(self):
        with pytest.raises(FileNotFoundError, match="executable file not found"):
            look_path("no-such-program-hlscript", host_getenv)

    @pytest.mark.unix
    def test_uses_given_path_only(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            look_path("sh", lambda key: str(tmp_path) if key == "PATH" else "")


class TestProcessResult:
    """Tests for ProcessResult."""

    def test_success_is_exit_code_zero(self):
        assert ProcessResult("", "", 0).success
        assert not ProcessResult("", "", 1).success
        assert not ProcessResult("", "", -2, cancelled=True).success


@pytest.mark.unix
class TestWaitProcess:
    """Tests for running processes to completion."""

    async def test_captures_stdout_stderr_and_exit_code(self, tmp_path):
        process = await start_process(
            ["/bin/sh", "-c", "echo out; echo err >&2; exit 3"],
            cwd=str(tmp_path),
            env=HOST_PATH,
        )
        result = await wait_process(process)
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.exit_code == 3
        assert not result.cancelled

    async def test_feeds_stdin(self, tmp_path):
        process = await start_process(["/bin/sh", "-c", "cat"], cwd=str(tmp_path), env=HOST_PATH)
        result = await wait_process(process, stdin="piped\n")
        assert result.stdout == "piped\n"

    async def test_runs_in_given_directory_and_env(self, tmp_path):
        process = await start_process(
            ["/bin/sh", "-c", "pwd; echo $GREETING"],
            cwd=str(tmp_path),
            env={**HOST_PATH, "GREETING": "hi"},
        )
        result = await wait_process(process)
        assert result.stdout.splitlines() == [os.path.realpath(str(tmp_path)), "hi"]

    async def test_cancel_event_interrupts_process(self, tmp_path):
        process = await start_process(["/bin/sh", "-c", "sleep 30"], cwd=str(tmp_path), env=HOST_PATH)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)

        started = time.monotonic()
        result = await wait_process(process, cancel_event=cancel, policy=CancelPolicy(grace=5.0))
        assert result.cancelled
        assert not result.success
        assert time.monotonic() - started < 5.0

    async def test_kill_after_grace_when_interrupt_ignored(self, tmp_path):
        process = await start_process(
            ["/bin/sh", "-c", "trap '' INT; sleep 30"],
            cwd=str(tmp_path),
            env=HOST_PATH,
        )
        # Give the shell a moment to install its trap.
        await asyncio.sleep(0.2)
        started = time.monotonic()
        await terminate_process(process, CancelPolicy(grace=0.3))
        assert process.returncode is not None
        assert time.monotonic() - started < 5.0

    async def test_terminate_exited_process_is_noop(self, tmp_path):
        process = await start_process(["/bin/sh", "-c", "exit 0"], cwd=str(tmp_path), env=HOST_PATH)
        await process.wait()
        await terminate_process(process, CancelPolicy(grace=0.1))
        assert process.returncode == 0
