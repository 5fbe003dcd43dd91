"""Subprocess execution for script commands.

This module starts the programs named by 'exec' lines, captures their
stdout, stderr and exit codes, and stops them when a script is cancelled.

Cancellation is a two-step policy: the process group first receives an
interrupt so programs can clean up, and is killed if it is still alive
after a grace period. Windows has no interrupt we can deliver to an
arbitrary child, so there the kill happens immediately.
"""

import asyncio
import logging
import os
import shutil
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform.startswith('win')


def is_unix() -> bool:
    """Check if running on Unix (Linux, macOS, etc.)."""
    return not is_windows()


@dataclass
class ProcessResult:
    """Result of running a subprocess to completion.

    Attributes:
        stdout: Standard output from the process.
        stderr: Standard error from the process.
        exit_code: Exit code of the process (negative if killed by a signal).
        cancelled: True if the process was stopped because the script was cancelled.
    """
    stdout: str
    stderr: str
    exit_code: int
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class CancelPolicy:
    """How to stop a process when its script is cancelled.

    Attributes:
        grace: Seconds to wait after the interrupt before killing the group.
    """
    grace: float = 5.0


def look_path(command: str, getenv: Callable[[str], str]) -> str:
    """Resolve a bare program name against the PATH that getenv returns.

    Args:
        command: Program name without directory components.
        getenv: Lookup function for the environment to search (usually the
            script environment).

    Returns:
        Absolute path of the executable.

    Raises:
        FileNotFoundError: If the program is not found on PATH.
    """
    found = shutil.which(command, path=getenv("PATH"))
    if found is None:
        raise FileNotFoundError(f"exec: {command!r}: executable file not found in $PATH")
    return os.path.abspath(found)


async def start_process(
    argv: List[str],
    cwd: str,
    env: Dict[str, str],
) -> asyncio.subprocess.Process:
    """Start argv with piped stdio in its own process group.

    On Unix, start_new_session=True creates a new process group so the
    whole group (including grandchildren) can be signalled at once.

    Raises:
        FileNotFoundError: If the program does not exist.
        PermissionError: If the program is not executable.
    """
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=is_unix(),
    )


def interrupt_process(process: asyncio.subprocess.Process) -> None:
    """Send an interrupt to the process group, or kill it on Windows."""
    if process.returncode is not None:
        return
    try:
        if is_unix():
            os.killpg(process.pid, signal.SIGINT)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill a subprocess and its entire process group."""
    if process.returncode is not None:
        return
    try:
        if is_unix():
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError, OSError):
        pass


async def terminate_process(
    process: asyncio.subprocess.Process,
    policy: Optional[CancelPolicy] = None,
) -> None:
    """Stop a process: interrupt, wait out the grace period, then kill."""
    policy = policy or CancelPolicy()
    interrupt_process(process)
    if is_unix():
        try:
            await asyncio.wait_for(process.wait(), timeout=policy.grace)
            return
        except asyncio.TimeoutError:
            logger.debug(
                f"Process {process.pid} ignored interrupt for {policy.grace}s, killing",
                extra={"pid": process.pid}
            )
    _kill_process_group(process)
    await process.wait()


async def wait_process(
    process: asyncio.subprocess.Process,
    stdin: str = "",
    cancel_event: Optional[asyncio.Event] = None,
    policy: Optional[CancelPolicy] = None,
) -> ProcessResult:
    """Feed stdin to a started process and wait for it to finish.

    If cancel_event is set before the process exits, the process is
    stopped through terminate_process() and the result is marked cancelled.

    Args:
        process: Process returned by start_process().
        stdin: Text written to the process's standard input.
        cancel_event: Event that, once set, cancels the wait.
        policy: Interrupt-then-kill policy used on cancellation.

    Returns:
        ProcessResult with decoded output and exit code.
    """
    communicate = asyncio.ensure_future(process.communicate(stdin.encode('utf-8')))
    waiters = {communicate}
    cancel_wait = None
    if cancel_event is not None:
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_wait)

    cancelled = False
    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if communicate not in done:
            cancelled = True
            await terminate_process(process, policy)
        stdout_bytes, stderr_bytes = await communicate
    except BaseException:
        # Any other exception (CancelledError, KeyboardInterrupt, etc.)
        # must not leak the child process.
        _kill_process_group(process)
        communicate.cancel()
        raise
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()

    return ProcessResult(
        stdout=stdout_bytes.decode('utf-8', errors='replace'),
        stderr=stderr_bytes.decode('utf-8', errors='replace'),
        exit_code=process.returncode,
        cancelled=cancelled,
    )
