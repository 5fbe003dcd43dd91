"""Execution of a single script.

A Script owns everything one script run needs: its work directory, its
environment, the stdout/stderr of the last command, background
processes, cleanup callbacks and the transcript. Scripts never share
state with each other, so a run can execute many of them concurrently.

The transcript is kept short on success. Each phase header marks a point
in the log; when the next phase starts, everything logged since the
mark is discarded (unless verbose) and the elapsed time is appended to
the header.
"""

import asyncio
import contextlib
import inspect
import io
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from hlscript.archive import Archive, parse_file
from hlscript.engine.commands import Dispatcher, Neg
from hlscript.engine.conditions import evaluate_condition
from hlscript.engine.env import (
    Env,
    build_env_map,
    env_list_to_dict,
    env_var_name,
    expand,
    standard_env,
)
from hlscript.engine.errors import (
    CommandFailedError,
    HlscriptError,
    ScriptFailure,
    ScriptFatalError,
    ScriptParseError,
    ScriptSkipped,
    ScriptTimeoutError,
    UnknownFunctionError,
)
from hlscript.engine.httpreq import HTTPClientRegistry
from hlscript.engine.params import Params
from hlscript.engine.update import apply_script_updates
from hlscript.frontmatter import Frontmatter, parse_frontmatter
from hlscript.parsing import parse_line
from hlscript.scripts import (
    ProcessResult,
    look_path,
    start_process,
    terminate_process,
    wait_process,
)

logger = logging.getLogger(__name__)

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"


@dataclass
class ScriptOutcome:
    """Result of running one script.

    Attributes:
        name: Script name (file name without extension)
        file: Path of the script file
        status: PASS, FAIL or SKIP
        transcript: Abbreviated transcript log
        duration: Wall time in seconds
    """
    name: str
    file: str
    status: str
    transcript: str
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == PASS

    @property
    def failed(self) -> bool:
        return self.status == FAIL


@dataclass
class BackgroundCommand:
    """A process started by 'exec ... &' and not yet waited for."""
    argv: List[str]
    neg: Neg
    process: asyncio.subprocess.Process
    task: "asyncio.Future[ProcessResult]" = field(repr=False)


class Transcript:
    """Append-only text log that can be truncated back to a mark."""

    def __init__(self) -> None:
        self._buf = io.StringIO()

    def write(self, text: str) -> None:
        self._buf.write(text)

    def truncate(self, size: int) -> None:
        self._buf.seek(size)
        self._buf.truncate(size)

    def getvalue(self) -> str:
        return self._buf.getvalue()

    def __len__(self) -> int:
        return self._buf.tell()


def _coverage_active() -> bool:
    """Report whether coverage.py is currently measuring this process."""
    coverage = sys.modules.get("coverage")
    if coverage is None:
        return False
    current = getattr(getattr(coverage, "Coverage", None), "current", None)
    return current is not None and current() is not None


class Script:
    """State of one running script.

    Custom commands registered through Params.cmds receive the Script and
    use its helpers: logf(), fatalf(), mkabs(), read_file(), getenv(),
    setenv(), exec(), value() and defer().
    """

    def __init__(self, params: Params, file: str, name: str, test_temp_dir: str) -> None:
        self.params = params
        self.file = file
        self.name = name
        self.test_temp_dir = test_temp_dir

        self.workdir = ""
        self.cd = ""
        self.env: List[str] = []
        self.env_map: Dict[str, str] = {}
        self.values: Dict[Any, Any] = {}

        self.stdin = ""
        self.stdout = ""
        self.stderr = ""
        self.status = 0
        self.stopped = False

        self.log = Transcript()
        self.mark = 0
        self.start: Optional[float] = None
        self.line = ""
        self.lineno = 0

        self.background: List[BackgroundCommand] = []
        self._deferred: List[Callable[[], Any]] = []

        self.archive: Optional[Archive] = None
        # Absolute path of each extracted file -> its name in the archive.
        self.script_files: Dict[str, str] = {}
        # Archive name -> replacement content, collected by 'cmp' in update mode.
        self.script_updates: Dict[str, str] = {}

        self.frontmatter: Optional[Frontmatter] = None
        self.http_clients = HTTPClientRegistry()
        self.dispatcher = Dispatcher(params.cmds)
        self.cancelled = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    # Helpers for command implementations.

    def value(self, key: Any) -> Any:
        """Return a value stored in Env.values by the setup hook."""
        return self.values.get(key)

    def defer(self, fn: Callable[[], Any]) -> None:
        """Arrange for fn to run at the end of the script.

        Deferred callables run in reverse registration order and may be
        coroutine functions.
        """
        self._deferred.append(fn)

    def logf(self, message: str) -> None:
        """Append a line to the transcript."""
        self.log.write(message.rstrip("\n") + "\n")

    def fatalf(self, message: str) -> None:
        """Abort the script with a fatal error."""
        raise ScriptFatalError(message)

    def mkabs(self, file: str) -> str:
        """Interpret file relative to the script's current directory."""
        if os.path.isabs(file):
            return file
        return os.path.join(self.cd, file)

    def read_file(self, file: str) -> str:
        """Return the contents of file, relative to the current directory.

        "stdout" and "stderr" mean the output of the most recent command.

        Raises:
            ScriptFatalError: If the file cannot be read
        """
        if file == "stdout":
            return self.stdout
        if file == "stderr":
            return self.stderr
        try:
            return Path(self.mkabs(file)).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ScriptFatalError(str(e)) from e

    def getenv(self, key: str) -> str:
        return self.env_map.get(env_var_name(key), "")

    def setenv(self, key: str, value: str) -> None:
        if not key or "=" in key:
            raise ScriptFatalError(f"invalid environment variable key {key!r}")
        self.env.append(f"{key}={value}")
        self.env_map[env_var_name(key)] = value

    def expand(self, s: str) -> str:
        return expand(s, self.getenv)

    def parse(self, line: str) -> List[str]:
        """Split line into arguments, expanding variables."""
        self.line = line
        try:
            return parse_line(line, self.expand)
        except ValueError as e:
            raise ScriptParseError(str(e)) from e

    async def condition(self, cond: str) -> bool:
        return await evaluate_condition(self, cond)

    def cancel(self) -> None:
        """Cancel the script; running and future commands are stopped."""
        self.cancelled.set()

    def abbrev(self, s: str) -> str:
        """Replace the work directory in s with the literal "$WORK"."""
        if self.workdir:
            s = s.replace(self.workdir, "$WORK")
        if self.params.test_work:
            # Expose the real $WORK on the first line so the directory left
            # behind can be found.
            prefix = "WORK=$WORK\n"
            if s.startswith(prefix):
                s = s[len(prefix):]
            s = f"WORK={self.workdir}\n" + s
        return s

    # Processes.

    def _process_env(self) -> Dict[str, str]:
        return env_list_to_dict(self.env + [f"PWD={self.cd}"])

    def _build_argv(self, command: str, args: Tuple[str, ...]) -> List[str]:
        if os.path.basename(command) == command:
            command = look_path(command, self.getenv)
        return [command, *args]

    async def run_process(self, command: str, *args: str) -> ProcessResult:
        """Run command in the foreground and return its result.

        Pending stdin is consumed. The exit code is recorded as the
        script's status.

        Raises:
            OSError: If the program cannot be found or started
        """
        stdin, self.stdin = self.stdin, ""
        argv = self._build_argv(command, args)
        process = await start_process(argv, self.cd, self._process_env())
        result = await wait_process(process, stdin, self.cancelled, self.params.cancel_policy)
        self.status = result.exit_code
        return result

    async def exec(self, command: str, *args: str) -> ProcessResult:
        """Run command and save its stdout and stderr for later commands."""
        try:
            result = await self.run_process(command, *args)
        except OSError:
            self.stdout, self.stderr = "", ""
            raise
        self.stdout, self.stderr = result.stdout, result.stderr
        if self.stdout:
            self.logf(f"[stdout]\n{self.stdout}")
        if self.stderr:
            self.logf(f"[stderr]\n{self.stderr}")
        return result

    async def exec_background(self, neg: Neg, command: str, *args: str) -> BackgroundCommand:
        """Start command in the background; 'wait' collects its result."""
        stdin, self.stdin = self.stdin, ""
        argv = self._build_argv(command, args)
        process = await start_process(argv, self.cd, self._process_env())
        task = asyncio.ensure_future(
            wait_process(process, stdin, self.cancelled, self.params.cancel_policy)
        )
        bg = BackgroundCommand(argv=[command, *args], neg=neg, process=process, task=task)
        self.background.append(bg)
        return bg

    def background_cmds(self) -> List[asyncio.subprocess.Process]:
        """Processes started in the background since the last wait."""
        return [bg.process for bg in self.background]

    async def wait_background(self, strict: bool = True) -> None:
        """Collect every background command.

        Outputs are logged and concatenated into stdout/stderr. The
        background list is always empty afterwards.

        Args:
            strict: Raise on an expectation mismatch; when False mismatches
                are only logged

        Raises:
            CommandFailedError: If a command's outcome disagrees with its
                modifier (strict only)
            ScriptTimeoutError: If the script was cancelled (strict only)
        """
        stdouts: List[str] = []
        stderrs: List[str] = []
        problems: List[str] = []
        timed_out = False
        try:
            for bg in self.background:
                result = await bg.task
                self.status = result.exit_code
                self.logf(f"[background] {' '.join(bg.argv)}: exit {result.exit_code}")
                if result.stdout:
                    self.logf(f"[stdout]\n{result.stdout}")
                if result.stderr:
                    self.logf(f"[stderr]\n{result.stderr}")
                stdouts.append(result.stdout)
                stderrs.append(result.stderr)
                if result.cancelled:
                    timed_out = True
                elif bg.neg == Neg.NEGATE and result.success:
                    problems.append(f"unexpected command success: {' '.join(bg.argv)}")
                elif bg.neg == Neg.EXPECT_SUCCESS and not result.success:
                    problems.append(f"unexpected command failure: {' '.join(bg.argv)}")
        finally:
            self.background = []

        self.stdout = "".join(stdouts)
        self.stderr = "".join(stderrs)
        if not strict:
            return
        if timed_out:
            raise ScriptTimeoutError("test timed out while running command")
        if problems:
            raise CommandFailedError("\n".join(problems))

    async def _stop_background(self) -> None:
        """Interrupt all background commands, killing stragglers after the grace period."""
        policy = self.params.cancel_policy
        await asyncio.gather(*(terminate_process(bg.process, policy) for bg in self.background))

    async def until_cancelled(self, awaitable: Awaitable[Any]) -> Any:
        """Await awaitable unless the script is cancelled first.

        Raises:
            ScriptTimeoutError: If the script is cancelled before it finishes
        """
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self.cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if task not in done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise ScriptTimeoutError("test timed out while running command")
        return task.result()

    # Host functions.

    async def call(self, function: str, args: List[str]) -> Tuple[str, str, Optional[BaseException]]:
        """Run a host function with captured output.

        Returns:
            Tuple of (stdout, stderr, error); error is None on success

        Raises:
            UnknownFunctionError: If function is not registered
            ScriptFatalError: If the function exits via SystemExit while
                coverage is measuring and ignore_missed_coverage is unset
        """
        fn = self.params.funcs.get(function)
        if fn is None:
            raise UnknownFunctionError(f"unknown function {function!r}")

        out, err = io.StringIO(), io.StringIO()
        error: Optional[BaseException] = None
        try:
            result = fn(self, list(args), out, err)
            if inspect.isawaitable(result):
                await result
        except SystemExit as e:
            if _coverage_active() and not self.params.ignore_missed_coverage:
                raise ScriptFatalError(
                    f"function {function!r} exited via SystemExit({e.code!r}) while coverage "
                    f"is measuring; coverage data may be lost (set ignore_missed_coverage to allow)"
                ) from e
            if e.code not in (0, None):
                error = e
        except (ScriptFailure, ScriptSkipped):
            raise
        except Exception as e:
            error = e
        return out.getvalue(), err.getvalue(), error

    # Setup and teardown.

    async def _setup(self) -> str:
        """Create the work directory, extract files and run the setup hook.

        Returns:
            The script text (archive comment without frontmatter)
        """
        self.workdir = os.path.join(self.test_temp_dir, f"script-{self.name}")
        env = Env(
            work_dir=self.workdir,
            env_vars=standard_env(self.workdir),
            cd=self.workdir,
            script=self,
        )
        self.cd = env.cd
        self.env = env.vars
        self.env_map = build_env_map(self.env)

        try:
            os.makedirs(os.path.join(self.workdir, "tmp"), exist_ok=True)
            self.archive = parse_file(self.file)
            text = self.archive.comment.decode("utf-8")
            self.frontmatter, text = parse_frontmatter(text)
        except (OSError, ValueError) as e:
            raise ScriptFatalError(str(e)) from e

        fm = self.frontmatter
        if fm is not None:
            if fm.skip is not None:
                raise ScriptSkipped(fm.skip)
            for key, value in fm.env.items():
                env.setenv(key, value)
            self.env_map = build_env_map(self.env)

        for f in self.archive.files:
            name = self.mkabs(self.expand(f.name))
            self.script_files[name] = f.name
            try:
                os.makedirs(os.path.dirname(name), exist_ok=True)
                Path(name).write_bytes(f.data)
            except OSError as e:
                raise ScriptFatalError(str(e)) from e

        if self.params.setup is not None:
            try:
                result = self.params.setup(env)
                if inspect.isawaitable(result):
                    await result
            except (ScriptFailure, ScriptSkipped):
                raise
            except Exception as e:
                raise ScriptFatalError(f"setup: {e}") from e

        self.cd = env.cd
        self.env = env.vars
        self.values = env.values
        self.env_map = build_env_map(self.env)
        return text

    async def _run_deferred(self) -> None:
        while self._deferred:
            fn = self._deferred.pop()
            result = fn()
            if inspect.isawaitable(result):
                await result

    def _rewind(self) -> None:
        """Drop everything logged since the mark (unless verbose)."""
        if not self.params.verbose:
            self.log.truncate(self.mark)

    def _mark_time(self) -> None:
        """Append the elapsed phase time to the phase header at the mark."""
        if self.mark > 0 and self.start is not None:
            after_mark = self.log.getvalue()[self.mark:]
            self.log.truncate(self.mark - 1)
            self.log.write(f" ({time.perf_counter() - self.start:.3f}s)\n")
            self.log.write(after_mark)
        self.start = None

    def _timeout(self) -> Optional[float]:
        if self.frontmatter is not None and self.frontmatter.timeout is not None:
            return self.frontmatter.timeout
        return self.params.timeout

    # Main loop.

    async def _run_lines(self, script: str) -> None:
        params = self.params
        for line in script.split("\n"):
            self.lineno += 1

            if line.startswith(params.phase_prefix):
                # The previous phase succeeded; drop its details.
                if len(self.log) > self.mark:
                    self._rewind()
                    self._mark_time()
                self.log.write(f"{line}\n")
                self.mark = len(self.log)
                self.start = time.perf_counter()
                continue

            if line.startswith(params.comment_prefix):
                continue

            args = self.parse(line)
            if not args:
                continue

            self.log.write(f"> {line}\n")

            args = await self._check_guards(args)
            if args is None:
                continue

            neg = Neg.EXPECT_SUCCESS
            if args[0] in ("!", "?"):
                neg = Neg.NEGATE if args[0] == "!" else Neg.NEUTRAL
                if len(args) == 1:
                    self.fatalf(f"{args[0]} on line by itself")
                args = args[1:]

            logger.debug(
                f"{self.name}:{self.lineno}: {' '.join(args)}",
                extra={"script": self.name, "lineno": self.lineno}
            )
            await self.dispatcher.dispatch(self, neg, args)

            if self.stopped:
                break

    async def _check_guards(self, args: List[str]) -> Optional[List[str]]:
        """Strip leading [cond] guards.

        Returns:
            The remaining arguments, or None if a guard did not hold
        """
        while args[0].startswith("[") and args[0].endswith("]"):
            cond = args[0][1:-1].strip()
            args = args[1:]
            if not args:
                self.fatalf("missing command after condition")
            want = True
            if cond.startswith("!"):
                want = False
                cond = cond[1:].strip()
            try:
                ok = await self.condition(cond)
            except ScriptFailure:
                raise
            except Exception as e:
                raise ScriptFatalError(f"bad condition {cond!r}: {e}") from e
            if ok != want:
                return None
        return args

    async def _execute(self) -> str:
        """Set up and run the script body.

        Returns:
            PASS, FAIL or SKIP
        """
        try:
            script = await self._setup()

            timeout = self._timeout()
            if timeout is not None:
                self._timer = asyncio.get_running_loop().call_later(timeout, self.cancel)

            if self.params.verbose or self.params.test_work:
                # Start the log with the full environment.
                await self.dispatcher.dispatch(self, Neg.EXPECT_SUCCESS, ["env"])
                self.log.write("\n")
                self.mark = len(self.log)

            try:
                await self._run_lines(script)

                # Normal exit: collect background commands before PASS.
                await self._stop_background()
                await self.wait_background(strict=False)
                self._rewind()
                self._mark_time()
                if not self.stopped:
                    self.log.write("PASS\n")
            finally:
                if self.script_updates:
                    apply_script_updates(self)
        except ScriptFailure as e:
            self.log.write(f"FAIL: {self.file}:{self.lineno}: {e}\n")
            return FAIL
        except ScriptSkipped as e:
            self.logf(f"SKIP: {e}" if str(e) else "SKIP")
            return SKIP
        return PASS

    async def _teardown(self) -> bool:
        """Run deferred callables and stop leftover background commands.

        Returns:
            True if a deferred callable failed the script
        """
        failed = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            await self._run_deferred()
        except ScriptFailure as e:
            self.log.write(f"FAIL: {self.file}: deferred: {e}\n")
            failed = True
        except HlscriptError:
            raise
        except Exception as e:
            self.log.write(f"FAIL: {self.file}: deferred: {type(e).__name__}: {e}\n")
            failed = True
        finally:
            if self.background:
                await self._stop_background()
                await self.wait_background(strict=False)
            self._mark_time()
        return failed

    async def run(self) -> ScriptOutcome:
        """Run the script to completion and return its outcome.

        Teardown always happens. ScriptUpdateIntegrityError propagates
        after it.
        """
        began = time.perf_counter()
        status = FAIL
        logger.info(f"Running script {self.name}", extra={"script": self.name, "file": self.file})
        try:
            status = await self._execute()
        finally:
            if await self._teardown():
                status = FAIL
            duration = time.perf_counter() - began
            logger.info(
                f"Script {self.name}: {status} ({duration:.3f}s)",
                extra={"script": self.name, "status": status, "duration": duration}
            )

        return ScriptOutcome(
            name=self.name,
            file=self.file,
            status=status,
            transcript=self.abbrev(self.log.getvalue()),
            duration=duration,
        )
