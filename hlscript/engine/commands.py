"""Script commands and their dispatch.

Every script line names a verb. The verb is looked up among the builtin
commands first and then among the host's commands (Params.cmds), and its
handler is called as handler(ts, neg, args). Handlers may be plain
functions or coroutine functions.

A handler signals the outcome of a command by raising:

- CommandFailedError when the observed result disagrees with what the
  line asked for (a '!' line that succeeded, a pattern that was not
  found, ...). A leading '?' turns this into a log line.
- ScriptFatalError for misuse (bad arguments, '!' on a command that
  cannot be negated). A leading '?' never hides these.
"""

import difflib
import enum
import inspect
import logging
import os
import re
import shutil
import stat
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional

from hlscript.archive import ArchiveError, unquote
from hlscript.engine.errors import (
    CommandFailedError,
    HlscriptError,
    ScriptFatalError,
    ScriptSkipped,
    ScriptTimeoutError,
    UnknownCommandError,
)
from hlscript.engine.httpreq import perform

if TYPE_CHECKING:
    from hlscript.engine.script import Script

logger = logging.getLogger(__name__)


class Neg(enum.IntEnum):
    """Modifier written before a command.

    EXPECT_SUCCESS: no modifier, the command must succeed
    NEGATE: '!', the command must fail (or the pattern must not match)
    NEUTRAL: '?', the outcome is not checked
    """
    EXPECT_SUCCESS = 0
    NEGATE = 1
    NEUTRAL = -1


CommandHandler = Callable[["Script", Neg, List[str]], object]


class CommandRegistry:
    """Mapping from verb to handler."""

    def __init__(self, commands: Optional[Mapping[str, CommandHandler]] = None) -> None:
        self._commands: Dict[str, CommandHandler] = {}
        for name, handler in (commands or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: CommandHandler) -> None:
        if not name:
            raise ValueError("command name must not be empty")
        self._commands[name] = handler

    def command(self, name: str) -> Callable[[CommandHandler], CommandHandler]:
        """Decorator form of register()."""
        def decorator(handler: CommandHandler) -> CommandHandler:
            self.register(name, handler)
            return handler
        return decorator

    def get(self, name: str) -> Optional[CommandHandler]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return sorted(self._commands)

    def __contains__(self, name: str) -> bool:
        return name in self._commands

    def __iter__(self) -> Iterator[str]:
        return iter(self._commands)

    def __len__(self) -> int:
        return len(self._commands)


BUILTINS = CommandRegistry()


class Dispatcher:
    """Routes a parsed line to its handler.

    Builtins take precedence over host commands of the same name.
    """

    def __init__(
        self,
        host: Optional[Mapping[str, CommandHandler]] = None,
        builtins: CommandRegistry = BUILTINS,
    ) -> None:
        self.builtins = builtins
        self.host = host if isinstance(host, CommandRegistry) else CommandRegistry(host)

    def lookup(self, verb: str) -> Optional[CommandHandler]:
        handler = self.builtins.get(verb)
        if handler is None:
            handler = self.host.get(verb)
        return handler

    async def dispatch(self, ts: "Script", neg: Neg, args: List[str]) -> None:
        """Run the command named by args[0].

        Raises:
            UnknownCommandError: If no registry knows the verb
            CommandFailedError: On an outcome mismatch (unless neg is NEUTRAL)
            ScriptFatalError: On misuse, when the handler hits an I/O error,
                or when it raises anything outside the hlscript hierarchy
        """
        verb, rest = args[0], args[1:]
        handler = self.lookup(verb)
        if handler is None:
            raise UnknownCommandError(f"unknown command {verb!r}")

        try:
            result = handler(ts, neg, rest)
            if inspect.isawaitable(result):
                await result
        except CommandFailedError as e:
            if neg != Neg.NEUTRAL:
                raise
            ts.logf(f"[ignored failure: {e}]")
            logger.debug(
                f"Ignored failure of {verb!r}: {e}",
                extra={"script": ts.name, "lineno": ts.lineno}
            )
        except (OSError, ValueError, re.error, ArchiveError) as e:
            raise ScriptFatalError(str(e)) from e
        except HlscriptError:
            raise
        except Exception as e:
            # Unexpected host command errors fail this script only.
            raise ScriptFatalError(f"{verb}: {type(e).__name__}: {e}") from e


def _check_no_negation(neg: Neg, verb: str) -> None:
    if neg != Neg.EXPECT_SUCCESS:
        raise ScriptFatalError(f"unsupported: {'!' if neg == Neg.NEGATE else '?'} {verb}")


def _check_outcome(neg: Neg, ok: bool, what: str) -> None:
    """Raise CommandFailedError if ok disagrees with neg."""
    if ok and neg == Neg.NEGATE:
        raise CommandFailedError(f"unexpected {what} success")
    if not ok and neg == Neg.EXPECT_SUCCESS:
        raise CommandFailedError(f"unexpected {what} failure")


def _log_output(ts: "Script") -> None:
    if ts.stdout:
        ts.logf(f"[stdout]\n{ts.stdout}")
    if ts.stderr:
        ts.logf(f"[stderr]\n{ts.stderr}")


def remove_all(path: str) -> None:
    """Remove path and everything under it, making directories writable first."""
    if os.path.isdir(path) and not os.path.islink(path):
        for root, dirs, _ in os.walk(path):
            for d in dirs:
                full = os.path.join(root, d)
                if not os.path.islink(full):
                    os.chmod(full, 0o777)
        os.chmod(path, 0o777)
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


@BUILTINS.command("cd")
def cmd_cd(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Change the working directory."""
    _check_no_negation(neg, "cd")
    if len(args) != 1:
        raise ScriptFatalError("usage: cd dir")

    directory = ts.mkabs(args[0])
    if not os.path.exists(directory):
        raise ScriptFatalError(f"directory {directory} does not exist")
    if not os.path.isdir(directory):
        raise ScriptFatalError(f"{directory} is not a directory")
    ts.cd = directory
    ts.logf(ts.cd)


@BUILTINS.command("chmod")
def cmd_chmod(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Change the permissions of files or directories."""
    _check_no_negation(neg, "chmod")
    if len(args) < 2:
        raise ScriptFatalError("usage: chmod perm paths...")
    try:
        perm = int(args[0], 8)
    except ValueError:
        perm = -1
    if perm < 0 or perm & ~0o777:
        raise ScriptFatalError(f"invalid mode: {args[0]}")
    for path in args[1:]:
        os.chmod(ts.mkabs(path), perm)


def _compare(ts: "Script", neg: Neg, args: List[str], expand_env: bool) -> None:
    verb = "cmpenv" if expand_env else "cmp"
    if neg == Neg.NEGATE:
        raise ScriptFatalError(f"unsupported: ! {verb}")
    if len(args) != 2:
        raise ScriptFatalError(f"usage: {verb} file1 file2")

    name1, name2 = args
    text1 = ts.read_file(name1)
    abs_name2 = ts.mkabs(name2)
    text2 = ts.read_file(abs_name2)
    if expand_env:
        text2 = ts.expand(text2)
    if text1 == text2:
        return

    if ts.params.update_scripts and not expand_env and name1 in ("stdout", "stderr"):
        archive_name = ts.script_files.get(abs_name2)
        if archive_name is not None:
            ts.script_updates[archive_name] = text1
            return

    diff = "".join(difflib.unified_diff(
        text1.splitlines(keepends=True),
        text2.splitlines(keepends=True),
        fromfile=name1,
        tofile=name2,
    ))
    ts.logf(f"[diff -{name1} +{name2}]\n{diff}")
    raise CommandFailedError(f"{name1} and {name2} differ")


@BUILTINS.command("cmp")
def cmd_cmp(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Compare two files (or stdout/stderr with a file)."""
    _compare(ts, neg, args, expand_env=False)


@BUILTINS.command("cmpenv")
def cmd_cmpenv(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Compare two files, expanding variables in the second one first."""
    _compare(ts, neg, args, expand_env=True)


@BUILTINS.command("cp")
def cmd_cp(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Copy files into a file or directory."""
    _check_no_negation(neg, "cp")
    if len(args) < 2:
        raise ScriptFatalError("usage: cp src... dst")

    dst = ts.mkabs(args[-1])
    dst_is_dir = os.path.isdir(dst)
    if len(args) > 2 and not dst_is_dir:
        raise ScriptFatalError(f"cp: destination {dst} is not a directory")

    for src in args[:-1]:
        if src in ("stdout", "stderr"):
            data = ts.read_file(src).encode("utf-8")
            mode = 0o666
        else:
            path = ts.mkabs(src)
            with open(path, "rb") as f:
                data = f.read()
            mode = stat.S_IMODE(os.stat(path).st_mode)
        target = os.path.join(dst, os.path.basename(src)) if dst_is_dir else dst
        with open(target, "wb") as f:
            f.write(data)
        os.chmod(target, mode)


@BUILTINS.command("env")
def cmd_env(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Show or set environment variables."""
    _check_no_negation(neg, "env")
    if not args:
        printed = set()
        for kv in ts.env:
            key = kv.partition("=")[0]
            if key not in printed:
                printed.add(key)
                ts.logf(f"{key}={ts.getenv(key)}")
        return
    for kv in args:
        key, sep, value = kv.partition("=")
        if not sep:
            ts.logf(f"{key}={ts.getenv(key)}")
            continue
        ts.setenv(key, value)


@BUILTINS.command("exec")
async def cmd_exec(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Run a program; a trailing '&' runs it in the background."""
    if not args or args == ["&"]:
        raise ScriptFatalError("usage: exec program [args...] [&]")

    if args[-1] == "&":
        try:
            await ts.exec_background(neg, args[0], *args[1:-1])
        except OSError as e:
            ts.logf(f"[{e}]")
            _check_outcome(neg, False, "command")
        ts.stdout, ts.stderr = "", ""
        return

    try:
        result = await ts.exec(args[0], *args[1:])
    except OSError as e:
        ts.logf(f"[{e}]")
        _check_outcome(neg, False, "command")
        return

    if result.cancelled:
        raise ScriptTimeoutError("test timed out while running command")
    if not result.success:
        ts.logf(f"[exit status {result.exit_code}]")
    _check_outcome(neg, result.success, "command")


@BUILTINS.command("exists")
def cmd_exists(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Check that files exist (or, with '!', that they do not)."""
    readonly = executable = False
    while args and args[0] in ("-readonly", "-exec"):
        if args[0] == "-readonly":
            readonly = True
        else:
            executable = True
        args = args[1:]
    if not args:
        raise ScriptFatalError("usage: exists [-readonly] [-exec] file...")

    for file in args:
        path = ts.mkabs(file)
        try:
            info = os.stat(path)
        except FileNotFoundError:
            info = None
        if info is not None and neg == Neg.NEGATE:
            what = "directory" if stat.S_ISDIR(info.st_mode) else "file"
            raise CommandFailedError(f"{what} {file} unexpectedly exists")
        if info is None and neg == Neg.EXPECT_SUCCESS:
            raise CommandFailedError(f"{file} does not exist")
        if info is not None and neg == Neg.EXPECT_SUCCESS:
            if readonly and info.st_mode & 0o222:
                raise CommandFailedError(f"{file} exists but is writable")
            if executable and os.name != "nt" and not info.st_mode & 0o111:
                raise CommandFailedError(f"{file} exists but is not executable")


def _match(ts: "Script", neg: Neg, args: List[str], text: str, name: str) -> None:
    """Shared implementation of grep, stdout and stderr."""
    count = 0
    if args and args[0].startswith("-count="):
        try:
            count = int(args[0][len("-count="):])
        except ValueError as e:
            raise ScriptFatalError(f"bad -count=: {e}") from e
        if count < 1:
            raise ScriptFatalError("bad -count=: must be at least 1")
        args = args[1:]

    is_grep = name == "grep"
    want = 2 if is_grep else 1
    if len(args) != want:
        raise ScriptFatalError(f"usage: {name} [-count=N] 'pattern'{' file' if is_grep else ''}")
    if count and neg == Neg.NEGATE:
        raise ScriptFatalError("cannot use -count= with negated match")

    pattern = args[0]
    regexp = re.compile(pattern, re.MULTILINE)

    if is_grep:
        name = args[1]
        text = ts.read_file(args[1])

    # Matching against the work directory would be misleading.
    if ts.workdir:
        text = text.replace(ts.workdir, "$WORK")

    found = regexp.search(text)
    if neg == Neg.NEGATE:
        if found:
            if is_grep:
                ts.logf(f"[{name}]\n{text}")
            raise CommandFailedError(
                f"unexpected match for {pattern!r} found in {name}: {found.group(0)}"
            )
        return

    if not found:
        if is_grep:
            ts.logf(f"[{name}]\n{text}")
        raise CommandFailedError(f"no match for {pattern!r} found in {name}")
    if count:
        have = sum(1 for _ in regexp.finditer(text))
        if have != count:
            raise CommandFailedError(f"have {have} matches for {pattern!r}, want {count}")


@BUILTINS.command("grep")
def cmd_grep(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Check that a file's content matches a regular expression."""
    _match(ts, neg, args, "", "grep")


@BUILTINS.command("stdout")
def cmd_stdout(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Check that the last command's stdout matches a regular expression."""
    _match(ts, neg, args, ts.stdout, "stdout")


@BUILTINS.command("stderr")
def cmd_stderr(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Check that the last command's stderr matches a regular expression."""
    _match(ts, neg, args, ts.stderr, "stderr")


@BUILTINS.command("mkdir")
def cmd_mkdir(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Create directories, including missing parents."""
    _check_no_negation(neg, "mkdir")
    if not args:
        raise ScriptFatalError("usage: mkdir dir...")
    for directory in args:
        os.makedirs(ts.mkabs(directory), exist_ok=True)


@BUILTINS.command("rm")
def cmd_rm(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Remove files or directories."""
    _check_no_negation(neg, "rm")
    if not args:
        raise ScriptFatalError("usage: rm file...")
    for file in args:
        remove_all(ts.mkabs(file))


@BUILTINS.command("skip")
def cmd_skip(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Skip the rest of the script."""
    _check_no_negation(neg, "skip")
    if len(args) > 1:
        raise ScriptFatalError("usage: skip [msg]")
    raise ScriptSkipped(args[0] if args else "")


@BUILTINS.command("stdin")
def cmd_stdin(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Use a file's content as stdin for the next exec."""
    _check_no_negation(neg, "stdin")
    if len(args) != 1:
        raise ScriptFatalError("usage: stdin filename")
    ts.stdin = ts.read_file(args[0])


@BUILTINS.command("stop")
def cmd_stop(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Stop the script early, without failing."""
    _check_no_negation(neg, "stop")
    if len(args) > 1:
        raise ScriptFatalError("usage: stop [msg]")
    ts.logf(f"stop: {args[0]}" if args else "stop")
    ts.stopped = True


@BUILTINS.command("symlink")
def cmd_symlink(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Create a symbolic link: symlink file -> target."""
    _check_no_negation(neg, "symlink")
    if len(args) != 3 or args[1] != "->":
        raise ScriptFatalError("usage: symlink file -> target")
    # The target is stored as written; relative targets resolve against the link.
    os.symlink(args[2], ts.mkabs(args[0]))


@BUILTINS.command("unquote")
def cmd_unquote(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Unquote files in place (see archive.quote)."""
    _check_no_negation(neg, "unquote")
    for file in args:
        path = ts.mkabs(file)
        with open(path, "rb") as f:
            data = f.read()
        data = unquote(data)
        with open(path, "wb") as f:
            f.write(data)


@BUILTINS.command("wait")
async def cmd_wait(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Wait for all background commands to finish."""
    _check_no_negation(neg, "wait")
    if args:
        raise ScriptFatalError("usage: wait")
    await ts.wait_background(strict=True)


@BUILTINS.command("call")
async def cmd_call(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Call a host function registered in Params.funcs."""
    if not args:
        raise ScriptFatalError("usage: call function [args...]")
    ts.stdout, ts.stderr, error = await ts.call(args[0], args[1:])
    _log_output(ts)
    if error is not None:
        ts.logf(f"[{type(error).__name__}: {error}]")
    _check_outcome(neg, error is None, "call")


# Env.values key under which a setup hook may install an httpx transport
# (for example an httpx.MockTransport) used by every 'http' command.
HTTP_TRANSPORT_KEY = "hlscript.http.transport"


@BUILTINS.command("http")
async def cmd_http(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Send an HTTP request, or manage named clients with 'http client ...'."""
    if not args:
        raise ScriptFatalError("usage: http [client-name] args...")

    if args[0] == "client":
        if neg != Neg.EXPECT_SUCCESS:
            raise ScriptFatalError("unsupported: negated http client")
        ts.http_clients.manage(args[1:], ts.read_file)
        return

    template = ts.http_clients.request_from_args(args, ts.read_file)
    transport = ts.value(HTTP_TRANSPORT_KEY)
    result = await ts.until_cancelled(perform(template, transport=transport))

    ts.stdout, ts.stderr, ts.status = result.stdout, result.stderr, result.status
    _log_output(ts)
    if result.error is not None:
        ts.logf(f"[{result.error}]")
        if neg == Neg.EXPECT_SUCCESS:
            raise CommandFailedError(f"unexpected http failure:\n{result.error}")
    elif neg == Neg.NEGATE:
        raise CommandFailedError("unexpected http success")


@BUILTINS.command("status")
def cmd_status(ts: "Script", neg: Neg, args: List[str]) -> None:
    """Check the exit code (or HTTP status) of the last command."""
    if len(args) != 1:
        raise ScriptFatalError("usage: status code")
    try:
        want = int(args[0])
    except ValueError as e:
        raise ScriptFatalError(f"bad status code {args[0]!r}") from e
    if neg == Neg.NEGATE:
        if ts.status == want:
            raise CommandFailedError(f"unexpected status {ts.status}")
    elif ts.status != want:
        raise CommandFailedError(f"status is {ts.status}, want {want}")


__all__ = [
    'BUILTINS',
    'CommandRegistry',
    'Dispatcher',
    'HTTP_TRANSPORT_KEY',
    'Neg',
]
