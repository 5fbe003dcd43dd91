"""Condition evaluation for [cond] guards.

A guard names a fact about the host: the operating system, the CPU
architecture, whether the network or symlinks are usable, or whether a
program is on PATH. Names the engine does not know are passed to the
host's Params.condition hook.

OS and architecture names use the conventional short spellings (linux,
darwin, windows, amd64, arm64, ...). Any known name that does not match
the current host evaluates to false rather than raising, so scripts can
guard platform-specific lines without caring where they run.
"""

import functools
import inspect
import logging
import os
import platform
import sys
import tempfile
import threading
from typing import TYPE_CHECKING, Callable, Dict

from hlscript.engine.errors import UnknownConditionError
from hlscript.scripts import look_path

if TYPE_CHECKING:
    from hlscript.engine.script import Script

logger = logging.getLogger(__name__)

KNOWN_OS = frozenset({
    "aix", "android", "darwin", "dragonfly", "freebsd", "hurd", "illumos",
    "ios", "js", "linux", "nacl", "netbsd", "openbsd", "plan9", "solaris",
    "wasip1", "windows", "zos",
})

KNOWN_ARCH = frozenset({
    "386", "amd64", "amd64p32", "arm", "armbe", "arm64", "arm64be",
    "loong64", "mips", "mipsle", "mips64", "mips64le", "ppc", "ppc64",
    "ppc64le", "riscv", "riscv64", "s390", "s390x", "sparc", "sparc64",
    "wasm",
})

# platform.machine() spellings mapped to the short architecture names.
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i486": "386",
    "i586": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv6l": "arm",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "ppc64": "ppc64",
    "s390x": "s390x",
    "riscv64": "riscv64",
    "loongarch64": "loong64",
}


def current_os() -> str:
    """Short name of the running operating system."""
    if sys.platform.startswith('win'):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith('linux'):
        return "linux"
    for name in ("freebsd", "openbsd", "netbsd", "dragonfly", "aix"):
        if sys.platform.startswith(name):
            return name
    if sys.platform.startswith('sunos'):
        return "solaris"
    return sys.platform


def current_arch() -> str:
    """Short name of the running CPU architecture."""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


class ExecCache:
    """Memoized answers to "is this program on PATH?".

    Programs are looked up on the host PATH, not on a script's own PATH,
    so the answer depends only on the name and each name is checked at
    most once per run. The cache is shared by all scripts of a run (it
    lives on Params), and is safe to use from several threads or event
    loops at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, bool] = {}

    def lookup(self, prog: str, finder: Callable[[str], bool]) -> bool:
        """Return the cached answer for prog, calling finder on first use."""
        with self._lock:
            if prog in self._results:
                return self._results[prog]
            found = bool(finder(prog))
            self._results[prog] = found
            return found

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


def has_link() -> bool:
    """Report whether hard links can be created."""
    return hasattr(os, "link") and current_os() not in ("android", "ios", "plan9")


@functools.lru_cache(maxsize=None)
def has_symlink() -> bool:
    """Report whether symbolic links can be created.

    On Windows creating symlinks may require a privilege, so the answer
    is found by trying once.
    """
    if not hasattr(os, "symlink"):
        return False
    if not sys.platform.startswith('win'):
        return True
    with tempfile.TemporaryDirectory() as tmp:
        try:
            os.symlink(os.path.join(tmp, "target"), os.path.join(tmp, "link"))
        except OSError:
            return False
    return True


def _host_getenv(key: str) -> str:
    return os.environ.get(key, "")


async def evaluate_condition(ts: "Script", cond: str) -> bool:
    """Resolve a bare condition name (without a leading '!').

    Args:
        ts: The running script (for its params and environment)
        cond: Condition name, e.g. "short", "linux" or "exec:git"

    Returns:
        Whether the condition holds on this host

    Raises:
        UnknownConditionError: If nobody recognizes the condition
    """
    params = ts.params
    if cond == "short":
        return params.short
    if cond == "net":
        return not params.short
    if cond == "link":
        return has_link()
    if cond == "symlink":
        return has_symlink()
    if cond in (current_os(), current_arch()):
        return True
    if cond in KNOWN_OS or cond in KNOWN_ARCH:
        return False
    if cond.startswith("exec:"):
        prog = cond[len("exec:"):]

        def _on_path(name: str) -> bool:
            try:
                look_path(name, _host_getenv)
            except FileNotFoundError:
                return False
            return True

        return params.exec_cache.lookup(prog, _on_path)
    if params.condition is not None:
        result = params.condition(cond)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)
    raise UnknownConditionError(f"unknown condition {cond!r}")
