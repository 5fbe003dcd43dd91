"""Environment model for script execution.

Scripts see their environment as an ordered list of KEY=VALUE strings.
Later entries win, and lookups go through a map keyed by the normalized
variable name, so the map can always be rebuilt by replaying the list.

This module also provides the shell-style ``$VAR`` substitution used by
the line parser and by file names extracted from archives.
"""

import os
import re
import sys
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from hlscript.scripts import is_windows

if TYPE_CHECKING:
    from hlscript.engine.script import Script

# Single-character variable names that need no braces ($*, $1, ...).
_SPECIAL_NAMES = set('*#$@!?-0123456789')

# Suffix requesting a regexp-escaped value: ${VAR@R}
_REGEXP_SUFFIX = '@R'


def env_var_name(key: str) -> str:
    """Normalize an environment variable name for lookups.

    Windows variable names are case-insensitive, so they are lower-cased
    there. Everywhere else names are returned unchanged.
    """
    if is_windows():
        return key.lower()
    return key


def home_env_name() -> str:
    """Name of the variable holding the user's home directory."""
    if is_windows():
        return "USERPROFILE"
    if sys.platform.startswith('plan9'):
        return "home"
    return "HOME"


def temp_env_name() -> str:
    """Name of the variable holding the temporary directory."""
    if is_windows():
        return "TMP"
    return "TMPDIR"


def build_env_map(env_vars: List[str]) -> Dict[str, str]:
    """Replay a KEY=VALUE list into a lookup map (last write wins).

    Entries without '=' are ignored.
    """
    env_map: Dict[str, str] = {}
    for kv in env_vars:
        key, sep, value = kv.partition('=')
        if sep:
            env_map[env_var_name(key)] = value
    return env_map


def env_list_to_dict(env_vars: List[str]) -> Dict[str, str]:
    """Collapse a KEY=VALUE list into a dict suitable for subprocesses.

    Unlike build_env_map() the original key spelling of the last
    assignment is kept, since child processes see real names.
    """
    by_name: Dict[str, Tuple[str, str]] = {}
    for kv in env_vars:
        key, sep, value = kv.partition('=')
        if sep:
            by_name[env_var_name(key)] = (key, value)
    return dict(by_name.values())


def standard_env(work_dir: str) -> List[str]:
    """Build the variables seeded into every script.

    WORK must come first: transcript abbreviation relies on it being the
    first line of an environment dump.
    """
    env_vars = [
        f"WORK={work_dir}",
        f"PATH={os.environ.get('PATH', '')}",
        f"{home_env_name()}=/no-home",
        f"{temp_env_name()}={os.path.join(work_dir, 'tmp')}",
        f"devnull={os.devnull}",
        f"/={os.sep}",
        f":={os.pathsep}",
    ]
    if is_windows():
        # SYSTEMROOT must survive or many Windows programs refuse to start.
        env_vars.append(f"SYSTEMROOT={os.environ.get('SYSTEMROOT', '')}")
        env_vars.append("exe=.exe")
    else:
        env_vars.append("exe=")
    return env_vars


def _shell_name(s: str) -> Tuple[str, int]:
    """Return the variable name at the start of s and how many chars it used.

    s is the text immediately after a '$'. An empty name with a non-zero
    width means bad syntax that should be swallowed.
    """
    if s[0] == '{':
        if len(s) > 2 and s[1] in _SPECIAL_NAMES and s[2] == '}':
            return s[1:2], 3
        end = s.find('}', 1)
        if end == 1:
            return "", 2  # "${}"
        if end < 0:
            return "", 1  # unterminated "${"
        return s[1:end], end + 1
    if s[0] in _SPECIAL_NAMES:
        return s[0], 1
    i = 0
    while i < len(s) and (s[i].isalnum() or s[i] == '_') and s[i].isascii():
        i += 1
    return s[:i], i


def expand(s: str, getenv: Callable[[str], str]) -> str:
    """Substitute $NAME and ${NAME} references in s.

    ${NAME@R} substitutes the value escaped for use inside a regular
    expression. Unknown variables expand to the empty string; a '$' that
    is not followed by a name is kept as-is.
    """
    if '$' not in s:
        return s
    out: List[str] = []
    i = 0
    while i < len(s):
        if s[i] == '$' and i + 1 < len(s):
            name, width = _shell_name(s[i + 1:])
            if name:
                if name.endswith(_REGEXP_SUFFIX):
                    out.append(re.escape(getenv(name[:-len(_REGEXP_SUFFIX)])))
                else:
                    out.append(getenv(name))
            elif width == 0:
                out.append('$')
            i += 1 + width
            continue
        out.append(s[i])
        i += 1
    return ''.join(out)


class Env:
    """Environment handed to the Params.setup hook.

    WorkDir and Vars are already initialized and all archive files have
    been extracted; Cd equals WorkDir. The hook may change Vars, Cd and
    Values, and the changes are folded back into the script before its
    first line runs.

    Attributes:
        work_dir: Root of the extracted files ($WORK)
        vars: Ordered KEY=VALUE list
        cd: Initial working directory for commands
        values: Arbitrary values for custom commands (see Script.value)
    """

    def __init__(
        self,
        work_dir: str,
        env_vars: List[str],
        cd: str,
        values: Optional[Dict[Any, Any]] = None,
        script: Optional["Script"] = None,
    ) -> None:
        self.work_dir = work_dir
        self.vars = env_vars
        self.cd = cd
        self.values: Dict[Any, Any] = values if values is not None else {}
        self._script = script

    def getenv(self, key: str) -> str:
        """Return the value of key, or '' if it is not set."""
        key = env_var_name(key)
        for kv in reversed(self.vars):
            name, sep, value = kv.partition('=')
            if sep and env_var_name(name) == key:
                return value
        return ""

    def setenv(self, key: str, value: str) -> None:
        """Set key to value.

        Raises:
            ValueError: If key is empty or contains '='
        """
        if not key or '=' in key:
            raise ValueError(f"invalid environment variable key {key!r}")
        self.vars.append(f"{key}={value}")

    def defer(self, fn: Callable[[], Any]) -> None:
        """Arrange for fn to run when the script finishes (LIFO order)."""
        if self._script is None:
            raise RuntimeError("Env is not attached to a script")
        self._script.defer(fn)
