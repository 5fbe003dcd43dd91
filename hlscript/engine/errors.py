"""Exception classes for script execution.

This module defines the exception hierarchy used throughout the engine.
Failures that end a single script (a test unit) derive from ScriptFailure;
the run loop catches those and records a FAIL with file and line context.
Everything else propagates out of the runner.

ArchiveError and ConfigError live next to the code that raises them.
"""


class HlscriptError(Exception):
    """Base exception for engine errors.

    All engine-specific exceptions inherit from this class,
    allowing callers to catch all engine errors with a single handler.
    """
    pass


class ScriptFailure(HlscriptError):
    """Raised when the current script must stop and be reported as failed.

    The run loop catches this, appends a FAIL marker with the script file
    and line number to the transcript, and moves on to teardown.
    """
    pass


class ScriptFatalError(ScriptFailure):
    """Raised for malformed scripts and misuse of commands.

    Fatal errors are never neutralized by a leading '?': a script that
    cannot be interpreted fails regardless of modifiers.
    """
    pass


class ScriptParseError(ScriptFatalError):
    """Raised when a script line cannot be tokenized (e.g. unterminated quote)."""
    pass


class UnknownCommandError(ScriptFatalError):
    """Raised when a verb is found in neither the builtin nor the host registry."""
    pass


class UnknownConditionError(ScriptFatalError):
    """Raised when a [cond] guard names a condition nobody can resolve."""
    pass


class UnknownFunctionError(ScriptFatalError):
    """Raised when 'call' names a function that was not registered."""
    pass


class HTTPArgumentError(ScriptFatalError):
    """Raised when an http argument cannot be interpreted."""
    pass


class CommandFailedError(ScriptFailure):
    """Raised when a command's observed outcome disagrees with its modifier.

    Examples: a command exits non-zero without a leading '!', a pattern
    is not found in stdout, or a file expected to be missing exists.
    A leading '?' turns this error into a log line.
    """
    pass


class ScriptTimeoutError(ScriptFailure):
    """Raised when the script is cancelled while a command is running.

    Like fatal errors, a timeout is never neutralized by a leading '?'.
    """
    pass


class ScriptSkipped(HlscriptError):
    """Raised by the 'skip' command (or frontmatter) to skip the script."""
    pass


class ScriptUpdateIntegrityError(HlscriptError):
    """Raised when a golden-file update names a file missing from the archive.

    This indicates the comparison command and the updater disagree about
    which files came from the archive. It is an internal error that halts
    the whole run rather than failing a single script.
    """
    pass


class NoScriptsFoundError(HlscriptError):
    """Raised when the configured glob matches no script files."""
    pass


__all__ = [
    'HlscriptError',
    'ScriptFailure',
    'ScriptFatalError',
    'ScriptParseError',
    'UnknownCommandError',
    'UnknownConditionError',
    'UnknownFunctionError',
    'HTTPArgumentError',
    'CommandFailedError',
    'ScriptTimeoutError',
    'ScriptSkipped',
    'ScriptUpdateIntegrityError',
    'NoScriptsFoundError',
]
