"""Script engine package.

This package interprets script archives: it extracts each script's files
into a fresh work directory, runs the script's lines through the command
dispatcher, and reports a PASS, FAIL or SKIP outcome with a transcript.

Hosts usually only need Params and run_dir(). Custom commands and
functions receive a Script and use its helpers.
"""

from hlscript.engine.errors import (
    HlscriptError,
    ScriptFailure,
    ScriptFatalError,
    ScriptParseError,
    UnknownCommandError,
    UnknownConditionError,
    UnknownFunctionError,
    HTTPArgumentError,
    CommandFailedError,
    ScriptTimeoutError,
    ScriptSkipped,
    ScriptUpdateIntegrityError,
    NoScriptsFoundError,
)
from hlscript.engine.env import Env, expand, env_var_name
from hlscript.engine.params import Params
from hlscript.engine.commands import BUILTINS, CommandRegistry, Dispatcher, Neg, HTTP_TRANSPORT_KEY
from hlscript.engine.conditions import ExecCache, evaluate_condition
from hlscript.engine.script import Script, ScriptOutcome, PASS, FAIL, SKIP
from hlscript.engine.runner import run_dir, find_scripts

__all__ = [
    # Exception classes
    "HlscriptError",
    "ScriptFailure",
    "ScriptFatalError",
    "ScriptParseError",
    "UnknownCommandError",
    "UnknownConditionError",
    "UnknownFunctionError",
    "HTTPArgumentError",
    "CommandFailedError",
    "ScriptTimeoutError",
    "ScriptSkipped",
    "ScriptUpdateIntegrityError",
    "NoScriptsFoundError",
    # Environment
    "Env",
    "expand",
    "env_var_name",
    # Commands
    "BUILTINS",
    "CommandRegistry",
    "Dispatcher",
    "Neg",
    "HTTP_TRANSPORT_KEY",
    "ExecCache",
    "evaluate_condition",
    # Running
    "Params",
    "Script",
    "ScriptOutcome",
    "PASS",
    "FAIL",
    "SKIP",
    "run_dir",
    "find_scripts",
]
