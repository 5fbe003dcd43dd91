"""Run configuration for script execution.

This module defines the Params dataclass, the structured value a host
hands to run_dir(). It is treated as immutable once scripts start
running; the only mutable member is the shared ExecCache, which is
safe for concurrent use.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TextIO, Union, TYPE_CHECKING

from hlscript.engine.conditions import ExecCache
from hlscript.scripts import CancelPolicy

if TYPE_CHECKING:
    from hlscript.engine.commands import Neg
    from hlscript.engine.env import Env
    from hlscript.engine.script import Script

# Host-registered command: handler(ts, neg, args); may be a coroutine function.
CommandFunc = Callable[["Script", "Neg", List[str]], Union[None, Awaitable[None]]]

# Host-registered function for 'call': fn(ts, args, stdout, stderr).
CallFunc = Callable[["Script", List[str], TextIO, TextIO], Any]

SetupFunc = Callable[["Env"], Union[None, Awaitable[None]]]
ConditionFunc = Callable[[str], Union[bool, Awaitable[bool]]]

DEFAULT_GLOB = "*.hls"
DEFAULT_PHASE_PREFIX = "#"
DEFAULT_COMMENT_PREFIX = "~"


@dataclass
class Params:
    """Parameters for a call to run_dir().

    Attributes:
        dir: Directory holding the scripts (relative to the current directory)
        glob: Pattern selecting script files inside dir
        setup: Called after files are extracted, before the first line runs.
            May modify Env.vars, Env.cd and Env.values.
        condition: Resolves conditions outside the standard set
        cmds: Extra commands, consulted only for verbs not built in
        funcs: Functions available to the 'call' command
        test_work: Leave work directories in place for inspection
        workdir_root: Directory in which work directories are created.
            Setting it implies test_work.
        ignore_missed_coverage: Do not fail a 'call' whose function exits via
            SystemExit while coverage is being measured
        update_scripts: When 'cmp stdout|stderr FILE' fails and FILE came
            from the archive, rewrite the script with the actual output
        phase_prefix: Line prefix starting a new phase
        comment_prefix: Line prefix marking a comment line
        verbose: Keep the transcript of successful phases
        short: Value of the 'short' condition
        timeout: Seconds before a script is cancelled (None for no limit)
        cancel_policy: Interrupt-then-kill policy for cancelled processes
        exec_cache: PATH lookup cache for 'exec:' conditions
    """
    dir: str = "."
    glob: str = DEFAULT_GLOB
    setup: Optional[SetupFunc] = None
    condition: Optional[ConditionFunc] = None
    cmds: Dict[str, CommandFunc] = field(default_factory=dict)
    funcs: Dict[str, CallFunc] = field(default_factory=dict)
    test_work: bool = False
    workdir_root: Optional[str] = None
    ignore_missed_coverage: bool = False
    update_scripts: bool = False
    phase_prefix: str = DEFAULT_PHASE_PREFIX
    comment_prefix: str = DEFAULT_COMMENT_PREFIX
    verbose: bool = False
    short: bool = False
    timeout: Optional[float] = None
    cancel_policy: CancelPolicy = field(default_factory=CancelPolicy)
    exec_cache: ExecCache = field(default_factory=ExecCache)

    def __post_init__(self) -> None:
        # Empty values mean "use the default", matching config files
        # that leave a key blank.
        if not self.glob:
            self.glob = DEFAULT_GLOB
        if not self.phase_prefix:
            self.phase_prefix = DEFAULT_PHASE_PREFIX
        if not self.comment_prefix:
            self.comment_prefix = DEFAULT_COMMENT_PREFIX
        if self.workdir_root:
            self.test_work = True
