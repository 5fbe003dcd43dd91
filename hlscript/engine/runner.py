"""Running a directory of scripts.

run_dir() is the main entry point. It finds the script files selected by
Params.dir and Params.glob, gives each one its own work directory under a
shared temporary root, and runs them all concurrently. Each script is a
separate test unit: a failing script never stops the others.

The one exception is ScriptUpdateIntegrityError, an internal error in
golden-file updating. It cancels the remaining scripts and propagates.
"""

import asyncio
import glob
import logging
import os
import re
import tempfile
from typing import Callable, List, Optional

from hlscript.engine.commands import remove_all
from hlscript.engine.errors import NoScriptsFoundError
from hlscript.engine.params import Params
from hlscript.engine.script import Script, ScriptOutcome

logger = logging.getLogger(__name__)

TEMP_PREFIX = "hlscript"


def find_scripts(params: Params) -> List[str]:
    """Return the script files selected by params, sorted by path.

    Raises:
        NoScriptsFoundError: If the pattern matches nothing
    """
    pattern = os.path.join(params.dir, params.glob)
    files = sorted(glob.glob(pattern))
    if not files:
        raise NoScriptsFoundError(f"no scripts found matching glob: {pattern}")
    return files


def script_name(file: str) -> str:
    """Test name for a script file: its base name without extension."""
    return os.path.splitext(os.path.basename(file))[0]


def _make_temp_root(params: Params) -> str:
    if params.workdir_root:
        os.makedirs(params.workdir_root, exist_ok=True)
        root = params.workdir_root
    else:
        root = tempfile.mkdtemp(prefix=TEMP_PREFIX)
    # Work directories appear in transcripts; resolve symlinks (e.g. macOS
    # /var -> /private/var) so abbreviation to $WORK is reliable.
    return os.path.realpath(root)


async def run_dir(
    params: Params,
    match: Optional[str] = None,
    on_outcome: Optional[Callable[[ScriptOutcome], None]] = None,
) -> List[ScriptOutcome]:
    """Run every script selected by params concurrently.

    Args:
        params: Run configuration
        match: Optional regular expression; only scripts whose name it
            matches (re.search) are run
        on_outcome: Called with each outcome as soon as its script finishes

    Returns:
        Outcomes in script file order

    Raises:
        NoScriptsFoundError: If no script files match
        ScriptUpdateIntegrityError: If a golden-file update is inconsistent
    """
    files = find_scripts(params)
    if match:
        selector = re.compile(match)
        files = [f for f in files if selector.search(script_name(f))]
        if not files:
            raise NoScriptsFoundError(f"no scripts in {params.dir} match {match!r}")

    root = _make_temp_root(params)
    logger.info(
        f"Running {len(files)} script(s) from {params.dir} in {root}",
        extra={"dir": params.dir, "count": len(files), "root": root}
    )

    async def _run_one(file: str) -> ScriptOutcome:
        ts = Script(params, file=file, name=script_name(file), test_temp_dir=root)
        try:
            outcome = await ts.run()
        finally:
            if not params.test_work and ts.workdir and os.path.exists(ts.workdir):
                remove_all(ts.workdir)
        if on_outcome is not None:
            on_outcome(outcome)
        return outcome

    tasks = [asyncio.ensure_future(_run_one(f)) for f in files]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        # On an internal error gather() returns early; stop the rest.
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if params.test_work:
            logger.info(f"Work directories kept in {root}", extra={"root": root})
        elif os.path.exists(root):
            remove_all(root)
