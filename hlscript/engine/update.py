"""Golden-file updates.

In update mode a failing 'cmp stdout FILE' (or stderr) whose FILE came
from the script's archive does not fail. The actual output is recorded
instead, and once the script finishes the archive is rewritten with the
recorded content in place of the old file.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from hlscript.archive import ArchiveError, format_archive, needs_quote, quote
from hlscript.engine.errors import CommandFailedError, ScriptUpdateIntegrityError

if TYPE_CHECKING:
    from hlscript.engine.script import Script

logger = logging.getLogger(__name__)


def apply_script_updates(ts: "Script") -> None:
    """Write ts.script_updates back into the script file.

    Raises:
        ScriptUpdateIntegrityError: If an update names a file that is not in
            the archive. This means the recorder and the updater disagree and
            the run must stop.
        CommandFailedError: If content cannot be quoted or the file written
    """
    if not ts.script_updates:
        return
    archive = ts.archive
    if archive is None:
        raise ScriptUpdateIntegrityError(f"{ts.file}: script updates recorded without an archive")

    for name, content in ts.script_updates.items():
        found = False
        for f in archive.files:
            if f.name != name:
                continue
            data = content.encode("utf-8")
            if needs_quote(data):
                try:
                    data = quote(data)
                except ArchiveError as e:
                    raise CommandFailedError(f"cannot update script file {f.name!r}: {e}") from e
            f.data = data
            found = True
        if not found:
            logger.error(
                f"Script update for {name!r} has no archive entry in {ts.file}",
                extra={"script": ts.name, "file": ts.file}
            )
            raise ScriptUpdateIntegrityError(f"script update file {name!r} not found in {ts.file}")

    try:
        Path(ts.file).write_bytes(format_archive(archive))
    except OSError as e:
        raise CommandFailedError(f"cannot update script: {e}") from e
    ts.logf(f"{ts.file} updated")
    logger.info(f"Updated {ts.file}", extra={"script": ts.name, "file": ts.file})
