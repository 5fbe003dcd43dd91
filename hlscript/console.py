"""Console output reporter for script runs."""

import os
import sys
from typing import List, Optional, TextIO

from hlscript.engine.script import FAIL, PASS, SKIP, ScriptOutcome


class ConsoleReporter:
    """Handles formatted console output for a run of scripts.

    Prints one line per finished script, followed by its indented
    transcript when the script failed (or always, in verbose mode), and a
    summary line at the end. Colors are used only on terminals that
    support them.
    """

    STATUS_COLORS = {
        PASS: '\033[32m',  # Green
        FAIL: '\033[31m',  # Red
        SKIP: '\033[33m',  # Yellow
    }
    RESET_COLOR = '\033[0m'

    def __init__(self, verbose: bool = False, stream: Optional[TextIO] = None):
        """Initialize console reporter.

        Args:
            verbose: If True, show transcripts of passing and skipped scripts too
            stream: Output stream (default: sys.stdout)
        """
        self.verbose = verbose
        self.stream = stream if stream is not None else sys.stdout
        self._outcomes: List[ScriptOutcome] = []
        self._supports_color = self._detect_color_support()

    def _detect_color_support(self) -> bool:
        """Detect if the output stream supports colors."""
        isatty = getattr(self.stream, "isatty", None)
        if isatty is None or not isatty():
            return False

        if os.getenv('NO_COLOR'):
            return False

        term = os.getenv('TERM', '')
        if term and 'color' in term.lower():
            return True

        # Windows Terminal detection
        if os.getenv('WT_SESSION'):
            return True

        encoding = getattr(self.stream, 'encoding', None)
        if encoding and 'utf' in encoding.lower():
            return True

        return False

    def _colorize(self, status: str) -> str:
        if not self._supports_color:
            return status
        return f"{self.STATUS_COLORS.get(status, '')}{status}{self.RESET_COLOR}"

    def _print(self, message: str) -> None:
        print(message, file=self.stream, flush=True)

    def script_finished(self, outcome: ScriptOutcome) -> None:
        """Display the result of one script.

        Args:
            outcome: The finished script's outcome
        """
        self._outcomes.append(outcome)
        self._print(f"--- {self._colorize(outcome.status)}: {outcome.name} ({outcome.duration:.2f}s)")
        if outcome.status == FAIL or self.verbose:
            for line in outcome.transcript.rstrip("\n").split("\n"):
                self._print(f"    {line}" if line else "")

    def summary(self) -> None:
        """Display the summary line for the whole run."""
        passed = sum(1 for o in self._outcomes if o.status == PASS)
        failed = sum(1 for o in self._outcomes if o.status == FAIL)
        skipped = sum(1 for o in self._outcomes if o.status == SKIP)
        total = sum(o.duration for o in self._outcomes)
        verdict = self._colorize(FAIL) if failed else "ok"
        self._print(
            f"{verdict}\t{passed} passed, {failed} failed, {skipped} skipped ({total:.2f}s)"
        )

    @property
    def failed(self) -> bool:
        return any(o.status == FAIL for o in self._outcomes)
