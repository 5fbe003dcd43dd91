"""Tests for console output."""

from io import StringIO

import pytest

from hlscript.console import ConsoleReporter
from hlscript.engine import FAIL, PASS, SKIP, ScriptOutcome


class FakeTerminal(StringIO):
    encoding = "utf-8"

    def isatty(self):
        return True


def outcome(name, status, transcript="", duration=0.5):
    return ScriptOutcome(name=name, file=f"{name}.hls", status=status,
                         transcript=transcript, duration=duration)


class TestConsoleReporter:
    """Tests for ConsoleReporter class."""

    def test_passing_script_is_one_line(self):
        stream = StringIO()
        reporter = ConsoleReporter(stream=stream)
        reporter.script_finished(outcome("hello", PASS, "PASS\n"))
        assert stream.getvalue() == "--- PASS: hello (0.50s)\n"

    def test_failing_script_shows_transcript(self):
        stream = StringIO()
        reporter = ConsoleReporter(stream=stream)
        reporter.script_finished(outcome("bad", FAIL, "> exec false\n\nFAIL: bad.hls:1: oops\n"))
        assert stream.getvalue() == (
            "--- FAIL: bad (0.50s)\n"
            "    > exec false\n"
            "\n"
            "    FAIL: bad.hls:1: oops\n"
        )

    def test_verbose_shows_every_transcript(self):
        stream = StringIO()
        reporter = ConsoleReporter(verbose=True, stream=stream)
        reporter.script_finished(outcome("hello", PASS, "# phase (0.001s)\nPASS\n"))
        assert "    # phase (0.001s)\n    PASS\n" in stream.getvalue()

    def test_summary_ok(self):
        stream = StringIO()
        reporter = ConsoleReporter(stream=stream)
        reporter.script_finished(outcome("a", PASS, duration=1.0))
        reporter.script_finished(outcome("b", SKIP, "SKIP\n", duration=0.5))
        reporter.summary()
        assert stream.getvalue().splitlines()[-1] == "ok\t1 passed, 0 failed, 1 skipped (1.50s)"
        assert not reporter.failed

    def test_summary_fail(self):
        stream = StringIO()
        reporter = ConsoleReporter(stream=stream)
        reporter.script_finished(outcome("a", PASS))
        reporter.script_finished(outcome("b", FAIL, "FAIL: b.hls:1: x\n"))
        reporter.summary()
        assert stream.getvalue().splitlines()[-1] == "FAIL\t1 passed, 1 failed, 0 skipped (1.00s)"
        assert reporter.failed

    def test_no_color_on_plain_stream(self):
        reporter = ConsoleReporter(stream=StringIO())
        assert reporter._supports_color is False


class TestColorSupport:
    """Tests for terminal color detection."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("NO_COLOR", "TERM", "WT_SESSION"):
            monkeypatch.delenv(var, raising=False)

    def test_color_terminal(self, monkeypatch):
        monkeypatch.setenv("TERM", "xterm-256color")
        stream = FakeTerminal()
        reporter = ConsoleReporter(stream=stream)
        reporter.script_finished(outcome("hello", PASS))
        assert stream.getvalue().startswith("--- \033[32mPASS\033[0m: hello")

    def test_no_color_env_disables_colors(self, monkeypatch):
        monkeypatch.setenv("TERM", "xterm-256color")
        monkeypatch.setenv("NO_COLOR", "1")
        reporter = ConsoleReporter(stream=FakeTerminal())
        assert reporter._supports_color is False

    def test_utf8_terminal_without_term(self):
        reporter = ConsoleReporter(stream=FakeTerminal())
        assert reporter._supports_color is True
