"""Tests for [cond] guard evaluation."""

import os
import threading
from types import SimpleNamespace

import pytest

from hlscript.engine.conditions import (
    KNOWN_ARCH,
    KNOWN_OS,
    ExecCache,
    current_arch,
    current_os,
    evaluate_condition,
    has_symlink,
)
from hlscript.engine.errors import UnknownConditionError
from hlscript.engine.params import Params


def make_ts(path=None, **params):
    env = {"PATH": os.environ.get("PATH", "") if path is None else path}
    return SimpleNamespace(params=Params(**params), getenv=lambda key: env.get(key, ""))


class TestBuiltinConditions:
    """Tests for the conditions every script understands."""

    async def test_short_and_net_are_opposites(self):
        ts = make_ts(short=True)
        assert await evaluate_condition(ts, "short") is True
        assert await evaluate_condition(ts, "net") is False

        ts = make_ts(short=False)
        assert await evaluate_condition(ts, "short") is False
        assert await evaluate_condition(ts, "net") is True

    async def test_current_os_and_arch_are_true(self):
        ts = make_ts()
        assert await evaluate_condition(ts, current_os()) is True
        assert await evaluate_condition(ts, current_arch()) is True

    async def test_other_known_os_is_false(self):
        ts = make_ts()
        other = "plan9" if current_os() != "plan9" else "zos"
        assert other in KNOWN_OS
        assert await evaluate_condition(ts, other) is False

    async def test_other_known_arch_is_false(self):
        ts = make_ts()
        other = "s390" if current_arch() != "s390" else "sparc"
        assert other in KNOWN_ARCH
        assert await evaluate_condition(ts, other) is False

    @pytest.mark.unix
    async def test_symlink_available_on_unix(self):
        assert await evaluate_condition(make_ts(), "symlink") is True

    def test_symlink_check_runs_once(self):
        has_symlink.cache_clear()
        first = has_symlink()
        assert has_symlink() == first
        info = has_symlink.cache_info()
        assert info.misses == 1
        assert info.hits == 1

    @pytest.mark.unix
    async def test_exec_condition_finds_program(self):
        ts = make_ts()
        assert await evaluate_condition(ts, "exec:sh") is True
        assert await evaluate_condition(ts, "exec:no-such-program-hlscript") is False

    @pytest.mark.unix
    async def test_exec_condition_ignores_script_path(self, tmp_path):
        tool = tmp_path / "only-on-script-path"
        tool.write_text("#!/bin/sh\n")
        tool.chmod(0o755)

        ts = make_ts(path=str(tmp_path))
        assert await evaluate_condition(ts, "exec:sh") is True
        assert await evaluate_condition(ts, "exec:only-on-script-path") is False

    async def test_unknown_condition_is_fatal(self):
        with pytest.raises(UnknownConditionError):
            await evaluate_condition(make_ts(), "no-such-condition")


class TestHostConditions:
    """Tests for Params.condition."""

    async def test_sync_hook(self):
        ts = make_ts(condition=lambda cond: cond == "feature")
        assert await evaluate_condition(ts, "feature") is True
        assert await evaluate_condition(ts, "other") is False

    async def test_async_hook(self):
        async def condition(cond):
            return cond == "feature"

        ts = make_ts(condition=condition)
        assert await evaluate_condition(ts, "feature") is True

    async def test_hook_can_reject_a_name(self):
        def condition(cond):
            raise UnknownConditionError(f"unknown condition {cond!r}")

        with pytest.raises(UnknownConditionError):
            await evaluate_condition(make_ts(condition=condition), "feature")

    async def test_builtins_take_precedence_over_hook(self):
        calls = []

        def condition(cond):
            calls.append(cond)
            return False

        ts = make_ts(condition=condition, short=True)
        assert await evaluate_condition(ts, "short") is True
        assert calls == []


class TestExecCache:
    """Tests for ExecCache."""

    def test_finder_called_once_per_program(self):
        cache = ExecCache()
        calls = []

        def finder(prog):
            calls.append(prog)
            return prog == "yes"

        assert cache.lookup("yes", finder) is True
        assert cache.lookup("yes", finder) is True
        assert cache.lookup("no", finder) is False
        assert cache.lookup("no", finder) is False
        assert calls == ["yes", "no"]
        assert len(cache) == 2

    def test_concurrent_lookups_search_once(self):
        cache = ExecCache()
        calls = []
        barrier = threading.Barrier(8)

        def finder(prog):
            calls.append(prog)
            return True

        def worker():
            barrier.wait()
            cache.lookup("tool", finder)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert calls == ["tool"]

    async def test_cache_is_shared_through_params(self):
        ts = make_ts()
        await evaluate_condition(ts, "exec:no-such-program-hlscript")
        assert len(ts.params.exec_cache) == 1
