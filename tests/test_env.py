"""Tests for the script environment model and variable expansion."""

import os
import re
import sys

import pytest

from hlscript.engine.env import (
    Env,
    build_env_map,
    env_list_to_dict,
    env_var_name,
    expand,
    home_env_name,
    standard_env,
    temp_env_name,
)


def getenv_from(values):
    return lambda key: values.get(key, "")


class TestExpand:
    """Tests for expand()."""

    def test_plain_and_braced_names(self):
        getenv = getenv_from({"A": "1", "LONG_NAME": "two"})
        assert expand("$A-${LONG_NAME}", getenv) == "1-two"

    def test_unknown_variable_is_empty(self):
        assert expand("x${MISSING}y", getenv_from({})) == "xy"

    def test_text_without_dollar_is_unchanged(self):
        assert expand("no variables", getenv_from({})) == "no variables"

    def test_lone_dollar_is_kept(self):
        assert expand("cost: $", getenv_from({})) == "cost: $"
        assert expand("a $ b", getenv_from({})) == "a $ b"

    def test_special_single_char_names(self):
        getenv = getenv_from({"/": "/", ":": ":"})
        assert expand("${/}", getenv) == "/"
        assert expand("${:}", getenv) == ":"

    def test_empty_braces_are_eaten(self):
        assert expand("a${}b", getenv_from({})) == "ab"

    def test_regexp_suffix_escapes_value(self):
        getenv = getenv_from({"WORK": "/tmp/a.b+c"})
        assert expand("${WORK@R}", getenv) == re.escape("/tmp/a.b+c")

    def test_name_stops_at_non_identifier(self):
        getenv = getenv_from({"WORK": "/w"})
        assert expand("$WORK/file.txt", getenv) == "/w/file.txt"


class TestEnvMap:
    """Tests for the env list/map invariant."""

    def test_last_assignment_wins(self):
        env_map = build_env_map(["A=1", "B=2", "A=3"])
        assert env_map[env_var_name("A")] == "3"
        assert env_map[env_var_name("B")] == "2"

    def test_entries_without_equals_are_ignored(self):
        assert build_env_map(["JUNK", "A=1"]) == {env_var_name("A"): "1"}

    def test_value_may_contain_equals(self):
        assert build_env_map(["A=x=y"])[env_var_name("A")] == "x=y"

    def test_list_to_dict_keeps_last_value(self):
        assert env_list_to_dict(["A=1", "A=2"])["A"] == "2"

    @pytest.mark.windows
    def test_names_are_case_insensitive_on_windows(self):
        assert env_var_name("Path") == env_var_name("PATH")

    @pytest.mark.unix
    def test_names_are_case_sensitive_on_unix(self):
        assert env_var_name("Path") == "Path"

    def test_platform_names_follow_sys_platform(self, monkeypatch):
        monkeypatch.setattr(sys, "platform", "win32")
        assert env_var_name("Path") == "path"
        assert home_env_name() == "USERPROFILE"
        assert temp_env_name() == "TMP"

        monkeypatch.setattr(sys, "platform", "linux")
        assert env_var_name("Path") == "Path"
        assert home_env_name() == "HOME"
        assert temp_env_name() == "TMPDIR"


class TestStandardEnv:
    """Tests for the variables seeded into every script."""

    def test_work_is_first(self, tmp_path):
        env_vars = standard_env(str(tmp_path))
        assert env_vars[0] == f"WORK={tmp_path}"

    def test_seeded_values(self, tmp_path):
        env_map = build_env_map(standard_env(str(tmp_path)))
        assert env_map[env_var_name(home_env_name())] == "/no-home"
        assert env_map[env_var_name(temp_env_name())] == os.path.join(str(tmp_path), "tmp")
        assert env_map[env_var_name("devnull")] == os.devnull
        assert env_map["/"] == os.sep
        assert env_map[":"] == os.pathsep

    @pytest.mark.unix
    def test_exe_is_empty_on_unix(self, tmp_path):
        env_map = build_env_map(standard_env(str(tmp_path)))
        assert env_map["exe"] == ""


class TestEnv:
    """Tests for the setup-time Env object."""

    def test_getenv_scans_from_end(self, tmp_path):
        env = Env(str(tmp_path), ["A=1", "A=2"], str(tmp_path))
        assert env.getenv("A") == "2"
        assert env.getenv("MISSING") == ""

    def test_setenv_appends(self, tmp_path):
        env = Env(str(tmp_path), ["A=1"], str(tmp_path))
        env.setenv("A", "9")
        assert env.vars == ["A=1", "A=9"]
        assert env.getenv("A") == "9"

    @pytest.mark.parametrize("key", ["", "A=B"])
    def test_setenv_rejects_bad_keys(self, tmp_path, key):
        env = Env(str(tmp_path), [], str(tmp_path))
        with pytest.raises(ValueError):
            env.setenv(key, "x")

    def test_defer_requires_script(self, tmp_path):
        env = Env(str(tmp_path), [], str(tmp_path))
        with pytest.raises(RuntimeError):
            env.defer(lambda: None)
