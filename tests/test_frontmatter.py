"""Tests for script frontmatter parsing."""

import logging

import pytest

from hlscript.frontmatter import Frontmatter, parse_frontmatter


class TestParseFrontmatter:
    """Tests for parse_frontmatter()."""

    def test_no_frontmatter(self):
        script = "exec echo hi\n"
        fm, body = parse_frontmatter(script)
        assert fm is None
        assert body == script

    def test_parses_known_keys(self):
        script = "---\ntimeout: 2.5\nenv:\n  GREETING: hello\n  COUNT: 3\n---\nexec echo $GREETING\n"
        fm, body = parse_frontmatter(script)
        assert fm == Frontmatter(timeout=2.5, env={"GREETING": "hello", "COUNT": "3"})
        assert body.endswith("exec echo $GREETING\n")

    def test_block_lines_are_blanked(self):
        script = "---\ntimeout: 1\n---\nexec true\n"
        _, body = parse_frontmatter(script)
        assert body == "\n\n\nexec true\n"
        # 'exec true' stays on line 4
        assert body.split("\n")[3] == "exec true"

    def test_empty_block(self):
        fm, body = parse_frontmatter("---\n---\nexec true\n")
        assert fm is None
        assert body == "\n\nexec true\n"

    def test_skip_true_uses_default_reason(self):
        fm, _ = parse_frontmatter("---\nskip: true\n---\n")
        assert fm.skip == "skipped by frontmatter"

    def test_skip_reason(self):
        fm, _ = parse_frontmatter("---\nskip: needs a database\n---\n")
        assert fm.skip == "needs a database"

    def test_skip_false(self):
        fm, _ = parse_frontmatter("---\nskip: false\n---\n")
        assert fm.skip is None

    def test_must_start_on_first_line(self):
        script = "exec true\n---\ntimeout: 1\n---\n"
        fm, body = parse_frontmatter(script)
        assert fm is None
        assert body == script

    def test_invalid_yaml(self):
        with pytest.raises(ValueError, match="Invalid YAML frontmatter"):
            parse_frontmatter("---\nenv: [unclosed\n---\n")

    def test_not_a_mapping(self):
        with pytest.raises(ValueError, match="expected a mapping"):
            parse_frontmatter("---\n- a\n- b\n---\n")

    @pytest.mark.parametrize("value", ["fast", "true", "-1"])
    def test_bad_timeout(self, value):
        with pytest.raises(ValueError, match="timeout"):
            parse_frontmatter(f"---\ntimeout: {value}\n---\n")

    def test_bad_env(self):
        with pytest.raises(ValueError, match="env"):
            parse_frontmatter("---\nenv: [A, B]\n---\n")

    def test_unknown_key_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="hlscript.frontmatter"):
            fm, _ = parse_frontmatter("---\ncolour: blue\ntimeout: 1\n---\n")
        assert fm.timeout == 1.0
        assert "colour" in caplog.text
