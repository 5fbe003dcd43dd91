"""Tests for script line tokenization."""

import pytest

from hlscript.parsing import parse_line


def no_env(s):
    return s


def fake_env(values):
    def expand(s):
        for key, value in values.items():
            s = s.replace(f"${key}", value)
        return s
    return expand


class TestParseLine:
    """Tests for parse_line()."""

    def test_splits_on_whitespace(self):
        assert parse_line("exec echo  hello\tworld\r", no_env) == ["exec", "echo", "hello", "world"]

    def test_blank_line_has_no_args(self):
        assert parse_line("", no_env) == []
        assert parse_line("   \t ", no_env) == []

    def test_hash_starts_trailing_comment(self):
        assert parse_line("exec echo hi # comment", no_env) == ["exec", "echo", "hi"]
        assert parse_line("# only a comment", no_env) == []

    def test_hash_ends_unquoted_argument(self):
        assert parse_line("echo a#b", no_env) == ["echo", "a"]

    def test_quotes_preserve_spaces(self):
        assert parse_line("stdout 'hello world'", no_env) == ["stdout", "hello world"]

    def test_quotes_preserve_hash(self):
        assert parse_line("stdout 'a # b'", no_env) == ["stdout", "a # b"]

    def test_doubled_quote_is_literal_quote(self):
        assert parse_line("echo 'Don''t panic'", no_env) == ["echo", "Don't panic"]

    def test_empty_quotes_give_empty_argument(self):
        assert parse_line("echo ''", no_env) == ["echo", ""]

    def test_quoted_and_unquoted_chunks_join(self):
        assert parse_line("echo pre'mid dle'post", no_env) == ["echo", "premid dlepost"]

    def test_unquoted_text_is_expanded(self):
        expand = fake_env({"WORK": "/tmp/w"})
        assert parse_line("cd $WORK/sub", expand) == ["cd", "/tmp/w/sub"]

    def test_quoted_text_is_not_expanded(self):
        expand = fake_env({"WORK": "/tmp/w"})
        assert parse_line("echo '$WORK'", expand) == ["echo", "$WORK"]

    def test_expansion_is_not_resplit(self):
        expand = fake_env({"X": "a b"})
        assert parse_line("echo $X", expand) == ["echo", "a b"]

    def test_unterminated_quote_raises(self):
        with pytest.raises(ValueError, match="unterminated quoted argument"):
            parse_line("echo 'oops", no_env)
