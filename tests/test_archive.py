"""Tests for the script archive format."""

import pytest

from hlscript.archive import (
    Archive,
    ArchiveError,
    ArchiveFile,
    format_archive,
    needs_quote,
    parse,
    parse_file,
    quote,
    unquote,
)


SAMPLE = b"""exec cat hello.txt
cmp stdout hello.txt
-- hello.txt --
hello world
-- sub/dir/file.txt --
line one
line two
"""


class TestParse:
    """Tests for parse()."""

    def test_comment_and_files(self):
        archive = parse(SAMPLE)
        assert archive.comment == b"exec cat hello.txt\ncmp stdout hello.txt\n"
        assert [f.name for f in archive.files] == ["hello.txt", "sub/dir/file.txt"]
        assert archive.files[0].data == b"hello world\n"
        assert archive.files[1].data == b"line one\nline two\n"

    def test_no_files(self):
        archive = parse(b"exec true\n")
        assert archive.comment == b"exec true\n"
        assert archive.files == []

    def test_comment_gets_final_newline(self):
        assert parse(b"exec true").comment == b"exec true\n"

    def test_marker_name_is_trimmed(self):
        archive = parse(b"-- spaced name.txt   --\ndata\n")
        assert archive.comment == b""
        assert archive.files[0].name == "spaced name.txt"

    def test_marker_without_name_is_not_a_marker(self):
        archive = parse(b"--  --\nstill comment\n")
        assert archive.files == []

    def test_empty_file(self):
        archive = parse(b"-- empty --\n-- next --\nx\n")
        assert archive.files[0] == ArchiveFile(name="empty", data=b"")
        assert archive.files[1].data == b"x\n"

    def test_parse_file(self, tmp_path):
        path = tmp_path / "script.hls"
        path.write_bytes(SAMPLE)
        assert parse_file(str(path)) == parse(SAMPLE)

    def test_parse_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            parse_file(str(tmp_path / "missing.hls"))


class TestFormat:
    """Tests for format_archive()."""

    def test_format_inverts_parse(self):
        assert format_archive(parse(SAMPLE)) == SAMPLE

    def test_format_adds_missing_newlines(self):
        archive = Archive(comment=b"exec true", files=[ArchiveFile("a.txt", b"no newline")])
        assert format_archive(archive) == b"exec true\n-- a.txt --\nno newline\n"


class TestQuote:
    """Tests for needs_quote(), quote() and unquote()."""

    def test_needs_quote_detects_marker_lines(self):
        assert needs_quote(b"-- inner --\n")
        assert needs_quote(b"text\n-- inner --\n")
        assert not needs_quote(b"plain text\n-- not a marker\n")

    def test_quote_prefixes_lines(self):
        assert quote(b"-- a --\nb\n") == b">-- a --\n>b\n"

    def test_unquote_reverses_quote(self):
        data = b"-- a --\nb\n\n"
        assert unquote(quote(data)) == data

    def test_quoted_data_survives_archive_round_trip(self):
        inner = b"-- inner.txt --\ncontent\n"
        archive = Archive(comment=b"unquote f\n", files=[ArchiveFile("f", quote(inner))])
        parsed = parse(format_archive(archive))
        assert len(parsed.files) == 1
        assert unquote(parsed.files[0].data) == inner

    def test_quote_requires_final_newline(self):
        with pytest.raises(ArchiveError, match="final newline"):
            quote(b"-- a --")

    def test_quote_rejects_control_characters(self):
        with pytest.raises(ArchiveError, match="unprintable"):
            quote(b"bell \x07\n")

    def test_quote_rejects_invalid_utf8(self):
        with pytest.raises(ArchiveError, match="UTF-8"):
            quote(b"\xff\xfe\n")

    def test_unquote_rejects_unquoted_data(self):
        with pytest.raises(ArchiveError):
            unquote(b"not quoted\n")
