"""Text archive format for script files.

A script file bundles the script body with the initial contents of its work
directory. The layout is a plain-text archive:

    comment text (the script itself)
    -- path/one.txt --
    contents of path/one.txt
    -- path/two.txt --
    contents of path/two.txt

A marker line starts with "-- ", ends with " --", and names the file
between them (surrounding whitespace is trimmed). Everything before the
first marker is the comment. Writing an archive back is the inverse of
parsing, except that every section is given a final newline.

File contents that contain something looking like a marker must be quoted
before they are stored; quote() prefixes every line with '>' and unquote()
reverses it.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

_MARKER = b"-- "
_NEWLINE_MARKER = b"\n-- "
_MARKER_END = b" --"


class ArchiveError(Exception):
    """Raised when archive data cannot be quoted or unquoted."""


@dataclass
class ArchiveFile:
    """A single named file inside an archive."""
    name: str
    data: bytes


@dataclass
class Archive:
    """A parsed archive: free-form comment followed by named files.

    Attributes:
        comment: Text before the first file marker (the script body)
        files: Files in archive order
    """
    comment: bytes = b""
    files: List[ArchiveFile] = field(default_factory=list)


def _is_marker(data: bytes) -> Tuple[Optional[str], bytes]:
    """Check whether data begins with a marker line.

    Returns:
        (name, rest) where name is None if data does not start with a marker
        and rest is the data following the marker line
    """
    if not data.startswith(_MARKER):
        return None, b""
    line, sep, after = data.partition(b"\n")
    if not sep:
        after = b""
    line = line.rstrip(b"\r")
    if not (line.endswith(_MARKER_END) and len(line) >= len(_MARKER) + len(_MARKER_END)):
        return None, b""
    name = line[len(_MARKER):len(line) - len(_MARKER_END)].strip().decode("utf-8")
    if not name:
        return None, b""
    return name, after


def _find_file_marker(data: bytes) -> Tuple[bytes, Optional[str], bytes]:
    """Find the first marker line in data.

    Returns:
        (before, name, after): data up to the marker, the marker's file name
        (None if no marker was found) and data following the marker line
    """
    i = 0
    while True:
        name, after = _is_marker(data[i:])
        if name is not None:
            return data[:i], name, after
        j = data.find(_NEWLINE_MARKER, i)
        if j < 0:
            return _fix_newline(data), None, b""
        i = j + 1  # position at the start of the candidate marker line


def _fix_newline(data: bytes) -> bytes:
    """Return data with a final newline, unless it is empty."""
    if not data or data.endswith(b"\n"):
        return data
    return data + b"\n"


def parse(data: bytes) -> Archive:
    """Parse archive data.

    Args:
        data: Raw archive bytes

    Returns:
        Archive with the comment and all files in order
    """
    archive = Archive()
    before, name, data = _find_file_marker(data)
    archive.comment = before
    while name is not None:
        contents, next_name, data = _find_file_marker(data)
        archive.files.append(ArchiveFile(name=name, data=contents))
        name = next_name
    return archive


def parse_file(path: str) -> Archive:
    """Read and parse the archive stored at path.

    Raises:
        FileNotFoundError: If path does not exist
    """
    return parse(Path(path).read_bytes())


def format_archive(archive: Archive) -> bytes:
    """Serialize an archive back to bytes.

    Only guaranteed to round-trip with parse() when no file contains a
    marker-like line; such files must be quoted first (see needs_quote()).
    """
    out = bytearray(_fix_newline(archive.comment))
    for f in archive.files:
        out += f"-- {f.name} --\n".encode("utf-8")
        out += _fix_newline(f.data)
    return bytes(out)


def needs_quote(data: bytes) -> bool:
    """Report whether data must be quoted before being stored in an archive."""
    _, name, _ = _find_file_marker(data)
    return name is not None


def quote(data: bytes) -> bytes:
    """Quote data so it can be stored safely in an archive.

    Every line is prefixed with '>'. The original data can be recovered
    with unquote().

    Raises:
        ArchiveError: If data has no final newline, is not UTF-8, or
            contains unprintable characters
    """
    if not data:
        return data
    if not data.endswith(b"\n"):
        raise ArchiveError("data has no final newline")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ArchiveError("data contains non-UTF-8 characters") from e
    for i, ch in enumerate(text):
        if ch < ' ' and ch not in ('\n', '\t'):
            raise ArchiveError(f"data contains unprintable character {ch!r} at offset {i}")
    lines = data.splitlines(keepends=True)
    return b"".join(b">" + line for line in lines)


def unquote(data: bytes) -> bytes:
    """Reverse quote().

    Raises:
        ArchiveError: If data does not look like quote() output
    """
    if not data:
        return data
    if not data.startswith(b">") or not data.endswith(b"\n"):
        raise ArchiveError("data does not appear to be quoted")
    data = data.replace(b"\n>", b"\n")
    return data[1:]
