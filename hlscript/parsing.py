from typing import Callable, List

# Characters that end an unquoted argument. '#' additionally ends the line.
_SEPARATORS = (' ', '\t', '\r', '#')


def parse_line(line: str, expand: Callable[[str], str]) -> List[str]:
    r"""Split a single script line into arguments.

    Arguments are separated by spaces, tabs and carriage returns. An
    unquoted '#' ends the line (the rest is a trailing comment).

    Unquoted text is passed through ``expand`` for variable substitution,
    but the result is never re-split. Single quotes disable both splitting
    and substitution; a doubled quote inside a quoted span is a literal
    quote, as in rc and Pascal:

        'Don''t communicate by sharing memory.'

    Args:
        line: The raw script line (without the trailing newline)
        expand: Substitution function applied to unquoted chunks

    Returns:
        List of arguments; empty for blank and comment-only lines

    Raises:
        ValueError: If a quoted span is not terminated
    """
    args: List[str] = []
    arg = ""         # text of the current arg so far (need to add line[start:i])
    start = -1       # if >= 0, position where the current chunk starts
    quoted = False   # currently inside '...'

    i = 0
    while True:
        at_end = i >= len(line)
        if not quoted and (at_end or line[i] in _SEPARATORS):
            # Found an arg-separating character.
            if start >= 0:
                arg += expand(line[start:i])
                args.append(arg)
                start = -1
                arg = ""
            if at_end or line[i] == '#':
                break
            i += 1
            continue
        if at_end:
            raise ValueError("unterminated quoted argument")
        if line[i] == "'":
            if not quoted:
                # Starting a quoted chunk.
                if start >= 0:
                    arg += expand(line[start:i])
                start = i + 1
                quoted = True
                i += 1
                continue
            # 'foo''bar' means foo'bar.
            if i + 1 < len(line) and line[i + 1] == "'":
                arg += line[start:i]
                start = i + 1
                i += 2
                continue
            # Ending a quoted chunk.
            arg += line[start:i]
            start = i + 1
            quoted = False
            i += 1
            continue
        # Found a character worth saving; make sure we're saving.
        if start < 0:
            start = i
        i += 1
    return args
