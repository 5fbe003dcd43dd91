"""Script frontmatter parsing.

A script's comment section may start with a YAML block delimited by `---`
lines. The block carries per-script settings that do not fit the line
language, such as a timeout or extra environment variables.

The block's lines are blanked rather than removed so that line numbers in
failure messages still match the file.
"""
import re
import logging
import yaml
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_KNOWN_KEYS = {"timeout", "env", "skip"}


@dataclass
class Frontmatter:
    """Per-script settings from the YAML frontmatter.

    Attributes:
        timeout: Seconds before the script is cancelled (overrides Params.timeout)
        env: Extra environment variables, applied before Params.setup runs
        skip: If set, the script is skipped with this reason
    """
    timeout: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    skip: Optional[str] = None


def parse_frontmatter(script: str) -> Tuple[Optional[Frontmatter], str]:
    """Split YAML frontmatter from script text.

    Frontmatter must begin on the first line, delimited by `---` on lines
    of their own. If no frontmatter is present, returns (None, script).

    Args:
        script: The script text (the archive comment)

    Returns:
        Tuple of (Frontmatter or None, script with the block's lines blanked)

    Raises:
        ValueError: If the frontmatter is malformed YAML or has bad values
    """
    # ---\n...\n---\n at the very start; the body may be empty.
    frontmatter_pattern = re.compile(r'^---[ \t]*\n(.*?)^---[ \t]*(?:\n|$)', re.DOTALL | re.MULTILINE)

    match = frontmatter_pattern.match(script)
    if not match:
        return None, script

    yaml_content = match.group(1)
    # Keep one newline per consumed line so later line numbers don't shift.
    body = "\n" * match.group(0).count("\n") + script[match.end():]

    if not yaml_content.strip():
        return None, body

    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML frontmatter: {e}") from e

    if data is None:
        return None, body
    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid frontmatter: expected a mapping, got {type(data).__name__}"
        )

    for key in data:
        if key not in _KNOWN_KEYS:
            logger.warning(f"Unknown frontmatter key '{key}' ignored")

    return _build_frontmatter(data), body


def _build_frontmatter(data: Dict[str, Any]) -> Frontmatter:
    """Validate frontmatter values and build a Frontmatter object."""
    fm = Frontmatter()

    timeout = data.get("timeout")
    if timeout is not None:
        # bool is an int subclass but never a sensible timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ValueError(
                f"Invalid frontmatter 'timeout': expected number, got {type(timeout).__name__}"
            )
        if timeout < 0:
            raise ValueError(f"Invalid frontmatter 'timeout': must be non-negative, got {timeout}")
        fm.timeout = float(timeout)

    env = data.get("env")
    if env is not None:
        if not isinstance(env, dict):
            raise ValueError(
                f"Invalid frontmatter 'env': expected mapping, got {type(env).__name__}"
            )
        for key, value in env.items():
            key = str(key)
            if not key or "=" in key:
                raise ValueError(f"Invalid frontmatter 'env': bad variable name {key!r}")
            fm.env[key] = "" if value is None else str(value)

    skip = data.get("skip")
    if skip is not None and skip is not False:
        fm.skip = "skipped by frontmatter" if skip is True else str(skip)

    return fm
