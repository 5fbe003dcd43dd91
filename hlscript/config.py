"""Per-project settings from `.hlscript/config.toml`.

The file is looked up from the current directory towards the filesystem
root, stopping at the first directory that contains `.git`. Only the
`[hlscript]` table is read; its keys mirror the long CLI options, and
anything given on the command line wins.
"""

import argparse
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_DIR = ".hlscript"
CONFIG_FILE = "config.toml"
CONFIG_TABLE = "hlscript"

_BOOL_KEYS = ("update_scripts", "test_work", "verbose", "short")
_STR_KEYS = ("glob", "phase_prefix", "comment_prefix", "workdir_root")
_NON_EMPTY_KEYS = ("phase_prefix", "comment_prefix")
_KNOWN_KEYS = frozenset(_BOOL_KEYS + _STR_KEYS + ("timeout",))

_TEMPLATE = """\
# hlscript settings for this project.
# Values given on the command line take precedence over this file.

[hlscript]
# Pattern selecting script files inside the scripts directory
# glob = "*.hls"

# Line prefix that starts a new phase
# phase_prefix = "#"

# Line prefix that marks a comment line
# comment_prefix = "~"

# Rewrite golden files when 'cmp stdout|stderr FILE' fails
# update_scripts = false

# Keep work directories after the run
# test_work = false

# Create work directories here instead of a temporary directory (implies test_work)
# workdir_root = "/tmp/hlscript-work"

# Keep transcripts of successful phases
# verbose = false

# Value of the [short] condition; [net] is its inverse
# short = false

# Seconds before a script is cancelled; 0 means no limit
# timeout = 60.0
"""


class ConfigError(Exception):
    """A config file exists but cannot be read or holds bad values."""
    pass


def _walk_up(start: Path):
    """Yield start and its parents, stopping after the first one with .git."""
    current = Path(start).resolve()
    while True:
        yield current
        if (current / ".git").exists() or current.parent == current:
            return
        current = current.parent


def find_project_root(cwd: Path) -> Path:
    """Return the nearest directory holding .git, or cwd itself."""
    for directory in _walk_up(cwd):
        if (directory / ".git").exists():
            return directory
    return Path(cwd).resolve()


def find_config_dir(cwd: Path, create_if_missing: bool = False) -> Optional[Path]:
    """Locate the .hlscript directory that applies to cwd.

    Args:
        cwd: Directory the search starts from
        create_if_missing: Create .hlscript at the project root (or in cwd
            when there is no .git) if none is found

    Returns:
        The directory, or None when it does not exist and was not created
    """
    for directory in _walk_up(cwd):
        candidate = directory / CONFIG_DIR
        if candidate.is_dir():
            return candidate

    if not create_if_missing:
        return None
    config_dir = find_project_root(cwd) / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def find_config_file(cwd: Path) -> Optional[Path]:
    config_dir = find_config_dir(cwd)
    if config_dir is None:
        return None
    path = config_dir / CONFIG_FILE
    return path if path.is_file() else None


def _invalid(key: str, config_file: Path, problem: str) -> ConfigError:
    return ConfigError(f"Invalid value for '{key}' in {config_file}: {problem}")


def validate_config(config: Dict[str, Any], config_file: Path) -> Dict[str, Any]:
    """Check value types and drop keys hlscript does not know.

    Unknown keys are ignored so that older versions accept newer files.

    Raises:
        ConfigError: On the first value of the wrong type or range
    """
    values = {k: v for k, v in config.items() if k in _KNOWN_KEYS}

    for key, value in values.items():
        if key in _BOOL_KEYS and not isinstance(value, bool):
            raise _invalid(key, config_file, f"expected boolean, got {type(value).__name__}")
        if key in _STR_KEYS:
            if not isinstance(value, str):
                raise _invalid(key, config_file, f"expected string, got {type(value).__name__}")
            if key in _NON_EMPTY_KEYS and not value:
                raise _invalid(key, config_file, "must not be empty")
        if key == "timeout":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise _invalid(key, config_file, f"expected number, got {type(value).__name__}")
            if value < 0:
                raise _invalid(key, config_file, f"must be non-negative, got {value}")

    return values


def load_config(cwd: Optional[Path] = None) -> Dict[str, Any]:
    """Read the [hlscript] table of the applicable config file.

    A missing file is not an error and yields {}. A file that exists but is
    broken raises, so mistakes are not silently ignored.

    Raises:
        ConfigError: If the file cannot be read, is not valid TOML or holds
            bad values
    """
    config_file = find_config_file(Path.cwd() if cwd is None else cwd)
    if config_file is None:
        return {}

    try:
        data = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {config_file}: Invalid TOML syntax - {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read {config_file}: {e}") from e

    table = data.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigError(f"Invalid [{CONFIG_TABLE}] section in {config_file}: expected a table")
    return validate_config(table, config_file)


def merge_config_and_args(config: Dict[str, Any], args: argparse.Namespace) -> argparse.Namespace:
    """Fill args from config wherever the command line left a value unset.

    Flags are store_true, so the config can switch one on but never off.
    Other options are None when not given on the command line.
    """
    for key in _BOOL_KEYS:
        if config.get(key) and hasattr(args, key) and not getattr(args, key):
            setattr(args, key, True)

    for key in _STR_KEYS + ("timeout",):
        if key in config and getattr(args, key, None) is None:
            setattr(args, key, config[key])

    return args


def init_config(cwd: Optional[Path] = None) -> int:
    """Write a commented-out config file at the project root.

    Returns:
        Exit code: 0 when the file was written, 1 otherwise
    """
    cwd = Path.cwd() if cwd is None else cwd

    existing = find_config_file(cwd)
    if existing is not None:
        print(f"Error: Configuration file already exists at {existing}", file=sys.stderr)
        print("Remove it first if you want a fresh one.", file=sys.stderr)
        return 1

    config_file = find_config_dir(cwd, create_if_missing=True) / CONFIG_FILE
    try:
        config_file.write_text(_TEMPLATE, encoding="utf-8")
    except OSError as e:
        print(f"Error: Failed to write configuration file: {e}", file=sys.stderr)
        return 1

    print(f"Created configuration file at {config_file}")
    return 0
