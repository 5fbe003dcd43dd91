"""Command-line interface for hlscript."""

import argparse
import asyncio
import logging
import re
import sys
from typing import Optional

from .config import load_config, merge_config_and_args, init_config, ConfigError
from .console import ConsoleReporter
from .engine import (
    HlscriptError,
    NoScriptsFoundError,
    Params,
    ScriptUpdateIntegrityError,
    run_dir,
)
from .engine.params import DEFAULT_GLOB


def positive_float_or_zero(value: str) -> float:
    """Argparse type for --timeout: a float that is zero or more."""
    try:
        fval = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid float value: '{value}'")

    if fval < 0:
        raise argparse.ArgumentTypeError(f"timeout must be non-negative, got {fval}")

    return fval


def regex(value: str) -> str:
    """Argparse type for regular expressions (used for --run)."""
    try:
        re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError(f"invalid regular expression '{value}': {e}")
    return value


def setup_logging(verbose: bool = False) -> None:
    """Send DEBUG logs to stderr in verbose mode.

    Otherwise the root logger is left at WARNING with no handler attached.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        root_logger.addHandler(console_handler)
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(logging.WARNING)


def build_params(args: argparse.Namespace) -> Params:
    """Build run parameters from merged CLI and config values."""
    return Params(
        dir=args.dir,
        glob=args.glob or DEFAULT_GLOB,
        update_scripts=args.update_scripts,
        test_work=args.test_work,
        workdir_root=args.workdir_root,
        phase_prefix=args.phase_prefix or "",
        comment_prefix=args.comment_prefix or "",
        verbose=args.verbose,
        short=args.short,
        # 0 means no limit, as in the config file
        timeout=args.timeout or None,
    )


def cmd_run(args: argparse.Namespace, stream=None) -> int:
    """Run the scripts selected by args and report the outcomes."""
    setup_logging(args.verbose)
    params = build_params(args)
    reporter = ConsoleReporter(verbose=args.verbose, stream=stream)

    try:
        asyncio.run(run_dir(params, match=args.run, on_outcome=reporter.script_finished))
    except NoScriptsFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ScriptUpdateIntegrityError as e:
        print(f"Internal error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        return 130
    except HlscriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    reporter.summary()
    return 1 if reporter.failed else 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="hlscript",
        description="Run script archives as tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hlscript testdata                    Run testdata/*.hls
  hlscript testdata --run 'http_.*'    Run only scripts whose name matches
  hlscript testdata -u                 Update golden files that no longer match
  hlscript --init-config               Create .hlscript/config.toml
""",
    )

    parser.add_argument(
        "dir",
        nargs="?",
        default=".",
        metavar="DIR",
        help="Directory holding the scripts (default: current directory)",
    )

    select_group = parser.add_argument_group("selection options")
    select_group.add_argument(
        "--glob",
        default=None,
        help=f"Pattern selecting script files inside DIR (default: {DEFAULT_GLOB})",
    )
    select_group.add_argument(
        "--run",
        type=regex,
        metavar="REGEX",
        default=None,
        help="Only run scripts whose name matches REGEX",
    )

    runtime_group = parser.add_argument_group("runtime options")
    runtime_group.add_argument(
        "-u", "--update",
        dest="update_scripts",
        action="store_true",
        help="Rewrite golden files when 'cmp stdout|stderr FILE' fails",
    )
    runtime_group.add_argument(
        "--testwork",
        dest="test_work",
        action="store_true",
        help="Keep work directories after the run",
    )
    runtime_group.add_argument(
        "--workdir-root",
        dest="workdir_root",
        metavar="DIR",
        default=None,
        help="Create work directories under DIR (implies --testwork)",
    )
    runtime_group.add_argument(
        "--short",
        action="store_true",
        help="Set the [short] condition (and clear [net])",
    )
    runtime_group.add_argument(
        "--timeout",
        type=positive_float_or_zero,
        metavar="SEC",
        default=None,
        help="Cancel each script after SEC seconds (default: none, 0=none)",
    )
    runtime_group.add_argument(
        "--phase-prefix",
        dest="phase_prefix",
        metavar="PREFIX",
        default=None,
        help="Line prefix that starts a new phase (default: '#')",
    )
    runtime_group.add_argument(
        "--comment-prefix",
        dest="comment_prefix",
        metavar="PREFIX",
        default=None,
        help="Line prefix that marks a comment (default: '~')",
    )

    global_group = parser.add_argument_group("global options")
    global_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show full transcripts and enable verbose logging",
    )
    global_group.add_argument(
        "--init-config",
        action="store_true",
        help="Generate a new .hlscript/config.toml file with all options commented out",
    )

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.init_config:
        return init_config()

    try:
        config = load_config()
        args = merge_config_and_args(config, args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return cmd_run(args)


if __name__ == "__main__":
    sys.exit(main())
