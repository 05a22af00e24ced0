"""
Main CLI entrypoint for settle.

Usage:
    settle --version
    settle run <play-file> -i <inventory> [--limit PATTERN] [--check]
    settle inventory -i <inventory> [--list | --host NAME | --graph]
"""

import argparse
import json
import logging
import platform
import sys
from typing import List, Optional

from settle import __version__
from settle.cli import inventory as inventory_cli
from settle.cli import playbook as playbook_cli
from settle.engine.errors import ExitCode, SettleError, exit_code_for

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"settle {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for settle."""
    parser = argparse.ArgumentParser(
        prog="settle",
        description="Apply idempotent configuration to a static set of hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  settle run site.yml -i hosts.ini
  settle run nginx.yml -i inventory.yml --limit web --check
  settle inventory -i inventory.yml --graph
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    playbook_cli.add_parser(subparsers)
    inventory_cli.add_parser(subparsers)
    return parser


def configure_logging(verbosity: int) -> None:
    """Send log records to stderr; -v shows INFO, -vv and more show DEBUG."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    root = logging.getLogger("settle")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def _print_json_error(error: BaseException, exit_code: int) -> None:
    """Print an error in JSON format."""
    error_obj = {
        "error": True,
        "error_type": type(error).__name__,
        "message": str(error),
        "exit_code": exit_code,
    }
    print(json.dumps(error_obj, indent=2))


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for settle CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return ExitCode.SUCCESS

    configure_logging(getattr(parsed, "verbose", 0))
    json_output = getattr(parsed, "json", False)

    try:
        return parsed.handler(parsed)
    except SettleError as e:
        code = exit_code_for(e)
        if json_output:
            _print_json_error(e, code)
        else:
            print(f"\033[31mERROR: {e}\033[0m", file=sys.stderr)
        return code
    except KeyboardInterrupt as e:
        if json_output:
            _print_json_error(e, ExitCode.KEYBOARD_INTERRUPT)
        else:
            print("\nInterrupted", file=sys.stderr)
        return ExitCode.KEYBOARD_INTERRUPT


if __name__ == "__main__":
    sys.exit(main())
