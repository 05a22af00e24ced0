"""
`settle run`: apply a play file to the inventory.
"""

import argparse

from settle.engine.config import load_config


def add_parser(subparsers) -> argparse.ArgumentParser:
    """Register the run subcommand."""
    parser = subparsers.add_parser(
        "run",
        help="Run a play file against an inventory",
        description="Run a play file against an inventory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0  all hosts succeeded
  2  one or more hosts failed
  3  inventory, play file or guard error (nothing ran for that play)
        """,
    )

    parser.add_argument(
        "playbook",
        help="Play file to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        required=True,
        help="Inventory file or directory",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )

    parser.add_argument(
        "-C", "--check",
        action="store_true",
        default=None,
        help="Run in check mode (probe only, never apply)",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Number of hosts to run in parallel (default: 5)",
    )

    parser.add_argument(
        "--retries",
        dest="retries",
        type=int,
        default=None,
        help="Retries for transient connection errors (default: 3)",
    )

    parser.add_argument(
        "-c", "--config",
        dest="config",
        default=None,
        help="Config file (default: $SETTLE_CONFIG or ./settle.toml)",
    )

    parser.add_argument(
        "--no-color",
        dest="color",
        action="store_false",
        default=None,
        help="Disable colored output",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    parser.set_defaults(handler=run_command)
    return parser


def run_command(parsed: argparse.Namespace) -> int:
    """Execute `settle run`."""
    from settle.engine.runner import PlaybookRunner

    config = load_config(
        config_file=parsed.config,
        forks=parsed.forks,
        retries=parsed.retries,
        check_mode=parsed.check,
        color=parsed.color,
    )

    runner = PlaybookRunner(
        playbook_path=parsed.playbook,
        inventory_source=parsed.inventory,
        config=config,
        limit=parsed.limit,
        verbosity=parsed.verbose,
        json_output=parsed.json,
    )
    report = runner.run()

    if parsed.json:
        print(report.to_json())
    elif not report.success:
        for host, failures in report.failures().items():
            for failure in failures:
                runner.display.error(f"{host}: {failure}")

    return report.exit_code
