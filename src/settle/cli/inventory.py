"""
`settle inventory`: show the resolved inventory.
"""

import argparse
import json

import yaml

from settle.engine.errors import InventoryError
from settle.engine.inventory import InventoryManager


def add_parser(subparsers) -> argparse.ArgumentParser:
    """Register the inventory subcommand."""
    parser = subparsers.add_parser(
        "inventory",
        help="Show resolved inventory information",
        description="Show resolved inventory information",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  settle inventory -i inventory.ini --list
  settle inventory -i hosts --host webserver1
  settle inventory -i inventory/ --graph
        """,
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        required=True,
        help="Inventory file or directory",
    )

    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--list",
        action="store_true",
        dest="list_hosts",
        help="Output all hosts info (JSON)",
    )
    action.add_argument(
        "--host",
        dest="host",
        default=None,
        help="Output specific host info (JSON)",
    )
    action.add_argument(
        "--graph",
        action="store_true",
        help="Output inventory graph",
    )

    parser.add_argument(
        "-y", "--yaml",
        action="store_true",
        help="Output in YAML format",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity",
    )

    parser.set_defaults(handler=inventory_command)
    return parser


def _dump(data, as_yaml: bool) -> str:
    if as_yaml:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True).rstrip()
    return json.dumps(data, indent=2, sort_keys=True)


def inventory_command(parsed: argparse.Namespace) -> int:
    """Execute `settle inventory`."""
    inventory = InventoryManager().parse(parsed.inventory)
    inventory.resolve()

    if parsed.host:
        host = inventory.get_host(parsed.host)
        if host is None:
            raise InventoryError(f"Host not found: {parsed.host}")
        print(_dump(dict(host.vars), parsed.yaml))
    elif parsed.graph:
        print(inventory.graph())
    else:
        print(_dump(inventory.to_dict(), parsed.yaml))
    return 0
