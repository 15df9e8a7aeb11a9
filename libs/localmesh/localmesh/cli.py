"""
CLI for localmesh - local service mesh over kubectl port-forward and IAP tunnels.

Commands:
    up                 Start tunnels and Envoy for every configured service
    dump-envoy-config  Print the Envoy bootstrap (or port mapping) without connecting
    validate           Validate services.yaml
    version            Print the version
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from . import __version__
from .errors import LocalmeshError
from .runner import LOG_LEVELS, configure_logging, dump_config, run_mesh
from .schema import (
    DEFAULT_CONFIG_NAME,
    find_config,
    load_config,
    load_mock_config,
    load_raw_config,
    validate_config_schema,
)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="localmesh",
        description="Expose remote Kubernetes and TCP services locally through Envoy",
    )
    parser.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        default="info",
        help="Log level (default: info)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # up command
    up_parser = subparsers.add_parser(
        "up",
        help="Start the local mesh",
    )
    up_parser.add_argument(
        "-f", "--config",
        help=f"Path to config (default: nearest {DEFAULT_CONFIG_NAME} in this or a parent directory)",
    )
    up_parser.add_argument(
        "--no-aliases",
        action="store_true",
        help="Do not add loopback aliases on macOS",
    )

    # dump-envoy-config command
    dump_parser = subparsers.add_parser(
        "dump-envoy-config",
        help="Print the Envoy bootstrap without starting anything",
    )
    dump_parser.add_argument(
        "-f", "--config",
        help=f"Path to config (default: nearest {DEFAULT_CONFIG_NAME} in this or a parent directory)",
    )
    dump_parser.add_argument(
        "--mock-config",
        help="YAML table of mocked remote ports (skips kubectl)",
    )
    dump_parser.add_argument(
        "--output-mapping",
        action="store_true",
        help="Print the port mapping report instead of the Envoy config",
    )

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a config file",
    )
    validate_parser.add_argument(
        "config_file",
        nargs="?",
        help="Path to config",
    )
    validate_parser.add_argument(
        "-f", "--config",
        help="Path to config",
    )
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Also validate against the JSON schema (catches typos and unknown fields)",
    )

    # version command
    subparsers.add_parser(
        "version",
        help="Print the version",
    )

    return parser


def config_path(path: Optional[str]) -> str:
    """Use the given path, else the nearest services.yaml up from the working directory."""
    if path:
        return path
    found = find_config()
    return str(found) if found else DEFAULT_CONFIG_NAME


def cmd_up(args: argparse.Namespace) -> int:
    """Handle up command."""
    try:
        config = load_config(config_path(args.config))
        return asyncio.run(run_mesh(
            config,
            log_level=args.log_level,
            manage_aliases=not args.no_aliases,
        ))
    except LocalmeshError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_dump_envoy_config(args: argparse.Namespace) -> int:
    """Handle dump-envoy-config command."""
    try:
        config = load_config(config_path(args.config))
        mock_config = load_mock_config(args.mock_config) if args.mock_config else None
        output = dump_config(config, mock_config=mock_config, output_mapping=args.output_mapping)
    except LocalmeshError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(output, end="")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Handle validate command."""
    path = args.config or args.config_file or find_config()
    if not path:
        print("Error: config file required: use -f or provide as argument", file=sys.stderr)
        return 1

    try:
        load_config(str(path))
    except LocalmeshError as e:
        print(f"Error: validation failed: {e}", file=sys.stderr)
        return 1

    if args.strict:
        errors = validate_config_schema(load_raw_config(str(path)))
        if errors:
            print("Schema validation errors:", file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print(
                f"Error: schema validation failed with {len(errors)} error(s)",
                file=sys.stderr,
            )
            return 1

    print("Configuration is valid.")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Handle version command."""
    print(f"localmesh {__version__}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(args.log_level)

    commands = {
        "up": cmd_up,
        "dump-envoy-config": cmd_dump_envoy_config,
        "validate": cmd_validate,
        "version": cmd_version,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
