#!/usr/bin/env python3
"""CLI entry point for fleetpkg.

Commands:
- install: Install a package into Kibana (check-only with -c)
- check:   Check environment facts against the package's conditions
- show:    Print the resolved package manifest

Examples:
    fleetpkg install                              # package root from cwd
    fleetpkg install --zip build/nginx-1.2.0.zip
    fleetpkg install -c kibana.version=8.9.2      # check only, no install
    fleetpkg check -C packages/nginx -c kibana.version=8.9.2
"""

import argparse
import json
import logging
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version as dist_version
from typing import Optional

from conditions import STRICTNESS_LEVELS, parse_assertions
from config import ConfigError, load_config
from errors import EXIT_CANCELLED, EXIT_CLIENT_ERROR, EXIT_SUCCESS, InstallError
from installer import check_conditions, install
from kibana import KibanaClient
from manifest import load_manifest
from source import resolve_source

logger = logging.getLogger(__name__)

COMMANDS = {
    "install": "Install the package in Kibana",
    "check": "Check environment facts against package conditions",
    "show": "Show the package manifest",
}

INSTALL_DESCRIPTION = """Install the package in Kibana.

The package is installed through the Kibana Fleet API. A package root
(--root, or the nearest ancestor of the working directory holding
manifest.yml) is installed from the package registry by name and version.
A built zip (--zip) is uploaded directly; this needs Kibana >= 8.7.0.

With --check-condition the command only checks the package's conditions and
exits without installing."""


def get_version() -> str:
    """Get the installed distribution version."""
    try:
        return dist_version('fleetpkg')
    except PackageNotFoundError:
        return 'dev'


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    if json_output:
        # stdout carries only JSON
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--root', '-C',
        help='Package root directory (default: nearest ancestor holding manifest.yml)',
    )
    parser.add_argument(
        '--zip', '-z',
        help='Path to a built package zip (takes precedence over --root)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )


def _add_condition_args(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument(
        '--check-condition', '-c',
        action='append',
        default=[],
        required=required,
        metavar='KEY=VALUE',
        help='Environment fact to check against package conditions, '
             'e.g. kibana.version=8.9.2 (repeatable, comma-separated allowed)',
    )
    parser.add_argument(
        '--strict-conditions',
        choices=STRICTNESS_LEVELS,
        help='Handling of package conditions with no KEY=VALUE given '
             '(default: conditions.strictness from config, else warn)',
    )


def _build_parser(command: str) -> argparse.ArgumentParser:
    """Build argument parser for a command."""
    if command == 'install':
        parser = argparse.ArgumentParser(
            prog='fleetpkg install',
            description=INSTALL_DESCRIPTION,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_source_args(parser)
        _add_condition_args(parser, required=False)
        parser.add_argument(
            '--skip-validation',
            action='store_true',
            help='Ask Kibana to skip validation of the package contents',
        )
        parser.add_argument(
            '--timeout', '-t',
            type=float,
            help='Abort the install call after this many seconds (default: from config)',
        )
        return parser

    if command == 'check':
        parser = argparse.ArgumentParser(
            prog='fleetpkg check',
            description='Check environment facts against the package conditions. '
                        'Never contacts Kibana.',
        )
        _add_source_args(parser)
        _add_condition_args(parser, required=True)
        return parser

    parser = argparse.ArgumentParser(
        prog='fleetpkg show',
        description='Show the resolved package manifest',
    )
    _add_source_args(parser)
    return parser


def _split_pairs(values: list[str]) -> list[str]:
    """Flatten repeated and comma-separated KEY=VALUE flags."""
    pairs = []
    for value in values:
        pairs.extend(part.strip() for part in value.split(',') if part.strip())
    return pairs


def _report_error(error: InstallError) -> int:
    print(f"Error: {error.step} failed: {error.message}", file=sys.stderr)
    return error.exit_code


def _run_check(args, strictness: str) -> int:
    """Resolve, load and validate; never installs."""
    assertions = parse_assertions(_split_pairs(args.check_condition))
    source = resolve_source(args.zip, args.root)

    if not args.json_output:
        print("Check conditions for package")
    manifest, report = check_conditions(source, assertions, strictness=strictness)

    if args.json_output:
        print(json.dumps({
            'success': True,
            'package': manifest.to_dict(),
            'conditions': report.to_dict(),
        }, indent=2))
    else:
        print("Requirements satisfied - the package can be installed.")
        print("Done")
    return EXIT_SUCCESS


def _run_install(args, config) -> int:
    """Resolve, load and install through Kibana."""
    source = resolve_source(args.zip, args.root)
    gateway = KibanaClient(config)
    timeout = args.timeout if args.timeout is not None else config.timeout

    cancel_event = threading.Event()

    def handle_signal(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling install...")
        cancel_event.set()

    previous = signal.signal(signal.SIGTERM, handle_signal)
    try:
        result = install(
            gateway,
            source=source,
            skip_validation=args.skip_validation,
            timeout=timeout,
            cancel_event=cancel_event,
        )
    finally:
        signal.signal(signal.SIGTERM, previous)

    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Installed {result.manifest.name} {result.manifest.version}")
        print("Done")
    return EXIT_SUCCESS


def _run_show(args) -> int:
    source = resolve_source(args.zip, args.root)
    manifest = load_manifest(source)

    if args.json_output:
        print(json.dumps(manifest.to_dict(), indent=2))
        return EXIT_SUCCESS

    print(f"Package:  {manifest.name}")
    print(f"Version:  {manifest.version}")
    print(f"Type:     {manifest.type}")
    if manifest.title:
        print(f"Title:    {manifest.title}")
    print(f"Source:   {source}")
    if manifest.conditions:
        print("Conditions:")
        for key, constraint in sorted(manifest.conditions.items()):
            print(f"  {key:<24} {constraint}")
    else:
        print("Conditions: none")
    return EXIT_SUCCESS


def run_command(command: str, argv: list) -> int:
    """Parse arguments for a command and run it.

    Args:
        command: One of COMMANDS
        argv: Arguments after the command name

    Returns:
        Exit code
    """
    parser = _build_parser(command)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        if command == 'show':
            return _run_show(args)

        config = load_config()
        strictness = (getattr(args, 'strict_conditions', None)
                      or config.condition_strictness)

        # install with -c only checks, as 'check' does
        if command == 'check' or args.check_condition:
            return _run_check(args, strictness)

        return _run_install(args, config)

    except InstallError as e:
        return _report_error(e)
    except ConfigError as e:
        print(f"Error: config failed: {e}", file=sys.stderr)
        return EXIT_CLIENT_ERROR
    except KeyboardInterrupt:
        print("Error: install failed: cancelled by user", file=sys.stderr)
        return EXIT_CANCELLED


def print_usage() -> None:
    """Print top-level usage showing commands."""
    print(f"fleetpkg {get_version()}")
    print()
    print("Usage: fleetpkg <command> [options]")
    print()
    print("Commands:")
    for command, desc in COMMANDS.items():
        print(f"  {command:<12} {desc}")
    print()
    print("Run 'fleetpkg <command> --help' for command-specific options.")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point - dispatch to command handlers."""
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return EXIT_SUCCESS

    if argv[0] == '--version':
        print(f"fleetpkg {get_version()}")
        return EXIT_SUCCESS

    command = argv[0]
    if command not in COMMANDS:
        print(f"Error: Unknown command '{command}'")
        print_usage()
        return EXIT_CLIENT_ERROR

    return run_command(command, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
