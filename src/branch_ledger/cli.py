"""
Command-line interface for Branch Ledger.

Provides CLI commands for both sides of the protocol:
- collect: Ask every branch for its summary and append replies to the ledger
- serve: Run a branch service answering summary requests
- init-ledger: Create a ledger file holding only the header row
- verify: Check that a ledger consists of complete rows

Usage:
    branch-ledger collect LEDGER HOST PORT [HOST PORT ...] [--peers-file FILE]
    branch-ledger serve BRANCH_ID DATA_SOURCE PORT [--host HOST]
    branch-ledger init-ledger LEDGER [--force]
    branch-ledger verify LEDGER

Exit codes:
    0 - the command ran (for collect: at least one branch was reachable)
    1 - invalid arguments, no branch reachable, or a fatal startup error

Environment Variables:
    See branch_ledger.config for the BRANCH_LEDGER_* overrides.
"""

import argparse
import configparser
import dataclasses
import sys
from pathlib import Path

from branch_ledger import __version__
from branch_ledger import config as config_module
from branch_ledger.errors import LedgerWriteError, NoPeersAvailable
from branch_ledger.logging_setup import configure_logging
from branch_ledger.peers import PeerAddress, load_peers_file, parse_port, peers_from_pairs


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message: str):  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _port_arg(value: str) -> int:
    try:
        return parse_port(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _resolve_peers(args: argparse.Namespace) -> list[PeerAddress]:
    """Combine positional HOST PORT pairs with an optional peers file."""
    peers = peers_from_pairs(args.peers)
    if getattr(args, "peers_file", None):
        peers.extend(load_peers_file(Path(args.peers_file)))
    return peers


def cmd_collect(args: argparse.Namespace) -> int:
    """
    Run one collection round against the configured branches.

    Returns:
        0 if at least one branch was reachable (even if none replied),
        1 if the peer list is invalid or no branch accepted a connection.
    """
    from branch_ledger.collector import Collector

    cfg = config_module.config

    try:
        peers = _resolve_peers(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if not peers:
        print("Error: no branches given (HOST PORT pairs or --peers-file).", file=sys.stderr)
        return 1

    settings = cfg.collector
    if args.timeout is not None:
        settings = dataclasses.replace(settings, timeout_seconds=args.timeout)

    collector = Collector(settings, family=cfg.network.socket_family)
    try:
        summary = collector.run(Path(args.ledger), peers)
    except NoPeersAvailable:
        print("No branches available. Exiting.", file=sys.stderr)
        return 1

    for outcome in summary.outcomes:
        line = f"{outcome.address.label}: {outcome.status}"
        if outcome.detail:
            line += f" ({outcome.detail})"
        print(line)
    print(
        f"Aggregator finished: {summary.succeeded} succeeded, "
        f"{summary.failed} failed, {summary.timed_out} timed out."
    )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run a branch service until interrupted.

    Returns:
        0 on clean shutdown (Ctrl+C), 1 if the branch id is invalid or the
        port cannot be bound.
    """
    from branch_ledger.branch import BranchResponder, CsvSummaryProvider, bind_listener

    cfg = config_module.config

    try:
        responder = BranchResponder(
            args.branch_id, CsvSummaryProvider(Path(args.data_source)), cfg.server
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    host = args.host if args.host is not None else cfg.server.host
    try:
        listener = bind_listener(
            host, args.port, family=cfg.network.socket_family, backlog=cfg.server.backlog
        )
    except OSError as e:
        print(f"Error: cannot listen on port {args.port}: {e}", file=sys.stderr)
        return 1

    print(
        f"Branch {responder.branch_id} server listening on port {args.port} "
        f"(CSV={args.data_source})"
    )
    with listener:
        try:
            responder.serve_forever(listener)
        except KeyboardInterrupt:
            print("\nBranch server stopped.")
    return 0


def cmd_init_ledger(args: argparse.Namespace) -> int:
    """
    Create a ledger holding only the configured header row.

    Returns:
        0 on success, 1 if the ledger exists (without --force) or cannot be written
    """
    from branch_ledger.ledger import init_ledger

    try:
        init_ledger(Path(args.ledger), config_module.config.ledger.header, force=args.force)
    except FileExistsError as e:
        print(f"Error: {e} (use --force to overwrite)", file=sys.stderr)
        return 1
    except LedgerWriteError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Ledger initialized at {args.ledger}.")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """
    Check ledger integrity.

    Returns:
        0 if the ledger is ok or empty, 1 if it is corrupt
    """
    from branch_ledger.ledger import verify_ledger

    result = verify_ledger(Path(args.ledger))
    if result.status == "corrupt":
        print(f"Ledger {args.ledger} is corrupt: {result.error_detail}", file=sys.stderr)
        return 1
    print(f"Ledger {args.ledger}: {result.status} ({result.rows} rows)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with all subcommands."""
    parser = _ArgumentParser(
        prog="branch-ledger",
        description="Collect branch summaries into a shared ledger",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        help="INI config file (default: config/branch_ledger.ini)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Log level override (default: INFO, or BRANCH_LEDGER_LOG_LEVEL env var)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # collect command
    collect_parser = subparsers.add_parser(
        "collect",
        help="Collect summaries from branches into the ledger",
        description=(
            "Connect to every branch, send a summary request and append each valid "
            "reply to the ledger. Branches that do not answer within the shared "
            "timeout are abandoned."
        ),
    )
    collect_parser.add_argument("ledger", help="Ledger CSV file to append to")
    collect_parser.add_argument(
        "peers",
        nargs="*",
        metavar="HOST_PORT",
        help="Branch addresses given as pairs: HOST PORT [HOST PORT ...]",
    )
    collect_parser.add_argument(
        "--peers-file",
        help="YAML file with a 'peers' list of {host, port} entries",
    )
    collect_parser.add_argument(
        "--timeout",
        type=float,
        help="Shared reply deadline in seconds (default: 5, or BRANCH_LEDGER_TIMEOUT env var)",
    )
    collect_parser.set_defaults(func=cmd_collect)

    # serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run a branch service",
        description="Answer summary requests for one branch, one connection at a time.",
    )
    serve_parser.add_argument("branch_id", help="Identifier reported in every reply")
    serve_parser.add_argument("data_source", help="CSV file with a date,amount header")
    serve_parser.add_argument("port", type=_port_arg, help="TCP port to listen on")
    serve_parser.add_argument(
        "--host",
        type=str,
        help="Host to bind to (default: all interfaces, or BRANCH_LEDGER_HOST env var)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # init-ledger command
    init_parser = subparsers.add_parser(
        "init-ledger",
        help="Create an empty ledger",
        description="Create a ledger file holding only the configured header row.",
    )
    init_parser.add_argument("ledger", help="Ledger CSV file to create")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing ledger",
    )
    init_parser.set_defaults(func=cmd_init_ledger)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Check ledger integrity",
        description="Check that every ledger row is complete and well-formed.",
    )
    verify_parser.add_argument("ledger", help="Ledger CSV file to check")
    verify_parser.set_defaults(func=cmd_verify)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.config is not None:
        try:
            config_module.reload_config(args.config)
        except (FileNotFoundError, ValueError, configparser.Error) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    logging_settings = config_module.config.logging
    if args.log_level:
        logging_settings = dataclasses.replace(logging_settings, level=args.log_level.upper())
    configure_logging(logging_settings)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
