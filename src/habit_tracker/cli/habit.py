"""CLI for creating, updating and viewing habit tracker NFTs.

Usage:
    habit-tracker [COMMAND] [OPTIONS]
    python -m habit_tracker.cli [COMMAND] [OPTIONS]

Examples:
    # Create a token tracking a new habit (funded by the node wallet)
    habit-tracker create --habit "Morning Meditation"

    # Record one more session
    habit-tracker update --utxo 4f1c...e9:0

    # Show a token's sessions and badges
    habit-tracker view --utxo 4f1c...e9:0

    # Run the HTTP API (also the default when no command is given)
    habit-tracker serve --port 3000

    # Verbose logging
    habit-tracker -v update --utxo 4f1c...e9:0
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog
import uvicorn

from habit_tracker.app import create_app
from habit_tracker.core.config import Settings, configure_logging
from habit_tracker.models.token import Outpoint
from habit_tracker.services.exceptions import NoFundingAvailableError, ServiceError
from habit_tracker.services.tracker.service import create_service

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="habit-tracker",
        description="Habit Tracker NFT manager (Bitcoin + Charms)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    commands = parser.add_subparsers(dest="command")

    create = commands.add_parser("create", help="Create a new habit tracker NFT")
    create.add_argument("--habit", required=True, help="Name of the habit to track")

    update = commands.add_parser("update", help="Increment the session counter of an NFT")
    update.add_argument("-u", "--utxo", required=True, help="Token output as txid:vout")

    view = commands.add_parser("view", help="View NFT details")
    view.add_argument("-u", "--utxo", required=True, help="Token output as txid:vout")

    serve = commands.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", help="Bind address (default: HOST setting)")
    serve.add_argument("--port", type=int, help="Bind port (default: PORT setting)")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
        args.host = None
        args.port = None
    return args


def load_settings(args: Namespace) -> Settings:
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)
    return settings


async def run_command(args: Namespace, settings: Settings) -> int:
    """Run one token command against the configured node."""
    token = Outpoint.parse(args.utxo) if args.command != "create" else None
    service = await create_service(settings)

    if args.command == "create":
        print(f"Creating habit tracker NFT for: {args.habit}")
        result = await service.create_token(args.habit)
        print("NFT created")
        print(f"   Commit TX: {result.commit_txid}")
        print(f"   Spell TX:  {result.spell_txid}")
        print(f"   NFT UTXO:  {result.token_outpoint}")
        return EXIT_OK

    if args.command == "update":
        print(f"Updating NFT: {token}")
        result = await service.advance_token(token)
        current = await service.view_token(result.token_outpoint)
        print("NFT updated")
        print(f"   Commit TX: {result.commit_txid}")
        print(f"   Spell TX:  {result.spell_txid}")
        print(f"   New NFT UTXO: {result.token_outpoint}")
        print(f"   Total Sessions: {current.state.progress_count}")
        return EXIT_OK

    current = await service.view_token(token)
    state = current.state
    upcoming = service.builder.schedule.next_badge(state.progress_count)
    print(f"NFT Details: {token}")
    print(f"   Habit: {state.subject_name}")
    print(f"   Owner: {state.owner}")
    print(f"   Total Sessions: {state.progress_count}")
    print(f"   Badges: {', '.join(state.badges) if state.badges else '-'}")
    if upcoming:
        threshold, label = upcoming
        print(f"   Next Badge: {label} (in {threshold - state.progress_count} sessions)")
    return EXIT_OK


async def async_main(args: Namespace, settings: Settings) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    logger.debug("cli.start", command=args.command)
    try:
        return await run_command(args, settings)
    except NoFundingAvailableError as e:
        logger.error("cli.no_funding", address=e.address, network=e.network)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ServiceError as e:
        logger.error("cli.failed", command=args.command, error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


def serve(args: Namespace, settings: Settings) -> int:
    """Run the HTTP API with uvicorn."""
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("cli.serve", host=host, port=port)
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Synchronous wrapper for async main."""
    args = parse_args(argv)
    try:
        settings = load_settings(args)
        if args.command == "serve":
            return serve(args, settings)
        return asyncio.run(async_main(args, settings))
    except KeyboardInterrupt:
        logger.warning("cli.interrupted", command=args.command)
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error("cli.fatal_error", error=str(e), exc_info=True)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
