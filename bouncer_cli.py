#!/usr/bin/env python3
"""
Matrix Bouncer - Command Line Interface

Usage:
    bouncer web [--host H] [--port P]   Serve the invite gate
    bouncer bot                         Run the join challenge engine
    bouncer check                       Print self-check warnings for watched rooms
    bouncer rooms                       Print the eligible-room snapshot as JSON
    bouncer symbol USER_ID              Print the challenge symbol for a user id

Configuration is read from the environment (see bouncer/config.py).
Exit status 2 means the configuration is invalid.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from bouncer.challenge import challenge_symbol
from bouncer.config import BouncerConfig, is_user_id
from bouncer.errors import BNC_E_CONFIG_INVALID, BouncerError

logger = logging.getLogger("bouncer")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def _exit_invalid_config(e: BouncerError):
    print("Invalid configuration:", file=sys.stderr)
    for problem in e.details.get("problems", [e.message]):
        print(f"  - {problem}", file=sys.stderr)
    sys.exit(2)


def load_config() -> BouncerConfig:
    try:
        return BouncerConfig.from_env()
    except BouncerError as e:
        _exit_invalid_config(e)


def run_async(coro):
    """Run a coroutine; a token/user mismatch found at startup exits like bad config."""
    try:
        return asyncio.run(coro)
    except BouncerError as e:
        if e.code != BNC_E_CONFIG_INVALID:
            raise
        _exit_invalid_config(e)


async def _room_service(config: BouncerConfig):
    from bouncer.matrix import MautrixRoomService, build_client, ensure_identity

    service = MautrixRoomService(build_client(config.homeserver, config.user_id, config.access_token, config.device_id))
    try:
        await ensure_identity(service, config.user_id)
    except BaseException:
        await service.close()
        raise
    return service


async def _watched_rooms(config: BouncerConfig, service) -> List[str]:
    if config.protected_rooms:
        return list(config.protected_rooms)
    return await service.joined_rooms()


def cmd_web(args):
    import uvicorn

    from bouncer.server import create_app

    config = load_config()
    host = args.host or config.listen_host
    port = args.port or config.listen_port
    logger.info("Starting invite gate on %s:%d", host, port)
    uvicorn.run(create_app(config=config), host=host, port=port, log_config=None)


async def _run_bot(config: BouncerConfig) -> None:
    from bouncer.engine import JoinChallengeEngine
    from bouncer.matrix import MautrixEventStream

    service = await _room_service(config)
    try:
        watched = await _watched_rooms(config, service)
        engine = JoinChallengeEngine(
            service,
            config.user_id,
            watched,
            staleness_seconds=config.challenge_staleness_seconds,
        )
        await engine.self_check()
        await engine.run(MautrixEventStream(service.client, rooms=watched))
    finally:
        await service.close()


def cmd_bot(args):
    config = load_config()
    try:
        run_async(_run_bot(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


async def _check(config: BouncerConfig) -> List[str]:
    from bouncer.engine import JoinChallengeEngine

    service = await _room_service(config)
    try:
        watched = await _watched_rooms(config, service)
        engine = JoinChallengeEngine(service, config.user_id, watched)
        return await engine.self_check()
    finally:
        await service.close()


def cmd_check(args):
    config = load_config()
    warnings = run_async(_check(config))
    for w in warnings:
        print(w)
    if warnings:
        sys.exit(1)
    print("OK: no problems found")


async def _rooms(config: BouncerConfig):
    from bouncer.rooms import RoomDirectory

    service = await _room_service(config)
    try:
        return await RoomDirectory.build(service, config.user_id)
    finally:
        await service.close()


def cmd_rooms(args):
    config = load_config()
    directory = run_async(_rooms(config))
    print(json.dumps([r.to_dict() for r in directory.list()], indent=2, ensure_ascii=False))


def cmd_symbol(args):
    if not is_user_id(args.user_id):
        print(f"Not a Matrix user id: {args.user_id!r}", file=sys.stderr)
        sys.exit(2)
    print(challenge_symbol(args.user_id))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="bouncer",
        description="Matrix Bouncer CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # web command
    web_parser = subparsers.add_parser("web", help="Serve the invite gate")
    web_parser.add_argument("--host", default=None, help="Host to bind (default: BOUNCER_LISTEN_ADDRESS)")
    web_parser.add_argument("--port", type=int, default=None, help="Port to bind (default: BOUNCER_LISTEN_ADDRESS)")
    web_parser.set_defaults(func=cmd_web)

    # bot command
    bot_parser = subparsers.add_parser("bot", help="Run the join challenge engine")
    bot_parser.set_defaults(func=cmd_bot)

    # check command
    check_parser = subparsers.add_parser("check", help="Check watched rooms' power levels")
    check_parser.set_defaults(func=cmd_check)

    # rooms command
    rooms_parser = subparsers.add_parser("rooms", help="Print eligible rooms as JSON")
    rooms_parser.set_defaults(func=cmd_rooms)

    # symbol command
    symbol_parser = subparsers.add_parser("symbol", help="Print the challenge symbol for a user id")
    symbol_parser.add_argument("user_id", help="Matrix user id, e.g. @alice:example.org")
    symbol_parser.set_defaults(func=cmd_symbol)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
