"""Dead-letter queue command-line tool."""

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from pydantic import BaseModel

from bountyqueue.config import get_settings
from bountyqueue.constants import Topic
from bountyqueue.factory import close_instances, get_dlq_handler
from bountyqueue.observability.logging import setup_logging
from bountyqueue.types.envelope import now_ms


def _print_json(result: BaseModel) -> None:
    print(json.dumps(result.model_dump(mode="json"), indent=2, sort_keys=True))


def _epoch_ms(value: str) -> int:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


async def _stats(args: argparse.Namespace) -> int:
    stats = await get_dlq_handler().get_stats(max_messages=args.limit)
    _print_json(stats)
    return 0


async def _alerts(args: argparse.Namespace) -> int:
    settings = get_settings()
    max_messages = args.max_messages or settings.dlq_alert_max_messages
    max_age_seconds = args.max_age_seconds or settings.dlq_alert_max_age_seconds
    result = await get_dlq_handler().check_alert_thresholds(
        max_messages=max_messages,
        max_age_ms=max_age_seconds * 1000,
    )
    _print_json(result)
    return 1 if result.alert else 0


async def _replay(args: argparse.Namespace) -> int:
    handler = get_dlq_handler()

    if args.topic:
        result = await handler.replay_by_topic(Topic(args.topic), max_messages=args.limit)
    elif args.since is not None or args.until is not None:
        start = args.since if args.since is not None else 0
        end = args.until if args.until is not None else now_ms()
        result = await handler.replay_by_time_window(start, end, max_messages=args.limit)
    elif args.all:
        result = await handler.replay_filtered(lambda message: True, max_messages=args.limit)
    else:
        print("replay needs --topic, --since/--until or --all", file=sys.stderr)
        return 2

    _print_json(result)
    return 1 if result.errors else 0


async def _run_command(command: Callable[[argparse.Namespace], Awaitable[int]], args: argparse.Namespace) -> int:
    try:
        return await command(args)
    finally:
        await close_instances()


def cmd_stats(args: argparse.Namespace) -> int:
    return asyncio.run(_run_command(_stats, args))


def cmd_alerts(args: argparse.Namespace) -> int:
    return asyncio.run(_run_command(_alerts, args))


def cmd_replay(args: argparse.Namespace) -> int:
    return asyncio.run(_run_command(_replay, args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bountyqueue-dlq", description="Inspect and replay dead letters.")
    parser.add_argument("--limit", type=int, default=None, help="Maximum dead letters to read.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="Print DLQ statistics.")
    stats_parser.set_defaults(func=cmd_stats)

    alerts_parser = subparsers.add_parser("alerts", help="Check alert thresholds; exit 1 on alert.")
    alerts_parser.add_argument("--max-messages", type=int, default=None, help="Depth threshold.")
    alerts_parser.add_argument("--max-age-seconds", type=int, default=None, help="Oldest-message age threshold.")
    alerts_parser.set_defaults(func=cmd_alerts)

    replay_parser = subparsers.add_parser("replay", help="Replay dead letters to their original topics.")
    replay_parser.add_argument("--topic", choices=[t.value for t in Topic], help="Replay by original topic.")
    replay_parser.add_argument("--since", type=_epoch_ms, default=None, help="Window start (ISO-8601).")
    replay_parser.add_argument("--until", type=_epoch_ms, default=None, help="Window end (ISO-8601).")
    replay_parser.add_argument("--all", action="store_true", help="Replay every untriaged dead letter.")
    replay_parser.set_defaults(func=cmd_replay)

    return parser


def run(argv: list[str] | None = None) -> None:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    exit_code = args.func(args)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    run()
