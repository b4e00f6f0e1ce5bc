"""Operator CLI: run a worker, append events, inspect health and dead letters, replay, reap.

Usage:
    python -m outbox [worker]                     run worker + reaper until SIGINT/SIGTERM
    python -m outbox append --tenant 1 --item-type pursuit --item-id 7 --event pursuit.won
    python -m outbox stats
    python -m outbox dead-letters [--tenant 1] [--limit 20]
    python -m outbox replay 42 --operator alice
    python -m outbox reap [--lease 300]

Global options (before the command): --db PATH, --config-dir DIR.
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from outbox import runner
from outbox.events import EventNotFoundError, EventStore, ReplayError
from outbox.settings import load_outbox_config, load_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="outbox", description="Outbox event-processing engine")
    parser.add_argument("--db", type=Path, help="SQLite database file (overrides settings)")
    parser.add_argument("--config-dir", type=Path, help="Directory holding settings.yaml")
    sub = parser.add_subparsers(dest="command")

    p_worker = sub.add_parser("worker", help="Run the worker loop and the stale claim reaper")
    p_worker.add_argument("--worker-id", help="Explicit worker identity (default: host-pid-random)")

    p_append = sub.add_parser("append", help="Append an event")
    p_append.add_argument("--tenant", required=True)
    p_append.add_argument("--item-type", required=True)
    p_append.add_argument("--item-id", required=True)
    p_append.add_argument("--event", required=True, help="Dotted event name, e.g. pursuit.won")
    p_append.add_argument("--payload", default="{}", help="JSON object")
    p_append.add_argument("--dedupe-key")
    p_append.add_argument("--correlation-id")
    p_append.add_argument("--max-attempts", type=int)

    sub.add_parser("stats", help="Print counts, per-type counters and processing lag")

    p_dead = sub.add_parser("dead-letters", help="List dead-lettered events")
    p_dead.add_argument("--tenant")
    p_dead.add_argument("--limit", type=int, default=50)

    p_replay = sub.add_parser("replay", help="Return a dead-lettered event to the pool")
    p_replay.add_argument("event_id", type=int)
    p_replay.add_argument("--operator", required=True, help="Who is replaying (audit)")

    p_reap = sub.add_parser("reap", help="Release stale claims once")
    p_reap.add_argument("--lease", type=float, help="Lease in seconds (default from settings)")
    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _run_command(args: argparse.Namespace, store: EventStore, lease_seconds: float) -> int:
    if args.command == "append":
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"invalid --payload JSON: {e}", file=sys.stderr)
            return 2
        try:
            event_id = await store.append(
                args.tenant,
                args.item_type,
                args.item_id,
                args.event,
                payload,
                correlation_id=args.correlation_id,
                dedupe_key=args.dedupe_key,
                max_attempts=args.max_attempts,
            )
        except ValueError as e:
            print(f"invalid event: {e}", file=sys.stderr)
            return 2
        _print_json({"event_id": event_id})
    elif args.command == "stats":
        stats = await store.stats()
        _print_json(stats.model_dump())
    elif args.command == "dead-letters":
        events = await store.list_dead_letters(tenant_id=args.tenant, limit=args.limit)
        _print_json([asdict(e) for e in events])
    elif args.command == "replay":
        try:
            event = await store.replay(args.event_id, args.operator)
        except (EventNotFoundError, ReplayError) as e:
            print(str(e), file=sys.stderr)
            return 1
        _print_json(asdict(event))
    elif args.command == "reap":
        released = await store.release_stale(args.lease or lease_seconds)
        _print_json({"released": released})
    return 0


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config_dir)
    cfg = load_outbox_config(settings)
    store = runner.build_store(cfg, args.db)
    try:
        return await _run_command(args, store, cfg.lease_seconds)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.command in (None, "worker"):
        runner.main(
            worker_id=getattr(args, "worker_id", None),
            db_path=args.db,
            config_dir=args.config_dir,
        )
        return 0
    runner.load_env()
    return asyncio.run(_run(args))
