"""
Outbox admin CLI for possync devices.

Works directly on a device's outbox file; no server or running client is
needed:
- stats: Counts per state, backlog age, device id, feed watermark
- list: Entries, optionally filtered by state
- retry: Re-queue FAILED_PERMANENT entries (one or all)
- clear-failed: Delete FAILED_PERMANENT entries (one or all)
- purge-acked: Garbage-collect confirmed entries

Usage:
    possync-outbox --outbox /data/outbox.db stats
    possync-outbox --outbox /data/outbox.db list --state FAILED_PERMANENT
    possync-outbox --outbox /data/outbox.db retry 0b6f9a4e-...

Invariants:
    - Output of stats and list --format json is stable for scripting
    - Exit code is non-zero when a targeted op_id matched nothing

How to change safely:
    - Add new commands, don't change existing output fields
    - Run against a copy of the outbox file when the client may be running
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from .outbox import OutboxEntry, OutboxState, OutboxStore
from .reconciler import WATERMARK_KEY

logger = logging.getLogger(__name__)


class OutboxCLI:
    """Outbox inspection and repair commands.

    Example:
        >>> cli = OutboxCLI(OutboxStore("/data/outbox.db"))
        >>> stats = await cli.stats()
        >>> stats["counts"]["PENDING"]
        3
    """

    def __init__(self, outbox: OutboxStore) -> None:
        self.outbox = outbox

    async def stats(self) -> dict[str, Any]:
        counts = {state.value: await self.outbox.count(state) for state in OutboxState}
        return {
            "path": str(self.outbox.path),
            "device_id": await self.outbox.get_meta("device_id"),
            "watermark": int(await self.outbox.get_meta(WATERMARK_KEY, "0") or 0),
            "counts": counts,
            "pending": await self.outbox.pending_count(),
            "oldest_pending_age_ms": await self.outbox.oldest_pending_age_ms(),
        }

    async def list_entries(
        self, state: OutboxState | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        entries = await self.outbox.list_entries(state, limit)
        return [_entry_summary(entry) for entry in entries]

    async def retry(self, op_id: str | None = None) -> int:
        return await self.outbox.retry_failed(op_id)

    async def clear_failed(self, op_id: str | None = None) -> int:
        return await self.outbox.clear_failed(op_id)

    async def purge_acked(self, older_than_ms: int = 0) -> int:
        return await self.outbox.purge_acked(older_than_ms)


def _entry_summary(entry: OutboxEntry) -> dict[str, Any]:
    env = entry.envelope
    return {
        "seq": entry.seq,
        "op_id": env.op_id,
        "entity": f"{env.entity_type}/{env.entity_id or '-'}",
        "op": env.op,
        "state": entry.state.value,
        "attempts": entry.attempts,
        "created_at": entry.created_at,
        "next_retry_at": entry.next_retry_at,
        "last_error": entry.last_error,
    }


def _print_entries(rows: list[dict[str, Any]]) -> None:
    if not rows:
        print("No entries")
        return
    for row in rows:
        line = (
            f"{row['seq']:>6}  {row['state']:<16} {row['entity']:<40} {row['op']:<24} "
            f"attempts={row['attempts']}"
        )
        if row["last_error"]:
            line += f"  error={row['last_error']}"
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="possync outbox inspection tool")
    parser.add_argument(
        "--outbox",
        default=os.getenv("POSSYNC_OUTBOX_PATH", "possync_outbox.db"),
        help="Outbox SQLite file (default: $POSSYNC_OUTBOX_PATH)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="Show outbox statistics")
    stats_parser.add_argument("--format", choices=["text", "json"], default="text")

    list_parser = subparsers.add_parser("list", help="List outbox entries")
    list_parser.add_argument("--state", choices=[s.value for s in OutboxState])
    list_parser.add_argument("--limit", type=int, default=100)
    list_parser.add_argument("--format", choices=["text", "json"], default="text")

    retry_parser = subparsers.add_parser("retry", help="Re-queue permanently failed entries")
    retry_parser.add_argument("op_id", nargs="?", help="Only this entry")

    clear_parser = subparsers.add_parser("clear-failed", help="Delete permanently failed entries")
    clear_parser.add_argument("op_id", nargs="?", help="Only this entry")

    purge_parser = subparsers.add_parser("purge-acked", help="Delete confirmed entries")
    purge_parser.add_argument("--older-than-ms", type=int, default=0)

    return parser


async def run(args: argparse.Namespace) -> int:
    """Execute a parsed command. Returns the exit code."""
    cli = OutboxCLI(OutboxStore(args.outbox))

    if args.command == "stats":
        stats = await cli.stats()
        if args.format == "json":
            print(json.dumps(stats, indent=2))
        else:
            print(f"Outbox: {stats['path']}")
            print(f"  Device: {stats['device_id'] or 'unassigned'}")
            print(f"  Feed watermark: {stats['watermark']}")
            for state, count in stats["counts"].items():
                print(f"  {state}: {count}")
            age = stats["oldest_pending_age_ms"]
            print(f"  Oldest pending: {'-' if age is None else f'{age}ms'}")
        return 0

    if args.command == "list":
        state = OutboxState(args.state) if args.state else None
        rows = await cli.list_entries(state, args.limit)
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        else:
            _print_entries(rows)
        return 0

    if args.command == "retry":
        count = await cli.retry(args.op_id)
        print(f"Re-queued {count} entr{'y' if count == 1 else 'ies'}")
        return 1 if args.op_id and count == 0 else 0

    if args.command == "clear-failed":
        count = await cli.clear_failed(args.op_id)
        print(f"Deleted {count} failed entr{'y' if count == 1 else 'ies'}")
        return 1 if args.op_id and count == 0 else 0

    if args.command == "purge-acked":
        count = await cli.purge_acked(args.older_than_ms)
        print(f"Purged {count} acknowledged entr{'y' if count == 1 else 'ies'}")
        return 0

    return 2


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the outbox tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
