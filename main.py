"""Inspect and repair the local offline queue without network access."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from core.priorities import priority_label
from core.settings import DB_PATH, SYNC
from datetime_utils import to_rfc3339_utc
from services.bootstrap import build_queue
from services.operation_queue import OperationQueue


def _print_items(items, out) -> None:
    for item in items:
        data = item.to_dict()
        print(
            f"{data['id']}  {data['status']:<10} {data['kind']:<6} {data['resource_type']:<20} "
            f"prio={data['priority']}({priority_label(item.priority)}) attempts={data['attempts']} "
            f"created={data['created_at']}"
            + (f"  error={data['last_error']}" if data["last_error"] else ""),
            file=out,
        )


def run(argv: Optional[List[str]] = None, *, queue: Optional[OperationQueue] = None, out=None) -> int:
    out = out or sys.stdout
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument(
        "--db",
        type=Path,
        default=DB_PATH,
        help="Path to the queue database (default: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show item counts by status")
    sub.add_parser("list", help="List every queued item in dequeue order")
    sub.add_parser("failed", help="List dead-lettered items")
    retry = sub.add_parser("retry", help="Re-queue one failed item")
    retry.add_argument("item_id")
    sub.add_parser("retry-all", help="Re-queue all failed items")
    cleanup = sub.add_parser("cleanup", help="Drop completed and stale failed items")
    cleanup.add_argument("--days", type=int, default=SYNC.failed_retention_days)
    clear = sub.add_parser("clear", help="Drop every queued item")
    clear.add_argument("--yes", action="store_true", help="Confirm the hard reset")
    args = parser.parse_args(argv)

    queue = queue or build_queue(db_path=args.db)

    if args.command == "status":
        counts = queue.counts()
        print(json.dumps({**counts, "last_sync_at": to_rfc3339_utc(queue.last_sync_at())}, indent=2), file=out)
        return 0
    if args.command == "list":
        _print_items(queue.all_items(), out)
        return 0
    if args.command == "failed":
        _print_items(queue.failed(), out)
        return 0
    if args.command == "retry":
        if queue.retry(args.item_id):
            print(f"Re-queued {args.item_id}", file=out)
            return 0
        print(f"{args.item_id} is not a failed item", file=out)
        return 1
    if args.command == "retry-all":
        print(f"Re-queued {queue.retry_all_failed()} items", file=out)
        return 0
    if args.command == "cleanup":
        removed = queue.cleanup(timedelta(days=args.days))
        print(f"Removed {removed} items", file=out)
        return 0
    if args.command == "clear":
        if not args.yes:
            print("Refusing to clear the queue without --yes", file=out)
            return 2
        queue.clear()
        print("Queue cleared", file=out)
        return 0
    return 2


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        sys.exit(run())
    except Exception as exc:  # pragma: no cover - CLI entry point
        logging.exception("Command failed: %s", exc)
        raise


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
