"""
Replay a persisted offline request queue against the API.

Usage:
  python scripts/replay_offline_queue.py --storage-dir ~/.zyria
  python scripts/replay_offline_queue.py --storage-dir ~/.zyria --token abc --list
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

from zyria.offline_queue import MAX_RETRY_COUNT, OfflineQueue


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay queued offline requests.")
    parser.add_argument("--storage-dir", type=Path, required=True, help="Directory holding zyria_offline_queue.json.")
    parser.add_argument("--token", help="Bearer token sent with every replayed request.")
    parser.add_argument("--max-retries", type=int, default=MAX_RETRY_COUNT, help="Attempts before a request is dropped.")
    parser.add_argument("--list", action="store_true", help="Print the queue without replaying it.")
    parser.add_argument("--clear", action="store_true", help="Discard every queued request.")
    args = parser.parse_args()

    headers = {"Authorization": f"Bearer {args.token}"} if args.token else None
    queue = OfflineQueue(args.storage_dir, max_retries=args.max_retries, headers=headers)

    if args.clear:
        queue.clear()
        print(json.dumps({"cleared": True}))
        return
    if args.list:
        print(json.dumps([item.to_dict() for item in queue.items], ensure_ascii=False, indent=2))
        return

    report = queue.process()
    print(json.dumps({**asdict(report), "remaining": queue.size}, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(1)
