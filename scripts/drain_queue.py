"""Drain the notification queue by calling `process_batch` until nothing is pending.

Meant to be run from cron or a scheduler; `--once` performs a single pass.
"""

import argparse
import json
import os

import httpx

from bulknotify.services.delivery.drain import drain


def main() -> None:
    """CLI entrypoint for scheduled queue draining."""

    parser = argparse.ArgumentParser(description="Drive processing passes until the queue drains.")
    parser.add_argument("--processor-url", default=os.getenv("PROCESSOR_URL", "http://localhost:8010"))
    parser.add_argument("--api-key", default=os.getenv("API_KEY"))
    parser.add_argument("--batch-id", default=None, help="Restrict passes to one batch")
    parser.add_argument("--batch-size", type=int, default=50)
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between passes")
    parser.add_argument("--max-passes", type=int, default=None)
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    if not args.api_key:
        raise SystemExit("Provide --api-key or set API_KEY")

    with httpx.Client(base_url=args.processor_url, timeout=60.0) as client:
        totals = drain(
            client,
            args.api_key,
            batch_id=args.batch_id,
            batch_size=args.batch_size,
            interval_seconds=args.interval,
            max_passes=1 if args.once else args.max_passes,
        )
    print(json.dumps(totals))
    raise SystemExit(0 if totals["remaining"] == 0 else 3)


if __name__ == "__main__":
    main()
