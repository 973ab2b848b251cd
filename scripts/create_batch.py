"""Submit one notification batch from a file of user ids (one per line)."""

import argparse
import json
import os
from pathlib import Path

import httpx


def main() -> None:
    """Parse CLI args, read recipients and call `create_batch`."""

    parser = argparse.ArgumentParser(description="Create a bulk notification batch.")
    parser.add_argument("--processor-url", default=os.getenv("PROCESSOR_URL", "http://localhost:8010"))
    parser.add_argument("--api-key", default=os.getenv("API_KEY"))
    parser.add_argument("--users-file", required=True, help="Text file with one user id per line")
    parser.add_argument("--type", dest="notification_type", default="training_assigned")
    parser.add_argument("--title", default=None)
    parser.add_argument("--message", default=None)
    parser.add_argument("--batch-size", type=int, default=50)
    args = parser.parse_args()

    if not args.api_key:
        raise SystemExit("Provide --api-key or set API_KEY")

    user_ids = [line.strip() for line in Path(args.users_file).read_text().splitlines() if line.strip()]
    data = {key: value for key, value in {"title": args.title, "message": args.message}.items() if value}
    resp = httpx.post(
        f"{args.processor_url}/internal/bulk-notifications",
        json={
            "action": "create_batch",
            "userIds": user_ids,
            "notificationType": args.notification_type,
            "notificationData": data,
            "batchSize": args.batch_size,
        },
        headers={"Authorization": f"Bearer {args.api_key}"},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
