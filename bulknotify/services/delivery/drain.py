"""Timer-side driver that keeps invoking `process_batch` until the queue drains."""

import logging
import time

import httpx

# Runs on scheduler hosts without the service settings, so no config import.
logger = logging.getLogger("bulknotify.drain")

DISPATCH_PATH = "/internal/bulk-notifications"


def request_pass(client: httpx.Client, api_key: str, batch_id: str | None, batch_size: int) -> dict:
    """Run one remote processing pass and return its `{processed, remaining, failed}`."""

    payload: dict = {"action": "process_batch", "batchSize": batch_size}
    if batch_id:
        payload["batchId"] = batch_id
    resp = client.post(DISPATCH_PATH, json=payload, headers={"Authorization": f"Bearer {api_key}"})
    resp.raise_for_status()
    return resp.json()


def drain(
    client: httpx.Client,
    api_key: str,
    batch_id: str | None = None,
    batch_size: int = 50,
    interval_seconds: float = 5.0,
    max_passes: int | None = None,
    sleep=time.sleep,
) -> dict:
    """Repeat passes until `remaining == 0` or `max_passes` is hit; returns totals."""

    totals = {"passes": 0, "processed": 0, "failed": 0, "remaining": 0}
    while max_passes is None or totals["passes"] < max_passes:
        result = request_pass(client, api_key, batch_id, batch_size)
        totals["passes"] += 1
        totals["processed"] += result.get("processed", 0)
        totals["failed"] += result.get("failed", 0)
        totals["remaining"] = result.get("remaining", 0)
        logger.info(
            "drain pass=%s processed=%s failed=%s remaining=%s",
            totals["passes"],
            result.get("processed", 0),
            result.get("failed", 0),
            totals["remaining"],
        )
        if totals["remaining"] == 0:
            break
        sleep(interval_seconds)
    return totals
