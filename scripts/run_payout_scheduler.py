"""Cron trigger for one automatic payout pass.

Calls the internal scheduler route; overlapping runs are rejected server-side
by the scheduler lease, so it is safe to fire this from more than one host.
"""

import argparse
import json
import sys

import httpx


def run(base_url: str, api_key: str, timeout_seconds: float) -> int:
    """Trigger the scheduler and print its run summary."""

    resp = httpx.post(
        f"{base_url}/internal/scheduler/run",
        headers={"x-api-key": api_key},
        timeout=timeout_seconds,
    )
    if resp.status_code >= 400:
        print(f"scheduler run failed status={resp.status_code} body={resp.text}")
        return 1
    summary = resp.json()
    print(json.dumps(summary, indent=2))
    if summary.get("locked"):
        print("another scheduler run holds the lock; nothing submitted")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--timeout-seconds", type=float, default=300.0)
    args = parser.parse_args()
    sys.exit(run(args.base_url, args.api_key, args.timeout_seconds))
