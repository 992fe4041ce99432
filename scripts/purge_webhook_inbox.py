"""Drop webhook dedup entries older than the retention window."""

import argparse
import sys

import httpx


def purge(base_url: str, api_key: str, older_than_days: int | None) -> int:
    params = {"older_than_days": older_than_days} if older_than_days is not None else {}
    resp = httpx.post(
        f"{base_url}/internal/webhooks/purge",
        params=params,
        headers={"x-api-key": api_key},
        timeout=60.0,
    )
    if resp.status_code >= 400:
        print(f"purge failed status={resp.status_code} body={resp.text}")
        return 1
    print(f"removed={resp.json()['removed']}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--older-than-days", type=int, default=None)
    args = parser.parse_args()
    sys.exit(purge(args.base_url, args.api_key, args.older_than_days))
