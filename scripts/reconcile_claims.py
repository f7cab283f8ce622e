"""Trigger badge-claim reconciliation and print the summary JSON."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for settling stale pending badge claims."""

    parser = argparse.ArgumentParser(description="Settle stale pending badge claims against the ledger.")
    parser.add_argument("--badges-url", default="http://localhost:8002")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.badges_url}/reconciliation",
        json={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=300.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
