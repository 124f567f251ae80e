"""Trigger the stuck payment setup saga sweep and print the report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the saga sweep (run from cron)."""

    parser = argparse.ArgumentParser(description="Resolve payment setup sagas stuck in pending.")
    parser.add_argument("--booking-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    args = parser.parse_args()

    resp = httpx.post(f"{args.booking_url}/internal/sagas/sweep", headers={"x-api-key": args.api_key}, timeout=30.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
