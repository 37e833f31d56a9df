"""Fetch and print the current status of one payment."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for payment status checks."""

    parser = argparse.ArgumentParser(description="Fetch a payment's canonical status.")
    parser.add_argument("payment_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.base_url}/payments/{args.payment_id}/status",
        headers={"x-api-key": args.api_key},
        timeout=35.0,
    )
    print(json.dumps(resp.json(), indent=2))
    if resp.status_code >= 400:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
