"""Sign and post a mobile-money webhook to a running payment service.

Useful for exercising reconciliation locally without a provider sandbox.
"""

import argparse
import hashlib
import hmac
import json
from pathlib import Path

import httpx

SIGNATURE_HEADERS = {
    "mtn_money": "x-mtn-signature",
    "orange_money": "x-orange-signature",
    "wave": "wave-signature",
}


def main() -> None:
    """Parse CLI args, sign the payload with the webhook secret and post it."""

    parser = argparse.ArgumentParser(description="Post a signed provider webhook.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--provider", choices=sorted(SIGNATURE_HEADERS), required=True)
    parser.add_argument("--secret", required=True, help="Provider webhook secret")
    parser.add_argument("--payment-id", default=None, help="Build a minimal payload for this payment")
    parser.add_argument("--status", default="SUCCESS")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to a JSON payload")
    args = parser.parse_args()

    if bool(args.payment_id) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --payment-id or --file")

    if args.json_file:
        payload = json.loads(Path(args.json_file).read_text())
    else:
        payload = {"status": args.status, "metadata": {"payment_record_id": args.payment_id}}

    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(args.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    resp = httpx.post(
        f"{args.base_url}/webhooks/payments/{args.provider}",
        content=body,
        headers={"content-type": "application/json", SIGNATURE_HEADERS[args.provider]: signature},
        timeout=10.0,
    )
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
