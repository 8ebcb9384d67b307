"""Issue an operator refund through the checkout refund endpoint."""

import argparse
import json
import sys

import httpx


def main() -> None:
    """CLI entrypoint for manual refunds."""

    parser = argparse.ArgumentParser(description="Refund an order by payment id, order number or transaction id.")
    parser.add_argument("identifier")
    parser.add_argument("amount", help="Amount to refund, e.g. 120.00")
    parser.add_argument("--reason", default=None)
    parser.add_argument("--checkout-url", default="http://localhost:8000")
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.checkout_url}/api/payments/refund",
        json={"identifier": args.identifier, "refund_amount": args.amount, "reason": args.reason},
        timeout=30.0,
    )
    print(json.dumps(resp.json(), indent=2))
    if resp.status_code != 200:
        sys.exit(1)


if __name__ == "__main__":
    main()
