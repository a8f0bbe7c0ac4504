#!/usr/bin/env python3
"""Verify an App Store receipt file against verifyReceipt.

Reads the raw receipt bytes (as written on-device to the app's
``appStoreReceiptURL``), posts them to the sandbox or production host, and
prints the returned status:

  python scripts/verify_receipt.py receipt.bin
  python scripts/verify_receipt.py receipt.bin --production --password SECRET

Exit code is 0 when the receipt verifies, 1 when Apple rejects it, and 2
when no receipt could be read or the request failed.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from iapsync.constants import VerifyEndpoint, describe_status
from iapsync.receipt_store import ReceiptError, ReceiptStore
from iapsync.verification_client import VerificationClient, VerifyError


async def _verify(args: argparse.Namespace) -> int:
    try:
        receipt = ReceiptStore(args.receipt).current_receipt()
    except ReceiptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    endpoint = VerifyEndpoint.PRODUCTION if args.production else VerifyEndpoint.SANDBOX
    async with VerificationClient(
        endpoint=endpoint,
        shared_secret=args.password,
        exclude_old_transactions=args.exclude_old,
    ) as client:
        try:
            result = await client.verify(receipt)
        except VerifyError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

    print(f"endpoint:    {endpoint.url}")
    print(f"status:      {result.raw_status} ({describe_status(result.raw_status)})")
    print(f"environment: {result.environment or '-'}")
    print(f"verified:    {'yes' if result.verified else 'no'}")
    if result.is_sandbox_receipt:
        print("hint: sandbox receipt; retry without --production")
    elif result.is_production_receipt:
        print("hint: production receipt; retry with --production")
    return 0 if result.verified else 1


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("receipt", help="path to the raw receipt file")
    parser.add_argument(
        "--production", action="store_true",
        help="use buy.itunes.apple.com instead of the sandbox host",
    )
    parser.add_argument("--password", help="shared secret (auto-renewable subscriptions)")
    parser.add_argument(
        "--exclude-old", action="store_true",
        help="send exclude-old-transactions",
    )
    sys.exit(asyncio.run(_verify(parser.parse_args())))


if __name__ == "__main__":
    main()
