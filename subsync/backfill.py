"""Link existing users to billing provider customers found by email."""
from __future__ import annotations

import argparse
import logging
import os
from typing import Optional, Sequence

from dotenv import load_dotenv

from subsync.app.services.billing import get_billing_service

logger = logging.getLogger("billing.backfill")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--service-account",
        help="Path to a service account JSON file; overrides GOOGLE_APPLICATION_CREDENTIALS.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if args.service_account:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = args.service_account

    report = get_billing_service().backfill_customer_links()
    logger.info("Backfill complete updated=%s skipped=%s", report.updated, report.skipped)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
