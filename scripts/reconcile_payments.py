"""Report or repair drift between bookings.payment_status and the ledger.

Usage:
    DATABASE_URL=... python scripts/reconcile_payments.py [--booking-id N] [--apply]

Without --apply nothing is written (dry run). Exit code is 0 when the
database is consistent or every drift was repaired, 1 when drift remains
(dry run, conflicts or failed repairs), 2 on usage/configuration errors.
"""

from __future__ import annotations

import argparse
import json
import os
import sys


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--booking-id", type=int, default=None, help="Only this booking")
    parser.add_argument("--apply", action="store_true", help="Repair drift (default: dry run)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        print("ERROR: DATABASE_URL not set", file=sys.stderr)
        return 2

    # Import after env validation so a missing DB does not fail on import
    from rainbowpay.domain.errors import BookingNotFoundError
    from rainbowpay.domain.reconciliation import reconcile
    from rainbowpay.observability.correlation import set_correlation_id

    set_correlation_id("script:reconcile_payments")

    try:
        report = reconcile(args.booking_id, dry_run=not args.apply)
    except BookingNotFoundError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 2

    print(json.dumps(report.as_dict(), indent=2, default=str))

    if report.dry_run:
        return 1 if report.drift_count else 0
    return 1 if report.conflicts or report.failed_booking_ids else 0


if __name__ == "__main__":
    sys.exit(main())
