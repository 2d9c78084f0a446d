"""Submit parked automatic refunds and resubmit those with an unknown gateway outcome.

Usage:
    DATABASE_URL=... PAYMONGO_SECRET_KEY=... python scripts/retry_queued_refunds.py [limit]
"""

from __future__ import annotations

import json
import os
import sys


def main() -> int:
    try:
        limit = int(sys.argv[1]) if len(sys.argv) > 1 else 100
    except ValueError:
        limit = 0
    if limit < 1:
        print("ERROR: limit must be a positive integer", file=sys.stderr)
        return 2

    for name in ("DATABASE_URL", "PAYMONGO_SECRET_KEY"):
        if not os.environ.get(name):
            print(f"ERROR: {name} not set", file=sys.stderr)
            return 2

    from rainbowpay.domain.refunds import retry_queued_automatic_refunds
    from rainbowpay.observability.correlation import set_correlation_id

    set_correlation_id("script:retry_queued_refunds")
    sweep = retry_queued_automatic_refunds(limit=limit)
    print(json.dumps(sweep.as_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
