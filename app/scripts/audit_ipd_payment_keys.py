# FILE: app/scripts/audit_ipd_payment_keys.py
"""
Report IPD bills whose payments are recorded under both the bill id and
the admission id. Exit status 1 when any are found.

    python -m app.scripts.audit_ipd_payment_keys [--json]
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from sqlalchemy.orm import Session

from app.services.billing_resolver import find_split_ipd_ledgers

logger = logging.getLogger(__name__)


def audit(db: Session) -> List[dict]:
    rows = find_split_ipd_ledgers(db)
    for r in rows:
        logger.warning(
            "split ledger: bill %s (%s) has %s payment(s) under bill id and "
            "%s under admission id %s", r["bill_id"], r["bill_number"],
            r["payments_under_bill_id"], r["payments_under_admission_id"],
            r["admission_id"])
    return rows


def main(argv: Optional[List[str]] = None,
         session_factory=None) -> int:
    parser = argparse.ArgumentParser(
        description="Find IPD bills with payments under both keys.")
    parser.add_argument("--json",
                        action="store_true",
                        help="Print findings as JSON.")
    args = parser.parse_args(argv)

    if session_factory is None:
        from app.db.session import SessionLocal as session_factory

    with session_factory() as db:
        rows = audit(db)

    if args.json:
        print(json.dumps(rows, default=str, indent=2))
    elif not rows:
        print("No split IPD ledgers found.")
    else:
        for r in rows:
            print(f"bill={r['bill_id']} admission={r['admission_id']} "
                  f"number={r['bill_number']} "
                  f"under_bill={r['payments_under_bill_id']} "
                  f"({r['paid_under_bill_id']}) "
                  f"under_admission={r['payments_under_admission_id']} "
                  f"({r['paid_under_admission_id']})")
    return 1 if rows else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
