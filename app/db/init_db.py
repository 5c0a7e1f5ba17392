# app/db/init_db.py
from __future__ import annotations

import argparse
from typing import List, Optional, Set

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.base import Base
from app.models.billing import (
    BillingNumberSeries,
    NumberDocType,
    NumberResetPeriod,
)


def print_tables(bind: Engine) -> Set[str]:
    names = sorted(inspect(bind).get_table_names())
    print("Existing tables:", names)
    return set(names)


def seed_number_series(db: Session) -> List[str]:
    """
    Insert ONLY missing numbering series; safe to run multiple times.
    Returns the prefixes that were created.
    """
    wanted = [
        (NumberDocType.PAYMENT, settings.BILLING_PAYMENT_PREFIX),
        (NumberDocType.RECEIPT, settings.BILLING_RECEIPT_PREFIX),
        (NumberDocType.REFUND, settings.BILLING_REFUND_PREFIX),
        (NumberDocType.IPD_BILL, settings.BILLING_IPD_BILL_PREFIX),
    ]
    created = []
    for doc_type, prefix in wanted:
        exists = (db.query(BillingNumberSeries.id).filter(
            BillingNumberSeries.doc_type == doc_type.value,
            BillingNumberSeries.prefix == prefix,
        ).first())
        if exists:
            continue
        db.add(
            BillingNumberSeries(
                doc_type=doc_type.value,
                prefix=prefix,
                reset_period=NumberResetPeriod.YEAR.value,
                padding=settings.BILLING_NUMBER_PADDING,
                next_number=1,
                is_active=True,
            ))
        created.append(prefix)
    db.flush()
    return created


def run(fresh: bool = False, bind: Optional[Engine] = None) -> None:
    if bind is None:
        from app.db.session import engine as bind

    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")
        Base.metadata.drop_all(bind=bind)

    print("Creating all missing tables …")
    Base.metadata.create_all(bind=bind)
    print_tables(bind)

    try:
        with Session(bind) as db:
            created = seed_number_series(db)
            db.commit()
            print("Number series seeded:", created or "none missing")
    except SQLAlchemyError as e:
        print("Seeding failed:", e)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, seed number series).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
