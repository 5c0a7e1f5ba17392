# FILE: app/services/billing_status.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.crud import crud_bills, crud_payments
from app.models.billing import BillPaymentStatus
from app.services.billing_due import compute_due
from app.services.billing_events import BillingEventSink, LoggingEventSink
from app.services.billing_math import money
from app.services.billing_resolver import ResolvedBill

# reasons that may legitimately take a bill out of 'paid'
REOPEN_REASONS = {"refund", "advance_release"}


def derive_payment_status(due_amount, advance_applied,
                          total_paid) -> BillPaymentStatus:
    if money(due_amount) <= 0:
        return BillPaymentStatus.PAID
    if money(total_paid) > 0 or money(advance_applied) > 0:
        return BillPaymentStatus.PARTIAL
    return BillPaymentStatus.PENDING


@dataclass(frozen=True)
class StatusUpdate:
    due_amount: Decimal
    payment_status: BillPaymentStatus
    total_paid: Decimal
    previous_status: Optional[str]
    previous_due: Optional[Decimal]

    @property
    def changed(self) -> bool:
        return (self.previous_status != self.payment_status.value
                or self.previous_due != self.due_amount)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "due_amount": self.due_amount,
            "payment_status": self.payment_status.value,
            "total_paid": self.total_paid,
        }


class BillingStatusUpdater:
    """
    Recomputes (paid_amount, due_amount, payment_status) for a bill from
    the payment ledger and writes them in one flush.

    Always uses the freshly computed due; the stored value is an output
    here, never an input. The advance field is read, never written.
    """

    def __init__(self, db: Session, events: BillingEventSink | None = None):
        self.db = db
        self.events = events or LoggingEventSink()

    def update(self,
               resolved: ResolvedBill,
               *,
               actor_id: Optional[int] = None,
               reason: str = "recompute") -> StatusUpdate:
        bill = resolved.bill
        paid = crud_payments.sum_non_refunded(self.db,
                                              resolved.bill_type.value,
                                              resolved.canonical_id)
        advance = resolved.advance_applied
        due = compute_due(resolved.total_amount, advance,
                          resolved.insurance_covered, paid)
        status = derive_payment_status(due, advance, paid)

        prev_status = bill.payment_status
        prev_due = money(bill.due_amount) if bill.due_amount is not None else None

        if (prev_status == BillPaymentStatus.PAID.value
                and status != BillPaymentStatus.PAID
                and reason not in REOPEN_REASONS):
            self.events.emit("illegal_status_transition",
                             logging.WARNING,
                             **resolved.ref(),
                             from_status=prev_status,
                             to_status=status.value,
                             reason=reason)

        crud_bills.update_bill(
            self.db,
            bill,
            paid_amount=paid,
            due_amount=due,
            payment_status=status.value,
            updated_by=actor_id,
        )

        upd = StatusUpdate(due_amount=due,
                           payment_status=status,
                           total_paid=paid,
                           previous_status=prev_status,
                           previous_due=prev_due)
        if upd.changed:
            self.events.emit("billing_status_updated",
                             **resolved.ref(),
                             from_status=prev_status,
                             to_status=status.value,
                             due_amount=str(due),
                             reason=reason)
        return upd
