# FILE: app/services/billing_due.py
"""
Due amount math. Pure functions, no session access.

    due = max(0, total - advance_applied - insurance_covered - paid)

A bill's stored due_amount is only trusted while the bill has no payment
history: before the first payment it may carry a manual adjustment, after
that the ledger is the source of truth.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from app.models.billing import PaymentType
from app.services.billing_math import ZERO, money


@dataclass(frozen=True)
class DueBreakdown:
    total_amount: Decimal
    advance_applied: Decimal
    insurance_covered: Decimal
    total_paid: Decimal
    computed_due: Decimal
    stored_due: Optional[Decimal]
    due_amount: Decimal
    used_stored_due: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_amount": self.total_amount,
            "advance_applied": self.advance_applied,
            "insurance_covered": self.insurance_covered,
            "total_paid": self.total_paid,
            "computed_due": self.computed_due,
            "stored_due": self.stored_due,
            "due_amount": self.due_amount,
            "used_stored_due": self.used_stored_due,
        }


def compute_due(total_amount, advance_applied, insurance_covered,
                total_paid) -> Decimal:
    due = (money(total_amount) - money(advance_applied) -
           money(insurance_covered) - money(total_paid))
    return max(ZERO, money(due))


def resolve_due(total_amount,
                advance_applied,
                insurance_covered,
                total_paid,
                stored_due=None) -> DueBreakdown:
    total = money(total_amount)
    advance = money(advance_applied)
    insurance = money(insurance_covered)
    paid = money(total_paid)

    computed = compute_due(total, advance, insurance, paid)
    stored = money(stored_due) if stored_due is not None else None

    used_stored = stored is not None and stored >= 0 and paid == 0
    due = stored if used_stored else computed

    # a stale stored value must never let payments overshoot the total
    due = min(due, max(ZERO, total - paid))

    return DueBreakdown(
        total_amount=total,
        advance_applied=advance,
        insurance_covered=insurance,
        total_paid=paid,
        computed_due=computed,
        stored_due=stored,
        due_amount=money(due),
        used_stored_due=used_stored,
    )


def classify_payment(due_amount, amount) -> str:
    """'full' when the payment clears the due, else 'partial'."""
    if money(due_amount) - money(amount) <= 0:
        return PaymentType.FULL.value
    return PaymentType.PARTIAL.value
