# FILE: app/services/billing_advance.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.crud import crud_advance
from app.services.billing_errors import InvalidAmount
from app.services.billing_events import BillingEventSink, LoggingEventSink
from app.services.billing_math import ZERO, money


class AdvanceBalanceManager:
    """
    The only writer of patient_advance_balance.

    add            deposit received          balance +, total_paid +
    use            applied to a bill         balance -, total_used +   (fails if short)
    reverse        undo an earlier use       balance +, total_used -
    refund_advance deposit handed back       balance -, total_paid -   (fails if short)

    Debits are a single conditional UPDATE (current_balance >= amount), so
    two concurrent debits for one patient cannot both succeed. Nothing here
    commits; the caller owns the transaction.
    """

    def __init__(self, db: Session, events: BillingEventSink | None = None):
        self.db = db
        self.events = events or LoggingEventSink()

    @staticmethod
    def _amount(amount) -> Decimal:
        amt = money(amount)
        if amt <= 0:
            raise InvalidAmount("Amount must be > 0")
        return amt

    # ---------- reads ----------
    def get_balance(self, patient_id: int) -> Decimal:
        row = crud_advance.get_balance_row(self.db, patient_id)
        if not row:
            return ZERO
        return money(row.current_balance)

    def summary(self, patient_id: int) -> Dict[str, Any]:
        row = crud_advance.get_balance_row(self.db, patient_id)
        if not row:
            return {
                "patient_id": int(patient_id),
                "total_advance_paid": ZERO,
                "total_advance_used": ZERO,
                "current_balance": ZERO,
            }
        return {
            "patient_id": int(patient_id),
            "total_advance_paid": money(row.total_advance_paid),
            "total_advance_used": money(row.total_advance_used),
            "current_balance": money(row.current_balance),
        }

    # ---------- mutations ----------
    def add(self, patient_id: int, amount) -> Decimal:
        amt = self._amount(amount)
        crud_advance.get_or_create_balance_row(self.db, patient_id)
        crud_advance.increment(self.db, patient_id, balance=amt, paid=amt)
        balance = self.get_balance(patient_id)
        self.events.emit("advance_added",
                         patient_id=patient_id,
                         amount=str(amt),
                         balance=str(balance))
        return balance

    def use(self, patient_id: int, amount) -> bool:
        amt = self._amount(amount)
        ok = crud_advance.decrement_if_available(self.db,
                                                 patient_id,
                                                 amount=amt,
                                                 used=amt)
        if not ok:
            self.events.emit("advance_use_rejected",
                             logging.WARNING,
                             patient_id=patient_id,
                             amount=str(amt),
                             balance=str(self.get_balance(patient_id)))
            return False
        self.events.emit("advance_used", patient_id=patient_id, amount=str(amt))
        return True

    def reverse(self, patient_id: int, amount) -> Decimal:
        amt = self._amount(amount)
        crud_advance.get_or_create_balance_row(self.db, patient_id)
        crud_advance.increment(self.db,
                               patient_id,
                               balance=amt,
                               used=-amt)
        balance = self.get_balance(patient_id)
        self.events.emit("advance_use_reversed",
                         patient_id=patient_id,
                         amount=str(amt),
                         balance=str(balance))
        return balance

    def refund_advance(self, patient_id: int, amount) -> bool:
        amt = self._amount(amount)
        ok = crud_advance.decrement_if_available(self.db,
                                                 patient_id,
                                                 amount=amt,
                                                 paid=-amt)
        if not ok:
            self.events.emit("advance_refund_rejected",
                             logging.WARNING,
                             patient_id=patient_id,
                             amount=str(amt),
                             balance=str(self.get_balance(patient_id)))
            return False
        self.events.emit("advance_refunded",
                         patient_id=patient_id,
                         amount=str(amt))
        return True
