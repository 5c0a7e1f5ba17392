# FILE: app/services/billing_resolver.py
"""
Maps (bill_type, bill_id) to one concrete bill row and one canonical
ledger key.

IPD data is dual-keyed: older payments were written with the admission id
as bill_id because the ipd_billing row did not exist yet. Resolution order
for ipd is own id -> admission id -> synthesize from the admission. When a
bill's admission key is the only one with payment history (whichever id
the bill was reached by), that key stays canonical so new payments land
next to the old ones. Ledgers found under both keys are reported, never
merged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import crud_bills, crud_payments
from app.crud.crud_bills import ADVANCE_FIELD, Bill
from app.models.billing import BillType
from app.services.billing_errors import BillNotFound
from app.services.billing_events import BillingEventSink, LoggingEventSink
from app.services.billing_math import money, money_or_none
from app.services.ipd_billing import build_ipd_bill_values

UNSUPPORTED_BILL_TYPES = {
    BillType.EMERGENCY,
    BillType.LAB,
    BillType.RADIOLOGY,
}


@dataclass
class ResolvedBill:
    bill_type: BillType
    bill: Bill
    requested_id: int
    canonical_id: int
    via_legacy_id: bool = False
    synthesized: bool = False
    split_ledger: bool = False

    @property
    def patient_id(self) -> int:
        return int(self.bill.patient_id)

    @property
    def total_amount(self) -> Decimal:
        return money(self.bill.total_amount)

    @property
    def advance_field(self) -> str:
        return ADVANCE_FIELD[self.bill_type]

    @property
    def advance_applied(self) -> Decimal:
        return money(getattr(self.bill, self.advance_field))

    @property
    def insurance_covered(self) -> Decimal:
        return money(self.bill.insurance_covered)

    @property
    def stored_due(self) -> Optional[Decimal]:
        return money_or_none(self.bill.due_amount)

    def ref(self) -> Dict[str, Any]:
        return {
            "bill_type": self.bill_type.value,
            "bill_id": int(self.bill.id),
            "requested_id": self.requested_id,
            "canonical_id": self.canonical_id,
            "bill_number": self.bill.bill_number,
        }


class BillResolver:

    def __init__(self, db: Session, events: BillingEventSink | None = None):
        self.db = db
        self.events = events or LoggingEventSink()

    def resolve(
        self,
        bill_type: BillType,
        bill_id,
        *,
        actor_id: Optional[int] = None,
        lock: bool = True,
        synthesize: bool = True,
    ) -> ResolvedBill:
        if bill_id in (None, "", 0):
            raise BillNotFound(f"Bill ID is required for {bill_type.value}")
        bill_id = int(bill_id)

        if bill_type is BillType.IPD:
            return self._resolve_ipd(bill_id,
                                     actor_id=actor_id,
                                     lock=lock,
                                     synthesize=synthesize)
        elif bill_type is BillType.OPD:
            return self._resolve_direct(bill_type, bill_id, lock=lock)
        elif bill_type in UNSUPPORTED_BILL_TYPES:
            raise BillNotFound(
                f"{bill_type.value} bills are not supported for payments "
                f"(ID: {bill_id})")
        elif bill_type is BillType.ADVANCE:
            raise BillNotFound("Advance payments are not tied to a bill")
        raise AssertionError(f"unhandled bill type: {bill_type!r}")

    # ---------- opd ----------
    def _resolve_direct(self, bill_type: BillType, bill_id: int, *,
                        lock: bool) -> ResolvedBill:
        bill = crud_bills.get_bill(self.db, bill_type, bill_id, lock=lock)
        if not bill:
            raise BillNotFound(
                f"Bill not found for {bill_type.value} ID: {bill_id}")
        return ResolvedBill(bill_type=bill_type,
                            bill=bill,
                            requested_id=bill_id,
                            canonical_id=int(bill.id))

    # ---------- ipd ----------
    def _resolve_ipd(self, bill_id: int, *, actor_id: Optional[int],
                     lock: bool, synthesize: bool) -> ResolvedBill:
        bill = crud_bills.get_bill(self.db, BillType.IPD, bill_id, lock=lock)
        if bill:
            return self._ipd_keys(bill, requested_id=bill_id)

        bill = crud_bills.get_ipd_by_admission(self.db, bill_id, lock=lock)
        if bill:
            return self._ipd_keys(bill, requested_id=bill_id, via_legacy=True)

        if not (synthesize and settings.BILLING_IPD_AUTOCREATE):
            raise BillNotFound(f"Bill not found for ipd ID: {bill_id}")

        adm = crud_bills.get_admission(self.db, bill_id)
        if not adm:
            raise BillNotFound(f"Bill not found for ipd ID: {bill_id}")

        bill = crud_bills.create_ipd_billing(
            self.db,
            admission=adm,
            values=build_ipd_bill_values(self.db, adm),
            actor_id=actor_id,
        )
        self.events.emit("ipd_bill_synthesized",
                         admission_id=adm.id,
                         bill_id=bill.id,
                         bill_number=bill.bill_number,
                         total_amount=str(bill.total_amount),
                         actor_id=actor_id)
        return self._ipd_keys(bill,
                              requested_id=bill_id,
                              via_legacy=True,
                              synthesized=True)

    def _ipd_keys(self,
                  bill,
                  *,
                  requested_id: int,
                  via_legacy: bool = False,
                  synthesized: bool = False) -> ResolvedBill:
        """
        Pick the ledger key. Payments taken before the bill existed sit
        under the admission id; while only that key has history it stays
        canonical. The admission id is never used when another bill owns
        it as its own id.
        """
        own_id = int(bill.id)
        adm_id = int(bill.admission_id)
        canonical = own_id
        split = False

        if adm_id != own_id and not crud_bills.get_bill(
                self.db, BillType.IPD, adm_id):
            own_n = crud_payments.count_by_bill(self.db, BillType.IPD.value,
                                                own_id)
            adm_n = crud_payments.count_by_bill(self.db, BillType.IPD.value,
                                                adm_id)
            if own_n == 0 and adm_n > 0:
                canonical = adm_id
            split = own_n > 0 and adm_n > 0
            if split:
                self.events.emit(
                    "ipd_split_ledger",
                    logging.WARNING,
                    bill_id=own_id,
                    admission_id=adm_id,
                    payments_under_bill_id=own_n,
                    payments_under_admission_id=adm_n,
                )

        return ResolvedBill(bill_type=BillType.IPD,
                            bill=bill,
                            requested_id=requested_id,
                            canonical_id=canonical,
                            via_legacy_id=via_legacy,
                            synthesized=synthesized,
                            split_ledger=split)


def find_split_ipd_ledgers(db: Session) -> List[Dict[str, Any]]:
    """
    IPD bills whose payments are spread over both keys (bill id and
    admission id). These need a manual back-fill before the ledger under
    either key can be trusted on its own.
    """
    out: List[Dict[str, Any]] = []
    for bill in crud_bills.list_ipd_bills(db):
        adm_id = int(bill.admission_id)
        if int(bill.id) == adm_id:
            continue
        # that key belongs to another bill's own ledger
        if crud_bills.get_bill(db, BillType.IPD, adm_id):
            continue
        own_n = crud_payments.count_by_bill(db, BillType.IPD.value, bill.id)
        adm_n = crud_payments.count_by_bill(db, BillType.IPD.value, adm_id)
        if own_n and adm_n:
            out.append({
                "bill_id": int(bill.id),
                "admission_id": adm_id,
                "bill_number": bill.bill_number,
                "payments_under_bill_id": own_n,
                "payments_under_admission_id": adm_n,
                "paid_under_bill_id": crud_payments.sum_non_refunded(
                    db, BillType.IPD.value, bill.id),
                "paid_under_admission_id": crud_payments.sum_non_refunded(
                    db, BillType.IPD.value, adm_id),
            })
    return out
