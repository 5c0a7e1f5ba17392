# FILE: app/models/billing.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    Date,
    DateTime,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.base import Base

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


# ---------------------------------------------------------------------
# Enums (stored as their string values)
# ---------------------------------------------------------------------
class BillType(str, Enum):
    IPD = "ipd"
    OPD = "opd"
    EMERGENCY = "emergency"
    LAB = "lab"
    RADIOLOGY = "radiology"
    ADVANCE = "advance"


class PaymentType(str, Enum):
    ADVANCE = "advance"
    PARTIAL = "partial"
    FULL = "full"
    REFUND = "refund"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"


class PaymentRecordStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


class BillPaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class NumberDocType(str, Enum):
    PAYMENT = "payment"
    RECEIPT = "receipt"
    REFUND = "refund"
    IPD_BILL = "ipd_bill"


class NumberResetPeriod(str, Enum):
    NONE = "none"
    YEAR = "year"
    MONTH = "month"


# ---------------------------------------------------------------------
# Bills
# ---------------------------------------------------------------------
class IpdBilling(Base):
    """
    Inpatient bill, one per admission.

    Legacy rows may be addressed either by this id or by admission_id;
    payments recorded before the bill existed carry the admission id.
    advance_paid is money taken at/before admission plus wallet advances
    applied to this bill; it is never rewritten by status recompute.
    """
    __tablename__ = "ipd_billing"
    __table_args__ = (
        Index("ix_ipd_billing_admission", "admission_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_number = Column(String(32), unique=True, index=True, nullable=True)

    admission_id = Column(Integer,
                          ForeignKey("ipd_admissions.id"),
                          nullable=False)
    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)
    billing_date = Column(Date, default=lambda: datetime.utcnow().date())

    # charge heads
    room_charges = Column(Numeric(12, 2), default=0)
    lab_charges = Column(Numeric(12, 2), default=0)
    medication_charges = Column(Numeric(12, 2), default=0)
    imaging_charges = Column(Numeric(12, 2), default=0)
    procedure_charges = Column(Numeric(12, 2), default=0)
    other_charges = Column(Numeric(12, 2), default=0)

    subtotal = Column(Numeric(12, 2), default=0)
    discount = Column(Numeric(12, 2), default=0)
    tax = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)

    advance_paid = Column(Numeric(12, 2), default=0)
    # portion of advance_paid that came from the patient wallet
    wallet_applied = Column(Numeric(12, 2), default=0)
    insurance_covered = Column(Numeric(12, 2), default=0)

    # cached from the payment ledger
    paid_amount = Column(Numeric(12, 2), default=0)
    # NULL until first computed; may hold a manual adjustment before any payment
    due_amount = Column(Numeric(12, 2), nullable=True)
    payment_status = Column(String(16), default=BillPaymentStatus.PENDING.value)

    version = Column(Integer, nullable=False)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    admission = relationship("IpdAdmission")

    __mapper_args__ = {"version_id_col": version}


class OpdBill(Base):
    __tablename__ = "opd_bills"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    bill_number = Column(String(32), unique=True, index=True, nullable=True)
    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)
    bill_date = Column(Date, default=lambda: datetime.utcnow().date())

    consultation_fee = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    advance_applied = Column(Numeric(12, 2), default=0)
    wallet_applied = Column(Numeric(12, 2), default=0)
    insurance_covered = Column(Numeric(12, 2), default=0)

    paid_amount = Column(Numeric(12, 2), default=0)
    due_amount = Column(Numeric(12, 2), nullable=True)
    payment_status = Column(String(16), default=BillPaymentStatus.PENDING.value)

    version = Column(Integer, nullable=False)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}


# ---------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------
class PatientPayment(Base):
    """
    One row per accepted payment or refund.

    Rows are never deleted. A refund adds a payment_type='refund' row pointing
    at the original (refund_of_id) and flips the original to 'refunded',
    recording how much of it was returned in refunded_amount.
    """
    __tablename__ = "patient_payments"
    __table_args__ = (
        Index("ix_patient_payments_bill", "bill_type", "bill_id"),
        Index("ix_patient_payments_patient_date", "patient_id",
              "payment_date"),
        CheckConstraint("amount > 0", name="ck_patient_payments_amount_pos"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_number = Column(String(32), unique=True, index=True, nullable=False)
    receipt_number = Column(String(32), unique=True, nullable=True)

    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)

    bill_type = Column(String(20), nullable=False)  # ipd/opd/.../advance
    bill_id = Column(Integer, nullable=True)  # NULL for wallet advances

    payment_type = Column(String(16), nullable=False)
    payment_method = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    transaction_id = Column(String(100), nullable=True)
    bank_name = Column(String(120), nullable=True)
    cheque_number = Column(String(50), nullable=True)
    cheque_date = Column(Date, nullable=True)

    payment_status = Column(String(16),
                            nullable=False,
                            default=PaymentRecordStatus.COMPLETED.value)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refund_of_id = Column(Integer,
                          ForeignKey("patient_payments.id"),
                          nullable=True,
                          index=True)
    refunded_at = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)
    payment_date = Column(DateTime, default=datetime.utcnow, nullable=False)

    processed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    refund_of = relationship("PatientPayment", remote_side=[id])


class PatientAdvanceBalance(Base):
    """
    Patient wallet. Mutated only through AdvanceBalanceManager.
    """
    __tablename__ = "patient_advance_balance"
    __table_args__ = (
        UniqueConstraint("patient_id", name="uq_advance_balance_patient"),
        CheckConstraint("current_balance >= 0",
                        name="ck_advance_balance_non_negative"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)

    total_advance_paid = Column(Numeric(12, 2), nullable=False, default=0)
    total_advance_used = Column(Numeric(12, 2), nullable=False, default=0)
    current_balance = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)


class BillingNumberSeries(Base):
    __tablename__ = "billing_number_series"
    __table_args__ = (
        UniqueConstraint("doc_type", "prefix", name="uq_number_series_prefix"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True)
    doc_type = Column(String(20), nullable=False)
    prefix = Column(String(32), nullable=False)
    reset_period = Column(String(10),
                          nullable=False,
                          default=NumberResetPeriod.YEAR.value)
    padding = Column(Integer, nullable=False, default=5)
    next_number = Column(Integer, nullable=False, default=1)
    last_period_key = Column(String(10), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
