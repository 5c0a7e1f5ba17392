from __future__ import annotations
from datetime import datetime
from sqlalchemy import (Column, Integer, String, DateTime, ForeignKey, Numeric,
                        Index)
from sqlalchemy.orm import relationship
from app.db.base import Base

# ---------------------------------------------------------------------
# IPD admissions (source of synthesized IPD bills)
# ---------------------------------------------------------------------


class IpdAdmission(Base):
    __tablename__ = "ipd_admissions"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
    }

    id = Column(Integer, primary_key=True)
    admission_code = Column(String(20), unique=True, index=True, nullable=True)
    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)

    admitted_at = Column(DateTime, default=datetime.utcnow)
    discharged_at = Column(DateTime, nullable=True)
    # manual override of the billed stay length
    stay_days = Column(Integer, nullable=True)

    room_type = Column(String(30), default="General")
    room_daily_rate = Column(Numeric(12, 2), default=0)

    # collected at the admission desk, outside the payment ledger
    advance_payment = Column(Numeric(12, 2), default=0)
    insurance_coverage_amount = Column(Numeric(12, 2), default=0)

    status = Column(String(20), default="admitted"
                    )  # admitted/transferred/discharged/lama/dama

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    charges = relationship(
        "IpdAdmissionCharge",
        back_populates="admission",
        cascade="all, delete-orphan",
        order_by="IpdAdmissionCharge.id",
    )

    @property
    def display_code(self) -> str:
        return self.admission_code or f"IP-{self.id:06d}"


class IpdAdmissionCharge(Base):
    """
    Posted charges for an admission (lab orders, medication, imaging,
    procedures / surgery, misc). Room rent is derived from the admission.
    """
    __tablename__ = "ipd_admission_charges"
    __table_args__ = (
        Index("ix_ipd_adm_charges_adm_type", "admission_id", "charge_type"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    admission_id = Column(Integer,
                          ForeignKey("ipd_admissions.id", ondelete="CASCADE"),
                          nullable=False)
    charge_type = Column(
        String(20),
        nullable=False)  # lab | medication | imaging | procedure | other
    description = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    charged_at = Column(DateTime, default=datetime.utcnow)

    admission = relationship("IpdAdmission", back_populates="charges")
