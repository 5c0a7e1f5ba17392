import itertools
import os
from datetime import datetime, timedelta
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import enable_sqlite_savepoints
from app.models.billing import IpdBilling, OpdBill
from app.models.ipd import IpdAdmission, IpdAdmissionCharge
from app.models.patient import Patient
from app.services.billing_events import MemoryEventSink
from app.services.billing_payment_service import PaymentProcessor


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)

    @event.listens_for(engine, "connect")
    def _fk_on(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def events():
    return MemoryEventSink()


@pytest.fixture()
def processor(db_session, events):
    return PaymentProcessor(db_session, events)


# ---------------------------------------------------------------------
# factories
# ---------------------------------------------------------------------
@pytest.fixture()
def make_patient(db_session):
    counter = itertools.count(1)

    def _make(**kwargs):
        n = next(counter)
        p = Patient(
            uhid=kwargs.pop("uhid", f"UH{n:05d}"),
            first_name=kwargs.pop("first_name", "Test"),
            last_name=kwargs.pop("last_name", f"Patient{n}"),
            **kwargs,
        )
        db_session.add(p)
        db_session.commit()
        return p

    return _make


@pytest.fixture()
def patient(make_patient):
    return make_patient()


@pytest.fixture()
def make_opd_bill(db_session, patient):

    def _make(total="1000.00", **kwargs):
        kwargs.setdefault("patient_id", patient.id)
        bill = OpdBill(
            consultation_fee=Decimal(total),
            total_amount=Decimal(total),
            **kwargs,
        )
        db_session.add(bill)
        db_session.commit()
        return bill

    return _make


@pytest.fixture()
def make_admission(db_session, patient):

    def _make(daily_rate="1000.00", stay_days=2, charges=(), **kwargs):
        kwargs.setdefault("patient_id", patient.id)
        kwargs.setdefault("admitted_at", datetime.utcnow() - timedelta(days=2))
        adm = IpdAdmission(
            room_daily_rate=Decimal(daily_rate),
            stay_days=stay_days,
            **kwargs,
        )
        for charge_type, amount in charges:
            adm.charges.append(
                IpdAdmissionCharge(charge_type=charge_type,
                                   amount=Decimal(amount)))
        db_session.add(adm)
        db_session.commit()
        return adm

    return _make


@pytest.fixture()
def make_ipd_bill(db_session, make_admission):

    def _make(total="1000.00", admission=None, **kwargs):
        if admission is None:
            admission = make_admission()
        bill = IpdBilling(
            admission_id=admission.id,
            patient_id=admission.patient_id,
            subtotal=Decimal(total),
            total_amount=Decimal(total),
            **kwargs,
        )
        db_session.add(bill)
        db_session.commit()
        return bill

    return _make
