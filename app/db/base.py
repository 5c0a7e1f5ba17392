# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing tables (patients, admissions, bills, payments) inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from app.models import (  # noqa: F401,E402
    patient,
    ipd,
    billing,
)
