# app/api/deps.py
from __future__ import annotations

from typing import Generator, Optional

from fastapi import Header, HTTPException

from sqlalchemy.orm import Session

from app.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(
        x_actor_id: Optional[str] = Header(None),
) -> Optional[int]:
    """
    User performing the operation, recorded as processed_by / updated_by.
    Authentication happens upstream; this only carries the id through.
    """
    if x_actor_id is None or not x_actor_id.strip():
        return None
    try:
        return int(x_actor_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Actor-Id")
