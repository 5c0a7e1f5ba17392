# FILE: app/schemas/common.py
from __future__ import annotations

from typing import Optional
from pydantic import BaseModel


class ApiError(BaseModel):
    msg: str
    code: Optional[str] = None
