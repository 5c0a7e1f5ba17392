# app/api/router.py
from fastapi import APIRouter

from app.api import routes_billing_payments

api_router = APIRouter()

# Billing
api_router.include_router(routes_billing_payments.router)
