"""
Billing Endpoints Module

API routes for billing operations.

Routers:
- health: Liveness and gateway configuration
- razorpay: Key, orders, signature verification, webhook
- bills: Bill listing/import and the bill payment flow
- payments: Payment history and totals

Usage:
    from energy_backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)
"""

from fastapi import APIRouter

from .health import router as health_router
from .razorpay import router as razorpay_router
from .bills import router as bills_router
from .payments import router as payments_router
from .dependencies import get_billing_services, get_current_user_id

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(health_router)
billing_router.include_router(razorpay_router)
billing_router.include_router(bills_router)
billing_router.include_router(payments_router)

__all__ = [
    'billing_router',
    'health_router',
    'razorpay_router',
    'bills_router',
    'payments_router',
    'get_billing_services',
    'get_current_user_id',
]
