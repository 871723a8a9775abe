"""
Health Endpoint
"""

from typing import Dict

from fastapi import APIRouter, Depends

from energy_backend.src.billing.container import BillingServices
from energy_backend.utils.timezone import timezone
from .dependencies import get_billing_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: BillingServices = Depends(get_billing_services)) -> Dict:
    breaker = getattr(services.gateway, 'circuit_breaker', None)
    return {
        'status': 'ok',
        'timestamp': timezone.to_utc(timezone.now()).isoformat(),
        'razorpay_configured': services.gateway.is_configured,
        'razorpay_circuit': breaker.get_status()['state'] if breaker else None,
    }
