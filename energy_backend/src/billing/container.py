"""
Billing service wiring.

Everything the HTTP layer and CLI need is built once here and passed
along explicitly; tests build their own with a fake gateway and a
throwaway database.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from energy_backend.core.conf import Settings
from energy_backend.src.billing.bills import BillService
from energy_backend.src.billing.external.razorpay import (
    RazorpayCircuitBreaker,
    RazorpayClient,
    WebhookService,
)
from energy_backend.src.billing.payments import (
    OrderService,
    PaymentGatewayInterface,
    PaymentReconciler,
    ReconciliationService,
    SqlBillStore,
)


@dataclass
class BillingServices:
    settings: Settings
    gateway: PaymentGatewayInterface
    store: SqlBillStore
    orders: OrderService
    reconciler: PaymentReconciler
    webhooks: WebhookService
    reconciliation: ReconciliationService
    bills: BillService


def build_billing_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Optional[PaymentGatewayInterface] = None,
) -> BillingServices:
    if gateway is None:
        gateway = RazorpayClient(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            base_url=settings.RAZORPAY_API_URL,
            timeout=settings.RAZORPAY_TIMEOUT_SECONDS,
            circuit_breaker=RazorpayCircuitBreaker(
                failure_threshold=settings.RAZORPAY_CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=settings.RAZORPAY_CIRCUIT_RECOVERY_SECONDS,
            ),
        )
    store = SqlBillStore(session_factory)
    return BillingServices(
        settings=settings,
        gateway=gateway,
        store=store,
        orders=OrderService(gateway, default_currency=settings.BILLING_DEFAULT_CURRENCY),
        reconciler=PaymentReconciler(
            store,
            gateway,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            retry_attempts=settings.BILLING_STORE_RETRY_ATTEMPTS,
            retry_wait=settings.BILLING_STORE_RETRY_WAIT_SECONDS,
        ),
        webhooks=WebhookService(store, webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET),
        reconciliation=ReconciliationService(
            store,
            duplicate_lookback_days=settings.BILLING_DUPLICATE_LOOKBACK_DAYS,
        ),
        bills=BillService(store),
    )
