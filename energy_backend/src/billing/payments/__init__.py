"""
Payments Module

Order creation, payment confirmation and reconciliation.

Components:
- OrderService: Razorpay order creation
- PaymentReconciler: checkout confirmation state machine
- ReconciliationService: periodic repair sweep
- SqlBillStore: bill/payment persistence

Usage:
    from energy_backend.src.billing.payments import PaymentReconciler

    outcome = await reconciler.confirm_payment(user_id, bill_id, order_id, payment_id, signature)
"""

from .interfaces import (
    PaymentGatewayInterface,
    ReconciliationManagerInterface,
)

from .store import (
    PaymentRecord,
    SqlBillStore,
)

from .service import (
    OrderHandle,
    OrderService,
)

from .reconciler import (
    PaymentAttemptState,
    PaymentReconciler,
    ReconciliationOutcome,
)

from .reconciliation import ReconciliationService

__all__ = [
    # Interfaces
    'PaymentGatewayInterface',
    'ReconciliationManagerInterface',
    # Store
    'PaymentRecord',
    'SqlBillStore',
    # Services
    'OrderHandle',
    'OrderService',
    'PaymentAttemptState',
    'PaymentReconciler',
    'ReconciliationOutcome',
    'ReconciliationService',
]
