"""
Billing Module

Bill payments for the energy backend, integrated with Razorpay.

Submodules:
- shared: Configuration and exceptions
- domain: Persisted entities (Bill, Payment, WebhookEvent)
- external: Payment provider integration (Razorpay)
- payments: Orders, confirmation state machine, store, reconciliation sweep
- bills: Bill import and lookup
- endpoints: API routes

Usage:
    from energy_backend.src.billing.container import build_billing_services

    services = build_billing_services(settings, async_db_session)
    outcome = await services.reconciler.confirm_payment(...)
"""
