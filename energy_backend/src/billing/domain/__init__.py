from energy_backend.src.billing.domain.bill import PAYABLE_STATUSES, Bill, BillStatus
from energy_backend.src.billing.domain.payment import Payment, PaymentStatus, can_correct_status
from energy_backend.src.billing.domain.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    'Bill',
    'BillStatus',
    'PAYABLE_STATUSES',
    'Payment',
    'PaymentStatus',
    'can_correct_status',
    'WebhookEvent',
    'WebhookEventStatus',
]
