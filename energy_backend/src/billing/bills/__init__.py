from .service import BillDraft, BillService, default_bill_number

__all__ = [
    'BillDraft',
    'BillService',
    'default_bill_number',
]
