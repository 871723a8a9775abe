"""
Payment Interfaces

Protocol definitions for the payment gateway and reconciliation services.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class PaymentGatewayInterface(ABC):
    """Interface for the remote payment gateway."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials are present."""
        pass

    @abstractmethod
    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Create an order for `amount` minor units."""
        pass

    @abstractmethod
    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        """Fetch an order entity, including its amount and notes."""
        pass

    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """Fetch a payment entity."""
        pass


class ReconciliationManagerInterface(ABC):
    """Interface for payment reconciliation services."""

    @abstractmethod
    async def reconcile_unreflected_payments(self) -> Dict:
        """Apply recorded successful payments to bills that are still unpaid."""
        pass

    @abstractmethod
    async def retry_bill_update(self, payment_id: str) -> Dict:
        """Retry the bill update for one recorded payment."""
        pass

    @abstractmethod
    async def mark_overdue_bills(self) -> Dict:
        """Move unpaid bills past their due date to overdue."""
        pass

    @abstractmethod
    async def detect_duplicate_settlements(self) -> Dict:
        """Detect bills settled by more than one successful payment."""
        pass

    @abstractmethod
    async def verify_bill_totals(self) -> Dict:
        """Report bills whose total disagrees with their components."""
        pass
