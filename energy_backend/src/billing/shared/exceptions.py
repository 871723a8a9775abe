"""
Billing Exceptions

Custom exception classes for billing-related errors.
Each carries the HTTP status the API layer answers with, so routes only
need to let them propagate.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "BILLING_ERROR",
        details: dict = None,
        status_code: int = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class InvalidInputError(BillingError):
    """
    Raised when a request carries a malformed or missing value.

    Attributes:
        field: Name of the offending field, if known
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Invalid input",
        field: str = None,
        code: str = "INVALID_INPUT"
    ):
        super().__init__(
            message=message,
            code=code,
            details={'field': field} if field else {}
        )
        self.field = field


class InvalidAmountError(InvalidInputError):
    """Raised for non-positive or non-numeric payment amounts."""

    def __init__(self, message: str = "Invalid amount", amount=None):
        super().__init__(message=message, field='amount', code="INVALID_AMOUNT")
        if amount is not None:
            self.details['amount'] = str(amount)
        self.amount = amount


class GatewayError(BillingError):
    """
    Raised when the payment gateway rejects a call or cannot be reached.

    Examples:
        - Order creation refused upstream
        - Timeout talking to the gateway
        - Payment id unknown to the gateway
    """

    status_code = 502

    def __init__(
        self,
        message: str = "Payment gateway error",
        code: str = "GATEWAY_ERROR",
        upstream_status: int = None,
        upstream_code: str = None
    ):
        details = {}
        if upstream_status is not None:
            details['upstream_status'] = upstream_status
        if upstream_code:
            details['upstream_code'] = upstream_code

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.upstream_status = upstream_status
        self.upstream_code = upstream_code

    @property
    def is_server_side(self) -> bool:
        """Timeouts and 5xx count against the gateway; 4xx are our request's fault."""
        return self.upstream_status is None or self.upstream_status >= 500


class GatewayNotConfiguredError(GatewayError):
    """Raised when gateway credentials are missing."""

    status_code = 500

    def __init__(self, message: str = "Razorpay is not configured"):
        super().__init__(message=message, code="GATEWAY_NOT_CONFIGURED")


class CircuitBreakerOpenError(GatewayError):
    """Raised when the circuit breaker is open and preventing calls."""

    status_code = 503

    def __init__(
        self,
        message: str = "Circuit breaker is open. Service temporarily unavailable.",
        service_name: str = "razorpay",
        reset_time: float = None
    ):
        super().__init__(message=message, code="CIRCUIT_BREAKER_OPEN")
        self.details.update({
            'service_name': service_name,
            'reset_time': reset_time
        })
        self.service_name = service_name
        self.reset_time = reset_time


class VerificationFailedError(BillingError):
    """
    Raised when a payment confirmation or webhook signature does not verify.

    Never retried and never treated as success.
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Payment verification failed",
        order_id: str = None,
        payment_id: str = None
    ):
        details = {}
        if order_id:
            details['order_id'] = order_id
        if payment_id:
            details['payment_id'] = payment_id
        super().__init__(message=message, code="VERIFICATION_FAILED", details=details)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['verified'] = False
        return data


class StoreError(BillingError):
    """Raised when the bill store cannot complete a read or write."""

    status_code = 503

    def __init__(self, message: str = "Bill store unavailable", operation: str = None):
        super().__init__(
            message=message,
            code="STORE_ERROR",
            details={'operation': operation} if operation else {}
        )
        self.operation = operation


class BillNotFoundError(BillingError):
    """Raised when a bill doesn't exist or belongs to another user."""

    status_code = 404

    def __init__(self, bill_id: str = None, bill_number: str = None):
        ref = bill_id or bill_number
        super().__init__(
            message=f"Bill '{ref}' not found",
            code="BILL_NOT_FOUND",
            details={'bill_id': bill_id} if bill_id else {'bill_number': bill_number}
        )
        self.bill_id = bill_id
        self.bill_number = bill_number


class PaymentNotFoundError(BillingError):
    """Raised when a payment record doesn't exist."""

    status_code = 404

    def __init__(self, payment_id: str):
        super().__init__(
            message=f"Payment '{payment_id}' not found",
            code="PAYMENT_NOT_FOUND",
            details={'payment_id': payment_id}
        )
        self.payment_id = payment_id


class DuplicateBillError(BillingError):
    """Raised when a bill number or (user, service, month) already exists."""

    status_code = 409

    def __init__(self, bill_number: str):
        super().__init__(
            message=f"Bill '{bill_number}' already exists",
            code="DUPLICATE_BILL",
            details={'bill_number': bill_number}
        )
        self.bill_number = bill_number


class BillAlreadyPaidError(BillingError):
    """Raised when an order is requested for a bill that is already settled."""

    status_code = 409

    def __init__(self, bill_id: str):
        super().__init__(
            message="Bill is already paid",
            code="BILL_ALREADY_PAID",
            details={'bill_id': bill_id}
        )
        self.bill_id = bill_id


class WebhookError(BillingError):
    """
    Raised when there's an issue processing a webhook.

    Examples:
        - Webhook secret not configured
        - Missing signature header
        - Unparsable payload
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Webhook processing error",
        code: str = "WEBHOOK_ERROR",
        event_id: str = None,
        event_type: str = None,
        status_code: int = None
    ):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type

        super().__init__(
            message=message,
            code=code,
            details=details,
            status_code=status_code
        )
        self.event_id = event_id
        self.event_type = event_type


class ReconciliationError(BillingError):
    """Raised when reconciling a single payment fails."""

    def __init__(
        self,
        message: str = "Reconciliation error",
        payment_id: str = None
    ):
        super().__init__(
            message=message,
            code="RECONCILIATION_ERROR",
            details={'payment_id': payment_id} if payment_id else {}
        )
        self.payment_id = payment_id
