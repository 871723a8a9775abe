"""
Razorpay Circuit Breaker

Implements the circuit breaker pattern for Razorpay API calls so a gateway
outage fails fast instead of tying up request workers on timeouts.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Razorpay is failing, block requests to prevent overload
- HALF_OPEN: Testing if Razorpay has recovered

State is kept per process. Only server-side failures (timeouts, transport
errors, 5xx) count; a 4xx means our request was wrong, not that the gateway
is down.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from energy_backend.src.billing.shared.exceptions import CircuitBreakerOpenError, GatewayError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class RazorpayCircuitBreaker:
    """
    Circuit breaker for Razorpay API calls.

    Usage:
        breaker = RazorpayCircuitBreaker()
        order = await breaker.safe_call(client.post, '/orders', json=payload)
    """

    def __init__(
        self,
        circuit_name: str = "razorpay_api",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Name used in logs and status output
            failure_threshold: Number of consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before testing recovery
            clock: Monotonic time source (injectable for tests)
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    async def safe_call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a Razorpay API call with circuit breaker protection.

        The lock only guards the state check; the call itself runs unlocked so
        concurrent requests are not serialised behind a slow gateway.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            GatewayError: Whatever the wrapped call raised
        """
        async with self._lock:
            if not self._should_allow_request():
                reset_in = self._seconds_until_retry()
                logger.warning(
                    f"[CIRCUIT BREAKER] Request blocked - circuit {self.circuit_name} is {self._state.value}"
                )
                raise CircuitBreakerOpenError(reset_time=reset_in)

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.is_server_side:
                await self._record_failure(e.message)
            raise
        except Exception as e:
            logger.error(f"[CIRCUIT BREAKER] Unexpected error in {getattr(func, '__name__', func)}: {e}")
            raise

        await self._record_success()
        return result

    def get_status(self) -> Dict:
        """
        Get current circuit breaker status.

        Returns:
            Dictionary with circuit state and metrics
        """
        return {
            'circuit_name': self.circuit_name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'last_error': self._last_error,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
            'retry_in_seconds': self._seconds_until_retry(),
        }

    def _should_allow_request(self) -> bool:
        """Determine if a request should be allowed based on circuit state."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._seconds_until_retry() <= 0:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} transitioned to HALF_OPEN")
                return True
            return False
        # HALF_OPEN lets trial calls through until one of them settles the state
        return True

    def _seconds_until_retry(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    async def _record_success(self):
        """Record a successful API call - reset circuit to closed."""
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered, circuit CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._last_error = None

    async def _record_failure(self, error_message: str):
        """Record a failed API call - may open the circuit."""
        async with self._lock:
            self._failure_count += 1
            self._last_error = error_message

            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.error(
                    f"[CIRCUIT BREAKER] {self.circuit_name} OPENED after {self._failure_count} failures: "
                    f"{error_message}"
                )
            else:
                logger.warning(
                    f"[CIRCUIT BREAKER] {self.circuit_name} failure "
                    f"{self._failure_count}/{self.failure_threshold}: {error_message}"
                )

    async def reset(self):
        """Force the circuit closed (admin/CLI use)."""
        await self._record_success()
