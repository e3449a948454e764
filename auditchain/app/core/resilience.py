"""
Resilience Patterns Module.

Circuit Breaker guarding outbound notification channels so a dead
alert sink fails fast instead of piling up delivery attempts.
"""

import time
from typing import Callable, Any

from auditchain.app.core.logging import get_logger

logger = get_logger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF-OPEN"


class CircuitBreakerOpenException(Exception):
    """Raised when the circuit is open and calls are blocked."""
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.

    States:
    - CLOSED: Normal operation, calls function.
    - OPEN: Fails fast, raises CircuitBreakerOpenException.
    - HALF-OPEN: Allows one trial call to check if the channel recovered.
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CLOSED

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == OPEN:
            if time.monotonic() - self.last_failure_time > self.recovery_timeout:
                self.state = HALF_OPEN
                logger.info(f"[{self.name}] circuit HALF-OPEN, attempting recovery")
            else:
                raise CircuitBreakerOpenException(
                    f"[{self.name}] circuit is OPEN after {self.failure_count} failures"
                )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()
            logger.error(f"[{self.name}] call failed ({self.failure_count}/{self.failure_threshold}): {e}")

            if self.state == HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = OPEN
                logger.warning(f"[{self.name}] circuit OPEN, blocking calls for {self.recovery_timeout}s")
            raise

        if self.state == HALF_OPEN:
            logger.info(f"[{self.name}] circuit CLOSED, recovery successful")
        self.state = CLOSED
        self.failure_count = 0
        return result
