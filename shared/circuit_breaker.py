"""
Circuit breaker for calls to the identity provider.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import RemoteUnavailable
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Probing whether the provider recovered


class CircuitBreakerOpen(RemoteUnavailable):
    """Raised instead of calling a provider endpoint whose breaker is open."""

    def __init__(self, name: str):
        super().__init__(
            f"Circuit breaker '{name}' is open",
            details={"circuit_breaker": name},
        )


class CircuitBreaker:
    """Counts consecutive failures of one provider endpoint and sheds load when it is down."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.logger = get_logger(f"federation.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitBreakerState:
        if (self._state == CircuitBreakerState.OPEN
                and self._clock() - self._opened_at >= self.recovery_timeout):
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker half-open")
        return self._state

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` unless the breaker is open.

        Only ``RemoteUnavailable`` counts as a failure: a rejected token or a
        404 says nothing about provider health.
        """
        if self.state == CircuitBreakerState.OPEN:
            raise CircuitBreakerOpen(self.name)

        try:
            result = await func(*args, **kwargs)
        except RemoteUnavailable:
            self._record_failure()
            raise

        if self._state != CircuitBreakerState.CLOSED or self._failure_count:
            self.logger.info("Circuit breaker closed", previous_failures=self._failure_count)
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        return result

    def _record_failure(self) -> None:
        self._failure_count += 1
        if (self._state == CircuitBreakerState.HALF_OPEN
                or self._failure_count >= self.failure_threshold):
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            self.logger.warning(
                "Circuit breaker opened",
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
            )

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


class CircuitBreakerManager:
    """Process-wide registry of breakers, one per provider endpoint."""

    def __init__(self):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str, failure_threshold: int = 5,
                    recovery_timeout: float = 30.0,
                    clock: Optional[Callable[[], float]] = None) -> CircuitBreaker:
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                clock=clock or time.monotonic,
            )
        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_state() for name, cb in self.circuit_breakers.items()}

    def reset(self) -> None:
        self.circuit_breakers.clear()


# Global circuit breaker manager instance
circuit_breaker_manager = CircuitBreakerManager()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get a circuit breaker from the global manager."""
    return circuit_breaker_manager.get_breaker(name, **kwargs)
