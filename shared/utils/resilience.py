"""
shared/utils/resilience.py
Circuit breakers for downstream services (Stripe, Resend).
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Logs breaker state changes so degradation shows up in the JSON logs."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"[breaker:{cb.name}] {old_state.name if old_state else None} -> {new_state.name}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers = {}

    def get_breaker(self, service_name: str, exclude=None) -> CircuitBreaker:
        """
        Get or create a circuit breaker for a service.
        `exclude` lists client-side errors that should not trip the breaker.
        """
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=5,         # Open after 5 failures
                reset_timeout=60,   # Try again after 60 seconds
                exclude=exclude or [],
                listeners=[LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()
