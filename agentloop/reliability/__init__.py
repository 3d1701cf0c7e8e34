"""
Reliability Layer.

Circuit breakers that fail fast on degraded dependencies (the model
backend, individual tools) instead of hammering them.
"""

from agentloop.reliability.breaker import (
    BreakerConfig,
    BreakerManager,
    BreakerState,
    CircuitBreaker,
    get_breaker_manager,
)

__all__ = [
    "BreakerConfig",
    "BreakerManager",
    "BreakerState",
    "CircuitBreaker",
    "get_breaker_manager",
]
