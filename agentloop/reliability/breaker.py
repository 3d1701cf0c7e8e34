"""
Circuit breakers for unreliable dependencies.

A breaker sits in front of one logical resource ("model-backend",
"tool:read_file", ...) and stops calling it after repeated failures:

    CLOSED ──(max_failures consecutive failures)──▶ OPEN
    OPEN ──(reset_timeout elapsed, next call)──▶ HALF_OPEN
    HALF_OPEN ──(any failure)──▶ OPEN
    HALF_OPEN ──(half_open_max successes)──▶ CLOSED

While OPEN, calls fail fast with BreakerOpenError and the wrapped
function is never invoked. While HALF_OPEN, one trial call runs at a
time; concurrent callers are rejected until the trial settles.

Breakers live in a BreakerManager, a name → breaker map shared by every
request in the process. Breakers are created on first use and never
removed, because the accumulated state is the whole point. Each breaker
mutates its state only under its own lock; the manager's lock only
guards the map.
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from agentloop.errors import BreakerOpenError

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class BreakerConfig(BaseModel):
    """Thresholds for a single breaker."""

    max_failures: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, gt=0, description="Seconds")
    half_open_max: int = Field(default=3, ge=1)

    model_config = ConfigDict(frozen=True)


StateChangeCallback = Callable[[str, BreakerState, BreakerState], None]


class CircuitBreaker:
    """
    Failure-counting guard around calls to one resource.

    Args:
        name: Logical resource identity, used in errors and logs
        config: Thresholds (defaults: 5 failures, 60s reset, 3 trial successes)
        on_state_change: Called as ``cb(name, old, new)`` on every transition,
            after the breaker's lock has been released
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._on_state_change = on_state_change
        self._clock = clock

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._last_failure_time: float | None = None
        self._half_open_successes = 0
        self._trial_in_flight = False

        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._total_rejections = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``fn(*args, **kwargs)`` under breaker protection.

        ``fn`` may be a coroutine function or a plain callable. Any
        ``Exception`` it raises counts as a failure and is re-raised.
        Cancellation is not an ``Exception`` and leaves the counters alone.

        Raises:
            BreakerOpenError: The breaker rejected the call; ``fn`` did not run
        """
        is_trial = self._acquire()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self._record(success=False, is_trial=is_trial)
            raise
        except BaseException:
            self._release_trial(is_trial)
            raise
        self._record(success=True, is_trial=is_trial)
        return result

    async def call_with_fallback(
        self,
        fn: Callable[..., Any],
        fallback: Callable[[], Any | Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Like call(), but on rejection or failure return ``fallback()`` instead.

        Useful for graceful degradation, e.g. serving a static notice
        while the model backend is down.
        """
        try:
            return await self.call(fn, *args, **kwargs)
        except Exception as e:
            logger.warning(f"CircuitBreaker {self.name}: primary call failed, using fallback: {e}")
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
            return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED and clear the failure counters."""
        with self._lock:
            transitions = self._set_state(BreakerState.CLOSED)
            self._failures = 0
            self._half_open_successes = 0
            self._trial_in_flight = False
        self._notify(transitions)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            success_rate = (
                self._total_successes / self._total_requests * 100 if self._total_requests else 0.0
            )
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "total_requests": self._total_requests,
                "total_successes": self._total_successes,
                "total_failures": self._total_failures,
                "total_rejections": self._total_rejections,
                "success_rate": f"{success_rate:.2f}%",
                "last_failure_time": self._last_failure_time,
            }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        """Admit or reject a call. Returns True if the call is a half-open trial."""
        transitions: list[tuple[BreakerState, BreakerState]] = []
        with self._lock:
            if self._state is BreakerState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed > self.config.reset_timeout:
                    transitions = self._set_state(BreakerState.HALF_OPEN)
                    self._half_open_successes = 0
                    self._trial_in_flight = False
                else:
                    self._total_rejections += 1
                    raise BreakerOpenError(self.name)

            if self._state is BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    self._total_rejections += 1
                    raise BreakerOpenError(self.name)
                self._trial_in_flight = True
                admitted_as_trial = True
            else:
                admitted_as_trial = False
        self._notify(transitions)
        return admitted_as_trial

    def _record(self, success: bool, is_trial: bool) -> None:
        with self._lock:
            self._total_requests += 1
            if is_trial:
                self._trial_in_flight = False

            if success:
                self._total_successes += 1
                transitions = self._on_success()
            else:
                self._total_failures += 1
                transitions = self._on_failure()
        self._notify(transitions)

    def _release_trial(self, is_trial: bool) -> None:
        if is_trial:
            with self._lock:
                self._trial_in_flight = False

    def _on_success(self) -> list[tuple[BreakerState, BreakerState]]:
        if self._state is BreakerState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.half_open_max:
                transitions = self._set_state(BreakerState.CLOSED)
                self._failures = 0
                self._half_open_successes = 0
                return transitions
            return []
        self._failures = 0
        return []

    def _on_failure(self) -> list[tuple[BreakerState, BreakerState]]:
        self._failures += 1
        self._last_failure_time = self._clock()
        if self._state is BreakerState.HALF_OPEN:
            return self._set_state(BreakerState.OPEN)
        if self._state is BreakerState.CLOSED and self._failures >= self.config.max_failures:
            return self._set_state(BreakerState.OPEN)
        return []

    def _set_state(self, new_state: BreakerState) -> list[tuple[BreakerState, BreakerState]]:
        # Caller holds the lock
        if self._state is new_state:
            return []
        old_state = self._state
        self._state = new_state
        return [(old_state, new_state)]

    def _notify(self, transitions: list[tuple[BreakerState, BreakerState]]) -> None:
        for old_state, new_state in transitions:
            logger.warning(
                f"CircuitBreaker {self.name}: state changed from {old_state.value} to {new_state.value}"
            )
            if self._on_state_change is not None:
                try:
                    self._on_state_change(self.name, old_state, new_state)
                except Exception as e:
                    logger.error(f"CircuitBreaker {self.name}: state change callback failed: {e}")


class BreakerManager:
    """
    Process-wide name → CircuitBreaker map.

    get_or_create() is safe under concurrent first access and always
    returns the same instance for a name.

    Args:
        default_config: Config used when get_or_create() is given none
        on_state_change: Callback attached to every breaker this manager creates
        clock: Time source handed to created breakers
    """

    def __init__(
        self,
        default_config: BreakerConfig | None = None,
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_config = default_config or BreakerConfig()
        self._on_state_change = on_state_change
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker

        with self._lock:
            # Double-check after acquiring the lock
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=config or self._default_config,
                    on_state_change=self._on_state_change,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
                logger.debug(f"Created circuit breaker '{name}'")
            return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def all(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def stats(self) -> list[dict[str, Any]]:
        return [breaker.stats() for _, breaker in sorted(self.all().items())]

    def reset_all(self) -> None:
        for breaker in self.all().values():
            breaker.reset()


# The process-wide manager. Created on first use, lives until exit.
_manager: BreakerManager | None = None
_manager_lock = threading.Lock()


def get_breaker_manager(default_config: BreakerConfig | None = None) -> BreakerManager:
    """
    Get or create the process-wide BreakerManager.

    ``default_config`` only takes effect on the call that creates the
    manager; later calls return the existing instance unchanged.
    """
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                _manager = BreakerManager(default_config=default_config)
    return _manager
