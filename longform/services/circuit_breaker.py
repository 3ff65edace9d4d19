"""Per-provider circuit breakers shared by every running job.

A provider that keeps failing would otherwise cost each job a full
timeout per unit. Once a provider's consecutive failures reach the
threshold its circuit opens: generation calls for it are refused with
CircuitOpenError until the cooldown has passed. The first call after
the cooldown is a trial; while it is in flight other callers are still
refused, and its outcome closes or reopens the circuit.

    closed --(threshold failures)--> open --(cooldown)--> half_open
    half_open --(trial succeeds)--> closed
    half_open --(trial fails)--> open

``CircuitBreaker.call`` runs one provider call under a wall-clock
timeout and records its outcome.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from enum import Enum
from typing import Any, Callable, Dict

from ..exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure bookkeeping for one provider. All methods are thread-safe."""

    def __init__(
        self,
        provider: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
    ) -> None:
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_running = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    # Callers of the underscored helpers hold self._lock.

    def _cooldown_left(self) -> float:
        return max(0.0, self.cooldown_seconds - (time.monotonic() - self._opened_at))

    def _move_to(self, state: CircuitState, reason: str) -> None:
        if state is self._state:
            return
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log("Provider %s circuit %s -> %s (%s)", self.provider, self._state.value, state.value, reason)
        self._state = state

    def snapshot(self) -> dict:
        """State for the health endpoint."""
        with self._lock:
            waiting = self._cooldown_left() if self._state is CircuitState.OPEN else 0.0
            return {
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "retry_after_seconds": round(waiting),
            }

    def check(self) -> None:
        """Admit one call or raise CircuitOpenError."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                waiting = self._cooldown_left()
                if waiting > 0:
                    raise CircuitOpenError(self.provider, waiting)
                self._move_to(CircuitState.HALF_OPEN, "cooldown over")
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_running:
                    raise CircuitOpenError(self.provider, 0.0)
                self._trial_running = True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_running = False
            self._move_to(CircuitState.CLOSED, "call succeeded")

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            trial = self._state is CircuitState.HALF_OPEN
            self._trial_running = False
            if trial or self._failures >= self.failure_threshold:
                self._opened_at = time.monotonic()
                reason = "trial call failed" if trial else f"{self._failures} consecutive failures"
                self._move_to(CircuitState.OPEN, reason)

    def call(self, fn: Callable[[], Any], timeout: float) -> Any:
        """Run *fn* for this provider, giving up after *timeout* seconds.

        Raises CircuitOpenError without calling *fn* while the circuit is
        open, TimeoutError when *fn* overruns, and whatever *fn* raises.
        Timeouts and errors count as failures.
        """
        self.check()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"llm-{self.provider}")
        try:
            result = pool.submit(fn).result(timeout=timeout)
        except FuturesTimeoutError:
            self.record_failure()
            logger.error("Provider %s gave no answer within %ss", self.provider, timeout)
            raise TimeoutError(f"{self.provider} exceeded {timeout}s timeout")
        except Exception:
            self.record_failure()
            raise
        finally:
            # The worker of a timed-out call is abandoned, not joined.
            pool.shutdown(wait=False)
        self.record_success()
        return result


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(
    provider: str,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
) -> CircuitBreaker:
    """The shared breaker for *provider*; thresholds apply on first use only."""
    with _breakers_lock:
        breaker = _breakers.get(provider)
        if breaker is None:
            breaker = _breakers[provider] = CircuitBreaker(
                provider, failure_threshold=failure_threshold, cooldown_seconds=cooldown_seconds,
            )
        return breaker


def breaker_states() -> Dict[str, dict]:
    with _breakers_lock:
        breakers = sorted(_breakers.items())
    return {provider: b.snapshot() for provider, b in breakers}


def reset_all() -> None:
    """Forget every breaker."""
    with _breakers_lock:
        _breakers.clear()
