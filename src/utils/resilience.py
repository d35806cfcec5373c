"""
Retry and circuit-breaker layer for external collaborators.

Every call to the extraction service, the document-text service and the
channel senders goes through a ResilientCaller: bounded exponential-backoff
retry (tenacity) on top of a per-collaborator circuit breaker shared by all
callers in the process.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """Base error for failed calls to an external collaborator."""

    def __init__(self, collaborator: str, message: str = ""):
        self.collaborator = collaborator
        super().__init__(message or f"Collaborator '{collaborator}' failed")


class CircuitOpenError(CollaboratorError):
    """Raised without touching the network while the breaker is open."""

    def __init__(self, collaborator: str):
        super().__init__(collaborator, f"Circuit for '{collaborator}' is open")


class CollaboratorTimeout(CollaboratorError):
    def __init__(self, collaborator: str, timeout: float):
        super().__init__(collaborator, f"Call to '{collaborator}' timed out after {timeout}s")


class CollaboratorUnavailable(CollaboratorError):
    """Retries exhausted (or short-circuited); the caller owns the fallback."""

    def __init__(self, collaborator: str, last_error: Optional[BaseException] = None):
        self.last_error = last_error
        super().__init__(collaborator, f"Collaborator '{collaborator}' unavailable: {last_error}")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Closed -> Open after `failure_threshold` consecutive failures.
    Open short-circuits for `cooldown_seconds`, then Half-Open lets exactly one
    trial call through: success closes, failure re-opens.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        outage_alert_cycles: int = 3,
        on_outage: Optional[Callable[[str, int], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.outage_alert_cycles = outage_alert_cycles
        self.on_outage = on_outage
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._open_cycles = 0
        self._outage_reported = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            if self._state == BreakerState.OPEN and self._cooldown_elapsed():
                return BreakerState.HALF_OPEN
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.cooldown_seconds

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"Circuit '{self.name}' half-open, allowing trial call")
                return True
            # Half-open: only one trial at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info(f"Circuit '{self.name}' closed after successful call")
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False
            self._open_cycles = 0
            self._outage_reported = False

    def record_failure(self) -> None:
        report_outage = False
        with self._lock:
            self._consecutive_failures += 1
            if self._state == BreakerState.HALF_OPEN:
                report_outage = self._open()
            elif (
                self._state == BreakerState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                report_outage = self._open()
            cycles = self._open_cycles

        if report_outage and self.on_outage:
            try:
                self.on_outage(self.name, cycles)
            except Exception as e:
                logger.error(f"Outage callback failed for '{self.name}': {e}", exc_info=True)

    def _open(self) -> bool:
        """Transition to open. Caller holds the lock. Returns True when an outage should be reported."""
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._open_cycles += 1
        logger.warning(
            f"Circuit '{self.name}' opened after {self._consecutive_failures} consecutive failures "
            f"(cycle {self._open_cycles})"
        )
        if self._open_cycles >= self.outage_alert_cycles and not self._outage_reported:
            self._outage_reported = True
            return True
        return False


class BreakerRegistry:
    """Process-wide breakers, one per collaborator name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        outage_alert_cycles: int = 3,
        on_outage: Optional[Callable[[str, int], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.outage_alert_cycles = outage_alert_cycles
        self.on_outage = on_outage
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    outage_alert_cycles=self.outage_alert_cycles,
                    on_outage=self.on_outage,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.state.value for b in breakers}


class ResilientCaller:
    """
    Wraps calls to one collaborator with retry, per-attempt timeout and its breaker.

    Exceptions listed in `passthrough` mean the collaborator answered but the
    answer was unusable: they are neither retried nor counted against the
    breaker, and reach the caller unchanged.
    """

    def __init__(
        self,
        name: str,
        breaker: CircuitBreaker,
        base_interval: float = 1.0,
        max_attempts: int = 3,
        jitter: float = 0.0,
        attempt_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[ThreadPoolExecutor] = None,
        passthrough: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.breaker = breaker
        self.base_interval = base_interval
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.attempt_timeout = attempt_timeout
        self.passthrough = passthrough
        self._sleep = sleep
        self._executor = executor
        if attempt_timeout and executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=4, thread_name_prefix=f"collab-{name}"
            )

    def _wait_strategy(self):
        wait = wait_exponential(multiplier=self.base_interval, exp_base=2)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return wait

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Invoke `fn` with bounded retries.

        Raises:
            CollaboratorUnavailable: when every attempt failed or the breaker is open
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception(self._is_retryable),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                f"Retrying '{self.name}' after attempt {state.attempt_number}: "
                f"{state.outcome.exception()}"
            ),
        )
        try:
            return retrying(self._attempt, fn, *args, **kwargs)
        except self.passthrough:
            raise
        except CircuitOpenError as e:
            logger.warning(f"Call to '{self.name}' short-circuited: breaker open")
            raise CollaboratorUnavailable(self.name, e) from e
        except Exception as e:
            logger.error(f"Call to '{self.name}' failed after {self.max_attempts} attempts: {e}")
            raise CollaboratorUnavailable(self.name, e) from e

    def _attempt(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if not self.breaker.allow_request():
            raise CircuitOpenError(self.name)
        try:
            result = self._run(fn, *args, **kwargs)
        except self.passthrough:
            self.breaker.record_success()
            raise
        except Exception:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return result

    def _is_retryable(self, error: BaseException) -> bool:
        return not isinstance(error, (CircuitOpenError,) + self.passthrough)

    def _run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if not self.attempt_timeout:
            return fn(*args, **kwargs)
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.attempt_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise CollaboratorTimeout(self.name, self.attempt_timeout)
