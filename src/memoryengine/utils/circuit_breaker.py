"""Circuit breaker for outbound provider calls.

Closed until ``failure_threshold`` consecutive failures, then open: calls fail
fast with :class:`CircuitOpenError` without touching the provider. Once
``cooldown_seconds`` have passed the breaker is half-open and a single trial
call decides whether it closes again or re-opens.
"""
import asyncio
import threading
import time
from enum import Enum
from logging import Logger
from typing import Any, Awaitable, Callable, Optional

from scitrera_app_framework import get_logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is short-circuited by an open breaker."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """Consecutive-failure circuit breaker with an injectable clock."""

    def __init__(
            self,
            name: str,
            failure_threshold: int = 5,
            cooldown_seconds: float = 60.0,
            clock: Callable[[], float] = time.monotonic,
            logger: Logger = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.rejected = 0
        self.logger = logger or get_logger(None, name=self.__class__.__name__)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self.logger.info("Circuit '%s' half-open, allowing trial call", self.name)
        return self._state

    def _before_call(self) -> None:
        with self._lock:
            state = self._current_state()
            if state == CircuitState.OPEN or (state == CircuitState.HALF_OPEN and self._trial_in_flight):
                self.rejected += 1
                retry_in = 0.0
                if self._opened_at is not None:
                    retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
                raise CircuitOpenError(self.name, retry_in)
            if state == CircuitState.HALF_OPEN:
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self.logger.info("Circuit '%s' closed after successful call", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    self.logger.warning(
                        "Circuit '%s' opened after %d consecutive failures", self.name, self._failures
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: breaker is open (provider not called)
            asyncio.TimeoutError: call exceeded ``timeout`` (counted as failure)
            Exception: whatever ``func`` raised (counted as failure)
        """
        self._before_call()
        try:
            if timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            else:
                result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            with self._lock:
                self._trial_in_flight = False
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def stats(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self._current_state().value,
                "consecutive_failures": self._failures,
                "rejected": self.rejected,
            }
