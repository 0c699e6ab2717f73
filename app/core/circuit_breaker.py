"""
Circuit breakers for the payment provider and the notification dispatcher.

A breaker counts transport failures (timeouts, connection errors, 5xx
answers). Once ``failure_threshold`` of them happen in a row, calls are
refused with ``CircuitBreakerOpenError`` before anything is sent, which
lets booking actions fail fast with nothing charged. After
``timeout_seconds`` a few probe calls are let through (half-open); enough
successes close the breaker again, any failure reopens it.

Refusals in ``ignored_exceptions`` (a declined card, a closed account) mean
the service is up and are recorded as successes.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar, Union

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

PAYMENT_PROVIDER_SERVICE = "payment_provider"
NOTIFICATION_SERVICE = "notification_dispatcher"


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    ignored_exceptions: tuple[type[BaseException], ...] = ()


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """One breaker per external service, shared through ``get_instance``"""

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # Celery runs every task on a fresh event loop, so no asyncio.Lock here
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._instances_lock:
            breaker = cls._instances.get(service_name)
            if breaker is None:
                breaker = cls._instances[service_name] = cls(service_name, config)
        return breaker

    @classmethod
    def reset_all(cls) -> None:
        """Forget every registered breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def snapshot(cls) -> list[dict]:
        """Current state of every registered breaker, for the admin API"""
        with cls._instances_lock:
            breakers = sorted(cls._instances.values(), key=lambda b: b.service_name)
        return [breaker._describe() for breaker in breakers]

    def _describe(self) -> dict:
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failure_count": self._state.failure_count,
            "retry_after_seconds": round(self.get_retry_after(), 2),
        }

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state is CircuitState.HALF_OPEN

    def _seconds_until_probe(self) -> float:
        elapsed = time.time() - self._state.last_failure_time
        return self.config.timeout_seconds - elapsed

    def _move_to(self, new_state: CircuitState, reason: str) -> None:
        """Caller holds self._lock"""
        previous = self._state.state
        if previous is new_state:
            return
        self._state.state = new_state
        self._state.success_count = 0
        if new_state is CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
        elif new_state is CircuitState.CLOSED:
            self._state.failure_count = 0

        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            f"{self.service_name} circuit {new_state.value}",
            extra_data={
                "service": self.service_name,
                "from_state": previous.value,
                "to_state": new_state.value,
                "reason": reason,
                "failure_count": self._state.failure_count,
            },
        )

    async def can_execute(self) -> bool:
        """True when a call may go out; moves an expired open breaker to half-open"""
        with self._lock:
            state = self._state.state
            if state is CircuitState.OPEN:
                if self._seconds_until_probe() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN, "reset timeout elapsed")
                return True
            if state is CircuitState.HALF_OPEN:
                if self._state.half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._state.half_open_calls += 1
            return True

    async def record_success(self) -> None:
        with self._lock:
            if self._state.state is CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED, "probe calls succeeded")
            else:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()
            logger.warning(
                f"{self.service_name} call failed",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "failure_threshold": self.config.failure_threshold,
                    "error_type": type(error).__name__ if error else None,
                    "error": str(error) if error else None,
                },
            )
            if self._state.state is CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "probe call failed")
            elif self._state.failure_count >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN, "failure threshold reached")

    def get_retry_after(self) -> float:
        """Seconds before an open breaker lets a probe through; 0 otherwise"""
        if not self.is_open:
            return 0.0
        return max(0.0, self._seconds_until_probe())

    async def execute(self, func: Callable[..., Union[T, Awaitable[T]]], *args, **kwargs) -> T:
        """
        Call ``func`` through the breaker.

        Raises CircuitBreakerOpenError without calling ``func`` when the
        breaker is open, so the caller knows nothing reached the service.
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, round(self.get_retry_after(), 2))

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except self.config.ignored_exceptions:
            await self.record_success()
            raise
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


def get_payment_provider_circuit_breaker() -> CircuitBreaker:
    """Provider refusals (``PaymentProviderError``) never open this breaker"""
    from app.core.config import settings
    from app.core.exceptions import PaymentProviderError

    return CircuitBreaker.get_instance(
        PAYMENT_PROVIDER_SERVICE,
        CircuitBreakerConfig(
            failure_threshold=settings.PAYMENT_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.PAYMENT_CIRCUIT_RESET_SECONDS,
            ignored_exceptions=(PaymentProviderError,),
        ),
    )


def get_notification_circuit_breaker() -> CircuitBreaker:
    from app.core.config import settings

    return CircuitBreaker.get_instance(
        NOTIFICATION_SERVICE,
        CircuitBreakerConfig(
            failure_threshold=settings.NOTIFICATION_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.NOTIFICATION_CIRCUIT_RESET_SECONDS,
        ),
    )
