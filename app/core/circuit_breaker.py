"""
Circuit breaker for outbound provider calls.

When the Cloud API keeps failing, sends fail fast with CircuitBreakerOpenError
and the outbox defers the row instead of burning a retry. Only outages count
towards opening the circuit: a 4xx about one recipient (number not on
WhatsApp, bad media id) says nothing about the provider's health.

    CLOSED ──failures ≥ threshold──▶ OPEN ──timeout──▶ HALF_OPEN
       ▲                               ▲                   │
       └────── successes ≥ threshold ──┴──── any failure ──┘
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ClassVar, TypeVar

from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


def is_provider_outage(error: Exception) -> bool:
    """
    True unless the error carries a 4xx status other than 429.

    pywa API errors expose `status_code`; errors without one
    (timeouts, connection resets) are treated as outages.
    """
    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        return True
    return status == 429 or not 400 <= status < 500


class CircuitBreaker:
    """
    Per-service breaker shared by every send in the process.

    Half-open admits at most `half_open_max_calls` trial calls in flight.
    A threading.Lock guards the counters: each Celery task runs its own
    event loop, so an asyncio.Lock would be bound to the wrong loop.
    """

    _instances: ClassVar[dict[str, "CircuitBreaker"]] = {}
    _instances_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        is_failure: Callable[[Exception], bool] = is_provider_outage,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._is_failure = is_failure
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._trial_calls = 0

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._instances_lock:
            breaker = cls._instances.get(service_name)
            if breaker is None:
                breaker = cls._instances[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        logger.info(
            f"Circuit '{self.service_name}' {self._state.value} -> {new_state.value}",
            extra_data={"service": self.service_name, "old_state": self._state.value, "new_state": new_state.value}
        )
        self._state = new_state
        self._successes = 0
        self._trial_calls = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.CLOSED:
            self._failures = 0

    def can_execute(self) -> bool:
        """Admit a call, half-opening the circuit once the open timeout has passed"""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._trial_calls >= self.config.half_open_max_calls:
                return False
            self._trial_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_calls = max(0, self._trial_calls - 1)
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    def get_retry_after(self) -> float:
        """Seconds until the circuit may half-open (0 when not open)"""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await `func` if the circuit admits it.

        Raises CircuitBreakerOpenError without calling `func` when open.
        Errors from `func` are re-raised; only outages are counted.
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise

        self.record_success()
        return result


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    """Process-wide breaker for the WhatsApp Cloud API"""
    return CircuitBreaker.get_instance(
        "whatsapp",
        CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            timeout_seconds=settings.CIRCUIT_BREAKER_TIMEOUT_SECONDS,
        ),
    )
