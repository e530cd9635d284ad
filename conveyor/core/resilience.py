"""Retry and circuit-breaker utilities for calls to external APIs.

Transient failures (network errors, timeouts, 429 and 5xx responses) are
retried with exponential backoff and jitter. Anything else propagates on the
first attempt.

Usage:
    from conveyor.core.resilience import with_retry

    result = await with_retry(
        lambda: client.get_instance(instance_id),
        service="infra",
        circuit=circuit,
    )
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from conveyor.errors import CircuitOpenError, InfraAPIError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


@dataclass
class CircuitState:
    """Track circuit breaker state for one external service."""

    failures: int = 0
    last_failure: Optional[datetime] = None
    is_open: bool = False
    open_until: Optional[datetime] = None

    # Circuit opens after this many consecutive exhausted calls
    failure_threshold: int = 5
    # Circuit stays open for this many seconds before half-open test
    reset_timeout_seconds: float = 30.0


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = config.base_delay_seconds * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay_seconds)
    jitter = delay * config.jitter_factor * random.random()
    return delay + jitter


def is_transient_error(error: BaseException) -> bool:
    """Check if an external API error is worth retrying."""
    if isinstance(error, InfraAPIError):
        return error.retryable

    if isinstance(error, (httpx.TransportError, httpx.TimeoutException)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500

    if isinstance(
        error,
        (
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
        ),
    ):
        return True

    return False


def check_circuit(circuit: CircuitState, service_name: str) -> bool:
    """Check if circuit breaker allows the request.

    Returns True if request should proceed, False if circuit is open.
    """
    now = datetime.now(timezone.utc)

    if circuit.is_open:
        if circuit.open_until and now >= circuit.open_until:
            logger.info(
                "circuit_half_open",
                service=service_name,
                failures=circuit.failures,
            )
            return True
        return False

    return True


def record_success(circuit: CircuitState, service_name: str) -> None:
    """Record successful operation, reset circuit breaker."""
    if circuit.failures > 0 or circuit.is_open:
        logger.info(
            "circuit_closed",
            service=service_name,
            previous_failures=circuit.failures,
        )
    circuit.failures = 0
    circuit.last_failure = None
    circuit.is_open = False
    circuit.open_until = None


def record_failure(circuit: CircuitState, service_name: str) -> None:
    """Record failed operation, possibly open circuit breaker."""
    now = datetime.now(timezone.utc)
    circuit.failures += 1
    circuit.last_failure = now

    if circuit.failures >= circuit.failure_threshold:
        circuit.is_open = True
        circuit.open_until = datetime.fromtimestamp(
            now.timestamp() + circuit.reset_timeout_seconds,
            tz=timezone.utc,
        )
        logger.warning(
            "circuit_opened",
            service=service_name,
            failures=circuit.failures,
            reset_at=circuit.open_until.isoformat(),
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    service: str,
    circuit: Optional[CircuitState] = None,
    config: Optional[RetryConfig] = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Execute an async operation with retry on transient failures.

    Args:
        operation: Zero-argument callable returning an awaitable
        service: Name used in logs and circuit breaker messages
        circuit: Optional circuit breaker state shared across calls
        config: Optional retry configuration
        is_transient: Predicate deciding whether an error is retried
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of the operation

    Raises:
        CircuitOpenError: If the circuit is open
        Exception: If all retries exhausted or non-transient error
    """
    if config is None:
        config = RetryConfig()

    if circuit is not None and not check_circuit(circuit, service):
        raise CircuitOpenError(
            f"{service} circuit breaker is open - service recovering from outage"
        )

    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            result = await operation()
            if circuit is not None:
                record_success(circuit, service)
            return result

        except Exception as e:
            last_error = e

            if not is_transient(e):
                logger.warning(
                    "non_transient_error",
                    service=service,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "retry_attempt",
                service=service,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )

            if attempt < config.max_attempts - 1:
                await sleep(delay)

    if circuit is not None:
        record_failure(circuit, service)
    logger.error(
        "retries_exhausted",
        service=service,
        attempts=config.max_attempts,
        error=str(last_error),
    )
    raise last_error  # type: ignore
