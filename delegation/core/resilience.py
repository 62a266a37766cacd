"""Connection resilience utilities for provisioner calls.

Provides retry logic with exponential backoff for transient failures and a
circuit breaker that fails fast while the provisioner is down.

Usage:
    from delegation.core.resilience import with_retry, is_transient_http_error

    result = await with_retry(
        lambda: client.post("/environments/1/start"),
        is_transient=is_transient_http_error,
    )
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


@dataclass
class CircuitState:
    """Track circuit breaker state for a service."""

    failures: int = 0
    last_failure: Optional[datetime] = None
    is_open: bool = False
    open_until: Optional[datetime] = None

    # Circuit opens after this many consecutive failures
    failure_threshold: int = 5
    # Circuit stays open for this many seconds before half-open test
    reset_timeout_seconds: float = 30.0


class CircuitOpenError(RuntimeError):
    """Raised when a call is refused because the circuit is open."""


def _calculate_backoff(
    attempt: int,
    config: RetryConfig,
) -> float:
    """Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = config.base_delay_seconds * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay_seconds)

    # Jitter prevents a thundering herd after an outage
    jitter = delay * config.jitter_factor * random.random()
    return delay + jitter


def is_connect_error(error: Exception) -> bool:
    """True if the request never reached the remote side.

    Only these are safe to retry for non-idempotent calls.
    """
    return isinstance(
        error,
        (
            httpx.ConnectError,
            httpx.ConnectTimeout,
            httpx.PoolTimeout,
            ConnectionRefusedError,
        ),
    )


def is_transient_http_error(error: Exception) -> bool:
    """Check if an HTTP error is transient and worth retrying.

    Returns True for transport errors, timeouts, 429 and 5xx responses.
    Returns False for other 4xx responses and non-HTTP errors.
    """
    if is_connect_error(error):
        return True

    if isinstance(
        error,
        (
            httpx.TransportError,  # Includes read/write timeouts
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
        ),
    ):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code == 429 or status_code >= 500

    return False


def _check_circuit(circuit: CircuitState, service_name: str) -> bool:
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
            return True  # Allow one request through to test
        return False

    return True


def _record_success(circuit: CircuitState, service_name: str) -> None:
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


def _record_failure(circuit: CircuitState, service_name: str) -> None:
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
    is_transient: Callable[[Exception], bool] = is_transient_http_error,
    config: Optional[RetryConfig] = None,
    circuit: Optional[CircuitState] = None,
    service_name: str = "provisioner",
) -> T:
    """Execute an async operation with retry on transient failures.

    Args:
        operation: Zero-argument async callable
        is_transient: Decides which errors are retried
        config: Optional retry configuration
        circuit: Optional circuit breaker shared by calls to the same service
        service_name: Name used in logs

    Returns:
        Result of the operation

    Raises:
        CircuitOpenError: If the circuit is open
        Exception: If all retries exhausted or non-transient error
    """
    if config is None:
        config = RetryConfig()

    if circuit is not None and not _check_circuit(circuit, service_name):
        raise CircuitOpenError(
            f"{service_name} circuit breaker is open - service recovering from outage"
        )

    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            result = await operation()
            if circuit is not None:
                _record_success(circuit, service_name)
            return result

        except Exception as e:
            last_error = e

            if not is_transient(e):
                logger.warning(
                    f"{service_name}_non_transient_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            delay = _calculate_backoff(attempt, config)
            logger.warning(
                f"{service_name}_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )

            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    # All retries exhausted
    if circuit is not None:
        _record_failure(circuit, service_name)
    logger.error(
        f"{service_name}_retries_exhausted",
        attempts=config.max_attempts,
        error=str(last_error),
    )
    raise last_error  # type: ignore


def circuit_status(circuit: CircuitState) -> dict[str, Any]:
    """Summarize a circuit breaker for health checks."""
    return {
        "failures": circuit.failures,
        "is_open": circuit.is_open,
        "last_failure": (
            circuit.last_failure.isoformat() if circuit.last_failure else None
        ),
    }
