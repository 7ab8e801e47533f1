"""Store resilience utilities for transient infrastructure failures.

Provides retry logic with exponential backoff for job store calls that fail
because the backing database is briefly unreachable. These failures are
internal to the engine and never count against a job's attempts.

Usage:
    from jobq.core.resilience import with_store_retry

    job = await with_store_retry(lambda: store.complete(job_id, worker_id, state))
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import asyncpg
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 5
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


@dataclass
class CircuitState:
    """Track circuit breaker state for the job store."""

    failures: int = 0
    last_failure: Optional[datetime] = None
    is_open: bool = False
    open_until: Optional[datetime] = None

    # Circuit opens after this many consecutive exhausted retries
    failure_threshold: int = 5
    # Circuit stays open for this many seconds before half-open test
    reset_timeout_seconds: float = 30.0


_store_circuit = CircuitState()


class StoreUnavailableError(RuntimeError):
    """Job store circuit breaker is open."""


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


def is_transient_store_error(error: Exception) -> bool:
    """Check if a store error is transient and worth retrying.

    Returns True for connection errors, timeouts, pool exhaustion and
    serialization conflicts. Returns False for query errors and
    constraint violations, which are bugs or domain outcomes.
    """
    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            asyncpg.TooManyConnectionsError,
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        error_code = getattr(error, "sqlstate", None)
        transient_codes = {
            "08000",  # connection_exception
            "08003",  # connection_does_not_exist
            "08006",  # connection_failure
            "08001",  # sqlclient_unable_to_establish_sqlconnection
            "08004",  # sqlserver_rejected_establishment_of_sqlconnection
            "57P01",  # admin_shutdown
            "57P02",  # crash_shutdown
            "57P03",  # cannot_connect_now
            "40001",  # serialization_failure
            "40P01",  # deadlock_detected
        }
        return error_code in transient_codes

    return False


def _check_circuit(circuit: CircuitState) -> bool:
    """Return True if the circuit allows the call (closed or half-open)."""
    if not circuit.is_open:
        return True
    now = datetime.now(timezone.utc)
    if circuit.open_until and now >= circuit.open_until:
        logger.info("store_circuit_half_open", failures=circuit.failures)
        return True
    return False


def _record_success(circuit: CircuitState) -> None:
    if circuit.failures > 0 or circuit.is_open:
        logger.info("store_circuit_closed", previous_failures=circuit.failures)
    circuit.failures = 0
    circuit.last_failure = None
    circuit.is_open = False
    circuit.open_until = None


def _record_failure(circuit: CircuitState) -> None:
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
            "store_circuit_opened",
            failures=circuit.failures,
            reset_at=circuit.open_until.isoformat(),
        )


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """Execute a store operation with retry on transient failures.

    Args:
        operation: Zero-argument async callable performing the store call
        config: Optional retry configuration

    Returns:
        Result of the operation

    Raises:
        StoreUnavailableError: If the circuit breaker is open
        Exception: If all retries exhausted or the error is not transient
    """
    if config is None:
        config = RetryConfig()

    if not _check_circuit(_store_circuit):
        raise StoreUnavailableError(
            "Job store circuit breaker is open - store recovering from outage"
        )

    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            result = await operation()
            _record_success(_store_circuit)
            return result

        except Exception as e:
            last_error = e

            if not is_transient_store_error(e):
                raise

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "store_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )

            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    _record_failure(_store_circuit)
    logger.error(
        "store_retries_exhausted",
        attempts=config.max_attempts,
        error=str(last_error),
    )
    raise last_error  # type: ignore


def get_circuit_status() -> dict:
    """Get current circuit breaker status for health checks."""
    return {
        "store": {
            "failures": _store_circuit.failures,
            "is_open": _store_circuit.is_open,
            "last_failure": (
                _store_circuit.last_failure.isoformat()
                if _store_circuit.last_failure
                else None
            ),
        },
    }


def reset_circuits() -> None:
    """Reset the circuit breaker. Used for testing."""
    global _store_circuit
    _store_circuit = CircuitState()
