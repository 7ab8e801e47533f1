"""Tests for store retry and circuit breaker logic."""

import asyncio
from unittest.mock import AsyncMock

import asyncpg
import pytest

from jobq.core.resilience import (
    RetryConfig,
    StoreUnavailableError,
    calculate_backoff,
    get_circuit_status,
    is_transient_store_error,
    reset_circuits,
    with_store_retry,
)


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_values(self):
        config = RetryConfig()
        assert config.max_attempts == 5
        assert config.base_delay_seconds == 0.2
        assert config.max_delay_seconds == 10.0
        assert config.exponential_base == 2.0
        assert config.jitter_factor == 0.25


class TestBackoffCalculation:
    """Tests for exponential backoff calculation."""

    def test_backoff_increases_with_attempts(self):
        config = RetryConfig(base_delay_seconds=0.5, jitter_factor=0)

        assert calculate_backoff(0, config) == 0.5
        assert calculate_backoff(1, config) == 1.0
        assert calculate_backoff(2, config) == 2.0

    def test_backoff_capped_at_max(self):
        config = RetryConfig(
            base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_factor=0
        )
        assert calculate_backoff(10, config) == 5.0

    def test_backoff_includes_jitter(self):
        config = RetryConfig(base_delay_seconds=1.0, jitter_factor=0.25)

        delays = [calculate_backoff(0, config) for _ in range(10)]

        assert all(1.0 <= d <= 1.25 for d in delays)


class TestTransientErrorDetection:
    """Tests for transient store error classification."""

    def test_connection_errors_are_transient(self):
        assert is_transient_store_error(ConnectionRefusedError())
        assert is_transient_store_error(ConnectionResetError())
        assert is_transient_store_error(asyncio.TimeoutError())
        assert is_transient_store_error(OSError("network unreachable"))

    def test_interface_error_is_transient(self):
        assert is_transient_store_error(asyncpg.InterfaceError("pool closed"))

    def test_serialization_failure_is_transient(self):
        assert is_transient_store_error(asyncpg.SerializationError("conflict"))

    def test_constraint_violation_not_transient(self):
        assert not is_transient_store_error(
            asyncpg.UniqueViolationError("duplicate key")
        )

    def test_value_error_not_transient(self):
        assert not is_transient_store_error(ValueError("bad state"))


class TestStoreRetry:
    """Tests for with_store_retry."""

    @pytest.mark.asyncio
    async def test_successful_operation_no_retry(self):
        operation = AsyncMock(return_value="done")

        assert await with_store_retry(operation) == "done"
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_transient_error(self):
        operation = AsyncMock(side_effect=[ConnectionRefusedError(), "done"])

        config = RetryConfig(base_delay_seconds=0.01)
        result = await with_store_retry(operation, config)

        assert result == "done"
        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_non_transient_error(self):
        operation = AsyncMock(side_effect=ValueError("bad query"))

        with pytest.raises(ValueError, match="bad query"):
            await with_store_retry(operation)
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raises(self):
        operation = AsyncMock(side_effect=ConnectionRefusedError())

        config = RetryConfig(max_attempts=3, base_delay_seconds=0.01)
        with pytest.raises(ConnectionRefusedError):
            await with_store_retry(operation, config)
        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(self):
        operation = AsyncMock(side_effect=ConnectionRefusedError())
        config = RetryConfig(max_attempts=1, base_delay_seconds=0.01)

        # Threshold is 5 exhausted retry cycles
        for _ in range(5):
            with pytest.raises(ConnectionRefusedError):
                await with_store_retry(operation, config)

        assert get_circuit_status()["store"]["is_open"] is True

        calls = operation.call_count
        with pytest.raises(StoreUnavailableError):
            await with_store_retry(operation, config)
        assert operation.call_count == calls

    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        config = RetryConfig(max_attempts=1, base_delay_seconds=0.01)
        with pytest.raises(ConnectionRefusedError):
            await with_store_retry(
                AsyncMock(side_effect=ConnectionRefusedError()), config
            )
        assert get_circuit_status()["store"]["failures"] == 1

        await with_store_retry(AsyncMock(return_value=None), config)

        assert get_circuit_status()["store"]["failures"] == 0


class TestCircuitStatus:
    """Tests for circuit status reporting."""

    def test_initial_status_healthy(self):
        status = get_circuit_status()["store"]
        assert status["failures"] == 0
        assert status["is_open"] is False
        assert status["last_failure"] is None

    @pytest.mark.asyncio
    async def test_reset_clears_status(self):
        config = RetryConfig(max_attempts=1)
        with pytest.raises(ConnectionRefusedError):
            await with_store_retry(
                AsyncMock(side_effect=ConnectionRefusedError()), config
            )
        assert get_circuit_status()["store"]["last_failure"] is not None

        reset_circuits()

        assert get_circuit_status()["store"]["failures"] == 0
