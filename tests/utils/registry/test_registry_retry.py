"""
Tests for registry retry logic.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from instancer.utils.registry.retry import (
    RegistryRetryConfig,
    retry_registry_call,
    should_retry_exception,
)


def _response_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(Mock(), (), status=status, message="error")


class TestShouldRetryException:
    """Tests for should_retry_exception function."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retry_on_transient_status(self, status: int) -> None:
        """Rate limiting and server errors are retryable."""
        assert should_retry_exception(_response_error(status), RegistryRetryConfig()) is True

    @pytest.mark.parametrize("status", [400, 403, 404])
    def test_no_retry_on_client_errors(self, status: int) -> None:
        """Client errors won't be fixed by retrying."""
        assert should_retry_exception(_response_error(status), RegistryRetryConfig()) is False

    def test_timeout_respects_config(self) -> None:
        assert should_retry_exception(asyncio.TimeoutError(), RegistryRetryConfig()) is True
        assert (
            should_retry_exception(
                asyncio.TimeoutError(), RegistryRetryConfig(retry_on_timeout=False)
            )
            is False
        )

    def test_connection_error_respects_config(self) -> None:
        exc = aiohttp.ClientConnectionError("reset")
        assert should_retry_exception(exc, RegistryRetryConfig()) is True
        assert (
            should_retry_exception(
                exc, RegistryRetryConfig(retry_on_connection_error=False)
            )
            is False
        )

    def test_no_retry_on_other_errors(self) -> None:
        assert should_retry_exception(ValueError("bad json"), RegistryRetryConfig()) is False


class TestRetryRegistryCall:
    """Tests for the retry_registry_call decorator."""

    def test_success_first_try(self) -> None:
        func = AsyncMock(return_value=b"ok")
        func.__name__ = "fetch"
        wrapped = retry_registry_call(RegistryRetryConfig())(func)

        assert asyncio.run(wrapped("url")) == b"ok"
        func.assert_awaited_once_with("url")

    def test_retries_then_succeeds_with_backoff(self) -> None:
        func = AsyncMock(side_effect=[_response_error(503), _response_error(429), b"ok"])
        func.__name__ = "fetch"
        wrapped = retry_registry_call(RegistryRetryConfig(backoff_factor=0.5))(func)

        with patch(
            "instancer.utils.registry.retry.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            assert asyncio.run(wrapped()) == b"ok"

        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    def test_gives_up_after_max_retries(self) -> None:
        func = AsyncMock(side_effect=_response_error(503))
        func.__name__ = "fetch"
        wrapped = retry_registry_call(RegistryRetryConfig(max_retries=2))(func)

        with patch("instancer.utils.registry.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(aiohttp.ClientResponseError):
                asyncio.run(wrapped())

        assert func.await_count == 3

    def test_non_retryable_error_raises_immediately(self) -> None:
        func = AsyncMock(side_effect=_response_error(404))
        func.__name__ = "fetch"
        wrapped = retry_registry_call(RegistryRetryConfig())(func)

        with pytest.raises(aiohttp.ClientResponseError):
            asyncio.run(wrapped())

        func.assert_awaited_once()
