"""
Tests for the proxy retry policy.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from conversebridge.retry import MAX_RETRIES, RetryPolicy, error_status


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def sdk_status_error(status_code):
    request = httpx.Request("POST", "http://proxy.test/chat/completions")
    response = httpx.Response(status_code, request=request)
    return openai.APIStatusError("proxy error", response=response, body=None)


class TestErrorStatus:
    def test_status_code_attribute(self):
        assert error_status(StatusError(429)) == 429

    def test_response_status(self):
        error = Exception("boom")
        error.response = MagicMock(status_code=503)
        assert error_status(error) == 503

    def test_sdk_error(self):
        assert error_status(sdk_status_error(500)) == 500

    def test_no_status(self):
        assert error_status(ValueError("bad")) is None


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == MAX_RETRIES == 5
        assert policy.delay == 1.0
        assert policy.transient_statuses == {429, 500, 503}

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        call = AsyncMock(return_value="ok")
        assert await RetryPolicy(delay=0).run(call) == "ok"
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        call = AsyncMock(side_effect=[StatusError(429), StatusError(503), "ok"])
        assert await RetryPolicy(delay=0).run(call, model="m") == "ok"
        assert call.await_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_attempts_bounded(self, status):
        call = AsyncMock(side_effect=sdk_status_error(status))
        with pytest.raises(openai.APIStatusError):
            await RetryPolicy(delay=0).run(call)
        assert call.await_count == MAX_RETRIES + 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 502])
    async def test_non_transient_not_retried(self, status):
        call = AsyncMock(side_effect=StatusError(status))
        with pytest.raises(StatusError):
            await RetryPolicy(delay=0).run(call)
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_error_without_status_not_retried(self):
        call = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(ConnectionError):
            await RetryPolicy(delay=0).run(call)
        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_custom_bound(self):
        call = AsyncMock(side_effect=StatusError(500))
        with pytest.raises(StatusError):
            await RetryPolicy(max_retries=2, delay=0).run(call)
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_retry_is_logged(self, caplog):
        call = AsyncMock(side_effect=[StatusError(429), "ok"])
        with caplog.at_level("WARNING", logger="conversebridge.retry"):
            await RetryPolicy(delay=0).run(call, model="claude-sonnet")
        assert "claude-sonnet" in caplog.text
        assert "attempt 1 of 5" in caplog.text
