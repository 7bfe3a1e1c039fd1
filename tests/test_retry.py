"""
Tests for the retry policy.

Covers failure classification, retry budget exhaustion, per-attempt timeouts
and the single-try existence probe.
"""
from __future__ import annotations

import asyncio
import dataclasses

import httpx
import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError

from contentaddr_azure.errors import RetriesExhaustedError
from contentaddr_azure.retry import RetryPolicy

from .storage.fakes.fake_azure import azure_error, connection_error, glitch_404, server_busy


def http_status_error(status: int, code: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://127.0.0.1:10000/acct/c/b?sig=x")
    response = httpx.Response(status, headers={"x-ms-error-code": code}, request=request)
    return httpx.HTTPStatusError(f"{status}", request=request, response=response)


class Flaky:
    """Async action failing with the given errors before returning ``result``."""

    def __init__(self, *errors: BaseException, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestClassification:
    """Test which failures are considered transient."""

    @pytest.fixture
    def policy(self, settings):
        return RetryPolicy(settings)

    def test_server_errors_are_transient(self, policy):
        assert policy.is_transient(server_busy())
        assert policy.is_transient(azure_error(HttpResponseError, 500, "InternalError"))
        assert policy.is_transient(http_status_error(503, "ServerBusy"))

    def test_genuine_not_found_is_not_transient(self, policy):
        assert not policy.is_transient(azure_error(ResourceNotFoundError, 404, "BlobNotFound"))
        assert not policy.is_transient(azure_error(ResourceNotFoundError, 404, "ContainerNotFound"))
        assert not policy.is_transient(http_status_error(404, "BlobNotFound"))

    def test_unexpected_not_found_is_transient(self, policy):
        assert policy.is_transient(glitch_404())

    def test_client_errors_are_not_transient(self, policy):
        assert not policy.is_transient(azure_error(HttpResponseError, 400, "InvalidBlockList"))
        assert not policy.is_transient(azure_error(HttpResponseError, 409, "BlobAlreadyExists"))

    def test_authentication_failures_follow_setting(self, settings):
        error = azure_error(HttpResponseError, 403, "AuthenticationFailed")
        assert not RetryPolicy(settings).is_transient(error)
        assert RetryPolicy(dataclasses.replace(settings, retry_on_403=True)).is_transient(error)

    def test_other_403_is_never_transient(self, settings):
        error = azure_error(HttpResponseError, 403, "AuthorizationPermissionMismatch")
        assert not RetryPolicy(dataclasses.replace(settings, retry_on_403=True)).is_transient(error)

    def test_connection_failures_are_transient(self, policy):
        assert policy.is_transient(connection_error())
        assert policy.is_transient(httpx.ConnectError("connection refused"))
        assert policy.is_transient(asyncio.TimeoutError())
        assert policy.is_transient(httpx.ReadTimeout("timed out"))

    def test_dns_failures_follow_setting(self, settings):
        error = ServiceRequestError("[Errno -2] Name or service not known")
        assert not RetryPolicy(settings).is_transient(error)
        assert RetryPolicy(dataclasses.replace(settings, retry_on_no_such_address=True)).is_transient(error)

    def test_cancellation_and_exhaustion_are_not_transient(self, policy):
        assert not policy.is_transient(asyncio.CancelledError())
        assert not policy.is_transient(RetriesExhaustedError("gave up"))

    def test_unknown_errors_are_not_transient(self, policy):
        assert not policy.is_transient(ValueError("bad input"))


class TestRun:
    """Test the async retry loop."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, settings):
        seen = []
        policy = RetryPolicy(settings, on_retry=seen.append)
        action = Flaky(server_busy(), connection_error())

        assert await policy.run(action) == "ok"
        assert action.calls == 3
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_non_transient_failure_propagates_immediately(self, settings):
        action = Flaky(azure_error(ResourceNotFoundError, 404, "BlobNotFound"))

        with pytest.raises(ResourceNotFoundError):
            await RetryPolicy(settings).run(action)
        assert action.calls == 1

    @pytest.mark.asyncio
    async def test_budget_exhaustion(self, settings):
        policy = RetryPolicy(dataclasses.replace(settings, retry_max_total_s=0.1, retry_delay_s=0.02))

        async def always_busy():
            raise server_busy()

        with pytest.raises(RetriesExhaustedError, match="ServerBusy") as excinfo:
            await policy.run(always_busy)
        assert isinstance(excinfo.value, TimeoutError)
        assert isinstance(excinfo.value.__cause__, HttpResponseError)

    @pytest.mark.asyncio
    async def test_slow_attempt_is_abandoned_and_retried(self, settings):
        policy = RetryPolicy(dataclasses.replace(settings, retry_attempt_timeout_s=0.05))
        calls = []

        async def slow_then_fast():
            calls.append(None)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "done"

        assert await policy.run(slow_then_fast) == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_nested_policies_do_not_multiply(self, settings):
        policy = RetryPolicy(dataclasses.replace(settings, retry_max_total_s=0.05, retry_delay_s=0.01))
        outer_calls = []

        async def inner():
            outer_calls.append(None)

            async def always_busy():
                raise server_busy()

            return await policy.run(always_busy)

        with pytest.raises(RetriesExhaustedError):
            await policy.run(inner)
        assert len(outer_calls) == 1


class TestRunSync:
    """Test the synchronous retry loop used by buffered reads."""

    def test_retries_until_success(self, settings):
        errors = [http_status_error(503, "ServerBusy")]

        def action():
            if errors:
                raise errors.pop(0)
            return b"data"

        assert RetryPolicy(settings).run_sync(action) == b"data"

    def test_non_transient_failure_propagates(self, settings):
        def action():
            raise http_status_error(404, "BlobNotFound")

        with pytest.raises(httpx.HTTPStatusError):
            RetryPolicy(settings).run_sync(action)


class TestOrFalse:
    """Test the single-try existence probe."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_false(self, settings):
        seen = []
        action = Flaky(server_busy(), result=True)

        assert await RetryPolicy(settings, on_retry=seen.append).or_false(action) is False
        assert action.calls == 1
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_success_is_returned(self, settings):
        assert await RetryPolicy(settings).or_false(Flaky(result=True)) is True

    @pytest.mark.asyncio
    async def test_non_transient_failure_propagates(self, settings):
        with pytest.raises(HttpResponseError):
            await RetryPolicy(settings).or_false(Flaky(azure_error(HttpResponseError, 400, "InvalidInput")))
