"""
Tests for resilient HTTP client.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from matchtalk.adapters.auth import AuthApi, CallbackSessionController
from matchtalk.adapters.interceptors import Interceptor
from matchtalk.adapters.resilient_client import (
    ResilientHTTPClient,
    http_error_from_response,
    request_key,
    unwrap_envelope,
)
from matchtalk.adapters.transport import TransportResponse
from matchtalk.core.error_tracking import Severity
from matchtalk.core.exceptions import (
    AuthError,
    HttpError,
    NetworkError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
    UnexpectedError,
)
from matchtalk.core.resilience import NO_RETRY_POLICY


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def session():
    return CallbackSessionController()


@pytest.fixture
def client(http_transport, tokens, tracker, session, sleep):
    """Create test client."""
    return ResilientHTTPClient(
        http_transport,
        token_store=tokens,
        refresher=AuthApi(http_transport),
        session=session,
        tracker=tracker,
        sleep=sleep,
    )


class TestHelpers:
    """Tests for key and envelope helpers."""

    def test_request_key_canonical_body(self):
        assert request_key("get", "/rooms") == "GET:/rooms:"
        assert request_key("POST", "/rooms", {"b": 1, "a": 2}) == request_key(
            "POST", "/rooms", {"a": 2, "b": 1}
        )
        assert request_key("POST", "/rooms", {"a": 1}) != request_key("POST", "/rooms", {"a": 2})

    def test_unwrap_envelope(self, responses):
        assert unwrap_envelope(responses.ok({"id": 1})) == {"id": 1}
        assert unwrap_envelope(TransportResponse(200, body={"id": 1})) == {"id": 1}
        assert unwrap_envelope(TransportResponse(204)) is None

    def test_unwrap_envelope_failure(self):
        with pytest.raises(UnexpectedError, match="nope"):
            unwrap_envelope(TransportResponse(200, body={"success": False, "error": "nope"}))
        with pytest.raises(UnexpectedError):
            unwrap_envelope(TransportResponse(200, body="<html>", text="<html>"))

    def test_http_error_from_response(self, responses):
        error = http_error_from_response(responses.fail(400, "Bad room id"))
        assert type(error) is HttpError
        assert error.status == 400
        assert error.message == "Bad room id"

        limited = http_error_from_response(responses.fail(429, headers={"Retry-After": "30"}))
        assert isinstance(limited, RateLimitError)
        assert limited.retry_after == 30


class TestRequests:
    """Tests for basic request flow."""

    @pytest.mark.asyncio
    async def test_successful_request(self, client, http_transport, responses):
        """Test successful GET request."""
        http_transport.queue(responses.ok({"rooms": []}))

        async with client:
            result = await client.get("/rooms")

        assert result == {"rooms": []}
        assert http_transport.calls[0]["method"] == "GET"
        assert http_transport.calls[0]["timeout"] == 10.0
        assert http_transport.closed

    @pytest.mark.asyncio
    async def test_bearer_token_attached(self, client, http_transport, tokens):
        await tokens.set_token("abc")

        await client.post("/rooms", {"name": "r1"}, headers={"X-Trace": "1"})

        call = http_transport.calls[0]
        assert call["headers"]["Authorization"] == "Bearer abc"
        assert call["headers"]["X-Trace"] == "1"
        assert call["json"] == {"name": "r1"}

    @pytest.mark.asyncio
    async def test_no_token_no_header(self, client, http_transport):
        await client.delete("/rooms/1", timeout=2)

        assert "Authorization" not in http_transport.calls[0]["headers"]
        assert http_transport.calls[0]["timeout"] == 2

    @pytest.mark.asyncio
    async def test_put_and_patch(self, client, http_transport):
        await client.put("/profile", {"a": 1})
        await client.patch("/profile", {"b": 2})

        assert [c["method"] for c in http_transport.calls] == ["PUT", "PATCH"]

    @pytest.mark.asyncio
    async def test_success_false_raises_unexpected(self, client, http_transport, reporter):
        http_transport.queue(TransportResponse(200, body={"success": False, "error": "bad state"}))

        with pytest.raises(UnexpectedError, match="bad state"):
            await client.get("/rooms")

        assert reporter.capture_exception.call_args.args[2] == Severity.HIGH


class TestDeduplication:
    """Tests for in-flight request deduplication."""

    @pytest.mark.asyncio
    async def test_identical_requests_share_one_call(self, client, http_transport, responses):
        http_transport.gate = asyncio.Event()
        http_transport.queue(responses.ok({"id": 1}))

        calls = [asyncio.ensure_future(client.get("/rooms/1")) for _ in range(5)]
        await asyncio.sleep(0)
        assert client.pending_count == 1

        http_transport.gate.set()
        results = await asyncio.gather(*calls)

        assert results == [{"id": 1}] * 5
        assert len(http_transport.calls) == 1
        assert client.pending_count == 0
        assert client.get_stats()["deduplicated"] == 4

    @pytest.mark.asyncio
    async def test_different_bodies_not_deduplicated(self, client, http_transport):
        await asyncio.gather(client.post("/rooms", {"a": 1}), client.post("/rooms", {"a": 2}))
        assert len(http_transport.calls) == 2

    @pytest.mark.asyncio
    async def test_shared_failure(self, client, http_transport, responses):
        http_transport.gate = asyncio.Event()
        http_transport.queue(responses.fail(400, "bad"))

        calls = [
            asyncio.ensure_future(client.get("/rooms", retry_policy=NO_RETRY_POLICY))
            for _ in range(3)
        ]
        await asyncio.sleep(0)
        http_transport.gate.set()
        results = await asyncio.gather(*calls, return_exceptions=True)

        assert all(isinstance(r, HttpError) and r.status == 400 for r in results)
        assert len(http_transport.calls) == 1

    @pytest.mark.asyncio
    async def test_new_request_after_settle(self, client, http_transport):
        await client.get("/rooms")
        await client.get("/rooms")
        assert len(http_transport.calls) == 2


class TestRetry:
    """Tests for retry behavior."""

    @pytest.mark.asyncio
    async def test_retry_on_500(self, client, http_transport, responses, sleep):
        """Test retry on 500 status code."""
        http_transport.queue(responses.fail(500), responses.fail(503), responses.ok("done"))

        assert await client.get("/rooms") == "done"
        assert len(http_transport.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert client.get_stats()["retries"] == 2

    @pytest.mark.asyncio
    async def test_persistent_500_exhausts_budget(self, client, http_transport, responses, sleep, reporter):
        http_transport.default = responses.fail(500)

        with pytest.raises(HttpError) as exc_info:
            await client.get("/rooms")

        assert exc_info.value.status == 500
        assert len(http_transport.calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        reporter.capture_exception.assert_called_once()
        assert reporter.capture_exception.call_args.args[2] == Severity.HIGH

    @pytest.mark.asyncio
    async def test_network_error_retried(self, client, http_transport, responses):
        http_transport.queue(RequestTimeoutError("slow"), NetworkError("down"), responses.ok(1))
        assert await client.get("/rooms") == 1

    @pytest.mark.asyncio
    async def test_persistent_network_error(self, client, http_transport, reporter):
        http_transport.default = NetworkError("down")

        with pytest.raises(NetworkError):
            await client.get("/rooms")

        assert len(http_transport.calls) == 4
        assert reporter.capture_exception.call_args.args[2] == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_rate_limit_not_retried(self, client, http_transport, responses, sleep, reporter):
        http_transport.queue(responses.fail(429, headers={"Retry-After": "10"}))

        with pytest.raises(RateLimitError) as exc_info:
            await client.get("/rooms")

        assert exc_info.value.retry_after == 10
        assert len(http_transport.calls) == 1
        assert sleep.delays == []
        reporter.capture_exception.assert_not_called()

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self, client, http_transport, responses, reporter):
        http_transport.queue(responses.fail(403, "forbidden"))

        with pytest.raises(HttpError):
            await client.get("/rooms")

        assert len(http_transport.calls) == 1
        assert reporter.capture_exception.call_args.args[2] == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_404_not_reported(self, client, http_transport, responses, reporter):
        http_transport.queue(responses.fail(404))

        with pytest.raises(HttpError):
            await client.get("/rooms/missing")

        reporter.capture_exception.assert_not_called()


class TestCancellation:
    """Tests for request cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, client, http_transport):
        http_transport.gate = asyncio.Event()
        waiters = [asyncio.ensure_future(client.get("/rooms")) for _ in range(2)]
        await asyncio.sleep(0)

        key = request_key("GET", "/rooms")
        assert client.pending_keys() == [key]
        assert client.cancel_request(key) is True
        assert client.cancel_request(key) is False

        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, RequestCancelledError) for r in results)
        assert client.pending_count == 0
        assert client.get_stats()["cancelled"] == 1

    def test_cancel_unknown_key(self, client):
        assert client.cancel_request("GET:/nothing:") is False

    @pytest.mark.asyncio
    async def test_cancel_all(self, client, http_transport):
        http_transport.gate = asyncio.Event()
        waiters = [
            asyncio.ensure_future(client.get("/a")),
            asyncio.ensure_future(client.get("/b")),
        ]
        await asyncio.sleep(0)

        assert client.cancel_all() == 2
        results = await asyncio.gather(*waiters, return_exceptions=True)
        assert all(isinstance(r, RequestCancelledError) for r in results)

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, client, http_transport):
        http_transport.gate = asyncio.Event()
        waiter = asyncio.ensure_future(client.get("/rooms"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        # The shared request keeps running for other callers
        shared = client._pending[request_key("GET", "/rooms")]
        http_transport.gate.set()
        assert await shared is None
        assert client.pending_count == 0


class TestTokenRefresh:
    """Tests for 401 handling."""

    @pytest.mark.asyncio
    async def test_refresh_and_replay(self, client, http_transport, tokens, responses):
        await tokens.set_token("old")
        http_transport.route("/rooms", responses.fail(401), responses.ok("ok"))
        http_transport.route("/auth/refresh", TransportResponse(200, body={"token": "new"}))

        assert await client.get("/rooms") == "ok"

        room_calls = http_transport.calls_to("/rooms")
        assert room_calls[0]["headers"]["Authorization"] == "Bearer old"
        assert room_calls[1]["headers"]["Authorization"] == "Bearer new"
        assert await tokens.get_token() == "new"
        assert client.get_stats()["refreshes"] == 1

    @pytest.mark.asyncio
    async def test_single_flight_refresh(self, http_transport, tokens, responses, sleep):
        refresher = MagicMock()
        refresher.refresh_token = AsyncMock(return_value="new")
        client = ResilientHTTPClient(http_transport, token_store=tokens, refresher=refresher, sleep=sleep)
        await tokens.set_token("old")
        for path in ("/a", "/b", "/c"):
            http_transport.route(path, responses.fail(401), responses.ok(path))

        results = await asyncio.gather(client.get("/a"), client.get("/b"), client.get("/c"))

        assert results == ["/a", "/b", "/c"]
        refresher.refresh_token.assert_awaited_once_with("old")

    @pytest.mark.asyncio
    async def test_refresh_failure_logs_out(self, http_transport, tokens, responses, session, sleep):
        refresher = MagicMock()
        refresher.refresh_token = AsyncMock(side_effect=RuntimeError("refresh down"))
        client = ResilientHTTPClient(
            http_transport, token_store=tokens, refresher=refresher, session=session, sleep=sleep
        )
        await tokens.set_token("old")
        http_transport.default = responses.fail(401)

        results = await asyncio.gather(client.get("/a"), client.get("/b"), return_exceptions=True)

        assert all(isinstance(r, AuthError) for r in results)
        assert await tokens.get_token() is None
        assert session.logout_count == 1
        refresher.refresh_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_endpoint_rejects(self, client, http_transport, tokens, responses, session):
        await tokens.set_token("old")
        http_transport.route("/rooms", responses.fail(401))
        http_transport.route("/auth/refresh", responses.fail(401))

        with pytest.raises(AuthError):
            await client.get("/rooms")

        assert await tokens.get_token() is None
        assert session.logout_count == 1

    @pytest.mark.asyncio
    async def test_401_on_refresh_path_logs_out(self, client, http_transport, tokens, responses, session):
        await tokens.set_token("old")
        http_transport.route("/auth/refresh", responses.fail(401))

        with pytest.raises(HttpError) as exc_info:
            await client.post("/auth/refresh", {"token": "old"})

        assert exc_info.value.status == 401
        assert len(http_transport.calls) == 1
        assert await tokens.get_token() is None
        assert session.logout_count == 1

    @pytest.mark.asyncio
    async def test_no_token_raises_401(self, client, http_transport, responses, session, reporter):
        http_transport.route("/rooms", responses.fail(401))

        with pytest.raises(HttpError) as exc_info:
            await client.get("/rooms")

        assert type(exc_info.value) is HttpError
        assert exc_info.value.status == 401
        assert len(http_transport.calls) == 1
        assert session.logout_count == 0
        reporter.capture_exception.assert_not_called()

    @pytest.mark.asyncio
    async def test_replay_with_newer_token(self, http_transport, tokens, responses, sleep):
        refresher = MagicMock()
        refresher.refresh_token = AsyncMock(return_value="unused")
        client = ResilientHTTPClient(http_transport, token_store=tokens, refresher=refresher, sleep=sleep)
        await tokens.set_token("old")
        http_transport.route("/rooms", responses.fail(401), responses.ok("ok"))
        http_transport.gate = asyncio.Event()

        waiter = asyncio.ensure_future(client.get("/rooms"))
        while not http_transport.calls:
            await asyncio.sleep(0)
        await tokens.set_token("newer")
        http_transport.gate.set()

        assert await waiter == "ok"
        assert http_transport.calls[1]["headers"]["Authorization"] == "Bearer newer"
        refresher.refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replay_401_not_refreshed_again(self, client, http_transport, tokens, responses):
        await tokens.set_token("old")
        http_transport.route("/rooms", responses.fail(401), responses.fail(401))
        http_transport.route("/auth/refresh", TransportResponse(200, body={"token": "new"}))

        with pytest.raises(HttpError) as exc_info:
            await client.get("/rooms")

        assert exc_info.value.status == 401
        assert len(http_transport.calls_to("/auth/refresh")) == 1
        assert len(http_transport.calls_to("/rooms")) == 2


class TestInterceptors:
    """Tests for interceptor hooks."""

    @pytest.mark.asyncio
    async def test_hooks_called(self, client, http_transport, responses):
        interceptor = MagicMock(spec=Interceptor)
        client.add_interceptor(interceptor)
        http_transport.queue(responses.fail(400), NetworkError("down"))

        with pytest.raises(HttpError):
            await client.get("/a")
        with pytest.raises(NetworkError):
            await client.get("/b", retry_policy=NO_RETRY_POLICY)

        assert interceptor.on_request.call_count == 2
        assert interceptor.on_error.call_count == 1
        assert interceptor.on_network_error.call_count == 1
        ctx = interceptor.on_request.call_args_list[0].args[0]
        assert ctx.method == "GET"
        assert len(ctx.request_id) == 12

    @pytest.mark.asyncio
    async def test_failing_hook_ignored(self, client, http_transport, responses):
        interceptor = MagicMock(spec=Interceptor)
        interceptor.on_response.side_effect = RuntimeError("hook bug")
        client.add_interceptor(interceptor)
        http_transport.queue(responses.ok(1))

        assert await client.get("/a") == 1


class TestHealthCheck:
    """Tests for health check."""

    @pytest.mark.asyncio
    async def test_healthy(self, client, http_transport, tokens):
        await tokens.set_token("abc")
        http_transport.queue(TransportResponse(200, body={"status": "ok"}))

        result = await client.check_health()

        assert result.healthy is True
        assert result.status == 200
        assert result.latency_ms >= 0
        call = http_transport.calls[0]
        assert call["url"] == "/health"
        assert call["timeout"] == 5.0
        assert "Authorization" not in call["headers"]

    @pytest.mark.asyncio
    async def test_unhealthy_status(self, client, http_transport, responses):
        http_transport.queue(responses.fail(503))
        result = await client.check_health()
        assert result.healthy is False
        assert result.status == 503

    @pytest.mark.asyncio
    async def test_unreachable(self, client, http_transport):
        http_transport.queue(RequestTimeoutError("slow"))

        assert await client.health_check() is False
        assert len(http_transport.calls) == 1
