"""
Resilient HTTP Client

Single facade for all REST calls made by the app. Provides request
deduplication, retry with exponential backoff, cancellation, auth
token attachment with single-flight refresh, and error normalization.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from matchtalk.adapters.auth import REFRESH_PATH, SessionController, TokenRefresher, call_logout
from matchtalk.adapters.interceptors import Interceptor, RequestContext
from matchtalk.adapters.transport import HttpTransport, TransportResponse
from matchtalk.core.error_tracking import (
    ErrorTracker,
    Severity,
    message_for_status,
    severity_for_status,
    should_report_status,
)
from matchtalk.core.exceptions import (
    AuthError,
    ClientError,
    HttpError,
    NetworkError,
    RateLimitError,
    RequestCancelledError,
    UnexpectedError,
    wrap_exception,
)
from matchtalk.core.resilience import DEFAULT_RETRY_POLICY, RetryPolicy, run_with_retry
from matchtalk.core.storage import TokenStore
from matchtalk.core.structured_logging import generate_request_id

logger = logging.getLogger(__name__)


def request_key(method: str, url: str, body: Any = None) -> str:
    """
    Dedup key for a request: ``METHOD:url:<canonical json body>``.
    """
    serialized = (
        ""
        if body is None
        else json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    )
    return f"{method.upper()}:{url}:{serialized}"


def unwrap_envelope(response: TransportResponse) -> Any:
    """
    Unwrap a ``{success, data?, error?}`` response body.

    Raises:
        UnexpectedError: ``success`` is false or the body is not an object
    """
    body = response.body
    if body is None and response.status == 204:
        return None
    if not isinstance(body, dict):
        raise UnexpectedError(
            "Malformed response body",
            details={"status": response.status, "body": response.text[:200]},
        )
    if "success" not in body:
        return body
    if body.get("success"):
        return body.get("data")
    raise UnexpectedError(
        str(body.get("error") or body.get("message") or "Request failed"),
        details={"status": response.status, "body": body},
    )


def http_error_from_response(response: TransportResponse) -> HttpError:
    """Build the typed error for a non-2xx response."""
    body = response.body
    message = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
    message = str(message) if message else message_for_status(response.status)

    if response.status == 429:
        retry_after = None
        raw = response.headers.get("Retry-After") or response.headers.get("retry-after")
        if raw is not None:
            try:
                retry_after = int(raw)
            except ValueError:
                retry_after = None
        return RateLimitError(message, retry_after=retry_after, response_body=body)

    return HttpError(message, status=response.status, response_body=body)


@dataclass
class CancelHandle:
    """Records whether an in-flight request was cancelled through the client."""

    key: str
    task: asyncio.Task
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        self.task.cancel()


@dataclass
class HealthResult:
    healthy: bool
    latency_ms: float
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ClientStats:
    requests: int = 0
    deduplicated: int = 0
    retries: int = 0
    cancelled: int = 0
    refreshes: int = 0
    failures: int = 0
    last_error: Optional[str] = field(default=None)


class ResilientHTTPClient:
    """
    HTTP client with built-in resilience patterns.

    Features:
    - Deduplication of identical in-flight requests
    - Automatic retries with exponential backoff
    - Cancellation by request key
    - Bearer token attachment and single-flight refresh on 401
    - Typed error normalization and crash reporting policy

    Example:
        client = ResilientHTTPClient(AiohttpTransport(base_url), token_store=tokens)

        async with client:
            rooms = await client.get("/rooms")
    """

    def __init__(
        self,
        transport: HttpTransport,
        *,
        token_store: TokenStore,
        refresher: Optional[TokenRefresher] = None,
        session: Optional[SessionController] = None,
        tracker: Optional[ErrorTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        interceptors: Optional[List[Interceptor]] = None,
        timeout: float = 10.0,
        health_path: str = "/health",
        health_timeout: float = 5.0,
        refresh_path: str = REFRESH_PATH,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize resilient client.

        Args:
            transport: Raw HTTP transport
            token_store: Auth token accessor
            refresher: Token refresher used on 401
            session: Session controller, logged out when refresh fails
            tracker: Crash reporting facade
            retry_policy: Default retry policy for all requests
            interceptors: Ordered interceptor chain
            timeout: Default per-request timeout (seconds)
            health_path: Health endpoint path
            health_timeout: Health check timeout (seconds)
            refresh_path: Token refresh endpoint path
            sleep: Awaitable sleep used between retries
        """
        self.transport = transport
        self.tokens = token_store
        self.refresher = refresher
        self.session = session
        self.tracker = tracker or ErrorTracker()
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.interceptors: List[Interceptor] = list(interceptors or [])
        self.timeout = timeout
        self.health_path = health_path
        self.health_timeout = health_timeout
        self.refresh_path = refresh_path
        self._sleep = sleep

        self._pending: Dict[str, asyncio.Task] = {}
        self._cancel_handles: Dict[str, CancelHandle] = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self._stats = ClientStats()

    async def __aenter__(self) -> "ResilientHTTPClient":
        """Enter async context."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        await self.close()

    async def close(self) -> None:
        """Cancel in-flight work and close the transport."""
        self.cancel_all()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        await self.transport.close()

    def add_interceptor(self, interceptor: Interceptor) -> None:
        self.interceptors.append(interceptor)

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    async def get_token(self) -> Optional[str]:
        return await self.tokens.get_token()

    async def set_token(self, token: str) -> None:
        await self.tokens.set_token(token)

    async def clear_token(self) -> None:
        await self.tokens.clear_token()

    # ------------------------------------------------------------------
    # Public request API
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Make HTTP request with resilience patterns.

        Identical requests (same method, URL and body) issued while one is
        in flight share its outcome and make no extra transport call.

        Args:
            method: HTTP method
            url: Path relative to the transport base URL, or absolute URL
            body: JSON body
            headers: Additional headers
            timeout: Override default timeout
            retry_policy: Override default retry policy

        Returns:
            The ``data`` of the response envelope

        Raises:
            NetworkError: No response received
            HttpError: Server responded with a failure status
            AuthError: Token refresh failed
            RequestCancelledError: Cancelled through ``cancel_request``
            UnexpectedError: Malformed or ``success: false`` body
        """
        method = method.upper()
        key = request_key(method, url, body)

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._execute(method, url, body, headers, timeout, retry_policy)
            )
            handle = CancelHandle(key, task)
            self._pending[key] = task
            self._cancel_handles[key] = handle
            task.add_done_callback(lambda t, k=key: self._settle(k, t))
            self._stats.requests += 1
        else:
            handle = self._cancel_handles[key]
            self._stats.deduplicated += 1
            logger.debug(f"[HTTP] Joined in-flight request {key}")

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if handle.cancelled:
                raise RequestCancelledError(
                    f"Request cancelled: {method} {url}",
                    details={"key": key},
                ) from None
            raise

    async def get(self, url: str, **kwargs) -> Any:
        """Make GET request."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, body: Any = None, **kwargs) -> Any:
        """Make POST request."""
        return await self.request("POST", url, body, **kwargs)

    async def put(self, url: str, body: Any = None, **kwargs) -> Any:
        """Make PUT request."""
        return await self.request("PUT", url, body, **kwargs)

    async def patch(self, url: str, body: Any = None, **kwargs) -> Any:
        """Make PATCH request."""
        return await self.request("PATCH", url, body, **kwargs)

    async def delete(self, url: str, **kwargs) -> Any:
        """Make DELETE request."""
        return await self.request("DELETE", url, **kwargs)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_request(self, key: str) -> bool:
        """
        Cancel the in-flight request with this dedup key.

        Returns:
            True if a request was cancelled; False for unknown or settled keys
        """
        handle = self._cancel_handles.pop(key, None)
        self._pending.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        self._stats.cancelled += 1
        logger.info(f"[HTTP] Cancelled request {key}")
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight request. Returns how many were cancelled."""
        return sum(1 for key in list(self._cancel_handles) if self.cancel_request(key))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
            self._cancel_handles.pop(key, None)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        timeout: Optional[float],
        retry_policy: Optional[RetryPolicy],
    ) -> Any:
        request_id = generate_request_id()
        policy = retry_policy or self.retry_policy

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._stats.retries += 1

        try:
            return await run_with_retry(
                lambda: self._dispatch(method, url, body, headers, timeout, request_id),
                policy,
                sleep=self._sleep,
                on_retry=on_retry,
                name=f"{method} {url}",
            )
        except ClientError as e:
            self._stats.failures += 1
            self._stats.last_error = str(e)
            self._report(e, method, url, request_id)
            raise
        except Exception as e:
            self._stats.failures += 1
            error = wrap_exception(e, UnexpectedError)
            self._stats.last_error = str(error)
            self._report(error, method, url, request_id)
            raise error from e

    def _report(self, error: ClientError, method: str, url: str, request_id: str) -> None:
        """Apply the crash reporting policy to a final request error."""
        context = {
            "component": "ApiClient",
            "action": "api_request",
            "method": method,
            "url": url,
            "requestId": request_id,
        }
        if isinstance(error, HttpError):
            if error.status == 404:
                logger.debug(f"[HTTP] {method} {url} -> 404")
                return
            if not should_report_status(error.status):
                logger.info(f"[HTTP] {method} {url} -> {error.status}")
                return
            context["status"] = error.status
            self.tracker.capture_exception(error, context, severity_for_status(error.status))
        elif isinstance(error, NetworkError):
            logger.warning(f"[HTTP] {method} {url} failed: {error}")
            self.tracker.capture_exception(error, context, Severity.MEDIUM)
        else:
            logger.error(f"[HTTP] {method} {url} unexpected error: {error}")
            self.tracker.capture_exception(error, context, Severity.HIGH)

    async def _dispatch(
        self,
        method: str,
        url: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        timeout: Optional[float],
        request_id: str,
        *,
        replay: bool = False,
    ) -> Any:
        """One transport call, including 401 refresh-and-replay."""
        token = await self.tokens.get_token()
        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"

        ctx = RequestContext(method=method, url=url, request_id=request_id)
        self._run_hooks("on_request", ctx)

        try:
            response = await self.transport.send(
                method,
                url,
                json=body,
                headers=request_headers,
                timeout=timeout or self.timeout,
            )
        except NetworkError as e:
            self._run_hooks("on_network_error", ctx, e)
            raise

        if response.ok:
            self._run_hooks("on_response", ctx, response)
            return unwrap_envelope(response)

        error = http_error_from_response(response)
        self._run_hooks("on_error", ctx, error)

        if response.status == 401 and not replay:
            await self._handle_unauthorized(url, token, error)
            return await self._dispatch(
                method, url, body, headers, timeout, request_id, replay=True
            )
        raise error

    async def _handle_unauthorized(
        self, url: str, used_token: Optional[str], error: HttpError
    ) -> None:
        """
        Resolve a 401. Returns when the request should be replayed,
        raises otherwise.
        """
        if self.refresh_path in url:
            logger.warning("[HTTP] Refresh endpoint returned 401, logging out")
            await self.tokens.clear_token()
            await call_logout(self.session)
            raise error

        current = await self.tokens.get_token()
        if current and current != used_token:
            # Token changed since this request was sent; replay with it
            return

        if not current or self.refresher is None:
            await self.tokens.clear_token()
            raise error

        await self._refresh_single_flight(current)

    async def _refresh_single_flight(self, token: str) -> str:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh(token))
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self, token: str) -> str:
        self._stats.refreshes += 1
        logger.info("[HTTP] Refreshing auth token")
        try:
            new_token = await self.refresher.refresh_token(token)
        except Exception as e:
            logger.warning(f"[HTTP] Token refresh failed: {e}")
            await self.tokens.clear_token()
            await call_logout(self.session)
            raise AuthError("Session expired. Please sign in again.", cause=e) from e
        await self.tokens.set_token(new_token)
        return new_token

    def _run_hooks(self, hook: str, *args) -> None:
        for interceptor in self.interceptors:
            try:
                getattr(interceptor, hook)(*args)
            except Exception as e:
                logger.warning(
                    f"[HTTP] Interceptor {type(interceptor).__name__}.{hook} failed: {e}"
                )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> HealthResult:
        """Probe the health endpoint, bypassing dedup, retry, auth and interceptors."""
        start = time.perf_counter()
        try:
            response = await self.transport.send(
                "GET", self.health_path, timeout=self.health_timeout
            )
        except ClientError as e:
            latency = (time.perf_counter() - start) * 1000
            logger.debug(f"[HTTP] Health check failed: {e}")
            return HealthResult(healthy=False, latency_ms=latency, error=e.message)

        latency = (time.perf_counter() - start) * 1000
        return HealthResult(healthy=response.ok, latency_ms=latency, status=response.status)

    async def health_check(self) -> bool:
        return (await self.check_health()).healthy

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        return {
            "requests": self._stats.requests,
            "deduplicated": self._stats.deduplicated,
            "retries": self._stats.retries,
            "cancelled": self._stats.cancelled,
            "refreshes": self._stats.refreshes,
            "failures": self._stats.failures,
            "pending": self.pending_count,
            "last_error": self._stats.last_error,
        }
