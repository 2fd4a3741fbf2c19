"""
Auth collaborators for the HTTP client.

``AuthApi`` refreshes tokens over the raw ``HttpTransport`` so that it
never goes back through ``ResilientHTTPClient`` (which calls it on 401).
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from matchtalk.adapters.transport import HttpTransport
from matchtalk.core.exceptions import AuthError, UnexpectedError

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


@runtime_checkable
class TokenRefresher(Protocol):
    async def refresh_token(self, token: str) -> str: ...


@runtime_checkable
class SessionController(Protocol):
    def logout(self) -> Union[None, Awaitable[None]]: ...


class CallbackSessionController:
    """Session controller that forwards ``logout()`` to a host callback."""

    def __init__(self, on_logout: Optional[Callable[[], Any]] = None):
        self._on_logout = on_logout
        self.logout_count = 0

    async def logout(self) -> None:
        self.logout_count += 1
        logger.info("[Auth] Session invalidated, logging out")
        if self._on_logout is None:
            return
        result = self._on_logout()
        if inspect.isawaitable(result):
            await result


async def call_logout(session: Optional[SessionController]) -> None:
    """Invoke ``session.logout()``, awaiting it when it is a coroutine."""
    if session is None:
        return
    try:
        result = session.logout()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"[Auth] Logout callback failed: {e}")


class AuthApi:
    """
    ``TokenRefresher`` that posts ``{"token": <old>}`` to the refresh endpoint.

    Accepts both ``{"success": true, "data": {"token": ...}}`` and a bare
    ``{"token": ...}`` response body.
    """

    def __init__(self, transport: HttpTransport, *, refresh_path: str = REFRESH_PATH, timeout: Optional[float] = None):
        self._transport = transport
        self.refresh_path = refresh_path
        self.timeout = timeout

    async def refresh_token(self, token: str) -> str:
        response = await self._transport.send(
            "POST",
            self.refresh_path,
            json={"token": token},
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.timeout,
        )
        if not response.ok:
            raise AuthError(
                f"Token refresh failed with status {response.status}",
                status=response.status,
                response_body=response.body,
            )

        body = response.body
        if isinstance(body, dict) and "success" in body:
            if not body.get("success"):
                raise AuthError(
                    str(body.get("error") or "Token refresh rejected"),
                    response_body=body,
                )
            body = body.get("data")

        new_token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(new_token, str) or not new_token:
            raise UnexpectedError(
                "Token refresh response did not contain a token",
                details={"body": body},
            )
        return new_token
