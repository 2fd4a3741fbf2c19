"""
HTTP Transport

The raw wire layer under ``ResilientHTTPClient``: one call, one
response, no retries. Failures without a response are normalized to
``NetworkError`` / ``RequestTimeoutError``.
"""

from __future__ import annotations

import asyncio
import json as jsonlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiohttp

from matchtalk.core.exceptions import NetworkError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Raw HTTP response."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class HttpTransport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> TransportResponse: ...

    async def close(self) -> None: ...


class AiohttpTransport:
    """
    ``HttpTransport`` backed by an ``aiohttp.ClientSession``.

    The session is created lazily and closed by ``close()``.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_headers = {"Content-Type": "application/json", **(headers or {})}
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AiohttpTransport":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session exists."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self.default_headers,
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        session = await self._ensure_session()
        full_url = self.build_url(url)
        kwargs: Dict[str, Any] = {"json": json, "headers": headers}
        if timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        try:
            async with session.request(method.upper(), full_url, **kwargs) as response:
                text = await response.text()
                return TransportResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=_parse_body(text),
                    text=text,
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Request timed out: {method.upper()} {full_url}",
                details={"url": full_url, "method": method.upper()},
                cause=e,
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error: {method.upper()} {full_url}",
                details={"url": full_url, "method": method.upper()},
                cause=e,
            ) from e


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return jsonlib.loads(text)
    except ValueError:
        return text
