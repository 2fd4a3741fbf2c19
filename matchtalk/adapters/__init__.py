# Adapters library
from matchtalk.adapters.auth import AuthApi, CallbackSessionController, SessionController, TokenRefresher
from matchtalk.adapters.interceptors import Interceptor, RequestContext, TelemetryInterceptor
from matchtalk.adapters.resilient_client import (
    CancelHandle,
    HealthResult,
    ResilientHTTPClient,
    request_key,
    unwrap_envelope,
)
from matchtalk.adapters.transport import AiohttpTransport, HttpTransport, TransportResponse

__all__ = [
    "AiohttpTransport",
    "AuthApi",
    "CallbackSessionController",
    "CancelHandle",
    "HealthResult",
    "HttpTransport",
    "Interceptor",
    "RequestContext",
    "ResilientHTTPClient",
    "SessionController",
    "TelemetryInterceptor",
    "TokenRefresher",
    "TransportResponse",
    "request_key",
    "unwrap_envelope",
]
