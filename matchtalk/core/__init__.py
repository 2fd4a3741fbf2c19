# Core library
from matchtalk.core.config import (
    AnalyticsSettings,
    ApiSettings,
    ClientConfig,
    LoggingSettings,
    RealtimeSettings,
    load_config,
)
from matchtalk.core.error_tracking import (
    CrashReporter,
    ErrorTracker,
    LoggingCrashReporter,
    Severity,
    severity_for_status,
    should_report_status,
    user_friendly_message,
)
from matchtalk.core.exceptions import (
    AuthError,
    ClientError,
    ConfigurationError,
    ConnectionTimeoutError,
    HttpError,
    NetworkError,
    NoTokenError,
    NotConnectedError,
    RateLimitError,
    RealtimeConnectionError,
    RealtimeError,
    RequestCancelledError,
    RequestTimeoutError,
    StorageError,
    UnexpectedError,
    ValidationError,
    wrap_exception,
)
from matchtalk.core.resilience import (
    DEFAULT_RETRY_POLICY,
    NO_RETRY_POLICY,
    RetryPolicy,
    backoff_delay,
    run_with_retry,
)
from matchtalk.core.storage import (
    FileStore,
    KeyValueStore,
    MemoryStore,
    TokenStore,
)
from matchtalk.core.structured_logging import (
    JSONFormatter,
    LogContext,
    configure_logging,
    get_logger,
)

__all__ = [
    # Config
    "AnalyticsSettings",
    "ApiSettings",
    "ClientConfig",
    "LoggingSettings",
    "RealtimeSettings",
    "load_config",
    # Error tracking
    "CrashReporter",
    "ErrorTracker",
    "LoggingCrashReporter",
    "Severity",
    "severity_for_status",
    "should_report_status",
    "user_friendly_message",
    # Exceptions
    "AuthError",
    "ClientError",
    "ConfigurationError",
    "ConnectionTimeoutError",
    "HttpError",
    "NetworkError",
    "NoTokenError",
    "NotConnectedError",
    "RateLimitError",
    "RealtimeConnectionError",
    "RealtimeError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "StorageError",
    "UnexpectedError",
    "ValidationError",
    "wrap_exception",
    # Resilience
    "DEFAULT_RETRY_POLICY",
    "NO_RETRY_POLICY",
    "RetryPolicy",
    "backoff_delay",
    "run_with_retry",
    # Storage
    "FileStore",
    "KeyValueStore",
    "MemoryStore",
    "TokenStore",
    # Logging
    "JSONFormatter",
    "LogContext",
    "configure_logging",
    "get_logger",
]
