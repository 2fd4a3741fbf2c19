"""
Configuration schema and loader for the MatchTalk network client.
Uses Pydantic for validation; values come from an optional JSON file
and ``MATCHTALK_<SECTION>_<FIELD>`` environment overrides.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from matchtalk.core.exceptions import ConfigurationError

ENV_PREFIX = "MATCHTALK_"


class ApiSettings(BaseModel):
    """REST backend settings."""

    base_url: str = Field(default="http://localhost:4000", description="Backend base URL")
    timeout: float = Field(default=10.0, gt=0, description="Per-request timeout (seconds)")
    retry_attempts: int = Field(default=3, ge=0, description="Retries after the first call")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay (seconds)")
    max_retry_delay: Optional[float] = Field(default=None, gt=0)
    health_timeout: float = Field(default=5.0, gt=0)
    health_path: str = "/health"
    refresh_path: str = "/auth/refresh"


class RealtimeSettings(BaseModel):
    """Realtime connection settings."""

    url: str = Field(default="ws://localhost:4000/ws", description="WebSocket endpoint")
    connection_timeout: float = Field(default=20.0, gt=0)
    reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnect_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    status_poll_interval: float = Field(default=0.1, gt=0)


class AnalyticsSettings(BaseModel):
    """Telemetry queue settings."""

    enabled: bool = True
    batch_size: int = Field(default=10, ge=1)
    batch_interval: float = Field(default=5.0, gt=0, description="Periodic flush interval (seconds)")
    max_queue_size: int = Field(default=100, ge=1)
    enable_offline_queue: bool = True
    load_corruption_threshold: float = Field(default=0.5, ge=0, le=1)
    flush_corruption_threshold: float = Field(default=0.3, ge=0, le=1)
    navigation_report_interval: float = Field(default=30.0, gt=0)
    max_navigation_path: int = Field(default=50, ge=1)
    track_path: str = "/analytics/track"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = True
    log_file: Optional[str] = None


class ClientConfig(BaseModel):
    """
    Root configuration for the network client.
    """

    model_config = ConfigDict(extra="forbid")

    config_version: str = Field(default="0.1.0", description="Configuration schema version")
    api: ApiSettings = Field(default_factory=ApiSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage_path: Optional[str] = Field(
        default=None,
        description="FileStore path; in-memory storage when unset",
    )

    def __str__(self) -> str:
        return (
            f"ClientConfig(api={self.api.base_url}, "
            f"realtime={self.realtime.url}, "
            f"analytics_enabled={self.analytics.enabled})"
        )


_SECTIONS: Dict[str, type] = {
    "api": ApiSettings,
    "realtime": RealtimeSettings,
    "analytics": AnalyticsSettings,
    "logging": LoggingSettings,
}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``MATCHTALK_<SECTION>_<FIELD>`` values into a nested dict."""
    overrides: Dict[str, Any] = {}
    for section, model in _SECTIONS.items():
        for field_name in model.model_fields:
            key = f"{ENV_PREFIX}{section.upper()}_{field_name.upper()}"
            if key in environ:
                overrides.setdefault(section, {})[field_name] = environ[key]

    storage_key = f"{ENV_PREFIX}STORAGE_PATH"
    if storage_key in environ:
        overrides["storage_path"] = environ[storage_key]
    return overrides


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: Optional[str | Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> ClientConfig:
    """
    Load configuration.

    Args:
        path: Optional JSON config file
        environ: Environment mapping (defaults to ``os.environ``)
        use_dotenv: Load ``.env`` into the process environment first

    Returns:
        Validated ClientConfig

    Raises:
        ConfigurationError: File unreadable or values invalid
    """
    if use_dotenv and environ is None:
        load_dotenv()
    env = os.environ if environ is None else environ

    data: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Config file not found: {config_path}", cause=e
            ) from e
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to read config file {config_path}", cause=e
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file must contain a JSON object: {config_path}"
            )

    data = _merge(data, _env_overrides(env))

    try:
        return ClientConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid configuration",
            details={"errors": e.errors(include_url=False)},
            cause=e,
        ) from e
