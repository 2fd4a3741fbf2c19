"""
Analytics API Client

Backend analytics endpoints: batched event ingestion and the
user-data helpers (delete, export, opt-out).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from matchtalk.adapters.resilient_client import ResilientHTTPClient
from matchtalk.analytics.events import AnalyticsEvent, is_valid_event
from matchtalk.core.exceptions import HttpError, ValidationError
from matchtalk.core.resilience import NO_RETRY_POLICY

logger = logging.getLogger(__name__)

TRACK_PATH = "/analytics/track"


def _clean_request(event: Union[AnalyticsEvent, Dict[str, Any]]) -> Dict[str, Any]:
    raw = event.to_dict() if isinstance(event, AnalyticsEvent) else event
    event_data = raw.get("eventData")
    metadata = raw.get("metadata")
    return {
        "eventType": raw["eventType"].strip(),
        "eventData": event_data if isinstance(event_data, dict) else {},
        "metadata": metadata if isinstance(metadata, dict) else {},
    }


class AnalyticsApi:
    """
    ``EventTransmitter`` over the HTTP client.

    Ingestion does not retry at the HTTP layer; the event queue
    re-queues failed batches itself.
    """

    def __init__(self, http: ResilientHTTPClient, *, track_path: str = TRACK_PATH):
        self.http = http
        self.track_path = track_path

    async def _post_track(self, body: Dict[str, Any]) -> None:
        try:
            await self.http.post(self.track_path, body, retry_policy=NO_RETRY_POLICY)
        except HttpError as e:
            if e.status == 400:
                raise ValidationError(
                    f"Analytics payload rejected: {e.message}",
                    details={"response": e.response_body},
                    cause=e,
                ) from e
            raise

    async def track_event(
        self,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a single event immediately."""
        if not isinstance(event_type, str) or not event_type.strip():
            logger.warning(f"[Analytics API] Skipping invalid event type: {event_type!r}")
            return
        await self._post_track(
            {
                "eventType": event_type.strip(),
                "eventData": event_data or {},
                "metadata": metadata or {},
            }
        )

    async def track_events(self, events: List[Union[AnalyticsEvent, Dict[str, Any]]]) -> None:
        """
        Send a batch of events.

        Raises:
            ValidationError: Backend rejected the batch (400)
            ClientError: Any other delivery failure
        """
        requests = [_clean_request(event) for event in events if is_valid_event(event)]
        skipped = len(events) - len(requests)
        if skipped:
            logger.warning(f"[Analytics API] Skipping {skipped} invalid events")
        if not requests:
            logger.debug("[Analytics API] No valid events to track")
            return
        await self._post_track({"events": requests})

    async def delete_user_data(self, user_id: str) -> None:
        await self.http.delete(f"/analytics/user/{user_id}")

    async def export_user_data(self, user_id: str) -> List[Any]:
        data = await self.http.get(f"/analytics/user/{user_id}/export")
        return data if isinstance(data, list) else []

    async def opt_out(self, user_id: str) -> None:
        await self.http.post(f"/analytics/user/{user_id}/opt-out")
