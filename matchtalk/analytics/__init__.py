# Analytics library
from matchtalk.analytics.api import AnalyticsApi
from matchtalk.analytics.event_queue import EventQueue, EventTransmitter
from matchtalk.analytics.events import AnalyticsEvent, build_event, is_valid_event
from matchtalk.analytics.funnels import FunnelTracker
from matchtalk.analytics.navigation import NavigationPath
from matchtalk.analytics.tracker import Analytics

__all__ = [
    "Analytics",
    "AnalyticsApi",
    "AnalyticsEvent",
    "EventQueue",
    "EventTransmitter",
    "FunnelTracker",
    "NavigationPath",
    "build_event",
    "is_valid_event",
]
