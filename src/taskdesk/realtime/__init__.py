"""
Taskdesk - Realtime change subscriptions.
"""

from taskdesk.realtime.channel import Channel, ChannelFilter, poll_interval_seconds
from taskdesk.realtime.transport import RealtimeConnection, RealtimeTransport

__all__ = [
    "Channel",
    "ChannelFilter",
    "RealtimeConnection",
    "RealtimeTransport",
    "poll_interval_seconds",
]
