"""Real-time fan-out of task and correlation updates."""

from .handles import StreamSubscriber, SubscriberHandle, SubscriberWriteError, format_sse
from .manager import DEFAULT_HEARTBEAT_INTERVAL, BroadcastManager, Subscriber

__all__ = [
    "BroadcastManager",
    "DEFAULT_HEARTBEAT_INTERVAL",
    "StreamSubscriber",
    "Subscriber",
    "SubscriberHandle",
    "SubscriberWriteError",
    "format_sse",
]
