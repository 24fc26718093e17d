"""Realtime package initialization."""
from realtime.registry import Connection, ConnectionRegistry
from realtime.broadcaster import Broadcaster, LocalBroadcaster
from realtime.events import InboundEvent, OutboundEvent, DropReason, HandlerResult
from realtime.presence_notifier import PresenceNotifier
from realtime.gateway import RealtimeGateway

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "Broadcaster",
    "LocalBroadcaster",
    "InboundEvent",
    "OutboundEvent",
    "DropReason",
    "HandlerResult",
    "PresenceNotifier",
    "RealtimeGateway",
]
