"""
Realtime connection layer: the shared connection, channel membership and the
event pipeline built on them.
"""

from .channel_membership import ChannelMembershipController, compute_channels, join_channels
from .connection_manager import ConnectionManager, ConnectionState, ConnectionStatus, LifecycleSignal
from .pipeline import QueueEventPipeline, StaffIdentity
from .reconnect_policy import ReconnectPolicy

__all__ = [
    "ChannelMembershipController",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "LifecycleSignal",
    "QueueEventPipeline",
    "ReconnectPolicy",
    "StaffIdentity",
    "compute_channels",
    "join_channels",
]
