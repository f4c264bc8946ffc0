"""Best-effort output sinks: push socket, data stream, notifications."""

from bitredict_sync.sinks.broadcast import BroadcastSink, ChannelBroadcaster, NullBroadcaster
from bitredict_sync.sinks.notifier import Notifier
from bitredict_sync.sinks.streams import DataStreamPublisher, make_data_id

__all__ = [
    "BroadcastSink",
    "ChannelBroadcaster",
    "DataStreamPublisher",
    "Notifier",
    "NullBroadcaster",
    "make_data_id",
]
