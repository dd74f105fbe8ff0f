from tracker.src.sink.archive import AlertArchive
from tracker.src.sink.buffered import BufferedAlertSink
from tracker.src.sink.inbox import AlertInbox
from tracker.src.sink.registry import ChannelRegistry
from tracker.src.sink.webhook import WebhookChannel

__all__ = [
    "AlertArchive",
    "AlertInbox",
    "BufferedAlertSink",
    "ChannelRegistry",
    "WebhookChannel",
]
