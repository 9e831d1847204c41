from .tracking import (
    SyncEnvelope,
    Visitor,
    Event,
    AttributionTouch,
    Conversion,
    PopupInteraction,
    QueueRow,
)
from .options import ConnectorOption
from .activity import ActivityLogEntry
from .sync_lease import SyncLease

__all__ = [
    "SyncEnvelope",
    "Visitor",
    "Event",
    "AttributionTouch",
    "Conversion",
    "PopupInteraction",
    "QueueRow",
    "ConnectorOption",
    "ActivityLogEntry",
    "SyncLease",
]
