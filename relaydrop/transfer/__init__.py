"""Transfer sessions, envelopes and status events for relaydrop."""

from .events import EventBus, ProgressEvent, StatusEvent
from .session import SessionResult, SessionSnapshot, SessionState, TransferSession

__all__ = [
    "EventBus",
    "ProgressEvent",
    "SessionResult",
    "SessionSnapshot",
    "SessionState",
    "StatusEvent",
    "TransferSession",
]
