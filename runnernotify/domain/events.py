from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class EventKind(str, Enum):
    FRAME_ADDED = "frame_added"
    FRAME_REMOVED = "frame_removed"
    NOTIFICATIONS_ENABLED = "notifications_enabled"
    NOTIFICATIONS_DISABLED = "notifications_disabled"


ENABLING_KINDS = frozenset({EventKind.FRAME_ADDED, EventKind.NOTIFICATIONS_ENABLED})
DISABLING_KINDS = frozenset({EventKind.FRAME_REMOVED, EventKind.NOTIFICATIONS_DISABLED})


@dataclass(frozen=True)
class NotificationDetails:
    token: str
    url: str


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    fid: int
    details: NotificationDetails | None = None


@dataclass(frozen=True)
class RejectedEvent:
    # Unknown or incomplete payloads never reach the user record.
    reason: str


ParsedEvent = Union[LifecycleEvent, RejectedEvent]
