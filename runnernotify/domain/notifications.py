from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


class NotificationType(str, Enum):
    WELCOME = "welcome"
    DAILY_REMINDER = "daily_reminder"
    EVENING_REMINDER = "evening_reminder"
    WEEKLY_ACHIEVEMENT = "weekly_achievement"
    WEEKLY_RANKINGS = "weekly_rankings"
    MONTHLY_WINNER = "monthly_winner"
    LEADERBOARD_UPDATE = "leaderboard_update"
    ERROR_NOTIFICATION = "error_notification"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset(
    {NotificationStatus.SENT, NotificationStatus.FAILED, NotificationStatus.SKIPPED}
)


class ReservationOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class EntryDraft:
    # Content of an entry to persist when its idempotency key is still unused.
    user_id: int
    type: NotificationType
    title: str
    body: str
    target_url: str
    scheduled_for: datetime


def daily_key(notification_type: NotificationType, user_id: int, day: date) -> str:
    """Key for at most one entry per type, user and UTC calendar day."""
    return f"{notification_type.value}_{user_id}_{day.isoformat()}"


def one_shot_key(notification_type: NotificationType, user_id: int) -> str:
    """Key for at most one entry per type and user, ever."""
    return f"{notification_type.value}_{user_id}"
