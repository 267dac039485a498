from runnernotify.services.notifications.dispatcher import (
    DispatchSummary,
    Dispatcher,
    group_by_destination,
)
from runnernotify.services.notifications.events import (
    IngestResult,
    apply_lifecycle_event,
    decode_webhook_envelope,
    parse_lifecycle_event,
    parse_webhook_body,
)
from runnernotify.services.notifications.idempotency import (
    queue_notification,
    reserve,
)
from runnernotify.services.notifications.producers import (
    ProducerResult,
    cleanup_old_notifications,
    queue_daily_running_reminders,
    queue_evening_running_reminders,
    queue_weekly_achievement_announcements,
    queue_welcome_notification,
    send_welcome_notification,
)
from runnernotify.services.notifications.rate_limit import (
    AdmissionController,
    SlidingWindowRateLimiter,
    WindowConfig,
)
from runnernotify.services.notifications.transport import (
    BatchResult,
    HttpNotificationTransport,
    NotificationTransport,
    OutboundNotification,
)

__all__ = [
    "Dispatcher",
    "DispatchSummary",
    "group_by_destination",
    "IngestResult",
    "apply_lifecycle_event",
    "decode_webhook_envelope",
    "parse_lifecycle_event",
    "parse_webhook_body",
    "queue_notification",
    "reserve",
    "ProducerResult",
    "cleanup_old_notifications",
    "queue_daily_running_reminders",
    "queue_evening_running_reminders",
    "queue_weekly_achievement_announcements",
    "queue_welcome_notification",
    "send_welcome_notification",
    "AdmissionController",
    "SlidingWindowRateLimiter",
    "WindowConfig",
    "BatchResult",
    "HttpNotificationTransport",
    "NotificationTransport",
    "OutboundNotification",
]
