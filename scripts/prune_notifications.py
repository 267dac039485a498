from __future__ import annotations

import asyncio

from runnernotify.core.logging import configure_logging
from runnernotify.persistence.db import SessionLocal
from runnernotify.services.notifications.producers import cleanup_old_notifications


async def prune() -> None:
    # Remove terminal queue entries past the retention window to keep storage bounded.
    configure_logging()
    async with SessionLocal() as session:
        deleted = await cleanup_old_notifications(session=session)
    print(f"pruned_notification_entries={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
