from __future__ import annotations

import asyncio

from runnernotify.persistence.db import create_all, engine


async def _main() -> None:
    # Local bootstrap only; production schemas are owned by the main backend.
    await create_all()
    await engine.dispose()
    print("notification_tables_ready")


if __name__ == "__main__":
    asyncio.run(_main())
