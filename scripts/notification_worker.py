from __future__ import annotations

import asyncio

from runnernotify.core.logging import configure_logging
from runnernotify.workers.notification_worker import run_dispatch_loop


async def _main() -> None:
    # Poll-and-dispatch without Redis; run exactly one of these (or the ARQ worker) per deployment.
    configure_logging()
    await run_dispatch_loop()


if __name__ == "__main__":
    asyncio.run(_main())
