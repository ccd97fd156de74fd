from __future__ import annotations

import asyncio
import signal

from contentengine.core.logging import configure_logging
from contentengine.persistence.db import SessionLocal
from contentengine.services.regeneration.generator import LLMRegenerationGenerator
from contentengine.services.regeneration.worker import RegenerationWorker


async def _main() -> None:
    configure_logging()
    worker = RegenerationWorker(SessionLocal, LLMRegenerationGenerator())
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    worker.start()
    try:
        await stop.wait()
    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(_main())
