from __future__ import annotations

import asyncio
import signal

from contentengine.core.logging import configure_logging
from contentengine.persistence.db import SessionLocal
from contentengine.services.outbox import ArqQueuePublisher, OutboxDispatcher


async def _main() -> None:
    # Relay outbox rows to the queue until SIGINT/SIGTERM.
    configure_logging()
    publisher = ArqQueuePublisher()
    dispatcher = OutboxDispatcher(SessionLocal, publisher)
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    dispatcher.start()
    try:
        await stop.wait()
    finally:
        await dispatcher.stop()
        await publisher.close()


if __name__ == "__main__":
    asyncio.run(_main())
