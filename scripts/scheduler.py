from __future__ import annotations

import argparse
import asyncio
import json
import signal

from contentengine.core.logging import configure_logging
from contentengine.services.operability.scheduler import (
    build_default_registry,
    run_scheduled_job,
    run_scheduler_loop,
)


async def _run_once(name: str) -> None:
    registry = build_default_registry()
    result = await run_scheduled_job(registry.get(name))
    print(json.dumps(result, sort_keys=True, default=str))


async def _run_forever() -> None:
    registry = build_default_registry()
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await run_scheduler_loop(registry, stop_event=stop)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run scheduled maintenance jobs")
    parser.add_argument("--once", default=None, help="run a single registered job by name and exit")
    args = parser.parse_args()
    configure_logging()
    if args.once:
        asyncio.run(_run_once(args.once))
    else:
        asyncio.run(_run_forever())


if __name__ == "__main__":
    main()
