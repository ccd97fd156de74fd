from __future__ import annotations

import argparse
import asyncio
import json

from contentengine.core.logging import configure_logging
from contentengine.services.regeneration.runner import run_regeneration_batch


async def _run(limit: int | None) -> None:
    summary = await run_regeneration_batch(limit)
    print(json.dumps(summary, sort_keys=True))


def main() -> None:
    # One batch under the global runner lock; exits immediately when another runner holds it.
    parser = argparse.ArgumentParser(description="Run one batch of pending regeneration jobs")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.limit))


if __name__ == "__main__":
    main()
