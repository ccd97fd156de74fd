from __future__ import annotations

import asyncio

from contentengine.core.logging import configure_logging
from contentengine.persistence.db import create_all, engine


async def _main() -> None:
    # Local bootstrap only; deployed schemas are managed outside this repo.
    configure_logging()
    await create_all()
    await engine.dispose()
    print("tables_created=true")


if __name__ == "__main__":
    asyncio.run(_main())
