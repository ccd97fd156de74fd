from __future__ import annotations

from arq import run_worker

from contentengine.core.logging import configure_logging
from contentengine.workers.content_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq contentengine.workers.content_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
