from __future__ import annotations

from arq.worker import run_worker

from remindrelay.core.logging import configure_logging
from remindrelay.workers.delivery_worker import WorkerSettings


def _main() -> None:
    # Boot the arq worker that runs queued job loops and drains deflection queues between API requests.
    configure_logging()
    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    _main()
