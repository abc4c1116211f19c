from __future__ import annotations

import logging
import time

from app.core.log import log_json
from app.worker.auto_send import WorkerConfig, run_queue_worker_cycle

logger = logging.getLogger("autopilot.worker")


def run_worker_forever(config: WorkerConfig) -> None:
    log_json(
        logger,
        "worker.started",
        worker_id=config.worker_id,
        poll_interval_seconds=config.poll_interval_seconds,
        batch_limit=config.batch_limit,
    )
    while True:
        run_one_cycle(config=config)
        time.sleep(config.poll_interval_seconds)


def run_one_cycle(*, config: WorkerConfig) -> bool:
    try:
        run_queue_worker_cycle(config=config)
    except Exception as e:  # noqa: BLE001
        # A broken cycle (database down, bad config) is retried on the next tick.
        log_json(logger, "worker.cycle_failed", level=logging.ERROR, worker_id=config.worker_id, error=str(e))
        return False
    return True
