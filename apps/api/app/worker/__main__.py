from __future__ import annotations

from app.core.config import get_settings
from app.core.log import configure_logging
from app.worker.auto_send import WorkerConfig
from app.worker.runner import run_worker_forever


def main() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    run_worker_forever(config=WorkerConfig.from_settings(settings))


if __name__ == "__main__":
    main()
