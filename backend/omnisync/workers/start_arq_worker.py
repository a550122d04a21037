#!/usr/bin/env python3
"""Start the ARQ worker for queue jobs.

USAGE:
    python -m omnisync.workers.start_arq_worker

    Or directly:
    arq omnisync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from omnisync.utils.env import load_env_file

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    load_env_file()
    # Settings are read at import time, so import after the .env is loaded
    from omnisync.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
