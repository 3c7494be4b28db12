"""Resume scheduler process: periodic sweep over due timed waits."""
from __future__ import annotations

import logging
import time

from apps.backend.config import get_settings
from apps.backend.services.resume_scheduler import resume_due_sessions_once

logger = logging.getLogger(__name__)


def run_resume_scheduler_cycle() -> dict:
    """Single sweep; the atomic PAUSED->ACTIVE claim makes overlapping sweeps safe."""
    s = get_settings()
    if not s.resume_scheduler_enabled:
        return {"skipped": "disabled"}
    try:
        return resume_due_sessions_once(batch_limit=s.resume_scheduler_batch_limit)
    except Exception:
        logger.exception("resume_scheduler_cycle_failed")
        return {"error": "resume_scheduler_failed"}


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    interval = max(1, int(get_settings().resume_scheduler_interval_seconds or 10))
    logger.info("resume_scheduler_started interval_seconds=%s", interval)
    while True:
        result = run_resume_scheduler_cycle()
        if result.get("resumed") or result.get("failed"):
            logger.info("resume_scheduler_cycle %s", result)
        time.sleep(interval)


if __name__ == "__main__":
    main()
