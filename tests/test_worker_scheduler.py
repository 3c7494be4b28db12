"""Resume scheduler process cycle."""
from unittest.mock import patch

from apps.backend.config import Settings
from apps.worker.scheduler import run_resume_scheduler_cycle


def test_cycle_disabled():
    with patch("apps.worker.scheduler.get_settings", return_value=Settings(resume_scheduler_enabled=False)), \
         patch("apps.worker.scheduler.resume_due_sessions_once") as sweep:
        assert run_resume_scheduler_cycle() == {"skipped": "disabled"}
    sweep.assert_not_called()


def test_cycle_passes_batch_limit():
    counts = {"due": 1, "resumed": 1, "skipped": 0, "failed": 0}
    with patch("apps.worker.scheduler.get_settings", return_value=Settings(resume_scheduler_batch_limit=7)), \
         patch("apps.worker.scheduler.resume_due_sessions_once", return_value=counts) as sweep:
        assert run_resume_scheduler_cycle() == counts
    sweep.assert_called_once_with(batch_limit=7)


def test_cycle_survives_sweep_errors():
    with patch("apps.worker.scheduler.resume_due_sessions_once", side_effect=RuntimeError("db down")):
        assert run_resume_scheduler_cycle() == {"error": "resume_scheduler_failed"}
