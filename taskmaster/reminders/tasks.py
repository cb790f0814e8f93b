from celery import shared_task
from celery.utils.log import get_logger

from .runtime import get_job_scheduler, get_occurrence_scheduler

logger = get_logger(__name__)


@shared_task(name="reminders.run_job")
def run_job_task(job_id: str) -> bool:
    """Run a stored job when its ETA is reached. Returns False for cancelled or already-run jobs."""
    # Handlers are registered on the job scheduler when the occurrence scheduler is built
    get_occurrence_scheduler()
    return get_job_scheduler().run(job_id)


@shared_task(name="reminders.sweep")
def sweep_task() -> int:
    """Expand active reminders over the sweep window and schedule their jobs. Returns occurrences found."""
    scheduled = get_occurrence_scheduler().sweep()
    logger.info("Sweep task found %d occurrences", scheduled)
    return scheduled
