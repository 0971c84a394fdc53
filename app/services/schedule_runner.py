import logging
from datetime import UTC

from apscheduler.schedulers.background import BackgroundScheduler

from app.core.config import Settings, get_settings
from app.services.pairing_service import PairingService

logger = logging.getLogger(__name__)

SCHEDULE_CHECK_JOB_ID = "schedule_check"

_scheduler: BackgroundScheduler | None = None


def run_schedule_check() -> None:
    try:
        PairingService(get_settings()).run_due_schedules()
    except Exception:
        logger.exception("Periodic schedule check failed")


def start_schedule_runner(settings: Settings) -> BackgroundScheduler | None:
    global _scheduler
    if not settings.schedule_runner_enabled:
        return None
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    _scheduler = BackgroundScheduler(timezone=UTC)
    _scheduler.add_job(
        run_schedule_check,
        "interval",
        minutes=settings.schedule_check_interval_minutes,
        id=SCHEDULE_CHECK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        "Schedule runner started interval_minutes=%s",
        settings.schedule_check_interval_minutes,
    )
    return _scheduler


def stop_schedule_runner() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Schedule runner stopped")
    _scheduler = None
