import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from config import get_settings
from database import session_scope
from services import materialize_for_user


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs materialization in the background when something asks for it.

    There are no standing cron or interval jobs: each trigger (a session
    start, a retry from the UI) enqueues one job that runs immediately.
    Jobs share an id per user, so a trigger that arrives while one is still
    queued replaces it instead of stacking another run.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.timezone = ZoneInfo(settings.timezone)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, user_id: str, source: str = "manual") -> None:
        logger.info(f"materialize_job: user_id={user_id} source={source}")
        with session_scope() as session:
            result = materialize_for_user(session, user_id)
        logger.info(
            f"materialize_job: user_id={user_id} source={source} "
            f"created={result.created} skipped={result.skipped} "
            f"errors={result.errors} coalesced={result.coalesced}"
        )

    def trigger(self, user_id: str, source: str = "manual") -> None:
        self.scheduler.add_job(
            self._run_job,
            DateTrigger(run_date=datetime.now(self.timezone)),
            args=[user_id, source],
            id=f"materialize:{user_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started for on-demand materialization")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
