import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import FundService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_minutes = settings.audit_interval_minutes
        self.auto_repair = settings.audit_auto_repair
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"balance_audit: source={source}")
        with session_scope() as session:
            service = FundService(session)
            drifts = service.audit()
            for drift in drifts:
                logger.warning(
                    f"balance_drift: fund_id={drift.fund_id} "
                    f"cached_cents={drift.cached_balance_cents} "
                    f"ledger_cents={drift.ledger_balance_cents}"
                )
                if self.auto_repair:
                    service.recalculate(drift.fund_id)
            logger.info(
                f"balance_audit: source={source} drifted_funds={len(drifts)} "
                f"repaired={len(drifts) if self.auto_repair else 0}"
            )
            return len(drifts)

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info("Balance audit disabled")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="balance_audit",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with balance audit every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
