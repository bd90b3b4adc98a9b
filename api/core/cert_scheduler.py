"""
Certificate renewal scheduler.

Background task scheduler for automatic certificate renewal and
retention housekeeping using APScheduler.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.cert_store import CertificateStore
from core.errors import CertManagerError
from core.event_bus import EventBus
from core.event_store import EventStore
from core.renewal_engine import RenewalEngine
from models.certificate import CertType
from models.event import Topic
from models.renewal import RenewalTrigger
from models.settings import GlobalSettings

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "cert_renewal_check"
RETENTION_JOB_ID = "retention_cleanup"


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs periodic jobs to:
    - Queue renewals for standard certificates whose renewal window opened
    - Drop activity events and backup slots past their retention
    """

    def __init__(
        self,
        store: CertificateStore,
        engine: RenewalEngine,
        bus: EventBus,
        event_store: EventStore | None = None,
        global_settings: GlobalSettings | None = None,
        event_retention_days: int = 90,
    ):
        self.store = store
        self.engine = engine
        self.bus = bus
        self.event_store = event_store
        self.global_settings = global_settings or GlobalSettings()
        self.event_retention_days = event_retention_days
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.last_run: datetime | None = None
        self.last_result: dict[str, Any] | None = None
        self._started = False

    @property
    def enabled(self) -> bool:
        return self.global_settings.enable_auto_renewal_job

    async def start(self) -> None:
        """Start the renewal scheduler."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler.add_job(
            self._run_retention,
            CronTrigger(hour=3, minute=30, timezone=timezone.utc),
            id=RETENTION_JOB_ID,
            name="Retention Cleanup",
            replace_existing=True,
        )
        self._apply_renewal_job()

        self.scheduler.start()
        self._started = True
        logger.info(f"Certificate renewal scheduler started (schedule '{self.global_settings.renewal_schedule}')")

    async def stop(self) -> None:
        """Stop the renewal scheduler."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Certificate renewal scheduler stopped")

    def reschedule(self, global_settings: GlobalSettings) -> dict[str, Any]:
        """
        Apply new schedule settings and announce them.

        Returns:
            The new scheduler status
        """
        changed = (
            global_settings.enable_auto_renewal_job != self.global_settings.enable_auto_renewal_job
            or global_settings.renewal_schedule != self.global_settings.renewal_schedule
        )
        self.global_settings = global_settings
        if self._started:
            self._apply_renewal_job()
        status = self.status()
        if changed:
            logger.info(
                f"Renewal schedule {'enabled' if status['enabled'] else 'disabled'} "
                f"('{global_settings.renewal_schedule}')"
            )
            self.bus.publish(
                Topic.SCHEDULER_STATUS_CHANGED,
                {"enabled": status["enabled"], "next_execution": status["next_execution"]},
            )
        return status

    def _apply_renewal_job(self) -> None:
        if self.enabled:
            self.scheduler.add_job(
                self._scheduled_check,
                CronTrigger.from_crontab(self.global_settings.renewal_schedule, timezone=timezone.utc),
                id=RENEWAL_JOB_ID,
                name="Certificate Renewal Check",
                replace_existing=True,
            )
        else:
            try:
                self.scheduler.remove_job(RENEWAL_JOB_ID)
            except JobLookupError:
                pass

    def status(self) -> dict[str, Any]:
        """Scheduler readout: enabled flag, next and last execution."""
        next_execution = None
        if self.enabled:
            job = self.scheduler.get_job(RENEWAL_JOB_ID) if self._started else None
            next_time = getattr(job, "next_run_time", None) if job else None
            if next_time is None:
                trigger = CronTrigger.from_crontab(self.global_settings.renewal_schedule, timezone=timezone.utc)
                next_time = trigger.get_next_fire_time(None, datetime.now(timezone.utc))
            next_execution = next_time.isoformat() if next_time else None
        return {
            "enabled": self.enabled,
            "running": self._started,
            "schedule": self.global_settings.renewal_schedule,
            "next_execution": next_execution,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_result": self.last_result,
        }

    async def _scheduled_check(self) -> None:
        try:
            await self.run_check()
        except Exception as e:
            logger.exception(f"Error in renewal check: {e}")

    async def run_check(self) -> dict[str, Any]:
        """
        Queue renewals for certificates due for renewal.

        Only standard certificates with auto_renew enabled are considered;
        CA certificates are renewed on explicit request only.

        Returns:
            Summary with checked count and queued job ids
        """
        logger.info("Starting certificate renewal check")
        now = datetime.now(timezone.utc)
        records = await asyncio.to_thread(self.store.list_records)

        queued: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        for record in records:
            if not record.config.auto_renew:
                logger.debug(f"Skipping {record.name}: auto_renew disabled")
                continue
            if record.cert_type != CertType.STANDARD:
                continue
            if not record.is_due(now):
                continue

            logger.info(f"Queuing renewal of {record.name} ({record.days_until_expiry} days left)")
            try:
                job = await self.engine.enqueue(record.fingerprint, RenewalTrigger.SCHEDULER, only_if_due=True)
                queued.append({"fingerprint": record.fingerprint, "name": record.name, "job_id": job.job_id})
            except CertManagerError as e:
                logger.error(f"Failed to queue renewal of {record.name}: {e.message}")
                failed.append({"fingerprint": record.fingerprint, "name": record.name, "error": e.message})

        self.last_run = now
        self.last_result = {"checked": len(records), "queued": len(queued), "failed": len(failed)}
        logger.info(f"Certificate renewal check complete: {len(queued)} queued of {len(records)} checked")
        return {"checked": len(records), "queued": queued, "failed": failed, "ran_at": now.isoformat()}

    async def _run_retention(self) -> None:
        try:
            await self.run_retention()
        except Exception as e:
            logger.exception(f"Error in retention cleanup: {e}")

    async def run_retention(self) -> dict[str, int]:
        """Delete expired activity events and backup slots."""
        events_deleted = 0
        if self.event_store is not None:
            events_deleted = await self.event_store.enforce_retention(self.event_retention_days)
        backups_deleted = await asyncio.to_thread(self.store.prune_backups)
        return {"events_deleted": events_deleted, "backups_deleted": backups_deleted}
