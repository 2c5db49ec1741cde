"""
Sync Scheduler using APScheduler.

Runs ingestion and reconciliation on wall-clock cron triggers:
- Ingestion: hourly during business hours (08:00-20:00 by default)
- Reconciliation: 00:00, 06:00, 12:00 and 18:00 by default

Each job type moves Idle -> Running -> Idle and keeps a persisted record of
its last start/end/result/error in the shared cache.
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ordersync_api.config.constants import (
    INGESTION_JOB,
    INGESTION_TRIGGER_HOURS,
    JOB_HISTORY_LENGTH,
    RECONCILIATION_JOB,
    RECONCILIATION_TRIGGER_HOURS,
    REDIS_JOB_HISTORY_KEY,
    REDIS_JOB_RECORD_KEY,
    RUN_TIMEOUT_SECONDS,
)
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.monitoring import capture_exception, set_sync_context

logger = setup_logger(__name__)

IDLE = "idle"
RUNNING = "running"

SUCCESS = "success"
FAILED = "failed"
ERRORED = "errored"
SKIPPED = "skipped"


@dataclass
class JobRecord:
    """Persisted state of one job type."""
    job: str
    state: str = IDLE
    trigger: Optional[str] = None
    last_start: Optional[float] = None
    last_end: Optional[float] = None
    last_status: Optional[str] = None
    last_result: Optional[dict] = None
    last_error: Optional[str] = None


def _format(timestamp: Optional[float]) -> Optional[str]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class SyncScheduler:
    """Owns the cron jobs and the per-job Idle/Running state."""

    def __init__(
        self,
        ingestion_service,
        reconciler,
        repository,
        rate_limiter,
        cache,
        ingestion_hours: str = INGESTION_TRIGGER_HOURS,
        reconciliation_hours: str = RECONCILIATION_TRIGGER_HOURS,
        run_timeout: float = RUN_TIMEOUT_SECONDS,
        timezone_name: str = "UTC",
    ):
        self.ingestion_service = ingestion_service
        self.reconciler = reconciler
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.ingestion_hours = ingestion_hours
        self.reconciliation_hours = reconciliation_hours
        self.run_timeout = run_timeout
        self.timezone_name = timezone_name
        self.scheduler = AsyncIOScheduler(timezone=timezone_name)
        self._running: Dict[str, bool] = {INGESTION_JOB: False, RECONCILIATION_JOB: False}
        self._started = False

    async def start(self):
        """Register cron jobs and start APScheduler."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self.scheduler.add_job(
            self.run_ingestion,
            CronTrigger(hour=self.ingestion_hours, minute=0, timezone=self.timezone_name),
            id=INGESTION_JOB,
            name="Storefront Order Ingestion",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Added ingestion job (hours {self.ingestion_hours})")

        self.scheduler.add_job(
            self.run_reconciliation,
            CronTrigger(hour=self.reconciliation_hours, minute=0, timezone=self.timezone_name),
            id=RECONCILIATION_JOB,
            name="Shipping Status Reconciliation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Added reconciliation job (hours {self.reconciliation_hours})")

        self.scheduler.start()
        self._started = True
        logger.info("Sync scheduler started")

    async def stop(self):
        """Gracefully stop scheduler."""
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self.scheduler.running

    def is_job_running(self, job: str) -> bool:
        return self._running.get(job, False)

    # ------------------------------------------------------------------
    # Persisted records
    # ------------------------------------------------------------------

    async def get_record(self, job: str) -> JobRecord:
        try:
            raw = await self.cache.get(REDIS_JOB_RECORD_KEY.format(job=job))
            if raw:
                return JobRecord(**json.loads(raw))
        except Exception as e:
            logger.warning(f"Could not read {job} record: {e}")
        return JobRecord(job=job)

    async def _save_record(self, record: JobRecord, push_history: bool = False):
        entry = asdict(record)
        try:
            await self.cache.set(REDIS_JOB_RECORD_KEY.format(job=record.job), json.dumps(entry, default=str))
            if push_history:
                history_key = REDIS_JOB_HISTORY_KEY.format(job=record.job)
                await self.cache.lpush(history_key, json.dumps(entry, default=str))
                await self.cache.ltrim(history_key, 0, JOB_HISTORY_LENGTH - 1)
        except Exception as e:
            logger.warning(f"Could not persist {record.job} record: {e}")

    async def get_history(self, job: str, limit: int = JOB_HISTORY_LENGTH) -> List[dict]:
        try:
            raw_entries = await self.cache.lrange(REDIS_JOB_HISTORY_KEY.format(job=job), 0, limit - 1)
        except Exception as e:
            logger.warning(f"Could not read {job} history: {e}")
            return []
        history = []
        for raw in raw_entries:
            try:
                history.append(json.loads(raw))
            except ValueError:
                continue
        return history

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def _run_job(self, job: str, run: Callable[[], Awaitable], trigger: str) -> JobRecord:
        """
        Run one job under the Idle/Running guard with the run timeout.

        Failures are recorded on the job record; nothing propagates to APScheduler.
        """
        if self._running[job]:
            logger.warning(f"{job} already running, skipping {trigger} trigger")
            record = await self.get_record(job)
            record.last_status = SKIPPED
            record.last_error = "Already running"
            return record

        self._running[job] = True
        set_sync_context(job, trigger=trigger)
        record = await self.get_record(job)
        record.state = RUNNING
        record.trigger = trigger
        record.last_start = time.time()
        record.last_error = None
        await self._save_record(record)
        logger.info(f"{job} run started ({trigger})", extra={"job": job})

        try:
            result = await asyncio.wait_for(run(), timeout=self.run_timeout)
            record.last_result = asdict(result)
            record.last_status = SUCCESS if result.success else FAILED
        except asyncio.TimeoutError:
            record.last_status = ERRORED
            record.last_error = f"Run timed out after {self.run_timeout}s"
            logger.error(f"{job} run timed out after {self.run_timeout}s", extra={"job": job})
        except Exception as e:
            record.last_status = ERRORED
            record.last_error = f"{datetime.now(timezone.utc).isoformat()}: {e}"
            logger.error(f"{job} run failed: {e}", exc_info=True, extra={"job": job})
            capture_exception(e, context={"job": job, "trigger": trigger})
        finally:
            self._running[job] = False
            record.state = IDLE
            record.last_end = time.time()
            await self._save_record(record, push_history=True)

        logger.info(f"{job} run finished: {record.last_status}", extra={"job": job})
        return record

    async def _flagged_store(self) -> Optional[str]:
        """First active store inside a rate-limit cool-down, if any."""
        for config in await self.repository.list_active_sources():
            if await self.rate_limiter.is_store_flagged(config.store_identifier):
                return config.store_identifier
        return None

    async def run_ingestion(self, full: bool = False, store_identifier: Optional[str] = None,
                            trigger: str = "scheduled") -> JobRecord:
        """Ingestion run; skipped entirely while any store is rate-limit flagged."""
        try:
            flagged = await self._flagged_store()
        except Exception as e:
            logger.error(f"Could not check rate-limit flags: {e}")
            flagged = None

        if flagged:
            logger.warning(f"Skipping ingestion: store {flagged} is in a rate-limit cool-down")
            record = await self.get_record(INGESTION_JOB)
            record.trigger = trigger
            record.last_status = SKIPPED
            record.last_error = f"Store {flagged} is rate limited"
            record.last_end = time.time()
            await self._save_record(record, push_history=True)
            return record

        return await self._run_job(
            INGESTION_JOB,
            lambda: self.ingestion_service.sync_all_stores(full=full, store_identifier=store_identifier),
            trigger,
        )

    async def run_reconciliation(self, references: Optional[List[str]] = None,
                                 trigger: str = "scheduled") -> JobRecord:
        return await self._run_job(
            RECONCILIATION_JOB,
            lambda: self.reconciler.reconcile(references),
            trigger,
        )

    async def trigger_ingestion(self, full: bool = False, store_identifier: Optional[str] = None) -> JobRecord:
        """Manual ingestion run."""
        return await self.run_ingestion(full=full, store_identifier=store_identifier, trigger="manual")

    async def trigger_reconciliation(self, references: Optional[List[str]] = None) -> JobRecord:
        """Manual reconciliation run."""
        return await self.run_reconciliation(references=references, trigger="manual")

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times."""
        result = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            result[job.id] = next_run.strftime("%Y-%m-%d %H:%M:%S %Z") if next_run else None
        return result

    async def get_status(self) -> dict:
        """Scheduler and per-job state for status queries."""
        next_runs = self.get_next_run_times()
        jobs = {}
        for job in (INGESTION_JOB, RECONCILIATION_JOB):
            record = await self.get_record(job)
            entry = asdict(record)
            entry["state"] = RUNNING if self._running[job] else record.state
            entry["last_start_formatted"] = _format(record.last_start)
            entry["last_end_formatted"] = _format(record.last_end)
            entry["next_run"] = next_runs.get(job)
            entry["history"] = await self.get_history(job)
            jobs[job] = entry
        return {"scheduler_running": self.is_running, "jobs": jobs}
