"""
tests/test_scheduler.py: job state machine, skip rules and persisted records.

Covers: SyncScheduler.run_ingestion, run_reconciliation, start/stop,
        get_status, job history
Depends on: InMemoryCache, aiosqlite repository (conftest)
"""

import asyncio
import time

from ordersync_api.core.rate_limiter import RateLimiter
from ordersync_worker.services.ingestion import IngestionResult
from ordersync_worker.services.reconciler import ReconcileResult
from ordersync_worker.services.scheduler import ERRORED, FAILED, IDLE, SKIPPED, SUCCESS, SyncScheduler
from tests.conftest import add_source


class StubIngestion:
    def __init__(self, success=True, delay=0.0, error=None):
        self.success = success
        self.delay = delay
        self.error = error
        self.calls = []

    async def sync_all_stores(self, full=False, store_identifier=None):
        self.calls.append((full, store_identifier))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        now = time.time()
        return IngestionResult(started_at=now, completed_at=now, stores=[], created=2, errors=0,
                               success=self.success)


class StubReconciler:
    def __init__(self):
        self.calls = []

    async def reconcile(self, references=None):
        self.calls.append(references)
        return ReconcileResult(scope="all" if references is None else "references", started_at=time.time(),
                               updated=1, success=True)


def make_scheduler(repository, cache, ingestion=None, reconciler=None, run_timeout=5.0) -> SyncScheduler:
    return SyncScheduler(
        ingestion_service=ingestion or StubIngestion(),
        reconciler=reconciler or StubReconciler(),
        repository=repository,
        rate_limiter=RateLimiter(cache, min_delay=0),
        cache=cache,
        run_timeout=run_timeout,
    )


class TestRuns:

    async def test_successful_run_is_recorded(self, repository, cache):
        scheduler = make_scheduler(repository, cache)

        record = await scheduler.trigger_ingestion(full=True, store_identifier="store-a")

        assert record.last_status == SUCCESS
        assert record.state == IDLE
        assert record.trigger == "manual"
        assert record.last_result["created"] == 2
        assert record.last_end >= record.last_start
        assert scheduler.ingestion_service.calls == [(True, "store-a")]

        persisted = await scheduler.get_record("ingestion")
        assert persisted.last_status == SUCCESS
        assert len(await scheduler.get_history("ingestion")) == 1

    async def test_unsuccessful_result_is_failed(self, repository, cache):
        scheduler = make_scheduler(repository, cache, ingestion=StubIngestion(success=False))

        record = await scheduler.run_ingestion()

        assert record.last_status == FAILED

    async def test_exception_is_errored_not_raised(self, repository, cache):
        scheduler = make_scheduler(repository, cache, ingestion=StubIngestion(error=RuntimeError("db gone")))

        record = await scheduler.run_ingestion()

        assert record.last_status == ERRORED
        assert "db gone" in record.last_error
        assert scheduler.is_job_running("ingestion") is False

    async def test_timeout_is_errored(self, repository, cache):
        scheduler = make_scheduler(repository, cache, ingestion=StubIngestion(delay=1.0), run_timeout=0.05)

        record = await scheduler.run_ingestion()

        assert record.last_status == ERRORED
        assert "timed out" in record.last_error
        assert record.state == IDLE

    async def test_overlapping_run_is_skipped(self, repository, cache):
        scheduler = make_scheduler(repository, cache, ingestion=StubIngestion(delay=0.2))

        first = asyncio.create_task(scheduler.run_ingestion())
        await asyncio.sleep(0.05)
        assert scheduler.is_job_running("ingestion") is True
        second = await scheduler.run_ingestion()
        first_record = await first

        assert second.last_status == SKIPPED
        assert first_record.last_status == SUCCESS
        assert len(scheduler.ingestion_service.calls) == 1

    async def test_ingestion_skipped_while_store_flagged(self, repository, session_factory, cache):
        await add_source(session_factory, "store-a")
        scheduler = make_scheduler(repository, cache)
        await scheduler.rate_limiter.flag_store("store-a", ttl=900)

        record = await scheduler.run_ingestion()

        assert record.last_status == SKIPPED
        assert "store-a" in record.last_error
        assert scheduler.ingestion_service.calls == []
        assert (await scheduler.get_history("ingestion"))[0]["last_status"] == SKIPPED

    async def test_reconciliation_runs_independently(self, repository, cache):
        reconciler = StubReconciler()
        scheduler = make_scheduler(repository, cache, reconciler=reconciler)

        record = await scheduler.trigger_reconciliation(["R1", "R2"])

        assert record.last_status == SUCCESS
        assert record.last_result["scope"] == "references"
        assert reconciler.calls == [["R1", "R2"]]

    async def test_history_is_capped(self, repository, cache):
        scheduler = make_scheduler(repository, cache)

        for _ in range(12):
            await scheduler.run_reconciliation()

        assert len(await scheduler.get_history("reconciliation")) == 10


class TestLifecycle:

    async def test_start_registers_cron_jobs(self, repository, cache):
        scheduler = make_scheduler(repository, cache)

        await scheduler.start()
        try:
            assert scheduler.is_running is True
            next_runs = scheduler.get_next_run_times()
            assert set(next_runs) == {"ingestion", "reconciliation"}
            assert all(next_runs.values())

            status = await scheduler.get_status()
            assert status["scheduler_running"] is True
            assert status["jobs"]["ingestion"]["state"] == IDLE
            assert status["jobs"]["reconciliation"]["next_run"] == next_runs["reconciliation"]
        finally:
            await scheduler.stop()

        assert scheduler.is_running is False

    async def test_status_before_start(self, repository, cache):
        scheduler = make_scheduler(repository, cache)
        await scheduler.run_reconciliation()

        status = await scheduler.get_status()

        assert status["scheduler_running"] is False
        assert status["jobs"]["reconciliation"]["last_status"] == SUCCESS
        assert status["jobs"]["reconciliation"]["last_end_formatted"] is not None
        assert status["jobs"]["ingestion"]["last_status"] is None
