"""
Settlement scheduler: cron registration, manual trigger, crash containment.
"""
import asyncio

import pytest

from core.scheduler import SettlementScheduler, SETTLEMENT_JOB_ID


class StubSweeper:

    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def run_once(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {"status": "completed", "settled": 0, "skipped_reason": None}


@pytest.fixture
def stub():
    return StubSweeper()


class TestSettlementScheduler:

    async def test_start_registers_daily_job(self, stub):
        scheduler = SettlementScheduler(stub, timezone="Asia/Kolkata", hour=16)
        scheduler.start()
        try:
            assert scheduler.running is True
            jobs = scheduler.scheduler.get_jobs()
            assert [job.id for job in jobs] == [SETTLEMENT_JOB_ID]
            assert "T16:00:00+05:30" in scheduler.next_run_time()

            scheduler.start()
            assert len(scheduler.scheduler.get_jobs()) == 1
        finally:
            scheduler.shutdown()

        assert scheduler.running is False

    async def test_shutdown_is_reported_before_the_loop_stops_it(self, stub):
        scheduler = SettlementScheduler(stub)
        scheduler.start()

        scheduler.shutdown()
        scheduler.shutdown()

        assert scheduler.running is False
        await asyncio.sleep(0)
        assert scheduler.running is False

    async def test_next_run_time_before_start(self, stub):
        assert SettlementScheduler(stub).next_run_time() is None

    async def test_run_now_uses_the_sweeper(self, stub):
        scheduler = SettlementScheduler(stub)

        report = await scheduler.run_now()

        assert report["status"] == "completed"
        assert stub.calls == 1

    async def test_scheduled_run_contains_crashes(self):
        crashing = StubSweeper(error=RuntimeError("mongo down"))
        scheduler = SettlementScheduler(crashing)

        await scheduler._scheduled_run()

        assert crashing.calls == 1

    async def test_sweeps_real_data(self, services, make_merchant, make_transaction):
        merchant = await make_merchant()
        await make_transaction(merchant["merchant_id"], 1000, settlement_status="unsettled")

        report = await services.scheduler.run_now()

        assert report["settled"] == 1
        assert services.sweeper.last_report == report
