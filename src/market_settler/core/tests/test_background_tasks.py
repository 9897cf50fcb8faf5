"""
Tests for BackgroundTasksManager and JobGate.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_settler.core.background_tasks import (
    BackgroundTaskConfig,
    BackgroundTasksManager,
    JobGate,
)
from market_settler.core.settlement import SettlementResult, SettlementState
from market_settler.storage import MarketRepository


def _fast_config(**overrides) -> BackgroundTaskConfig:
    values = dict(
        settlement_interval_seconds=0.05,
        settlement_delay_seconds=60,
        settlement_pause_seconds=0,
        max_retries=3,
        backfill_interval_seconds=0.05,
        backfill_pause_seconds=0,
        backup_interval_hours=0,
        settlement_initial_delay_seconds=0.01,
        backfill_initial_delay_seconds=0.01,
    )
    values.update(overrides)
    return BackgroundTaskConfig(**values)


class TestJobGate:
    """Tests for JobGate."""

    def test_acquire_and_release(self):
        gate = JobGate()

        with gate.hold("settlement") as acquired:
            assert acquired is True
            assert gate.is_busy("settlement")

        assert not gate.is_busy("settlement")

    def test_second_hold_skipped(self):
        gate = JobGate()

        with gate.hold("settlement") as first:
            with gate.hold("settlement") as second:
                assert first is True
                assert second is False
            # The skipped holder must not release the slot
            assert gate.is_busy("settlement")

    def test_jobs_are_independent(self):
        gate = JobGate()

        with gate.hold("settlement"):
            with gate.hold("metadata_backfill") as acquired:
                assert acquired is True
                assert gate.active == frozenset({"settlement", "metadata_backfill"})

    def test_released_on_exception(self):
        gate = JobGate()

        with pytest.raises(RuntimeError):
            with gate.hold("settlement"):
                raise RuntimeError("boom")

        assert not gate.is_busy("settlement")


@pytest.fixture
def mock_pipeline():
    pipeline = MagicMock()

    async def settle(market):
        return SettlementResult(condition_id=market.condition_id, state=SettlementState.SETTLED)

    pipeline.settle = AsyncMock(side_effect=settle)
    return pipeline


@pytest.mark.asyncio
class TestRunSettlementOnce:
    """Tests for run_settlement_once()."""

    async def test_processes_eligible_in_end_time_order(
        self, repo: MarketRepository, make_market, mock_pipeline, clock, now
    ):
        await make_market("0x" + "01" * 32, end_time=now - 500)
        await make_market("0x" + "02" * 32, end_time=now - 900)
        await make_market("0x" + "03" * 32, end_time=now + 500)  # not ended
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)

        results = await manager.run_settlement_once()

        settled = [call.args[0].condition_id for call in mock_pipeline.settle.await_args_list]
        assert settled == ["0x" + "02" * 32, "0x" + "01" * 32]
        assert len(results) == 2

    async def test_concurrent_run_is_skipped(
        self, repo: MarketRepository, make_market, mock_pipeline, clock, now
    ):
        """A run started during another run is a no-op; each market is settled once."""
        for i in range(3):
            await make_market("0x" + f"{i:02x}" * 32, end_time=now - 1_000 + i)

        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_settle(market):
            started.set()
            await release.wait()
            return SettlementResult(condition_id=market.condition_id, state=SettlementState.SETTLED)

        mock_pipeline.settle.side_effect = slow_settle
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)

        first = asyncio.create_task(manager.run_settlement_once())
        await started.wait()
        second = await manager.run_settlement_once()
        release.set()
        first_results = await first

        assert second is None
        assert len(first_results) == 3
        assert mock_pipeline.settle.await_count == 3

    async def test_nothing_eligible(self, repo, mock_pipeline, clock):
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)

        assert await manager.run_settlement_once() == []
        mock_pipeline.settle.assert_not_awaited()

    async def test_storage_error_aborts_run(self, mock_pipeline, clock):
        """A store failure propagates out of the run and releases the gate."""
        repo = MagicMock()
        repo.count_by_status = AsyncMock(return_value={})
        repo.get_exhausted = AsyncMock(return_value=[])
        repo.get_eligible = AsyncMock(side_effect=RuntimeError("database is locked"))
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)

        with pytest.raises(RuntimeError):
            await manager.run_settlement_once()

        assert not manager.gate.is_busy("settlement")


@pytest.mark.asyncio
class TestOtherJobs:
    """Tests for backfill and backup jobs."""

    async def test_backfill_uses_config(self, repo, mock_pipeline, clock):
        ingestor = MagicMock()
        ingestor.backfill_metadata = AsyncMock(return_value=2)
        config = _fast_config(backfill_batch_size=7, backfill_pause_seconds=0.5)
        manager = BackgroundTasksManager(repo, mock_pipeline, ingestor=ingestor, config=config, clock=clock)

        assert await manager.run_backfill_once() == 2
        ingestor.backfill_metadata.assert_awaited_once_with(limit=7, pause=0.5)

    async def test_backfill_skipped_when_busy(self, repo, mock_pipeline, clock):
        ingestor = MagicMock()
        ingestor.backfill_metadata = AsyncMock(return_value=0)
        manager = BackgroundTasksManager(repo, mock_pipeline, ingestor=ingestor, config=_fast_config(), clock=clock)

        with manager.gate.hold("metadata_backfill"):
            assert await manager.run_backfill_once() is None

        ingestor.backfill_metadata.assert_not_awaited()

    async def test_backup_job(self, repo, db, mock_pipeline, clock):
        manager = BackgroundTasksManager(repo, mock_pipeline, db=db, config=_fast_config(), clock=clock)

        path = await manager.run_backup_once()

        assert path.exists()


@pytest.mark.asyncio
class TestManagerLifecycle:
    """Tests for start()/stop()."""

    async def test_start_runs_jobs_and_stops(
        self, repo, make_market, mock_pipeline, clock, condition_id
    ):
        await make_market(condition_id)
        ingestor = MagicMock()
        ingestor.backfill_metadata = AsyncMock(return_value=0)
        manager = BackgroundTasksManager(repo, mock_pipeline, ingestor=ingestor, config=_fast_config(), clock=clock)

        await manager.start()
        assert manager.is_running
        for _ in range(100):
            if mock_pipeline.settle.await_count and ingestor.backfill_metadata.await_count:
                break
            await asyncio.sleep(0.01)
        await manager.stop()

        assert not manager.is_running
        assert mock_pipeline.settle.await_count >= 1
        assert ingestor.backfill_metadata.await_count >= 1

    async def test_loop_survives_job_error(self, repo, mock_pipeline, clock, monkeypatch):
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)
        calls = []

        async def failing_run():
            calls.append(1)
            raise RuntimeError("boom")

        monkeypatch.setattr(manager, "run_settlement_once", failing_run)
        sleep = asyncio.sleep

        async def fast_sleep(delay):
            await sleep(0)

        monkeypatch.setattr("market_settler.core.background_tasks.asyncio.sleep", fast_sleep)

        await manager.start()
        for _ in range(200):
            if len(calls) >= 2:
                break
            await sleep(0.01)
        await manager.stop()

        assert len(calls) >= 2

    async def test_start_twice_is_noop(self, repo, mock_pipeline, clock):
        manager = BackgroundTasksManager(repo, mock_pipeline, config=_fast_config(), clock=clock)

        await manager.start()
        await manager.start()
        assert len(manager._tasks) == 1
        await manager.stop()
