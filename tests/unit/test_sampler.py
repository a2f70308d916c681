"""
Unit tests for the process sampler and its CPU-time cache.
"""

import time
from datetime import datetime, timedelta, timezone

import psutil
import pytest

from tasker.registry.sampler import (
    CpuTimeCache,
    ProcessSampler,
    SampleErrorType,
)

from tests.fixtures import FakeClock, FakeProcess
from tests.fixtures.registry_fixtures import MB


CREATE_TIME = 1_700_000_000.0
START = datetime.fromtimestamp(CREATE_TIME, timezone.utc)


class TestCpuTimeCache:
    """Test CPU percent from cached CPU-time deltas."""

    def test_first_observation_has_no_percent(self):
        clock = FakeClock()
        cache = CpuTimeCache(clock=clock.monotonic)

        assert cache.cpu_percent(10, 5.0) is None
        assert 10 in cache

    def test_percent_from_delta(self):
        clock = FakeClock()
        cache = CpuTimeCache(clock=clock.monotonic)

        cache.cpu_percent(10, 5.0)
        clock.advance(10)

        assert cache.cpu_percent(10, 7.0) == pytest.approx(20.0)

    def test_stale_entry_is_ignored(self):
        clock = FakeClock()
        cache = CpuTimeCache(max_age=300, clock=clock.monotonic)

        cache.cpu_percent(10, 5.0)
        clock.advance(300)
        assert cache.cpu_percent(10, 50.0) is None

        # The stale observation was replaced, so the next delta works again
        clock.advance(10)
        assert cache.cpu_percent(10, 51.0) == pytest.approx(10.0)

    def test_zero_elapsed_has_no_percent(self):
        clock = FakeClock()
        cache = CpuTimeCache(clock=clock.monotonic)

        cache.cpu_percent(10, 5.0)
        assert cache.cpu_percent(10, 6.0) is None

    def test_cpu_time_going_backwards(self):
        clock = FakeClock()
        cache = CpuTimeCache(clock=clock.monotonic)

        cache.cpu_percent(10, 5.0)
        clock.advance(5)
        assert cache.cpu_percent(10, 1.0) is None

    def test_forget_and_clear(self):
        cache = CpuTimeCache()
        cache.cpu_percent(1, 1.0)
        cache.cpu_percent(2, 1.0)

        cache.forget(1)
        assert 1 not in cache
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_prune_drops_expired_entries(self):
        clock = FakeClock()
        cache = CpuTimeCache(max_age=300, clock=clock.monotonic)
        cache.cpu_percent(1, 1.0)
        clock.advance(200)
        cache.cpu_percent(2, 1.0)
        clock.advance(100)

        assert cache.prune() == 1
        assert 1 not in cache
        assert 2 in cache


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sampler(fake_clock, process_table) -> ProcessSampler:
    return ProcessSampler(
        cache=CpuTimeCache(clock=fake_clock.monotonic),
        process_factory=process_table,
    )


class TestProcessSampler:
    """Test sampling of scripted processes."""

    async def test_successful_sample(self, sampler, process_table):
        process_table.add(FakeProcess(100, create_time=CREATE_TIME, rss=256 * MB, vms=512 * MB))

        result = await sampler.sample(100)

        assert result.ok
        snapshot = result.snapshot
        assert snapshot.process_start_time == START
        assert snapshot.memory_mb == pytest.approx(256.0)
        assert snapshot.memory_vms_mb == pytest.approx(512.0)
        assert snapshot.memory_percent == pytest.approx(1.5)
        assert snapshot.num_threads == 4
        assert snapshot.num_fds == 12
        assert snapshot.open_files == 3
        assert snapshot.read_bytes == 4096
        assert snapshot.write_count == 20
        assert snapshot.ctx_switches_voluntary == 100
        assert snapshot.ctx_switches_involuntary == 7
        assert snapshot.cpu_cores >= 1
        # No previous CPU observation yet
        assert snapshot.cpu_percent is None
        assert result.duration_ms >= 0

    async def test_cpu_percent_on_second_sample(self, sampler, process_table, fake_clock):
        process = process_table.add(FakeProcess(100, cpu_user=1.0, cpu_system=0.0))

        await sampler.sample(100)
        fake_clock.advance(10)
        process.cpu_user = 6.0

        result = await sampler.sample(100)

        assert result.ok
        assert result.snapshot.cpu_percent == pytest.approx(50.0)

    async def test_cpu_percent_scaled_by_cores(self, fake_clock, process_table):
        sampler = ProcessSampler(
            cache=CpuTimeCache(clock=fake_clock.monotonic),
            scale_cpu_by_cores=True,
            process_factory=process_table,
        )
        sampler.cpu_cores = 4
        process = process_table.add(FakeProcess(100, cpu_user=0.0, cpu_system=0.0))

        await sampler.sample(100)
        fake_clock.advance(10)
        process.cpu_user = 4.0

        result = await sampler.sample(100)
        assert result.snapshot.cpu_percent == pytest.approx(10.0)

    async def test_missing_process(self, sampler):
        result = await sampler.sample(999)

        assert not result.ok
        assert result.error_type == SampleErrorType.PROCESS_DIED
        assert result.error.is_alive is False

    async def test_process_death_clears_cpu_cache(self, sampler, process_table):
        process_table.add(FakeProcess(100))
        await sampler.sample(100)
        assert 100 in sampler.cache

        process_table.remove(100)
        result = await sampler.sample(100)

        assert result.error_type == SampleErrorType.PROCESS_DIED
        assert 100 not in sampler.cache

    async def test_pid_reuse_detected(self, sampler, process_table):
        process_table.add(FakeProcess(100, create_time=CREATE_TIME))

        result = await sampler.sample(100, previous_start_time=START - timedelta(seconds=30))

        assert not result.ok
        assert result.error_type == SampleErrorType.PID_REUSED
        assert result.error.is_alive is False
        assert result.error.process_start_time == START

    async def test_start_time_within_tolerance(self, sampler, process_table):
        process_table.add(FakeProcess(100, create_time=CREATE_TIME))

        result = await sampler.sample(100, previous_start_time=START + timedelta(seconds=0.5))

        assert result.ok

    async def test_zombie_status(self, sampler, process_table):
        process_table.add(FakeProcess(100, status=psutil.STATUS_ZOMBIE))

        result = await sampler.sample(100)

        assert result.error_type == SampleErrorType.ZOMBIE_PROCESS
        assert result.error.is_alive is False

    async def test_zombie_exception(self, sampler, process_table):
        process_table.add(FakeProcess(
            100, failures={"create_time": psutil.ZombieProcess(100)}
        ))

        result = await sampler.sample(100)

        assert result.error_type == SampleErrorType.ZOMBIE_PROCESS

    async def test_access_denied_start_time_keeps_partial_metrics(self, sampler, process_table):
        process_table.add(FakeProcess(
            100, rss=64 * MB, failures={"create_time": psutil.AccessDenied(100)}
        ))

        result = await sampler.sample(100)

        assert not result.ok
        assert result.error_type == SampleErrorType.PS_ERROR
        assert result.error.is_alive is True
        assert "start time" in result.error.message

        row = result.to_metric_sample("run-1", "worker-1", 100, START)
        assert row.collection_error is True
        assert row.error_type == "PS_ERROR"
        assert row.is_alive is True
        assert row.memory_mb == pytest.approx(64.0)
        assert row.process_start_time is None

    async def test_unreadable_metrics_become_none(self, sampler, process_table):
        denied = psutil.AccessDenied(100)
        process_table.add(FakeProcess(100, failures={
            "io_counters": denied,
            "num_fds": denied,
            "open_files": denied,
        }))

        result = await sampler.sample(100)

        assert result.ok
        assert result.snapshot.read_bytes is None
        assert result.snapshot.num_fds is None
        assert result.snapshot.open_files is None
        assert result.snapshot.memory_mb is not None

    async def test_children_aggregated(self, sampler, process_table, fake_clock):
        first = FakeProcess(201, rss=10 * MB, cpu_user=2.0, cpu_system=0.0)
        second = FakeProcess(203, rss=30 * MB, cpu_user=4.0, cpu_system=1.0)
        vanished = FakeProcess(202, failures={"cpu_times": psutil.NoSuchProcess(202)})
        process_table.add(FakeProcess(100, children=[first, second, vanished]))

        initial = (await sampler.sample(100)).snapshot
        assert initial.child_count == 3
        assert initial.child_total_cpu_percent is None
        assert initial.child_total_memory_mb == pytest.approx(40.0)

        fake_clock.advance(10)
        first.cpu_user += 0.5
        second.cpu_system += 1.5

        snapshot = (await sampler.sample(100)).snapshot
        assert snapshot.child_total_cpu_percent == pytest.approx(20.0)
        assert snapshot.child_total_memory_mb == pytest.approx(40.0)

    async def test_no_children_reports_zero_cpu(self, sampler, process_table):
        process_table.add(FakeProcess(100))

        snapshot = (await sampler.sample(100)).snapshot

        assert snapshot.child_count == 0
        assert snapshot.child_total_cpu_percent == 0.0

    async def test_children_skipped_when_disabled(self, sampler, process_table):
        process_table.add(FakeProcess(100, children=[FakeProcess(201)]))

        result = await sampler.sample(100, include_children=False)

        assert result.snapshot.child_count is None

    async def test_collection_timeout(self):
        def slow_factory(pid):
            time.sleep(0.5)
            return FakeProcess(pid)

        sampler = ProcessSampler(timeout=0.05, process_factory=slow_factory)

        result = await sampler.sample(100)

        assert result.error_type == SampleErrorType.COLLECTION_TIMEOUT
        assert result.error.is_alive is True
        assert result.error.message == "Metrics collection exceeded 0.05 seconds"

    async def test_unexpected_error_is_a_value(self):
        def broken_factory(pid):
            raise RuntimeError("procfs unavailable")

        sampler = ProcessSampler(process_factory=broken_factory)

        result = await sampler.sample(100)

        assert result.error_type == SampleErrorType.UNKNOWN
        assert "procfs unavailable" in result.error.message

    async def test_success_converts_to_metric_row(self, sampler, process_table):
        process_table.add(FakeProcess(100, create_time=CREATE_TIME))

        result = await sampler.sample(100)
        row = result.to_metric_sample("run-1", "worker-1", 100, START, reporter_version="1.2")

        assert row.is_alive is True
        assert row.collection_error is False
        assert row.error_type is None
        assert row.process_start_time == START
        assert row.reporter_version == "1.2"
        assert row.collection_duration_ms == result.duration_ms
