"""
Unit tests for the backend queue simulator module.

Tests the job lifecycle, queues, servers, scheduling, the admission gate,
the backup mechanism, statistics and the engine invariants.
"""

import pytest
from unittest.mock import MagicMock
import numpy as np

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'backend'))

from queue_simulator import (
    Job, JobStatus, Waypoint, InvalidTransitionError, TERMINAL_STATUSES,
    JobQueue, Server, ServerPool, ServerStatus, sample_service_time,
    AdmissionGate, Scheduler, BackupStore, SimulationStats, SimulationHistory,
    SimulationEngine
)
from scenario_config import Population, Scenario, SchedulingPolicy, SimulationConfig, PopulationConfig


def make_job(job_id=1, population=Population.STANDARD, arrival_time=0.0):
    return Job(job_id, population, arrival_time)


def channels_config(**changes):
    return SimulationConfig(scenario=Scenario.CHANNELS, **changes)


class TestJob:
    """Test cases for the Job class."""

    def test_job_creation(self):
        """Test basic job creation with default values."""
        job = make_job(7, Population.TYPE_A, 1500.0)

        assert job.job_id == 7
        assert job.population == Population.TYPE_A
        assert job.arrival_time == 1500.0
        assert job.status == JobStatus.ARRIVED
        assert job.completion_time is None
        assert job.wait_time is None
        assert job.waypoint == Waypoint.SOURCE
        assert not job.in_transit

    def test_full_lifecycle(self):
        """Test the complete job processing workflow."""
        job = make_job()
        path = [
            JobStatus.QUEUED_EXEC,
            JobStatus.EXECUTING,
            JobStatus.QUEUED_RESULT,
            JobStatus.RESULTING,
            JobStatus.DONE,
        ]
        for status in path:
            previous = job.transition(status)
            assert job.status == status
            assert previous != status

        assert job.status.is_terminal

    @pytest.mark.parametrize("start,target", [
        (JobStatus.ARRIVED, JobStatus.DONE),
        (JobStatus.ARRIVED, JobStatus.EXECUTING),
        (JobStatus.QUEUED_EXEC, JobStatus.REJECTED_EXEC),
        (JobStatus.QUEUED_RESULT, JobStatus.DONE),
        (JobStatus.DONE, JobStatus.QUEUED_EXEC),
        (JobStatus.REJECTED_RESULT, JobStatus.RESULTING),
    ])
    def test_illegal_transitions(self, start, target):
        """Test that edges outside the lifecycle raise."""
        job = make_job()
        job.status = start

        with pytest.raises(InvalidTransitionError):
            job.transition(target)
        assert job.status == start

    def test_terminal_statuses(self):
        """Test which statuses end the lifecycle."""
        assert TERMINAL_STATUSES == {
            JobStatus.DONE,
            JobStatus.REJECTED_EXEC,
            JobStatus.REJECTED_RESULT,
            JobStatus.SAVED_BY_BACKUP,
        }
        assert not JobStatus.RESULTING.is_terminal

    def test_wait_time(self):
        """Test wait time once the job completes."""
        job = make_job(arrival_time=1000.0)
        assert job.age(2500.0) == 1500.0

        job.completion_time = 4000.0
        assert job.wait_time == 3000.0
        assert job.age(9999.0) == 3000.0

    def test_transit(self):
        """Test travel towards a waypoint."""
        job = make_job()
        job.head_to(Waypoint.EXEC_SERVER, 300.0, server_index=2)

        assert job.in_transit
        assert job.server_index == 2
        job.advance_transit(200.0)
        assert job.transit_remaining == pytest.approx(100.0)
        job.advance_transit(200.0)
        assert job.transit_remaining == 0.0
        assert not job.in_transit

    def test_job_to_dict(self):
        """Test job serialization for the presentation layer."""
        job = make_job(3, Population.TYPE_B, 100.0)
        data = job.to_dict(600.0)

        assert data["job_id"] == 3
        assert data["population"] == "TypeB"
        assert data["status"] == "Arrived"
        assert data["waypoint"] == "source"
        assert data["age"] == 500.0


class TestJobQueue:
    """Test cases for the JobQueue class."""

    def test_queue_creation(self):
        """Test queue initialization."""
        queue = JobQueue("exec", capacity=5)

        assert queue.capacity == 5
        assert queue.get_queue_length() == 0
        assert queue.is_empty()
        assert not queue.is_full()

    def test_add_until_full(self):
        """Test that admission fails once capacity is reached."""
        queue = JobQueue("exec", capacity=2)

        assert queue.add_job(make_job(1))
        assert queue.add_job(make_job(2))
        assert queue.is_full()
        assert not queue.add_job(make_job(3))
        assert queue.get_queue_length() == 2
        assert queue.total_refused == 1

    def test_zero_capacity_refuses_everything(self):
        """Test a zero capacity queue never admits."""
        queue = JobQueue("exec", capacity=0)

        assert queue.is_full()
        assert not queue.add_job(make_job())
        assert queue.is_empty()

    def test_unbounded_queue(self):
        """Test a queue without capacity is never full."""
        queue = JobQueue("result", capacity=None)

        for job_id in range(1000):
            assert queue.add_job(make_job(job_id))
        assert not queue.is_full()
        assert len(queue) == 1000

    def test_fifo_order(self):
        """Test jobs leave in arrival order."""
        queue = JobQueue("exec")
        for job_id in (1, 2, 3):
            queue.add_job(make_job(job_id))

        assert [queue.get_next_job().job_id for _ in range(3)] == [1, 2, 3]
        assert queue.get_next_job() is None

    def test_pop_and_find_index(self):
        """Test removal from an arbitrary position."""
        queue = JobQueue("exec")
        queue.add_job(make_job(1, Population.TYPE_A))
        queue.add_job(make_job(2, Population.TYPE_B))
        queue.add_job(make_job(3, Population.TYPE_B))

        assert queue.find_index(Population.TYPE_B) == 1
        assert queue.find_index(Population.STANDARD) == -1
        assert queue.pop(1).job_id == 2
        assert [job.job_id for job in queue] == [1, 3]

    def test_queue_stats(self):
        """Test statistics with and without capacity."""
        queue = JobQueue("exec", capacity=4)
        queue.add_job(make_job())
        stats = queue.get_queue_stats()

        assert stats["queue_length"] == 1
        assert stats["queue_utilization"] == 0.25
        assert JobQueue("exec", None).get_queue_stats()["queue_utilization"] == 0.0
        assert JobQueue("exec", 0).get_queue_stats()["queue_utilization"] == 0.0


class TestServer:
    """Test cases for the Server and ServerPool classes."""

    def test_server_creation(self):
        """Test server initialization."""
        server = Server(0, "exec")

        assert server.status == ServerStatus.IDLE
        assert server.can_accept_job()
        assert server.current_job is None

    def test_service_runs_down(self):
        """Test a job finishes once its service time has elapsed."""
        server = Server(0, "exec")
        job = make_job()
        assert server.assign_job(job, 120.0)
        assert not server.assign_job(make_job(2), 50.0)

        assert server.tick(50.0) is None
        assert server.remaining_time == pytest.approx(70.0)
        assert server.tick(50.0) is None
        assert server.tick(50.0) is job
        assert server.status == ServerStatus.IDLE
        assert server.jobs_served == 1

    def test_service_waits_for_transit(self):
        """Test the service clock is frozen while the job travels."""
        server = Server(1, "result")
        job = make_job()
        job.head_to(Waypoint.RESULT_SERVER, 100.0, server_index=1)
        server.assign_job(job, 10.0)

        assert server.tick(50.0) is None
        assert server.remaining_time == 10.0
        job.advance_transit(100.0)
        assert server.tick(50.0) is job

    def test_idle_tick(self):
        """Test ticking an idle server does nothing."""
        assert Server(0, "exec").tick(50.0) is None

    def test_pool_utilization(self):
        """Test pool occupancy accounting."""
        pool = ServerPool("exec", 4)
        pool[0].assign_job(make_job(1), 100.0)
        pool[2].assign_job(make_job(2), 100.0)

        assert len(pool) == 4
        assert pool.busy_count == 2
        assert pool.utilization() == 0.5
        assert [s.server_id for s in pool.idle_servers()] == [1, 3]
        assert [job.job_id for job in pool.current_jobs()] == [1, 2]


class TestServiceTimes:
    """Test exponential service time sampling."""

    def test_mean_service_time(self):
        """Test sampled durations are in milliseconds with the configured mean."""
        rng = np.random.default_rng(42)
        samples = np.array([sample_service_time(2.0, rng) for _ in range(10000)])

        assert (samples > 0).all()
        assert samples.mean() == pytest.approx(2000.0, rel=0.05)

    def test_reproducible(self):
        """Test the same seed gives the same draws."""
        first = [sample_service_time(1.0, np.random.default_rng(7)) for _ in range(3)]
        second = [sample_service_time(1.0, np.random.default_rng(7)) for _ in range(3)]
        assert first == second


class TestAdmissionGate:
    """Test the periodic admission gate."""

    @pytest.mark.parametrize("time_ms,blocked", [
        (0.0, True),
        (4999.0, True),
        (5000.0, False),
        (6999.0, False),
        (7000.0, True),
        (12500.0, False),
        (14100.0, True),
    ])
    def test_cycle(self, time_ms, blocked):
        """Test the gate is blocked first then open in each cycle."""
        assert AdmissionGate(5.0, 2.0).is_blocked(time_ms) == blocked

    def test_empty_cycle_never_blocks(self):
        """Test a zero-length cycle leaves the gate open."""
        assert not AdmissionGate(0.0, 0.0).is_blocked(1234.0)

    def test_always_open(self):
        """Test a zero blocked phase leaves the gate open."""
        gate = AdmissionGate(0.0, 3.0)
        assert not any(gate.is_blocked(t) for t in range(0, 10000, 100))

    def test_only_in_channels(self):
        """Test the gate is only built for the Channels scenario."""
        assert AdmissionGate.from_config(SimulationConfig(dam_enabled=True)) is None
        assert AdmissionGate.from_config(channels_config(dam_enabled=False)) is None
        assert AdmissionGate.from_config(channels_config(dam_enabled=True)) == AdmissionGate(5.0, 2.0)


class TestScheduler:
    """Test execution-stage scheduling policies."""

    @pytest.fixture
    def queue(self):
        queue = JobQueue("exec")
        queue.add_job(make_job(1, Population.TYPE_A))
        queue.add_job(make_job(2, Population.TYPE_B))
        queue.add_job(make_job(3, Population.TYPE_A))
        return queue

    def test_fifo(self, queue):
        assert Scheduler.select_index(queue, channels_config()) == 0

    def test_type_b_first(self, queue):
        config = channels_config(priority_mode=SchedulingPolicy.TYPE_B_FIRST)
        assert Scheduler.select_index(queue, config) == 1

    def test_type_a_first(self, queue):
        config = channels_config(priority_mode=SchedulingPolicy.TYPE_A_FIRST)
        assert Scheduler.select_index(queue, config) == 0

    def test_sjf_uses_configured_means(self, queue):
        """Test SJF prefers the population with the shorter mean execution time."""
        config = channels_config(priority_mode=SchedulingPolicy.SJF)
        assert Scheduler.preferred_population(config) == Population.TYPE_A

        config = config.with_changes(type_b=PopulationConfig(Population.TYPE_B, 0.5, 0.2))
        assert Scheduler.preferred_population(config) == Population.TYPE_B
        assert Scheduler.select_index(queue, config) == 1

    def test_fallback_to_head(self):
        """Test the head of the queue is taken when no preferred job is waiting."""
        queue = JobQueue("exec")
        queue.add_job(make_job(1, Population.TYPE_A))
        config = channels_config(priority_mode="TYPE_B_FIRST")

        assert Scheduler.select_index(queue, config) == 0

    def test_policy_ignored_in_waterfall(self, queue):
        """Test scheduling is FIFO with a single population."""
        config = SimulationConfig(priority_mode=SchedulingPolicy.TYPE_B_FIRST)
        assert Scheduler.select_index(queue, config) == 0


class TestBackupStore:
    """Test the backup decision and storage."""

    def test_zero_probability_draws_nothing(self):
        """Test no random draw happens when backup is disabled."""
        rng = MagicMock()
        assert not BackupStore.should_save(rng, 0.0)
        rng.random.assert_not_called()

    def test_certain_backup(self):
        rng = np.random.default_rng(0)
        assert all(BackupStore.should_save(rng, 1.0) for _ in range(100))

    def test_store(self):
        store = BackupStore()
        job = make_job()
        store.store(job)

        assert len(store) == 1
        assert job in store


class TestSimulationStats:
    """Test outcome counters and their guards."""

    def _completed_job(self, job_id, wait, population=Population.STANDARD):
        job = make_job(job_id, population, arrival_time=0.0)
        job.completion_time = wait
        return job

    def test_empty_stats(self):
        """Test averages and variance guard against missing samples."""
        stats = SimulationStats([Population.STANDARD])

        assert stats.average_wait() == 0.0
        assert stats.variance() == 0.0
        assert stats.terminal_count == 0

    def test_single_sample_variance(self):
        stats = SimulationStats([Population.STANDARD])
        stats.record_completion(self._completed_job(1, 1000.0))

        assert stats.average_wait() == 1000.0
        assert stats.variance() == 0.0

    def test_empirical_variance(self):
        """Test variance divides by the number of samples."""
        stats = SimulationStats([Population.STANDARD])
        stats.record_completion(self._completed_job(1, 1000.0))
        stats.record_completion(self._completed_job(2, 3000.0))

        assert stats.average_wait() == 2000.0
        assert stats.variance() == pytest.approx(1_000_000.0)
        assert stats.pop_stats[Population.STANDARD].variance() == pytest.approx(1_000_000.0)

    def test_rejections(self):
        """Test rejection counters stay consistent."""
        stats = SimulationStats([Population.TYPE_A, Population.TYPE_B])
        stats.record_exec_rejection(make_job(1, Population.TYPE_A))
        stats.record_result_rejection(make_job(2, Population.TYPE_B))
        stats.record_result_rejection(make_job(3, Population.TYPE_B))

        assert stats.rejected == 3
        assert stats.rejected_exec == 1
        assert stats.rejected_result == 2
        assert stats.blank_pages == 2
        assert stats.pop_stats[Population.TYPE_B].rejected == 2

    def test_backup_counts_as_completion(self):
        stats = SimulationStats([Population.TYPE_A, Population.TYPE_B])
        stats.record_backup_save(self._completed_job(1, 500.0, Population.TYPE_A))

        assert stats.saved_by_backup == 1
        assert stats.completed == 1
        assert stats.pop_stats[Population.TYPE_A].completed == 1
        assert stats.pop_stats[Population.TYPE_B].average_wait() == 0.0


class TestSimulationHistory:
    """Test the history time series."""

    def test_record_and_frame(self):
        history = SimulationHistory()
        history.record(1.0, 3, 0, 60.0, 0, True, 6)
        history.record(2.0, 2, 1, 80.0, 1, False, 7)
        frame = history.to_frame()

        assert len(history) == 2
        assert list(frame.index) == [1.0, 2.0]
        assert list(frame["dam_blocked"]) == [1, 0]
        assert list(frame["in_system"]) == [6, 7]


class TestSimulationEngine:
    """Test cases for the SimulationEngine class."""

    def test_engine_creation(self):
        """Test engine initialization from the defaults."""
        engine = SimulationEngine(SimulationConfig(seed=1))

        assert engine.time == 0.0
        assert not engine.paused
        assert not engine.finished
        assert len(engine.exec_servers) == 5
        assert len(engine.result_servers) == 1
        assert engine.exec_queue.capacity == 10
        assert engine.jobs == {}

    def test_waterfall_population(self):
        """Test the Waterfall scenario only produces the standard population."""
        engine = SimulationEngine(SimulationConfig(seed=3, max_duration=30))
        populations = set()
        engine.add_listener(lambda event: populations.add(event.population))
        engine.run_to_completion()

        assert populations == {Population.STANDARD}
        assert set(engine.stats.pop_stats) == {Population.STANDARD}

    def test_channels_populations(self):
        """Test the Channels scenario produces both populations only."""
        engine = SimulationEngine(channels_config(seed=3, max_duration=30))
        populations = set()
        engine.add_listener(lambda event: populations.add(event.population))
        engine.run_to_completion()

        assert populations == {Population.TYPE_A, Population.TYPE_B}

    def test_determinism(self):
        """Test identical seeds give identical runs."""
        config = channels_config(seed=11, max_duration=20, backup_prob=0.5, result_queue_cap=2)
        first = SimulationEngine(config)
        second = SimulationEngine(config)
        first.run_to_completion()
        second.run_to_completion()

        assert first.stats.to_dict() == second.stats.to_dict()
        assert first.history.to_dict() == second.history.to_dict()

    def test_conservation_after_completion(self):
        """Test every arrival ends in exactly one outcome."""
        config = SimulationConfig(seed=5, max_duration=60, exec_queue_cap=3, result_queue_cap=1,
                                  standard=PopulationConfig(Population.STANDARD, 3.0, 2.0),
                                  backup_prob=0.3)
        engine = SimulationEngine(config)
        engine.run_to_completion()
        stats = engine.stats

        assert stats.arrivals > 0
        assert stats.completed + stats.rejected == stats.arrivals
        assert stats.rejected == stats.rejected_exec + stats.rejected_result
        assert stats.saved_by_backup == len(engine.backup_store)
        for pop in stats.pop_stats.values():
            assert pop.completed + pop.rejected == pop.arrivals
        assert sum(pop.arrivals for pop in stats.pop_stats.values()) == stats.arrivals

    def test_drain_empties_pipeline(self):
        """Test nothing is left in queues or servers after a completed run."""
        config = SimulationConfig(seed=8, max_duration=20, exec_queue_cap=None, result_queue_cap=None,
                                  standard=PopulationConfig(Population.STANDARD, 4.0, 3.0))
        engine = SimulationEngine(config)
        result = engine.run_to_completion()

        assert result["drained_jobs"] > 0
        assert engine.exec_queue.is_empty()
        assert engine.result_queue.is_empty()
        assert engine.exec_servers.busy_count == 0
        assert engine.result_servers.busy_count == 0
        assert engine.jobs_in_system == 0
        assert engine.stats.completed == engine.stats.arrivals

    def test_capacity_never_exceeded(self):
        """Test queue lengths stay within capacity at every transition."""
        config = SimulationConfig(seed=2, max_duration=30, exec_queue_cap=2, result_queue_cap=1,
                                  standard=PopulationConfig(Population.STANDARD, 5.0, 1.0))
        engine = SimulationEngine(config)
        violations = []

        def check(event):
            if len(engine.exec_queue) > 2 or len(engine.result_queue) > 1:
                violations.append(event)

        engine.add_listener(check)
        engine.run_to_completion()

        assert violations == []
        assert engine.stats.rejected_exec > 0

    def test_job_exclusivity(self):
        """Test a job is never held in two places at once."""
        config = channels_config(seed=4, max_duration=10, exec_queue_cap=4, result_queue_cap=2)
        engine = SimulationEngine(config)

        while not engine.finished:
            engine.advance(50.0)
            held = (
                [job.job_id for job in engine.exec_queue]
                + [job.job_id for job in engine.result_queue]
                + [job.job_id for job in engine.exec_servers.current_jobs()]
                + [job.job_id for job in engine.result_servers.current_jobs()]
            )
            assert len(held) == len(set(held))
            assert len(engine.exec_queue) <= 4
            assert len(engine.result_queue) <= 2

    def test_terminal_events_match_counters(self):
        """Test outcome counters grow by the terminal transitions of each step."""
        engine = SimulationEngine(SimulationConfig(seed=6, max_duration=15, result_queue_cap=0))
        terminal_events = []
        engine.add_listener(
            lambda event: terminal_events.append(event) if event.to_status.is_terminal else None
        )

        while not engine.finished:
            before_count = len(terminal_events)
            before_terminal = engine.stats.terminal_count
            summary = engine.advance(50.0)
            assert summary["terminal_transitions"] == len(terminal_events) - before_count
            assert engine.stats.terminal_count - before_terminal == summary["terminal_transitions"]

    def test_zero_exec_capacity_rejects_everything(self):
        """Test a zero capacity execution queue rejects every arrival."""
        config = SimulationConfig(seed=12, max_duration=2, exec_queue_cap=0,
                                  standard=PopulationConfig(Population.STANDARD, 5.0, 2.0))
        engine = SimulationEngine(config)
        engine.run_to_completion()

        assert engine.stats.rejected_exec > 0
        assert engine.stats.rejected_exec == engine.stats.arrivals
        assert engine.stats.completed == 0

    def test_backup_saves_overflow(self):
        """Test certain backup rescues every result that overflows."""
        config = SimulationConfig(seed=9, max_duration=30, result_queue_cap=0, backup_prob=1.0)
        engine = SimulationEngine(config)
        engine.run_to_completion()
        stats = engine.stats

        assert stats.saved_by_backup > 0
        assert stats.saved_by_backup == len(engine.backup_store)
        assert stats.rejected_result == 0
        assert stats.blank_pages == 0
        assert all(job.status == JobStatus.SAVED_BY_BACKUP for job in engine.backup_store.jobs)

    def test_no_backup_loses_overflow(self):
        """Test overflowing results are lost without backup."""
        config = SimulationConfig(seed=9, max_duration=30, result_queue_cap=0, backup_prob=0.0)
        engine = SimulationEngine(config)
        engine.run_to_completion()

        assert engine.stats.saved_by_backup == 0
        assert engine.stats.rejected_result > 0
        assert engine.stats.blank_pages == engine.stats.rejected_result

    def test_dam_blocks_dispatch(self):
        """Test no job enters execution while the gate is blocked."""
        config = channels_config(seed=10, max_duration=30, dam_enabled=True)
        gate = AdmissionGate(5.0, 2.0)
        engine = SimulationEngine(config)
        dispatch_times = []
        engine.add_listener(
            lambda event: dispatch_times.append(event.time)
            if event.to_status == JobStatus.EXECUTING else None
        )

        while not engine.finished:
            engine.advance(50.0)

        assert dispatch_times
        assert not any(gate.is_blocked(t) for t in dispatch_times)
        assert set(engine.history.dam_blocked) == {0, 1}

    def test_dam_ignored_in_waterfall(self):
        """Test the gate never blocks in the Waterfall scenario."""
        engine = SimulationEngine(SimulationConfig(seed=10, max_duration=10, dam_enabled=True))
        engine.run_to_completion()

        assert not any(engine.history.dam_blocked)

    def test_history_sampling(self):
        """Test one history sample per simulated second."""
        engine = SimulationEngine(SimulationConfig(seed=1, max_duration=10))
        engine.run_to_completion()
        frame = engine.history.to_frame()

        assert list(frame.index) == [float(s) for s in range(1, 11)]
        assert set(frame.columns) == {
            "exec_queue", "result_queue", "utilization", "backup_count", "dam_blocked", "in_system"
        }
        assert frame["utilization"].between(0, 100).all()

    def test_waits_are_positive(self):
        engine = SimulationEngine(channels_config(seed=13, max_duration=30))
        engine.run_to_completion()

        assert engine.stats.completed > 0
        assert all(wait >= 0 for wait in engine.stats.wait_times)
        assert engine.get_variance() == engine.stats.variance()

    def test_snapshot(self):
        """Test the observation snapshot of an animated run."""
        engine = SimulationEngine(SimulationConfig(seed=1))
        for _ in range(100):
            engine.advance(50.0)
        snapshot = engine.snapshot()

        assert snapshot["time"] == pytest.approx(5000.0)
        assert snapshot["simulation_seconds"] == pytest.approx(5.0)
        assert set(snapshot["queues"]) == {"exec", "result"}
        assert len(snapshot["servers"]["exec"]) == 5
        assert snapshot["stats"]["arrivals"] == engine.stats.arrivals
        assert len(snapshot["jobs"]) == len(engine.jobs)


if __name__ == "__main__":
    pytest.main([__file__])
