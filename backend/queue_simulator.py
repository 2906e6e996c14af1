"""
MoulinetteSim Backend Simulator

Time-stepped simulation of a two-stage queueing pipeline: an execution stage
followed by a result stage, each with a bounded (or unbounded) queue and a
pool of single-job servers. Supports one or two job populations, scheduling
policies, a periodic admission gate ("dam") and a backup mechanism for
results that overflow the result queue.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from scenario_config import (
    DESTRUCTIVE_FIELDS,
    Population,
    Scenario,
    SchedulingPolicy,
    SimulationConfig,
)

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Enumeration of job lifecycle states."""
    ARRIVED = "Arrived"
    QUEUED_EXEC = "Queued_Exec"
    EXECUTING = "Executing"
    QUEUED_RESULT = "Queued_Result"
    RESULTING = "Resulting"
    DONE = "Done"
    REJECTED_EXEC = "Rejected_Exec"
    REJECTED_RESULT = "Rejected_Result"
    SAVED_BY_BACKUP = "Saved_By_Backup"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.DONE,
    JobStatus.REJECTED_EXEC,
    JobStatus.REJECTED_RESULT,
    JobStatus.SAVED_BY_BACKUP,
})

ALLOWED_TRANSITIONS = {
    JobStatus.ARRIVED: frozenset({JobStatus.QUEUED_EXEC, JobStatus.REJECTED_EXEC}),
    JobStatus.QUEUED_EXEC: frozenset({JobStatus.EXECUTING}),
    JobStatus.EXECUTING: frozenset({
        JobStatus.QUEUED_RESULT,
        JobStatus.SAVED_BY_BACKUP,
        JobStatus.REJECTED_RESULT,
    }),
    JobStatus.QUEUED_RESULT: frozenset({JobStatus.RESULTING}),
    JobStatus.RESULTING: frozenset({JobStatus.DONE}),
    JobStatus.DONE: frozenset(),
    JobStatus.REJECTED_EXEC: frozenset(),
    JobStatus.REJECTED_RESULT: frozenset(),
    JobStatus.SAVED_BY_BACKUP: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job is moved along an edge missing from ALLOWED_TRANSITIONS."""


class ServerStatus(Enum):
    """Enumeration of server states."""
    IDLE = "idle"
    BUSY = "busy"


class Waypoint(Enum):
    """Logical places a job can be heading to, for the presentation layer."""
    SOURCE = "source"
    EXEC_QUEUE = "exec_queue"
    EXEC_SERVER = "exec_server"
    RESULT_QUEUE = "result_queue"
    RESULT_SERVER = "result_server"
    BACKUP = "backup"
    EXIT = "exit"


@dataclass
class Job:
    """
    Represents a single job flowing through the pipeline.

    Attributes:
        job_id: Monotonically increasing identifier, unique within a run
        population: Population the job belongs to
        arrival_time: Simulated arrival time in milliseconds
        status: Current lifecycle status
        completion_time: Simulated time the job reached Done or was saved by backup
        waypoint: Logical place the job is heading to or sitting at
        server_index: Index of the server when the waypoint is a server
        transit_remaining: Simulated milliseconds left before the job reaches its waypoint
    """
    job_id: int
    population: Population
    arrival_time: float
    status: JobStatus = JobStatus.ARRIVED
    completion_time: Optional[float] = None
    waypoint: Waypoint = Waypoint.SOURCE
    server_index: Optional[int] = None
    transit_remaining: float = 0.0

    @property
    def in_transit(self) -> bool:
        return self.transit_remaining > 0

    @property
    def wait_time(self) -> Optional[float]:
        """Time spent in the system, available once the job is complete."""
        if self.completion_time is None:
            return None
        return self.completion_time - self.arrival_time

    def age(self, now: float) -> float:
        end = self.completion_time if self.completion_time is not None else now
        return end - self.arrival_time

    def transition(self, new_status: JobStatus) -> JobStatus:
        """
        Move the job to a new status.

        Returns:
            The previous status

        Raises:
            InvalidTransitionError: if the edge is not part of the lifecycle
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.job_id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        previous = self.status
        self.status = new_status
        return previous

    def head_to(self, waypoint: Waypoint, travel_time: float = 0.0,
                server_index: Optional[int] = None) -> None:
        self.waypoint = waypoint
        self.server_index = server_index
        self.transit_remaining = max(0.0, travel_time)

    def advance_transit(self, dt: float) -> None:
        if self.transit_remaining > 0:
            self.transit_remaining = max(0.0, self.transit_remaining - dt)

    def to_dict(self, now: float) -> Dict[str, Any]:
        """Convert job to dictionary for the presentation layer."""
        return {
            "job_id": self.job_id,
            "population": self.population.value,
            "status": self.status.value,
            "waypoint": self.waypoint.value,
            "server_index": self.server_index,
            "in_transit": self.in_transit,
            "age": self.age(now),
        }


class JobQueue:
    """
    Ordered holding area for jobs waiting for a server.

    FIFO by default; the scheduler may remove a job from any position.
    Admission fails once the optional capacity is reached.
    """

    def __init__(self, name: str, capacity: Optional[int] = None):
        """
        Initialize the queue.

        Args:
            name: Stage name, used in logs and snapshots
            capacity: Maximum number of queued jobs, None for unbounded
        """
        self.name = name
        self.capacity = capacity
        self._queue: deque = deque()
        self.total_admitted = 0
        self.total_refused = 0

    def add_job(self, job: Job) -> bool:
        """
        Add a job to the back of the queue.

        Returns:
            True if the job was admitted, False if the queue is full
        """
        if self.is_full():
            self.total_refused += 1
            return False
        self._queue.append(job)
        self.total_admitted += 1
        return True

    def get_next_job(self) -> Optional[Job]:
        if not self._queue:
            return None
        return self._queue.popleft()

    def pop(self, index: int = 0) -> Job:
        """Remove and return the job at the given position."""
        if index == 0:
            return self._queue.popleft()
        job = self._queue[index]
        del self._queue[index]
        return job

    def peek_next_job(self) -> Optional[Job]:
        return self._queue[0] if self._queue else None

    def find_index(self, population: Population) -> int:
        """Position of the oldest queued job of a population, -1 if absent."""
        for idx, job in enumerate(self._queue):
            if job.population == population:
                return idx
        return -1

    def get_queue_length(self) -> int:
        return len(self._queue)

    def is_empty(self) -> bool:
        return len(self._queue) == 0

    def is_full(self) -> bool:
        return self.capacity is not None and len(self._queue) >= self.capacity

    def clear(self) -> List[Job]:
        jobs = list(self._queue)
        self._queue.clear()
        return jobs

    def __len__(self) -> int:
        return len(self._queue)

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._queue))

    def __contains__(self, job: Job) -> bool:
        return job in self._queue

    def get_queue_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the queue.

        Returns:
            Dictionary containing queue statistics
        """
        return {
            "name": self.name,
            "queue_length": len(self._queue),
            "capacity": self.capacity,
            "queue_utilization": (
                len(self._queue) / self.capacity if self.capacity else 0.0
            ),
            "total_admitted": self.total_admitted,
            "total_refused": self.total_refused,
        }


def sample_service_time(mean_seconds: float, rng: np.random.Generator) -> float:
    """
    Draw an exponential service time.

    Args:
        mean_seconds: Mean service time in seconds
        rng: Random generator of the engine

    Returns:
        Service duration in milliseconds
    """
    return float(stats.expon.rvs(scale=mean_seconds * 1000.0, random_state=rng))


class Server:
    """
    A single-job server of one pipeline stage.

    The remaining service time only runs down once the assigned job has
    reached the server (immediately when transits are instantaneous).
    """

    def __init__(self, server_id: int, stage: str):
        self.server_id = server_id
        self.stage = stage
        self.status = ServerStatus.IDLE
        self.current_job: Optional[Job] = None
        self.remaining_time = 0.0
        self.jobs_served = 0
        self.busy_time = 0.0

    def can_accept_job(self) -> bool:
        return self.status == ServerStatus.IDLE

    def assign_job(self, job: Job, service_time: float) -> bool:
        """
        Assign a job to this server.

        Args:
            job: Job taken from the stage queue
            service_time: Sampled service duration in milliseconds

        Returns:
            True if the job was assigned, False if the server is busy
        """
        if not self.can_accept_job():
            return False
        self.status = ServerStatus.BUSY
        self.current_job = job
        self.remaining_time = service_time
        return True

    def tick(self, dt: float) -> Optional[Job]:
        """
        Run the service down by one step.

        Returns:
            The finished job when service completes during this step, else None
        """
        if self.status != ServerStatus.BUSY or self.current_job is None:
            return None
        if self.current_job.in_transit:
            return None
        self.remaining_time -= dt
        self.busy_time += dt
        if self.remaining_time <= 0:
            self.jobs_served += 1
            return self.release()
        return None

    def release(self) -> Optional[Job]:
        """Free the server and return the job it was holding."""
        job = self.current_job
        self.status = ServerStatus.IDLE
        self.current_job = None
        self.remaining_time = 0.0
        return job

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "stage": self.stage,
            "status": self.status.value,
            "current_job": self.current_job.job_id if self.current_job else None,
            "remaining_time": self.remaining_time,
            "jobs_served": self.jobs_served,
        }


class ServerPool:
    """Fixed-size set of servers of one stage, kept in index order."""

    def __init__(self, stage: str, size: int):
        self.stage = stage
        self.servers = [Server(idx, stage) for idx in range(size)]

    def idle_servers(self) -> List[Server]:
        return [s for s in self.servers if s.status == ServerStatus.IDLE]

    def busy_servers(self) -> List[Server]:
        return [s for s in self.servers if s.status == ServerStatus.BUSY]

    @property
    def busy_count(self) -> int:
        return len(self.busy_servers())

    def utilization(self) -> float:
        if not self.servers:
            return 0.0
        return self.busy_count / len(self.servers)

    def current_jobs(self) -> List[Job]:
        return [s.current_job for s in self.servers if s.current_job is not None]

    def __iter__(self) -> Iterator[Server]:
        return iter(self.servers)

    def __len__(self) -> int:
        return len(self.servers)

    def __getitem__(self, idx: int) -> Server:
        return self.servers[idx]


@dataclass(frozen=True)
class AdmissionGate:
    """
    Periodic on/off gate in front of the execution servers.

    The state is a pure function of simulated time: within each cycle of
    block_time + open_time seconds the gate is blocked first, then open.
    """
    block_time: float
    open_time: float

    @property
    def cycle(self) -> float:
        return self.block_time + self.open_time

    def is_blocked(self, time_ms: float) -> bool:
        if self.cycle <= 0:
            return False
        phase = (time_ms / 1000.0) % self.cycle
        return phase < self.block_time

    @classmethod
    def from_config(cls, config: SimulationConfig) -> Optional["AdmissionGate"]:
        if not config.dam_active:
            return None
        return cls(config.dam_block_time, config.dam_open_time)


class Scheduler:
    """Chooses which queued job a freed execution server takes."""

    @staticmethod
    def preferred_population(config: SimulationConfig) -> Optional[Population]:
        if config.scenario != Scenario.CHANNELS:
            return None
        mode = config.priority_mode
        if mode == SchedulingPolicy.TYPE_A_FIRST:
            return Population.TYPE_A
        if mode == SchedulingPolicy.TYPE_B_FIRST:
            return Population.TYPE_B
        if mode == SchedulingPolicy.SJF:
            # Static priority by configured mean, not by the sampled job size
            if config.type_b.mean_exec_time < config.type_a.mean_exec_time:
                return Population.TYPE_B
            return Population.TYPE_A
        return None

    @classmethod
    def select_index(cls, queue: JobQueue, config: SimulationConfig) -> int:
        """
        Position of the job to dequeue next.

        Falls back to the oldest job when the preferred population is absent.
        """
        preferred = cls.preferred_population(config)
        if preferred is None:
            return 0
        idx = queue.find_index(preferred)
        return idx if idx != -1 else 0


class BackupStore:
    """Unbounded store of jobs rescued from a full result queue."""

    def __init__(self):
        self._jobs: List[Job] = []

    @staticmethod
    def should_save(rng: np.random.Generator, probability: float) -> bool:
        return probability > 0 and rng.random() < probability

    def store(self, job: Job) -> None:
        self._jobs.append(job)

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job: Job) -> bool:
        return job in self._jobs


def _wait_variance(values: List[float]) -> float:
    """Empirical (population) variance of the waits, 0 below two samples."""
    if len(values) < 2:
        return 0.0
    return float(np.var(values))


@dataclass
class PopulationStats:
    """Outcome counters of one population."""
    arrivals: int = 0
    completed: int = 0
    rejected: int = 0
    total_wait_time: float = 0.0
    wait_times: List[float] = field(default_factory=list)

    def record_completion(self, wait_time: float) -> None:
        self.completed += 1
        self.total_wait_time += wait_time
        self.wait_times.append(wait_time)

    def average_wait(self) -> float:
        return self.total_wait_time / self.completed if self.completed > 0 else 0.0

    def variance(self) -> float:
        return _wait_variance(self.wait_times)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arrivals": self.arrivals,
            "completed": self.completed,
            "rejected": self.rejected,
            "total_wait_time": self.total_wait_time,
            "wait_times": list(self.wait_times),
            "average_wait": self.average_wait(),
            "variance": self.variance(),
        }


class SimulationStats:
    """
    Running outcome counters of a simulation run.

    Wait times are in simulated milliseconds. `rejected` always equals
    `rejected_exec + rejected_result`, and jobs saved by backup count as
    completions.
    """

    def __init__(self, populations: Iterable[Population]):
        self.arrivals = 0
        self.completed = 0
        self.rejected = 0
        self.rejected_exec = 0
        self.rejected_result = 0
        self.saved_by_backup = 0
        self.blank_pages = 0
        self.total_wait_time = 0.0
        self.wait_times: List[float] = []
        self.pop_stats: Dict[Population, PopulationStats] = {
            population: PopulationStats() for population in populations
        }

    @property
    def terminal_count(self) -> int:
        return self.completed + self.rejected

    def record_arrival(self, job: Job) -> None:
        self.arrivals += 1
        self.pop_stats[job.population].arrivals += 1

    def record_completion(self, job: Job) -> None:
        wait_time = job.wait_time
        self.completed += 1
        self.total_wait_time += wait_time
        self.wait_times.append(wait_time)
        self.pop_stats[job.population].record_completion(wait_time)

    def record_backup_save(self, job: Job) -> None:
        self.saved_by_backup += 1
        self.record_completion(job)

    def record_exec_rejection(self, job: Job) -> None:
        self.rejected += 1
        self.rejected_exec += 1
        self.pop_stats[job.population].rejected += 1

    def record_result_rejection(self, job: Job) -> None:
        self.rejected += 1
        self.rejected_result += 1
        self.blank_pages += 1
        self.pop_stats[job.population].rejected += 1

    def average_wait(self) -> float:
        return self.total_wait_time / self.completed if self.completed > 0 else 0.0

    def variance(self) -> float:
        return _wait_variance(self.wait_times)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arrivals": self.arrivals,
            "completed": self.completed,
            "rejected": self.rejected,
            "rejected_exec": self.rejected_exec,
            "rejected_result": self.rejected_result,
            "saved_by_backup": self.saved_by_backup,
            "blank_pages": self.blank_pages,
            "total_wait_time": self.total_wait_time,
            "wait_times": list(self.wait_times),
            "average_wait": self.average_wait(),
            "variance": self.variance(),
            "pop_stats": {
                population.value: pop.to_dict() for population, pop in self.pop_stats.items()
            },
        }


@dataclass
class SimulationHistory:
    """Parallel time series sampled once per history interval."""
    time: List[float] = field(default_factory=list)
    exec_queue: List[int] = field(default_factory=list)
    result_queue: List[int] = field(default_factory=list)
    utilization: List[float] = field(default_factory=list)
    backup_count: List[int] = field(default_factory=list)
    dam_blocked: List[int] = field(default_factory=list)
    in_system: List[int] = field(default_factory=list)

    def record(self, time_s: float, exec_queue: int, result_queue: int, utilization: float,
               backup_count: int, dam_blocked: bool, in_system: int) -> None:
        self.time.append(time_s)
        self.exec_queue.append(exec_queue)
        self.result_queue.append(result_queue)
        self.utilization.append(utilization)
        self.backup_count.append(backup_count)
        self.dam_blocked.append(1 if dam_blocked else 0)
        self.in_system.append(in_system)

    def __len__(self) -> int:
        return len(self.time)

    def to_dict(self) -> Dict[str, List]:
        return {
            "time": list(self.time),
            "exec_queue": list(self.exec_queue),
            "result_queue": list(self.result_queue),
            "utilization": list(self.utilization),
            "backup_count": list(self.backup_count),
            "dam_blocked": list(self.dam_blocked),
            "in_system": list(self.in_system),
        }

    def to_frame(self) -> pd.DataFrame:
        """History as a DataFrame indexed by simulated seconds."""
        return pd.DataFrame(self.to_dict()).set_index("time")


@dataclass(frozen=True)
class TransitionEvent:
    """Emitted to listeners whenever a job changes status."""
    time: float
    job_id: int
    population: Population
    from_status: JobStatus
    to_status: JobStatus
    waypoint: Waypoint
    server_index: Optional[int] = None


# Remaining legal path of an in-flight job when the run is force-completed
_DRAIN_PATHS = {
    JobStatus.QUEUED_EXEC: (
        (JobStatus.EXECUTING, Waypoint.EXEC_SERVER),
        (JobStatus.QUEUED_RESULT, Waypoint.RESULT_QUEUE),
        (JobStatus.RESULTING, Waypoint.RESULT_SERVER),
    ),
    JobStatus.EXECUTING: (
        (JobStatus.QUEUED_RESULT, Waypoint.RESULT_QUEUE),
        (JobStatus.RESULTING, Waypoint.RESULT_SERVER),
    ),
    JobStatus.QUEUED_RESULT: (
        (JobStatus.RESULTING, Waypoint.RESULT_SERVER),
    ),
    JobStatus.RESULTING: (),
}


class SimulationEngine:
    """
    Main simulation engine that orchestrates arrivals, both service stages,
    the admission gate, the backup mechanism and statistics collection.

    Two mutually exclusive drivers share the same step pipeline:
    `advance()` for animated, interruptible stepping and
    `run_to_completion()` for the fast, non-visual run that finalizes the
    simulation.
    """

    def __init__(self, config: SimulationConfig = None, rng: np.random.Generator = None):
        """
        Initialize the simulation engine.

        Args:
            config: Validated simulation configuration
            rng: Random generator to draw from; seeded from config.seed when omitted
        """
        self.config = config or SimulationConfig()
        self._external_rng = rng
        self._listeners: List[Callable[[TransitionEvent], None]] = []
        self._initialize_state()

        logger.info(
            "Engine created: scenario=%s exec_servers=%d result_servers=%d exec_cap=%s result_cap=%s",
            self.config.scenario.value,
            self.config.num_exec_servers,
            self.config.num_result_servers,
            self.config.exec_queue_cap,
            self.config.result_queue_cap,
        )

    def _initialize_state(self) -> None:
        config = self.config
        if self._external_rng is not None:
            self.rng = self._external_rng
        else:
            self.rng = np.random.default_rng(config.seed)

        self.time = 0.0
        self.paused = False
        self.finished = False
        self.dam_blocked = False
        self.drained = False
        self._fast_mode = False

        # Entities still visible to the presentation layer, keyed by id
        self.jobs: Dict[int, Job] = {}
        self._next_job_id = 1

        self.exec_queue = JobQueue("exec", config.exec_queue_cap)
        self.result_queue = JobQueue("result", config.result_queue_cap)
        self.exec_servers = ServerPool("exec", config.num_exec_servers)
        self.result_servers = ServerPool("result", config.num_result_servers)
        self.backup_store = BackupStore()

        self.stats = SimulationStats(pop.population for pop in config.populations)
        self.history = SimulationHistory()
        self._next_history_time = config.history_interval_ms

    # ---- Observation ----------------------------------------------------
    @property
    def simulation_seconds(self) -> float:
        return self.time / 1000.0

    @property
    def max_time(self) -> float:
        return self.config.max_duration * 1000.0

    @property
    def jobs_in_system(self) -> int:
        """Jobs currently held by a queue or a server."""
        return (
            len(self.exec_queue)
            + self.exec_servers.busy_count
            + len(self.result_queue)
            + self.result_servers.busy_count
        )

    def get_variance(self) -> float:
        """Sample variance of all recorded wait times (ms squared)."""
        return self.stats.variance()

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the engine state for one rendered frame."""
        return {
            "time": self.time,
            "simulation_seconds": self.simulation_seconds,
            "paused": self.paused,
            "finished": self.finished,
            "dam_blocked": self.dam_blocked,
            "jobs": [job.to_dict(self.time) for job in self.jobs.values()],
            "queues": {
                "exec": self.exec_queue.get_queue_stats(),
                "result": self.result_queue.get_queue_stats(),
            },
            "servers": {
                "exec": [s.to_dict() for s in self.exec_servers],
                "result": [s.to_dict() for s in self.result_servers],
            },
            "backup_count": len(self.backup_store),
            "stats": self.stats.to_dict(),
            "variance": self.get_variance(),
            "history": self.history.to_dict(),
        }

    # ---- Listeners ------------------------------------------------------
    def add_listener(self, callback: Callable[[TransitionEvent], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[TransitionEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def mark_arrived(self, job_id: int) -> bool:
        """
        Acknowledge that a job's animation reached its waypoint.

        Returns:
            True if the job is known to the engine
        """
        job = self.jobs.get(job_id)
        if job is None:
            return False
        job.transit_remaining = 0.0
        return True

    # ---- Controls -------------------------------------------------------
    def advance(self, dt_ms: float) -> Dict[str, Any]:
        """
        Perform one animated step.

        Args:
            dt_ms: Wall-clock milliseconds since the previous frame; capped at
                config.max_step_ms and scaled by config.speed

        Returns:
            Dictionary containing step results
        """
        if self.paused or self.finished:
            return self._step_summary(0.0, self.stats.arrivals, self.stats.terminal_count)
        dt = min(max(dt_ms, 0.0), self.config.max_step_ms)
        return self._animated_step(dt)

    def step_once(self, dt_ms: float = None) -> Dict[str, Any]:
        """
        Execute a single animated step while paused.

        Returns:
            Dictionary containing step results
        """
        if self.paused and not self.finished:
            dt = self.config.max_step_ms if dt_ms is None else min(max(dt_ms, 0.0), self.config.max_step_ms)
            return self._animated_step(dt)
        return {
            "error": "Can only step when simulation is paused and not finished",
            "paused": self.paused,
            "finished": self.finished,
        }

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        return self.paused

    def pause_simulation(self) -> None:
        self.paused = True

    def resume_simulation(self) -> None:
        if not self.finished:
            self.paused = False

    def reset(self) -> None:
        """Reinitialize all mutable state, keeping configuration and listeners."""
        self._initialize_state()
        logger.info("Engine reset (scenario=%s)", self.config.scenario.value)

    def reconfigure(self, **changes) -> "SimulationEngine":
        """
        Apply configuration changes.

        Hot-swappable fields are updated in place and this engine is returned.
        Changes to scenario, server counts or queue capacities produce a new,
        paused engine; the caller must replace its reference.
        """
        new_config = self.config.with_changes(**changes)
        destructive = sorted(
            name for name in changes
            if name in DESTRUCTIVE_FIELDS and getattr(new_config, name) != getattr(self.config, name)
        )
        if destructive:
            logger.info("Destructive reconfiguration (%s), rebuilding engine", ", ".join(destructive))
            engine = SimulationEngine(new_config, rng=self._external_rng)
            engine.paused = True
            for listener in self._listeners:
                engine.add_listener(listener)
            return engine

        self.config = new_config
        logger.debug("Hot configuration update: %s", sorted(changes))
        return self

    def run_to_completion(self) -> Dict[str, Any]:
        """
        Run the fast, non-visual mode up to max_duration and drain the pipeline.

        Returns:
            Dictionary containing run results
        """
        if self.drained:
            return {
                "error": "Simulation already run to completion",
                "finished": self.finished,
            }

        self._fast_mode = True
        self._discard_visual_state()

        start_time = self.time
        steps = 0
        while self.time < self.max_time:
            dt = min(self.config.fast_step_ms, self.max_time - self.time)
            self.time += dt
            self._run_step(dt)
            steps += 1

        drained = self._drain_pipeline()
        self.finished = True
        self.paused = True
        self.drained = True

        logger.info(
            "Run to completion finished at t=%.1fs after %d steps: completed=%d rejected=%d drained=%d",
            self.simulation_seconds, steps, self.stats.completed, self.stats.rejected, drained,
        )
        return {
            "simulation_completed": True,
            "duration": self.time - start_time,
            "steps_executed": steps,
            "drained_jobs": drained,
            "stats": self.stats.to_dict(),
        }

    # ---- Step pipeline --------------------------------------------------
    def _animated_step(self, dt: float) -> Dict[str, Any]:
        arrivals_before = self.stats.arrivals
        terminal_before = self.stats.terminal_count

        scaled_dt = min(dt * self.config.speed, max(self.max_time - self.time, 0.0))
        self.time += scaled_dt
        self._run_step(scaled_dt)

        if self.time >= self.max_time:
            self.finished = True
            self.paused = True
            logger.info("Simulation reached max duration %.1fs", self.config.max_duration)

        return self._step_summary(scaled_dt, arrivals_before, terminal_before)

    def _run_step(self, dt: float) -> None:
        self._handle_arrivals(dt)
        self._process_transits(dt)
        self._handle_execution(dt)
        self._handle_results(dt)
        self._record_history()

    def _travel_time(self) -> float:
        return 0.0 if self._fast_mode else self.config.transit_time * 1000.0

    def _transition(self, job: Job, status: JobStatus, waypoint: Waypoint,
                    server_index: Optional[int] = None) -> None:
        previous = job.transition(status)
        job.head_to(waypoint, self._travel_time(), server_index)
        logger.debug(
            "t=%.1f job %d (%s): %s -> %s",
            self.time, job.job_id, job.population.value, previous.value, status.value,
        )
        if self._listeners:
            event = TransitionEvent(
                self.time, job.job_id, job.population, previous, status, waypoint, server_index
            )
            for listener in self._listeners:
                listener(event)

    def _handle_arrivals(self, dt: float) -> None:
        for pop_config in self.config.populations:
            if self.rng.random() < pop_config.arrival_rate * (dt / 1000.0):
                self._spawn_job(pop_config.population)

    def _spawn_job(self, population: Population) -> Job:
        job = Job(self._next_job_id, population, self.time)
        self._next_job_id += 1
        self.stats.record_arrival(job)
        if not self._fast_mode:
            self.jobs[job.job_id] = job

        if self.exec_queue.add_job(job):
            self._transition(job, JobStatus.QUEUED_EXEC, Waypoint.EXEC_QUEUE)
        else:
            self._transition(job, JobStatus.REJECTED_EXEC, Waypoint.EXIT)
            self.stats.record_exec_rejection(job)
        return job

    def _process_transits(self, dt: float) -> None:
        travel_time = self._travel_time()
        for job in list(self.jobs.values()):
            job.advance_transit(dt)
            if job.in_transit or not job.status.is_terminal:
                continue
            if job.waypoint == Waypoint.BACKUP:
                job.head_to(Waypoint.EXIT, travel_time)
            if job.waypoint == Waypoint.EXIT and not job.in_transit:
                del self.jobs[job.job_id]

    def _handle_execution(self, dt: float) -> None:
        gate = AdmissionGate.from_config(self.config)
        self.dam_blocked = gate is not None and gate.is_blocked(self.time)

        if not self.dam_blocked:
            for server in self.exec_servers.idle_servers():
                if self.exec_queue.is_empty():
                    break
                index = Scheduler.select_index(self.exec_queue, self.config)
                job = self.exec_queue.pop(index)
                mean = self.config.population_config(job.population).mean_exec_time
                server.assign_job(job, sample_service_time(mean, self.rng))
                self._transition(job, JobStatus.EXECUTING, Waypoint.EXEC_SERVER, server.server_id)

        for server in self.exec_servers.busy_servers():
            job = server.tick(dt)
            if job is not None:
                self._hand_off_to_result_stage(job)

    def _hand_off_to_result_stage(self, job: Job) -> None:
        if self.result_queue.add_job(job):
            self._transition(job, JobStatus.QUEUED_RESULT, Waypoint.RESULT_QUEUE)
            return

        if self.backup_store.should_save(self.rng, self.config.backup_prob):
            job.completion_time = self.time
            self._transition(job, JobStatus.SAVED_BY_BACKUP, Waypoint.BACKUP)
            self.backup_store.store(job)
            self.stats.record_backup_save(job)
        else:
            self._transition(job, JobStatus.REJECTED_RESULT, Waypoint.EXIT)
            self.stats.record_result_rejection(job)

    def _handle_results(self, dt: float) -> None:
        for server in self.result_servers.idle_servers():
            if self.result_queue.is_empty():
                break
            job = self.result_queue.get_next_job()
            server.assign_job(job, sample_service_time(self.config.avg_result_time, self.rng))
            self._transition(job, JobStatus.RESULTING, Waypoint.RESULT_SERVER, server.server_id)

        for server in self.result_servers.busy_servers():
            job = server.tick(dt)
            if job is not None:
                self._complete(job)

    def _complete(self, job: Job) -> None:
        job.completion_time = self.time
        self._transition(job, JobStatus.DONE, Waypoint.EXIT)
        self.stats.record_completion(job)

    def _record_history(self) -> None:
        if self.time < self._next_history_time:
            return
        self.history.record(
            time_s=self.simulation_seconds,
            exec_queue=len(self.exec_queue),
            result_queue=len(self.result_queue),
            utilization=self.exec_servers.utilization() * 100.0,
            backup_count=len(self.backup_store),
            dam_blocked=self.dam_blocked,
            in_system=self.jobs_in_system,
        )
        interval = self.config.history_interval_ms
        self._next_history_time = (math.floor(self.time / interval) + 1) * interval

    # ---- Fast mode helpers ----------------------------------------------
    def _discard_visual_state(self) -> None:
        self.jobs.clear()
        for job in list(self.exec_queue) + list(self.result_queue):
            job.transit_remaining = 0.0
        for job in self.exec_servers.current_jobs() + self.result_servers.current_jobs():
            job.transit_remaining = 0.0

    def _drain_pipeline(self) -> int:
        """
        Force-complete every job still in the pipeline at the current time.

        Returns:
            Number of jobs completed by the drain
        """
        pending: List[Job] = []
        while not self.result_queue.is_empty():
            pending.append(self.result_queue.get_next_job())
        for server in self.exec_servers.busy_servers():
            pending.append(server.release())
        while not self.exec_queue.is_empty():
            pending.append(self.exec_queue.get_next_job())
        for server in self.result_servers.busy_servers():
            pending.append(server.release())

        for job in pending:
            for status, waypoint in _DRAIN_PATHS[job.status]:
                self._transition(job, status, waypoint)
            self._complete(job)
        return len(pending)

    def _step_summary(self, dt: float, arrivals_before: int, terminal_before: int) -> Dict[str, Any]:
        return {
            "simulation_time": self.time,
            "dt": dt,
            "arrivals": self.stats.arrivals - arrivals_before,
            "terminal_transitions": self.stats.terminal_count - terminal_before,
            "exec_queue_length": len(self.exec_queue),
            "result_queue_length": len(self.result_queue),
            "busy_exec_servers": self.exec_servers.busy_count,
            "busy_result_servers": self.result_servers.busy_count,
            "dam_blocked": self.dam_blocked,
            "paused": self.paused,
            "finished": self.finished,
        }
