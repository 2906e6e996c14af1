"""
MoulinetteSim Analysis

Post-run metrics for a simulation engine: summary statistics of the
observed waits and rejections, the theoretical load of a configuration and
an empirical check of Little's law against the recorded history.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Tuple

import numpy as np
from scipy import stats

from queue_simulator import SimulationEngine
from scenario_config import SimulationConfig

logger = logging.getLogger(__name__)


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


@dataclass
class SimulationSummary:
    """Report of a run, in seconds and percentages."""
    simulation_seconds: float
    arrivals: int
    completed: int
    rejected: int
    avg_wait: float
    std_dev: float
    variance: float
    wait_ci95: Tuple[float, float]
    reject_rate: float
    exec_reject_rate: float
    result_reject_rate: float
    backup_efficiency: float
    saved_by_backup: int
    blank_pages: int
    populations: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _confidence_interval(waits_s: np.ndarray, level: float = 0.95) -> Tuple[float, float]:
    if waits_s.size == 0:
        return (0.0, 0.0)
    mean = float(waits_s.mean())
    if waits_s.size < 2:
        return (mean, mean)
    sem = float(waits_s.std(ddof=1)) / math.sqrt(waits_s.size)
    half_width = float(stats.t.ppf((1 + level) / 2, waits_s.size - 1)) * sem
    return (mean - half_width, mean + half_width)


def summarize(engine: SimulationEngine) -> SimulationSummary:
    """
    Build the end-of-run report of an engine.

    Args:
        engine: Engine after (or during) a run

    Returns:
        SimulationSummary with waits converted to seconds
    """
    sim_stats = engine.stats
    waits_s = np.asarray(sim_stats.wait_times, dtype=float) / 1000.0
    variance = sim_stats.variance() / 1e6
    terminal = sim_stats.terminal_count

    populations = {}
    for population, pop in sim_stats.pop_stats.items():
        populations[population.value] = {
            "completed": pop.completed,
            "rejected": pop.rejected,
            "avg_wait": pop.average_wait() / 1000.0,
            "variance": pop.variance() / 1e6,
            "reject_rate": _ratio(pop.rejected, pop.completed + pop.rejected) * 100.0,
        }

    return SimulationSummary(
        simulation_seconds=engine.simulation_seconds,
        arrivals=sim_stats.arrivals,
        completed=sim_stats.completed,
        rejected=sim_stats.rejected,
        avg_wait=sim_stats.average_wait() / 1000.0,
        std_dev=math.sqrt(variance),
        variance=variance,
        wait_ci95=_confidence_interval(waits_s),
        reject_rate=_ratio(sim_stats.rejected, terminal) * 100.0,
        exec_reject_rate=_ratio(sim_stats.rejected_exec, terminal) * 100.0,
        result_reject_rate=_ratio(sim_stats.rejected_result, terminal) * 100.0,
        backup_efficiency=_ratio(sim_stats.saved_by_backup,
                                 sim_stats.saved_by_backup + sim_stats.blank_pages) * 100.0,
        saved_by_backup=sim_stats.saved_by_backup,
        blank_pages=sim_stats.blank_pages,
        populations=populations,
    )


def theoretical_load(config: SimulationConfig) -> Dict[str, Any]:
    """
    M/M/K view of the execution stage.

    The service rate is the arrival-weighted mean of the per-population
    rates. Queue wait uses the 1 / (K*mu - lambda) approximation and is
    infinite for an unstable stage.
    """
    pops = config.populations
    total_lambda = sum(p.arrival_rate for p in pops)
    weighted_mu = _ratio(sum(p.arrival_rate / p.mean_exec_time for p in pops), total_lambda)
    servers = config.num_exec_servers
    capacity = servers * weighted_mu
    rho = _ratio(total_lambda, capacity)
    stable = rho < 1

    return {
        "lambda": total_lambda,
        "mu": weighted_mu,
        "servers": servers,
        "rho": rho,
        "system_load": min(rho * 100.0, 100.0),
        "expected_queue_wait": 1.0 / (capacity - total_lambda) if stable else math.inf,
        "stable": stable,
    }


def littles_law(engine: SimulationEngine) -> Dict[str, float]:
    """
    Compare the time-averaged number in system with lambda * W.

    Lambda counts admitted arrivals only, so exec-stage rejections do not
    inflate it. L is averaged over the history samples.
    """
    elapsed_s = engine.simulation_seconds
    frame = engine.history.to_frame()
    mean_in_system = float(frame["in_system"].mean()) if len(frame) else 0.0

    admitted = engine.stats.arrivals - engine.stats.rejected_exec
    arrival_rate = _ratio(admitted, elapsed_s)
    mean_wait_s = engine.stats.average_wait() / 1000.0
    predicted = arrival_rate * mean_wait_s

    result = {
        "L": mean_in_system,
        "lambda": arrival_rate,
        "W": mean_wait_s,
        "lambda_W": predicted,
        "relative_error": _ratio(abs(mean_in_system - predicted), predicted),
    }
    logger.debug("Little's law check: %s", result)
    return result
