"""
MoulinetteSim Scenario Configuration

Configuration record for the two-stage queueing simulator, the scenario
variants (Waterfall / Channels), scheduling policies and the built-in presets.
"""

import math
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ConfigurationError(ValueError):
    """Raised when a configuration cannot be used to build an engine."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid simulation configuration: " + "; ".join(errors))


class Scenario(Enum):
    """Enumeration of supported pipeline scenarios."""
    WATERFALL = "Waterfall"
    CHANNELS = "Channels"


class Population(Enum):
    """Enumeration of job populations."""
    STANDARD = "Standard"
    TYPE_A = "TypeA"
    TYPE_B = "TypeB"


class SchedulingPolicy(Enum):
    """Enumeration of execution-stage scheduling policies."""
    FIFO = "FIFO"
    TYPE_A_FIRST = "TYPE_A_FIRST"
    TYPE_B_FIRST = "TYPE_B_FIRST"
    SJF = "SJF"


@dataclass(frozen=True)
class PopulationConfig:
    """Arrival rate (jobs/s) and mean execution time (s) of one population."""
    population: Population
    arrival_rate: float
    mean_exec_time: float


# Changing any of these means the live server pools or queues would have to be
# resized, so the engine is rebuilt instead of updated in place.
DESTRUCTIVE_FIELDS = frozenset({
    "scenario",
    "num_exec_servers",
    "num_result_servers",
    "exec_queue_cap",
    "result_queue_cap",
})


@dataclass(frozen=True)
class SimulationConfig:
    """
    Complete configuration of a simulation run.

    Attributes:
        scenario: Waterfall (one population) or Channels (two populations)
        num_exec_servers: Number of execution-stage servers
        num_result_servers: Number of result-stage servers
        standard: Population settings used by the Waterfall scenario
        type_a: First population of the Channels scenario
        type_b: Second population of the Channels scenario
        avg_result_time: Mean result-stage service time in seconds
        exec_queue_cap: Execution queue capacity, None for unbounded
        result_queue_cap: Result queue capacity, None for unbounded
        backup_prob: Probability that an overflowing result is saved
        dam_enabled: Whether the periodic admission gate is active (Channels only)
        dam_block_time: Blocked phase of the gate cycle in seconds
        dam_open_time: Open phase of the gate cycle in seconds
        priority_mode: Scheduling policy of the execution stage (Channels only)
        max_duration: Simulated duration of a run in seconds
        speed: Multiplier applied to wall-clock steps in animated mode
        transit_time: Simulated travel time between waypoints in animated mode (s)
        max_step_ms: Upper bound on a single animated step before scaling
        fast_step_ms: Fixed step used by run-to-completion
        history_interval_ms: Simulated time between two history samples
        seed: Seed of the random generator, None for OS entropy
    """
    scenario: Scenario = Scenario.WATERFALL
    num_exec_servers: int = 5
    num_result_servers: int = 1
    standard: PopulationConfig = PopulationConfig(Population.STANDARD, 1.0, 2.0)
    type_a: PopulationConfig = PopulationConfig(Population.TYPE_A, 2.0, 1.0)
    type_b: PopulationConfig = PopulationConfig(Population.TYPE_B, 0.5, 4.0)
    avg_result_time: float = 1.0
    exec_queue_cap: Optional[int] = 10
    result_queue_cap: Optional[int] = 10
    backup_prob: float = 0.0
    dam_enabled: bool = False
    dam_block_time: float = 5.0
    dam_open_time: float = 2.0
    priority_mode: SchedulingPolicy = SchedulingPolicy.FIFO
    max_duration: float = 60.0
    speed: float = 1.0
    transit_time: float = 0.0
    max_step_ms: float = 50.0
    fast_step_ms: float = 100.0
    history_interval_ms: float = 1000.0
    seed: Optional[int] = None

    def __post_init__(self):
        # Accept plain strings for the enum fields
        if not isinstance(self.scenario, Scenario):
            object.__setattr__(self, "scenario", Scenario(self.scenario))
        if not isinstance(self.priority_mode, SchedulingPolicy):
            object.__setattr__(self, "priority_mode", SchedulingPolicy(self.priority_mode))
        object.__setattr__(self, "exec_queue_cap", _normalize_capacity(self.exec_queue_cap))
        object.__setattr__(self, "result_queue_cap", _normalize_capacity(self.result_queue_cap))

        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)

    @property
    def populations(self) -> Tuple[PopulationConfig, ...]:
        """Populations that are active in the configured scenario."""
        if self.scenario == Scenario.WATERFALL:
            return (self.standard,)
        return (self.type_a, self.type_b)

    @property
    def dam_active(self) -> bool:
        """The admission gate only exists in the Channels scenario."""
        return self.dam_enabled and self.scenario == Scenario.CHANNELS

    def population_config(self, population: Population) -> PopulationConfig:
        for pop_config in self.populations:
            if pop_config.population == population:
                return pop_config
        raise KeyError(f"Population {population.value} is not active in {self.scenario.value}")

    def validate(self) -> List[str]:
        """
        Check every field and collect the problems.

        Returns:
            List of error messages, empty when the configuration is usable
        """
        errors = []

        for name in ("num_exec_servers", "num_result_servers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        for pop_config in self.populations:
            label = pop_config.population.value
            if not pop_config.arrival_rate > 0:
                errors.append(f"arrival rate of {label} must be > 0, got {pop_config.arrival_rate!r}")
            if not pop_config.mean_exec_time > 0:
                errors.append(f"mean execution time of {label} must be > 0, got {pop_config.mean_exec_time!r}")

        for name in ("avg_result_time", "max_duration", "speed",
                     "max_step_ms", "fast_step_ms", "history_interval_ms"):
            value = getattr(self, name)
            if not value > 0:
                errors.append(f"{name} must be > 0, got {value!r}")

        # A run must end for run-to-completion to return
        if not math.isfinite(self.max_duration):
            errors.append(f"max_duration must be finite, got {self.max_duration!r}")

        for name in ("exec_queue_cap", "result_queue_cap"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                errors.append(f"{name} must be a non-negative integer or unbounded, got {value!r}")

        if not 0.0 <= self.backup_prob <= 1.0:
            errors.append(f"backup_prob must be within [0, 1], got {self.backup_prob!r}")

        if self.transit_time < 0:
            errors.append(f"transit_time must be >= 0, got {self.transit_time!r}")

        if self.dam_block_time < 0 or self.dam_open_time < 0:
            errors.append("dam block and open times must be >= 0")
        elif self.dam_enabled and self.dam_block_time + self.dam_open_time <= 0:
            errors.append("dam cycle (block + open) must be > 0 when the dam is enabled")

        return errors

    def with_changes(self, **changes) -> "SimulationConfig":
        """Return a new validated configuration with the given fields replaced."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError([f"unknown configuration field {name!r}" for name in sorted(unknown)])
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        """
        Build a configuration from a camelCase scenario document.

        Missing keys fall back to the dataclass defaults. Queue capacities
        accept "unbounded", null or Infinity for no limit.
        """
        defaults = cls.__dataclass_fields__
        kwargs: Dict[str, Any] = {}

        simple_keys = {
            "scenario": "scenario",
            "execServers": "num_exec_servers",
            "resultServers": "num_result_servers",
            "avgResultTime": "avg_result_time",
            "execQueueCap": "exec_queue_cap",
            "resultQueueCap": "result_queue_cap",
            "backupProb": "backup_prob",
            "maxDuration": "max_duration",
            "speed": "speed",
            "transitTime": "transit_time",
            "seed": "seed",
        }
        for key, name in simple_keys.items():
            if key in data:
                kwargs[name] = data[key]

        waterfall = data.get("waterfall")
        if waterfall:
            default = defaults["standard"].default
            kwargs["standard"] = PopulationConfig(
                Population.STANDARD,
                waterfall.get("arrivalRate", default.arrival_rate),
                waterfall.get("avgExecTime", default.mean_exec_time),
            )

        channels = data.get("channels")
        if channels:
            for key, name, population in (("typeA", "type_a", Population.TYPE_A),
                                          ("typeB", "type_b", Population.TYPE_B)):
                pop_data = channels.get(key)
                if pop_data:
                    default = defaults[name].default
                    kwargs[name] = PopulationConfig(
                        population,
                        pop_data.get("arrivalRate", default.arrival_rate),
                        pop_data.get("avgExecTime", default.mean_exec_time),
                    )
            if "priorityMode" in channels:
                kwargs["priority_mode"] = channels["priorityMode"]
            dam = channels.get("dam")
            if dam:
                kwargs["dam_enabled"] = dam.get("enabled", False)
                if "blockTime" in dam:
                    kwargs["dam_block_time"] = dam["blockTime"]
                if "openTime" in dam:
                    kwargs["dam_open_time"] = dam["openTime"]

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the configuration to a camelCase scenario document."""
        return {
            "scenario": self.scenario.value,
            "execServers": self.num_exec_servers,
            "resultServers": self.num_result_servers,
            "avgResultTime": self.avg_result_time,
            "execQueueCap": _capacity_to_json(self.exec_queue_cap),
            "resultQueueCap": _capacity_to_json(self.result_queue_cap),
            "backupProb": self.backup_prob,
            "maxDuration": self.max_duration,
            "speed": self.speed,
            "transitTime": self.transit_time,
            "seed": self.seed,
            "waterfall": {
                "arrivalRate": self.standard.arrival_rate,
                "avgExecTime": self.standard.mean_exec_time,
            },
            "channels": {
                "typeA": {
                    "arrivalRate": self.type_a.arrival_rate,
                    "avgExecTime": self.type_a.mean_exec_time,
                },
                "typeB": {
                    "arrivalRate": self.type_b.arrival_rate,
                    "avgExecTime": self.type_b.mean_exec_time,
                },
                "priorityMode": self.priority_mode.value,
                "dam": {
                    "enabled": self.dam_enabled,
                    "blockTime": self.dam_block_time,
                    "openTime": self.dam_open_time,
                },
            },
        }


def _normalize_capacity(value):
    if value is None:
        return None
    if isinstance(value, str) and value.lower() in ("unbounded", "infinity", "inf"):
        return None
    if isinstance(value, float):
        if math.isinf(value) and value > 0:
            return None
        if value.is_integer():
            return int(value)
    return value


def _capacity_to_json(value: Optional[int]):
    return "unbounded" if value is None else value


PRESETS: Dict[str, Dict[str, Any]] = {
    "waterfall_optimal_high": {
        "scenario": Scenario.WATERFALL,
        "standard": PopulationConfig(Population.STANDARD, 1.0, 2.0),
        "num_exec_servers": 7,
        "exec_queue_cap": None,
    },
    "waterfall_optimal_low": {
        "scenario": Scenario.WATERFALL,
        "standard": PopulationConfig(Population.STANDARD, 0.3, 2.0),
        "num_exec_servers": 3,
        "exec_queue_cap": None,
    },
    "channels_sjf_dam": {
        "scenario": Scenario.CHANNELS,
        "dam_enabled": True,
        "dam_block_time": 5.0,
        "dam_open_time": 2.0,
        "priority_mode": SchedulingPolicy.SJF,
    },
}


def preset(name: str, base: Optional[SimulationConfig] = None) -> SimulationConfig:
    """
    Apply a named preset on top of a base configuration.

    Args:
        name: Key of PRESETS
        base: Configuration to start from (defaults to SimulationConfig())

    Returns:
        New validated configuration
    """
    if name not in PRESETS:
        raise KeyError(f"Unknown preset: {name}. Available: {sorted(PRESETS)}")
    return (base or SimulationConfig()).with_changes(**PRESETS[name])
