from __future__ import annotations

import json
import os
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union


Range = Tuple[float, float]


@dataclass
class WorldConfig:
    width: float = 4000.0
    height: float = 3000.0
    initial_population: int = 300
    bucket_size: float = 100.0

    def to_tuple(self) -> Tuple[float, float]:
        return self.width, self.height


@dataclass
class GenomeConfig:
    # spawn ranges double as clamp ranges for mutated children
    radius_range: Range = (6.0, 15.0)
    speed_range: Range = (1.0, 3.0)
    turn_rate_range: Range = (0.05, 0.15)
    energy_chunk_range: Range = (45.0, 55.0)
    species_multiplier_range: Range = (0.9, 2.0)
    mass_range: Range = (180.0, 220.0)
    spawn_hue: float = 180.0
    trait_variance: float = 0.01
    spawn_energy: float = 100.0

    def trait_ranges(self) -> Dict[str, Range]:
        return {
            "radius": tuple(self.radius_range),
            "speed": tuple(self.speed_range),
            "turn_rate": tuple(self.turn_rate_range),
            "energy_chunk_size": tuple(self.energy_chunk_range),
            "species_multiplier": tuple(self.species_multiplier_range),
            "mass": tuple(self.mass_range),
        }


@dataclass
class MetabolismConfig:
    base_cost: float = 0.03
    turn_cost: float = 0.45
    forward_cost: float = 0.9
    age_cost_horizon: float = 1000.0  # tick
    maturity_age: float = 20.0        # tick
    full_size_age: float = 300.0      # tick
    absorption_rate: float = 0.06
    reproduction_threshold: float = 100.0
    child_share: float = 2.0 / 3.0
    friction: float = 0.95
    angular_friction: float = 0.9
    child_offset: float = 15.0


@dataclass
class CorpseConfig:
    remains_fraction: float = 0.5
    decay_rate: float = 0.02
    visibility_ticks: int = 120


@dataclass
class BrainConfig:
    sensors: int = 5
    sense_range: float = 200.0
    mutation_rate_range: Range = (0.01, 0.10)
    perturbation: float = 0.1
    weight_limit: float = 2.0


@dataclass
class PopulationConfig:
    initial_cap: int = 1000
    min_cap: int = 50
    max_cap: int = 5000
    fps_floor: float = 30.0
    fps_ceiling: float = 240.0
    recalc_interval: float = 2.0  # seconds
    adjust_fraction: float = 0.1


def _default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


@dataclass
class ConcurrencyConfig:
    workers: int = field(default_factory=_default_workers)
    min_chunk: int = 64


@dataclass
class SimulationConfig:
    world: WorldConfig = field(default_factory=WorldConfig)
    genome: GenomeConfig = field(default_factory=GenomeConfig)
    metabolism: MetabolismConfig = field(default_factory=MetabolismConfig)
    corpse: CorpseConfig = field(default_factory=CorpseConfig)
    brain: BrainConfig = field(default_factory=BrainConfig)
    population: PopulationConfig = field(default_factory=PopulationConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def update_from_mapping(self, data: Dict[str, Any]) -> None:
        """Merge settings from a nested mapping into the config."""
        for section_name, section_values in data.items():
            section = getattr(self, section_name, None)
            if section is None:
                continue
            if not isinstance(section_values, dict):
                continue
            for key, value in section_values.items():
                if hasattr(section, key):
                    current = getattr(section, key)
                    if isinstance(current, tuple) and isinstance(value, list):
                        value = tuple(value)
                    setattr(section, key, value)

    def iter_sections(self) -> Iterable[Tuple[str, Any]]:
        yield "world", self.world
        yield "genome", self.genome
        yield "metabolism", self.metabolism
        yield "corpse", self.corpse
        yield "brain", self.brain
        yield "population", self.population
        yield "concurrency", self.concurrency

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SimulationConfig":
        cfg = cls()
        cfg.update_from_mapping(data)
        cfg.validate()
        return cfg

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SimulationConfig":
        resolved = Path(path).expanduser()
        if not resolved.exists():
            raise FileNotFoundError(resolved)
        try:
            data = json.loads(resolved.read_text())
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse config {resolved}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config {resolved} must contain a JSON object")
        return cls.from_mapping(data)

    def save(self, path: Union[str, Path]) -> Path:
        resolved = Path(path).expanduser()
        resolved.write_text(json.dumps(self.to_dict(), indent=2))
        return resolved

    def validate(self) -> None:
        w = self.world
        if w.width <= 0 or w.height <= 0:
            raise ValueError(f"world size must be positive, got {w.width}x{w.height}")
        if w.bucket_size <= 0:
            raise ValueError("world.bucket_size must be positive")
        if w.initial_population < 0:
            raise ValueError("world.initial_population must be non-negative")

        for name, (lo, hi) in self.genome.trait_ranges().items():
            if lo > hi:
                raise ValueError(f"genome range for {name} is inverted: ({lo}, {hi})")
        if self.genome.mass_range[0] <= 0:
            raise ValueError("genome.mass_range must be positive")

        m = self.metabolism
        if not 0.0 < m.child_share < 1.0:
            raise ValueError("metabolism.child_share must lie strictly between 0 and 1")
        if m.age_cost_horizon <= 0 or m.full_size_age <= 0:
            raise ValueError("metabolism age horizons must be positive")

        if self.corpse.visibility_ticks < 0:
            raise ValueError("corpse.visibility_ticks must be non-negative")

        b = self.brain
        if b.sensors < 0 or b.sense_range < 0:
            raise ValueError("brain.sensors and brain.sense_range must be non-negative")
        lo, hi = b.mutation_rate_range
        if not 0.0 <= lo <= hi <= 1.0:
            raise ValueError(f"brain.mutation_rate_range must lie within [0, 1], got ({lo}, {hi})")

        p = self.population
        if not 1 <= p.min_cap <= p.max_cap:
            raise ValueError(f"population caps must satisfy 1 <= min_cap <= max_cap, got {p.min_cap}, {p.max_cap}")
        if p.fps_floor >= p.fps_ceiling:
            raise ValueError("population.fps_floor must be below population.fps_ceiling")
        if p.recalc_interval <= 0:
            raise ValueError("population.recalc_interval must be positive")

        if self.concurrency.workers < 1:
            raise ValueError("concurrency.workers must be at least 1")

    def clamp_cap(self, cap: int) -> int:
        return max(self.population.min_cap, min(self.population.max_cap, int(cap)))


DEFAULT_CONFIG = SimulationConfig()


def load_config(path: Optional[Union[str, Path]]) -> SimulationConfig:
    if path is None:
        return SimulationConfig()
    return SimulationConfig.load(path)
