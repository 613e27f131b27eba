"""Shared fixtures for the cellsim test suite."""

from typing import Iterable

import numpy as np
import pytest

from cellsim.core.config import SimulationConfig
from cellsim.sim.agent import Agent, Genome, PopulationSnapshot
from cellsim.sim.neural import INPUT_SIZE, OUTPUT_SIZE, Action, NeuralController, hidden_size_for
from cellsim.sim.spatial import SpatialIndex


@pytest.fixture
def config() -> SimulationConfig:
    """Small, fast world for testing."""
    cfg = SimulationConfig()
    cfg.world.width = 800.0
    cfg.world.height = 600.0
    cfg.world.initial_population = 40
    cfg.population.initial_cap = 200
    cfg.population.min_cap = 10
    cfg.population.max_cap = 400
    cfg.concurrency.workers = 2
    cfg.concurrency.min_chunk = 8
    return cfg


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


def fixed_controller(action: Action) -> NeuralController:
    """Controller whose output is a constant one-hot vector, so it always picks ``action``."""
    hidden = hidden_size_for(INPUT_SIZE, OUTPUT_SIZE)
    bias_o = np.zeros(OUTPUT_SIZE)
    bias_o[int(action)] = 1.0
    return NeuralController(
        np.zeros((hidden, INPUT_SIZE)),
        np.zeros(hidden),
        np.zeros((OUTPUT_SIZE, hidden)),
        bias_o,
    )


@pytest.fixture
def make_genome():
    """Factory for genomes with mid-range traits and a fixed action."""

    def _make(action: Action = Action.NOOP, **overrides) -> Genome:
        traits = dict(
            hue=180.0,
            radius=10.0,
            speed=2.0,
            turn_rate=0.1,
            energy_chunk_size=50.0,
            species_multiplier=1.0,
            mass=200.0,
        )
        traits.update(overrides)
        return Genome(controller=fixed_controller(action), **traits)

    return _make


@pytest.fixture
def snapshot_of():
    """Build the read-only population snapshot a simulation step would see."""

    def _build(
        agents: Iterable[Agent],
        width: float = 1000.0,
        height: float = 1000.0,
        full_size_age: float = 300.0,
    ) -> PopulationSnapshot:
        agents = list(agents)
        index = SpatialIndex(width, height)
        index.rebuild(np.array([[a.x, a.y] for a in agents], dtype=np.float64).reshape(-1, 2))
        return PopulationSnapshot(
            ids=np.array([a.id for a in agents], dtype=np.int64),
            x=np.array([a.x for a in agents], dtype=np.float64),
            y=np.array([a.y for a in agents], dtype=np.float64),
            energy=np.array([a.energy for a in agents], dtype=np.float64),
            mass=np.array([a.mass for a in agents], dtype=np.float64),
            radius=np.array([a.current_radius(full_size_age) for a in agents], dtype=np.float64),
            remains=np.array([a.remains for a in agents], dtype=np.float64),
            alive=np.array([a.alive for a in agents], dtype=bool),
            index=index,
        )

    return _build
