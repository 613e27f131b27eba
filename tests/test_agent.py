"""
Unit tests for agents and genomes.

Tests cover:
- Trait spawning, mutation bounds and hue wrap-around
- Age cost multiplier and juvenile radius growth
- Sensor target priority (corpse > energy > distance) and input padding
- Planning: purity, action costs, juvenile banking, starvation, corpse decay
- Merge-phase mutations: bites, energy gain, reproduction split
"""

import math

import numpy as np
import pytest

from cellsim.core.config import SimulationConfig
from cellsim.sim.agent import (
    FITNESS_PER_CHILD,
    TRAITS,
    Agent,
    Genome,
    LifeStage,
    SensorReading,
    mutate_hue,
    mutate_trait,
)
from cellsim.sim.neural import Action


class MaxRng:
    """Stand-in generator whose uniform draws always return the upper bound."""

    def uniform(self, low=0.0, high=1.0, size=None):
        return high


@pytest.fixture
def sim_config() -> SimulationConfig:
    return SimulationConfig()


# ---------------------------------------------------------------------------
# Genome
# ---------------------------------------------------------------------------

class TestGenome:
    def test_random_traits_within_ranges(self, rng, sim_config):
        ranges = sim_config.genome.trait_ranges()
        for _ in range(50):
            genome = Genome.random(rng, sim_config)
            for name in TRAITS:
                lo, hi = ranges[name]
                assert lo <= getattr(genome, name) <= hi
            assert genome.hue == pytest.approx(180.0)
            assert genome.controller.shape() == (20, 48, 4)

    def test_repeated_mutation_stays_in_bounds(self, rng, sim_config):
        ranges = sim_config.genome.trait_ranges()
        genome = Genome.random(rng, sim_config)
        for _ in range(300):
            genome = genome.mutated(rng, sim_config)
            for name in TRAITS:
                lo, hi = ranges[name]
                assert lo <= getattr(genome, name) <= hi
            assert 0.0 <= genome.hue < 360.0

    def test_mutation_step_is_at_most_one_percent(self, rng, sim_config):
        parent = Genome.random(rng, sim_config)
        child = parent.mutated(rng, sim_config)
        for name in TRAITS:
            assert abs(getattr(child, name) - getattr(parent, name)) <= 0.01 * getattr(parent, name) + 1e-12

    def test_mutated_does_not_touch_parent(self, rng, sim_config):
        parent = Genome.random(rng, sim_config)
        snapshot = parent.to_dict()
        parent.mutated(rng, sim_config)
        assert parent.to_dict() == snapshot

    def test_mutate_trait_clamps(self):
        assert mutate_trait(15.0, 6.0, 15.0, MaxRng(), 0.01) == 15.0

    def test_hue_wraps_instead_of_clamping(self):
        assert mutate_hue(359.0, MaxRng(), 0.01) == pytest.approx(2.6)

    def test_from_dict_missing_trait(self, rng, sim_config):
        payload = Genome.random(rng, sim_config).to_dict()
        del payload["mass"]
        with pytest.raises(ValueError):
            Genome.from_dict(payload)


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------

class TestDerivedState:
    def test_energy_clamped_to_mass(self, make_genome):
        agent = Agent(0, make_genome(mass=190.0), 10.0, 10.0, energy=500.0)
        assert agent.energy == 190.0
        agent = Agent(1, make_genome(), 10.0, 10.0, energy=-4.0)
        assert agent.energy == 0.0

    def test_age_cost_multiplier_range(self, make_genome):
        agent = Agent(0, make_genome(), 0.0, 0.0, energy=50.0)
        assert agent.age_cost_multiplier(1000.0) == 1.0
        assert agent.age_cost_multiplier(1000.0, age=500.0) == pytest.approx(1.5)
        assert agent.age_cost_multiplier(1000.0, age=10_000.0) == 2.0

    def test_radius_grows_to_full_size(self, make_genome):
        agent = Agent(0, make_genome(radius=10.0), 0.0, 0.0, energy=50.0)
        assert agent.current_radius(300.0) == pytest.approx(1.0)
        agent.age = 150.0
        assert agent.current_radius(300.0) == pytest.approx(5.5)
        agent.age = 1000.0
        assert agent.current_radius(300.0) == 10.0

    def test_fitness_counts_children(self, make_genome):
        agent = Agent(0, make_genome(), 0.0, 0.0, energy=50.0)
        agent.total_energy_accumulated = 12.5
        agent.children_count = 2
        assert agent.fitness == pytest.approx(12.5 + 2 * FITNESS_PER_CHILD)


# ---------------------------------------------------------------------------
# Sensing
# ---------------------------------------------------------------------------

class TestSensing:
    def test_corpse_outranks_closer_living_agents(self, make_genome, snapshot_of, sim_config):
        observer = Agent(0, make_genome(), 500.0, 500.0, energy=100.0)
        rich = Agent(1, make_genome(), 530.0, 500.0, energy=180.0)
        corpse = Agent(2, make_genome(), 550.0, 500.0, energy=100.0)
        corpse.kill(0.5)
        poor = Agent(3, make_genome(), 480.0, 500.0, energy=50.0)
        far = Agent(4, make_genome(), 800.0, 500.0, energy=200.0)
        agents = [observer, rich, corpse, poor, far]

        readings = observer.sense(snapshot_of(agents), 0, sim_config.brain)

        assert [r.target for r in readings] == [2, 1, 3]
        assert readings[0].alive == 0.0
        assert readings[0].distance == pytest.approx(50.0)

    def test_equal_energy_prefers_closer(self, make_genome, snapshot_of, sim_config):
        observer = Agent(0, make_genome(), 500.0, 500.0, energy=100.0)
        near = Agent(1, make_genome(), 510.0, 500.0, energy=80.0)
        further = Agent(2, make_genome(), 600.0, 500.0, energy=80.0)
        readings = observer.sense(snapshot_of([observer, further, near]), 0, sim_config.brain)
        assert [r.target for r in readings] == [1, 2]

    def test_keeps_only_sensor_count_targets(self, make_genome, snapshot_of, sim_config):
        observer = Agent(0, make_genome(), 500.0, 500.0, energy=100.0)
        others = [Agent(i, make_genome(), 500.0 + 10 * i, 500.0, energy=10.0 * i) for i in range(1, 9)]
        readings = observer.sense(snapshot_of([observer, *others]), 0, sim_config.brain)
        assert len(readings) == 5
        assert [r.target for r in readings] == [8, 7, 6, 5, 4]

    def test_relative_angle(self, make_genome, snapshot_of, sim_config):
        observer = Agent(0, make_genome(), 500.0, 500.0, energy=100.0, angle=0.0)
        above = Agent(1, make_genome(), 500.0, 530.0, energy=50.0)
        readings = observer.sense(snapshot_of([observer, above]), 0, sim_config.brain)
        assert readings[0].angle == pytest.approx(90.0)

    def test_sees_across_world_edge(self, make_genome, snapshot_of, sim_config):
        observer = Agent(0, make_genome(), 990.0, 500.0, energy=100.0)
        other = Agent(1, make_genome(), 20.0, 500.0, energy=50.0)
        readings = observer.sense(snapshot_of([observer, other]), 0, sim_config.brain)
        assert readings[0].target == 1
        assert readings[0].distance == pytest.approx(30.0)

    def test_empty_slots_read_minus_one(self):
        reading = SensorReading(target=7, angle=90.0, distance=0.0, mass=220.0, alive=1.0)
        inputs = Agent.sensor_inputs([reading], 5, 200.0, 220.0)
        assert inputs.shape == (20,)
        np.testing.assert_allclose(inputs[:4], [0.5, 1.0, 1.0, 1.0])
        assert np.all(inputs[4:] == -1.0)

    def test_no_readings_is_all_minus_one(self):
        inputs = Agent.sensor_inputs([], 5, 200.0, 220.0)
        assert np.all(inputs == -1.0)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestPlan:
    def test_plan_does_not_mutate_agent(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(Action.FORWARD), 500.0, 500.0, energy=100.0, vx=1.0)
        before = (agent.x, agent.y, agent.vx, agent.vy, agent.energy, agent.age, agent.stage)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert (agent.x, agent.y, agent.vx, agent.vy, agent.energy, agent.age, agent.stage) == before
        assert update.age == 1.0
        assert update.action is Action.FORWARD

    def test_forward_costs_energy(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(Action.FORWARD), 500.0, 500.0, energy=50.0)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.energy == pytest.approx(50.0 - 0.9 * 1.001)

    def test_turn_costs_energy_and_spins(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(Action.TURN_RIGHT), 500.0, 500.0, energy=50.0)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.energy == pytest.approx(50.0 - 0.45 * 1.001)
        assert update.angle_velocity == pytest.approx(0.1 * 0.9)

    def test_unaffordable_action_is_skipped(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(Action.FORWARD), 500.0, 500.0, energy=0.5)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.energy == pytest.approx(0.5)
        assert update.vx == 0.0 and update.vy == 0.0

    def test_juvenile_does_not_bank_surplus(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(species_multiplier=2.0), 500.0, 500.0, energy=50.0)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.stage is LifeStage.GROWING
        assert update.energy == pytest.approx(50.0)
        assert update.banked == 0.0

    def test_adult_banks_absorption(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(species_multiplier=2.0), 500.0, 500.0, energy=50.0)
        agent.age = 100.0
        agent.stage = LifeStage.ADULT
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        expected = 0.06 * 2.0 - 0.03 * 1.101
        assert update.banked == pytest.approx(expected)
        assert update.energy == pytest.approx(50.0 + expected)

    def test_energy_never_exceeds_mass(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(species_multiplier=2.0, mass=200.0), 500.0, 500.0, energy=200.0)
        agent.age = 100.0
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.energy == 200.0

    def test_starvation_marks_death(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(species_multiplier=0.9), 500.0, 500.0, energy=0.001)
        agent.age = 2000.0
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.energy == 0.0
        assert update.died
        assert not update.wants_spawn

    def test_wants_spawn_above_threshold(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(), 500.0, 500.0, energy=150.0)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert update.wants_spawn

    def test_position_wraps(self, make_genome, snapshot_of, sim_config):
        agent = Agent(0, make_genome(), 999.5, 0.5, energy=50.0, vx=2.0, vy=-2.0)
        update = agent.plan(snapshot_of([agent]), 0, sim_config)
        assert 0.0 <= update.x < 1000.0 and 0.0 <= update.y < 1000.0
        assert update.x < 10.0 and update.y > 990.0

    def test_contact_with_corpse_requests_bite(self, make_genome, snapshot_of, sim_config):
        eater = Agent(0, make_genome(), 500.0, 500.0, energy=50.0)
        eater.age = 400.0
        corpse = Agent(1, make_genome(), 505.0, 500.0, energy=50.0)
        corpse.age = 400.0
        corpse.kill(0.5)
        update = eater.plan(snapshot_of([eater, corpse]), 0, sim_config)
        assert update.bites == (1,)

    def test_corpse_decays(self, make_genome, snapshot_of, sim_config):
        corpse = Agent(0, make_genome(mass=200.0), 500.0, 500.0, energy=50.0)
        corpse.kill(0.5)
        update = corpse.plan(snapshot_of([corpse]), 0, sim_config)
        assert update.stage is LifeStage.CORPSE
        assert update.remains == pytest.approx(100.0 - 0.02)
        assert update.corpse_ticks == 1
        assert update.action is None


# ---------------------------------------------------------------------------
# Merge-phase mutations
# ---------------------------------------------------------------------------

class TestMergeOperations:
    def test_kill_leaves_remains(self, make_genome):
        agent = Agent(0, make_genome(mass=200.0), 0.0, 0.0, energy=10.0)
        agent.kill(0.5)
        assert agent.is_corpse and not agent.alive
        assert agent.energy == 0.0
        assert agent.remains == pytest.approx(100.0)

    def test_take_bite_limited_by_remains(self, make_genome):
        corpse = Agent(0, make_genome(mass=200.0), 0.0, 0.0, energy=10.0)
        corpse.kill(0.5)
        assert corpse.take_bite(60.0) == pytest.approx(60.0)
        assert corpse.take_bite(60.0) == pytest.approx(40.0)
        assert corpse.take_bite(60.0) == 0.0

    def test_living_agent_cannot_be_bitten(self, make_genome):
        agent = Agent(0, make_genome(), 0.0, 0.0, energy=10.0)
        assert agent.take_bite(50.0) == 0.0

    def test_gain_energy_only_for_adults(self, make_genome):
        agent = Agent(0, make_genome(mass=200.0), 0.0, 0.0, energy=150.0)
        assert agent.gain_energy(30.0) == 0.0
        agent.stage = LifeStage.ADULT
        assert agent.gain_energy(80.0) == pytest.approx(50.0)
        assert agent.energy == 200.0
        assert agent.total_energy_accumulated == pytest.approx(50.0)

    def test_reproduction_splits_energy(self, rng, make_genome, sim_config):
        parent = Agent(3, make_genome(), 100.0, 100.0, energy=150.0)
        child = parent.reproduce(9, rng, sim_config)

        assert child.energy == pytest.approx(100.0)
        assert parent.energy == pytest.approx(50.0)
        assert child.energy + parent.energy == pytest.approx(150.0)
        assert parent.children_count == 1
        assert child.parent_id == 3
        assert child.generation == parent.generation + 1
        assert child.stage is LifeStage.GROWING
        dx = child.x - parent.x
        dy = child.y - parent.y
        assert math.hypot(dx, dy) == pytest.approx(15.0)

    def test_child_traits_within_bounds(self, rng, make_genome, sim_config):
        ranges = sim_config.genome.trait_ranges()
        parent = Agent(0, make_genome(radius=15.0, mass=220.0), 500.0, 500.0, energy=150.0)
        for i in range(50):
            parent.energy = 150.0
            child = parent.reproduce(i + 1, rng, sim_config)
            for name in TRAITS:
                lo, hi = ranges[name]
                assert lo <= getattr(child.genome, name) <= hi
