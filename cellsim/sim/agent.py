# SPDX-License-Identifier: MIT
"""
Cells: inheritable genome, lifecycle, sensing and per-tick planning.

An agent never mutates shared state while it is being updated. `Agent.plan`
reads the agent's own fields plus a read-only `PopulationSnapshot` and returns
an `AgentUpdate`; the simulation applies updates, bites, births and deaths
afterwards in a serial merge pass.
"""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from cellsim.core.config import BrainConfig, GenomeConfig, SimulationConfig
from cellsim.sim.neural import VALUES_PER_SENSOR, Action, NeuralController
from cellsim.sim.spatial import Neighbor, SpatialIndex, wrap

FITNESS_PER_CHILD = 100.0

TRAITS = ("radius", "speed", "turn_rate", "energy_chunk_size", "species_multiplier", "mass")


class LifeStage(Enum):
    GROWING = 0
    ADULT = 1
    CORPSE = 2
    REMOVED = 3


LIVING_STAGES = (LifeStage.GROWING, LifeStage.ADULT)


def mutate_trait(value: float, lo: float, hi: float, rng: np.random.Generator, variance: float = 0.01) -> float:
    mutated = value * (1.0 + rng.uniform(-variance, variance))
    return float(min(hi, max(lo, mutated)))


def mutate_hue(hue: float, rng: np.random.Generator, variance: float = 0.01) -> float:
    # variance is a fraction of the full colour wheel; wraps instead of clamping
    shifted = (hue + 360.0 * rng.uniform(-variance, variance)) % 360.0
    return 0.0 if shifted >= 360.0 else float(shifted)


# ===================== genome =====================
@dataclass
class Genome:
    hue: float
    radius: float
    speed: float
    turn_rate: float
    energy_chunk_size: float
    species_multiplier: float
    mass: float
    controller: NeuralController

    @classmethod
    def random(cls, rng: np.random.Generator, config: SimulationConfig) -> "Genome":
        ranges = config.genome.trait_ranges()
        traits = {name: float(rng.uniform(*ranges[name])) for name in TRAITS}
        controller = NeuralController.random(rng, input_size=config.brain.sensors * VALUES_PER_SENSOR)
        return cls(hue=float(config.genome.spawn_hue) % 360.0, controller=controller, **traits)

    def clone(self) -> "Genome":
        return Genome(controller=self.controller.clone(), hue=self.hue, **self.traits())

    def traits(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in TRAITS}

    def mutated(self, rng: np.random.Generator, config: SimulationConfig) -> "Genome":
        """Clone, nudge every numeric trait by up to ±variance and mutate the controller."""
        gcfg: GenomeConfig = config.genome
        bcfg: BrainConfig = config.brain
        ranges = gcfg.trait_ranges()
        child = self.clone()
        for name in TRAITS:
            lo, hi = ranges[name]
            setattr(child, name, mutate_trait(getattr(self, name), lo, hi, rng, gcfg.trait_variance))
        child.hue = mutate_hue(self.hue, rng, gcfg.trait_variance)
        rate = float(rng.uniform(*bcfg.mutation_rate_range))
        child.controller.mutate(rate, rng, perturbation=bcfg.perturbation, limit=bcfg.weight_limit)
        return child

    def to_dict(self) -> dict:
        d = {"hue": self.hue, **self.traits()}
        d["controller"] = self.controller.to_dict()
        return d

    @staticmethod
    def from_dict(d: dict) -> "Genome":
        try:
            traits = {name: float(d[name]) for name in TRAITS}
            return Genome(
                hue=float(d["hue"]) % 360.0,
                controller=NeuralController.from_dict(d["controller"]),
                **traits,
            )
        except KeyError as exc:
            raise ValueError(f"genome payload is missing {exc}") from exc


# ===================== per-tick data =====================
class SensorReading(NamedTuple):
    target: int      # agent id, -1 when nothing was detected
    angle: float     # degrees relative to facing, [-180, 180]
    distance: float
    mass: float
    alive: float     # 1.0 alive, 0.0 corpse or nothing

    @property
    def detected(self) -> bool:
        return self.target >= 0


@dataclass(frozen=True, eq=False)
class PopulationSnapshot:
    """Pre-tick, read-only view of the population shared by all workers."""
    ids: np.ndarray
    x: np.ndarray
    y: np.ndarray
    energy: np.ndarray
    mass: np.ndarray
    radius: np.ndarray
    remains: np.ndarray
    alive: np.ndarray
    index: SpatialIndex

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def width(self) -> float:
        return self.index.width

    @property
    def height(self) -> float:
        return self.index.height


@dataclass
class AgentUpdate:
    row: int
    agent_id: int
    x: float
    y: float
    vx: float
    vy: float
    angle: float
    angle_velocity: float
    energy: float
    age: float
    stage: LifeStage
    remains: float = 0.0
    corpse_ticks: int = 0
    banked: float = 0.0
    action: Optional[Action] = None
    sensors: Tuple[SensorReading, ...] = ()
    bites: Tuple[int, ...] = ()
    died: bool = False
    wants_spawn: bool = False


# ===================== agent =====================
class Agent:
    __slots__ = (
        "id", "genome", "x", "y", "vx", "vy", "angle", "angle_velocity",
        "energy", "age", "stage", "remains", "corpse_ticks",
        "total_energy_accumulated", "children_count", "generation", "parent_id",
        "last_action", "sensors",
    )

    def __init__(
        self,
        agent_id: int,
        genome: Genome,
        x: float,
        y: float,
        *,
        energy: float,
        vx: float = 0.0,
        vy: float = 0.0,
        angle: float = 0.0,
        angle_velocity: float = 0.0,
        generation: int = 0,
        parent_id: Optional[int] = None,
    ) -> None:
        self.id = agent_id
        self.genome = genome
        self.x = x
        self.y = y
        self.vx = vx
        self.vy = vy
        self.angle = angle
        self.angle_velocity = angle_velocity
        self.energy = min(max(0.0, float(energy)), genome.mass)
        self.age = 0.0
        self.stage = LifeStage.GROWING
        self.remains = 0.0
        self.corpse_ticks = 0
        self.total_energy_accumulated = 0.0
        self.children_count = 0
        self.generation = generation
        self.parent_id = parent_id
        self.last_action: Optional[Action] = None
        self.sensors: Tuple[SensorReading, ...] = ()

    @classmethod
    def spawn(
        cls,
        agent_id: int,
        rng: np.random.Generator,
        config: SimulationConfig,
        genome: Optional[Genome] = None,
        position: Optional[Tuple[float, float]] = None,
        energy: Optional[float] = None,
    ) -> "Agent":
        if genome is None:
            genome = Genome.random(rng, config)
        w, h = config.world.to_tuple()
        if position is None:
            position = (float(rng.uniform(0, w)), float(rng.uniform(0, h)))
        heading = float(rng.uniform(0, math.tau))
        spd = genome.speed * float(rng.uniform(0.5, 1.0))
        return cls(
            agent_id,
            genome,
            wrap(position[0], w),
            wrap(position[1], h),
            energy=config.genome.spawn_energy if energy is None else energy,
            vx=math.cos(heading) * spd,
            vy=math.sin(heading) * spd,
            angle=heading,
            angle_velocity=float(rng.uniform(-0.05, 0.05)),
        )

    # ---------- derived state ----------
    @property
    def alive(self) -> bool:
        return self.stage in LIVING_STAGES

    @property
    def is_corpse(self) -> bool:
        return self.stage is LifeStage.CORPSE

    @property
    def mass(self) -> float:
        return self.genome.mass

    @property
    def hue(self) -> float:
        return self.genome.hue

    @property
    def fitness(self) -> float:
        return self.total_energy_accumulated + self.children_count * FITNESS_PER_CHILD

    def current_radius(self, full_size_age: float) -> float:
        if self.age < full_size_age:
            return self.genome.radius * (0.1 + 0.9 * self.age / full_size_age)
        return self.genome.radius

    def age_cost_multiplier(self, horizon: float, age: Optional[float] = None) -> float:
        a = self.age if age is None else age
        return 1.0 + min(a / horizon, 1.0)

    # ---------- sensing ----------
    def sense(
        self,
        snapshot: PopulationSnapshot,
        row: int,
        brain: BrainConfig,
        hits: Optional[Sequence[Neighbor]] = None,
    ) -> Tuple[SensorReading, ...]:
        """
        Pick up to ``brain.sensors`` distinct targets. Corpses rank first, then
        higher energy, then shorter distance. Only the top few are needed, so
        this is a partial selection rather than a sort of every neighbour.
        """
        if hits is None:
            hits = snapshot.index.neighbors((self.x, self.y), brain.sense_range, exclude=row)
        alive = snapshot.alive
        energy = snapshot.energy
        top = heapq.nsmallest(
            brain.sensors,
            hits,
            key=lambda h: (bool(alive[h.index]), -float(energy[h.index]), h.distance, h.index),
        )
        heading = math.degrees(self.angle)
        readings = []
        for h in top:
            bearing = math.degrees(math.atan2(h.dy, h.dx))
            relative = (bearing - heading + 180.0) % 360.0 - 180.0
            readings.append(
                SensorReading(
                    target=int(snapshot.ids[h.index]),
                    angle=relative,
                    distance=h.distance,
                    mass=float(snapshot.mass[h.index]),
                    alive=1.0 if alive[h.index] else 0.0,
                )
            )
        return tuple(readings)

    @staticmethod
    def sensor_inputs(
        readings: Sequence[SensorReading],
        sensors: int,
        sense_range: float,
        max_mass: float,
    ) -> np.ndarray:
        """Normalize readings into the controller's input vector; empty slots read -1."""
        inputs = np.full(sensors * VALUES_PER_SENSOR, -1.0, dtype=np.float64)
        for i, r in enumerate(readings[:sensors]):
            if not r.detected:
                continue
            base = i * VALUES_PER_SENSOR
            inputs[base] = r.angle / 180.0
            inputs[base + 1] = ((sense_range - r.distance) / sense_range) * 2.0 - 1.0 if sense_range > 0 else 1.0
            inputs[base + 2] = (r.mass / max_mass) * 2.0 - 1.0
            inputs[base + 3] = r.alive * 2.0 - 1.0
        return inputs

    # ---------- per-tick planning ----------
    def plan(self, snapshot: PopulationSnapshot, row: int, config: SimulationConfig) -> AgentUpdate:
        """Compute this agent's next state without touching anything shared."""
        if not self.alive:
            return self._plan_corpse(snapshot, row, config)

        m = config.metabolism
        brain = config.brain
        genome = self.genome

        age = self.age + 1.0
        stage = LifeStage.ADULT if age >= m.maturity_age else LifeStage.GROWING
        mult = self.age_cost_multiplier(m.age_cost_horizon, age)

        hits = snapshot.index.neighbors((self.x, self.y), brain.sense_range, exclude=row)
        sensors = self.sense(snapshot, row, brain, hits)
        inputs = self.sensor_inputs(sensors, brain.sensors, brain.sense_range, config.genome.mass_range[1])
        action = genome.controller.evaluate(inputs)

        energy = self.energy
        vx, vy = self.vx, self.vy
        angle_velocity = self.angle_velocity
        if action is Action.TURN_LEFT or action is Action.TURN_RIGHT:
            cost = m.turn_cost * mult
            if energy >= cost:
                angle_velocity += genome.turn_rate if action is Action.TURN_RIGHT else -genome.turn_rate
                energy -= cost
        elif action is Action.FORWARD:
            cost = m.forward_cost * mult
            if energy >= cost:
                vx = math.cos(self.angle) * genome.speed
                vy = math.sin(self.angle) * genome.speed
                energy -= cost

        net = m.absorption_rate * genome.species_multiplier - m.base_cost * mult
        if net > 0 and stage is LifeStage.GROWING:
            net = 0.0  # juveniles spend surplus on growth
        before = energy
        energy = min(genome.mass, max(0.0, energy + net))
        banked = max(0.0, energy - before)

        x, y, angle, vx, vy, angle_velocity = self._drift(
            snapshot, config, vx, vy, self.angle, angle_velocity
        )

        my_radius = self.current_radius(m.full_size_age)
        bites = tuple(
            int(snapshot.ids[h.index])
            for h in hits
            if not snapshot.alive[h.index]
            and snapshot.remains[h.index] > 0.0
            and h.distance <= my_radius + snapshot.radius[h.index]
        )

        died = energy <= 0.0
        return AgentUpdate(
            row=row,
            agent_id=self.id,
            x=x,
            y=y,
            vx=vx,
            vy=vy,
            angle=angle,
            angle_velocity=angle_velocity,
            energy=energy,
            age=age,
            stage=stage,
            banked=banked,
            action=action,
            sensors=sensors,
            bites=() if died else bites,
            died=died,
            wants_spawn=not died and energy > m.reproduction_threshold,
        )

    def _plan_corpse(self, snapshot: PopulationSnapshot, row: int, config: SimulationConfig) -> AgentUpdate:
        x, y, angle, vx, vy, angle_velocity = self._drift(
            snapshot, config, self.vx, self.vy, self.angle, self.angle_velocity
        )
        return AgentUpdate(
            row=row,
            agent_id=self.id,
            x=x,
            y=y,
            vx=vx,
            vy=vy,
            angle=angle,
            angle_velocity=angle_velocity,
            energy=0.0,
            age=self.age,
            stage=LifeStage.CORPSE,
            remains=max(0.0, self.remains - config.corpse.decay_rate),
            corpse_ticks=self.corpse_ticks + 1,
        )

    def _drift(self, snapshot, config, vx, vy, angle, angle_velocity):
        m = config.metabolism
        lo, hi = config.genome.mass_range
        # heavier cells move slower, normalized around the middle of the mass range
        slowdown = max((lo + hi) / 2.0 / self.genome.mass, 0.5)
        x = wrap(self.x + vx * slowdown, snapshot.width)
        y = wrap(self.y + vy * slowdown, snapshot.height)
        angle = (angle + angle_velocity) % math.tau
        return x, y, angle, vx * m.friction, vy * m.friction, angle_velocity * m.angular_friction

    # ---------- merge-phase mutations ----------
    def apply(self, update: AgentUpdate) -> None:
        self.x = update.x
        self.y = update.y
        self.vx = update.vx
        self.vy = update.vy
        self.angle = update.angle
        self.angle_velocity = update.angle_velocity
        self.energy = update.energy
        self.age = update.age
        self.stage = update.stage
        if update.stage is LifeStage.CORPSE:
            self.remains = update.remains
            self.corpse_ticks = update.corpse_ticks
        else:
            self.total_energy_accumulated += update.banked
            self.last_action = update.action
            self.sensors = update.sensors

    def gain_energy(self, amount: float) -> float:
        """Bank ``amount`` up to mass; growing cells put it into growth instead."""
        if amount <= 0 or self.stage is not LifeStage.ADULT:
            return 0.0
        banked = min(amount, self.genome.mass - self.energy)
        if banked <= 0:
            return 0.0
        self.energy += banked
        self.total_energy_accumulated += banked
        return banked

    def take_bite(self, chunk: float) -> float:
        """Remove up to ``chunk`` of a corpse's remains and return what was taken."""
        if not self.is_corpse or self.remains <= 0:
            return 0.0
        taken = min(chunk, self.remains)
        self.remains -= taken
        return taken

    def kill(self, remains_fraction: float) -> None:
        if not self.alive:
            return
        self.stage = LifeStage.CORPSE
        self.energy = 0.0
        self.remains = self.genome.mass * remains_fraction
        self.corpse_ticks = 0
        self.last_action = None

    def remove(self) -> None:
        self.stage = LifeStage.REMOVED

    def can_reproduce(self, threshold: float) -> bool:
        return self.alive and self.energy > threshold

    def reproduce(self, child_id: int, rng: np.random.Generator, config: SimulationConfig) -> "Agent":
        """
        Split all of this agent's energy with a mutated child: the child gets
        ``child_share`` of it, the parent keeps the rest.
        """
        transferred = self.energy
        child_energy = transferred * config.metabolism.child_share
        self.energy = transferred - child_energy
        self.children_count += 1

        genome = self.genome.mutated(rng, config)
        w, h = config.world.to_tuple()
        direction = float(rng.uniform(0, math.tau))
        offset = config.metabolism.child_offset
        spd = genome.speed * float(rng.uniform(0.5, 1.0))
        child = Agent(
            child_id,
            genome,
            wrap(self.x + math.cos(direction) * offset, w),
            wrap(self.y + math.sin(direction) * offset, h),
            energy=child_energy,
            vx=math.cos(direction) * spd,
            vy=math.sin(direction) * spd,
            angle=float(rng.uniform(0, math.tau)),
            angle_velocity=float(rng.uniform(-0.05, 0.05)),
            generation=self.generation + 1,
            parent_id=self.id,
        )
        return child

    def __repr__(self) -> str:
        return (
            f"Agent(id={self.id}, stage={self.stage.name}, energy={self.energy:.2f}, "
            f"age={self.age:.0f}, pos=({self.x:.1f}, {self.y:.1f}))"
        )
