# SPDX-License-Identifier: MIT
"""
World loop for the cell simulation.

One `step` is:
  1. snapshot the population and rebuild the spatial index
  2. plan every agent against the snapshot (worker pool, no shared writes)
  3. merge serially in agent order: states, bites, births, deaths, sweep
  4. respawn from the stored best genome if the population is empty
  5. refresh diversity and the best genome

`tick(delta_time)` wraps steps with pause / speed handling and drives the
frame-rate based population cap.
"""

from __future__ import annotations

import heapq
import logging
import math
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np

from cellsim.core.config import SimulationConfig
from cellsim.sim.agent import Agent, AgentUpdate, Genome, LifeStage, PopulationSnapshot
from cellsim.sim.spatial import SpatialIndex

logger = logging.getLogger(__name__)

SPEED_MIN = 0.125
SPEED_MAX = 8.0


@dataclass(frozen=True)
class AgentView:
    """What the drawing / stats layers are allowed to see of an agent."""
    id: int
    x: float
    y: float
    radius: float
    hue: float
    alive: bool
    energy: float
    age: float
    mass: float
    stage: LifeStage
    fitness: float
    generation: int

    @classmethod
    def from_agent(cls, agent: Agent, full_size_age: float) -> "AgentView":
        return cls(
            id=agent.id,
            x=agent.x,
            y=agent.y,
            radius=agent.current_radius(full_size_age),
            hue=agent.hue,
            alive=agent.alive,
            energy=agent.energy,
            age=agent.age,
            mass=agent.mass,
            stage=agent.stage,
            fitness=agent.fitness,
            generation=agent.generation,
        )


@dataclass
class BestGenome:
    genome: Genome
    fitness: float
    agent_id: Optional[int] = None
    tick: int = 0
    generation: int = 0

    def to_dict(self) -> dict:
        return {
            "version": 1,
            "fitness": self.fitness,
            "agent_id": self.agent_id,
            "tick": self.tick,
            "generation": self.generation,
            "genome": self.genome.to_dict(),
        }

    @staticmethod
    def from_dict(d: dict) -> "BestGenome":
        if "genome" not in d:
            raise ValueError("best genome payload is missing 'genome'")
        return BestGenome(
            genome=Genome.from_dict(d["genome"]),
            fitness=float(d.get("fitness", 0.0)),
            agent_id=d.get("agent_id"),
            tick=int(d.get("tick", 0)),
            generation=int(d.get("generation", 0)),
        )


@dataclass
class TickReport:
    tick: int
    births: int = 0
    deaths: int = 0
    removed: int = 0
    dropped_spawns: int = 0
    bites: int = 0
    respawned: bool = False


class Simulation:
    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        *,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        populate: bool = True,
    ) -> None:
        self.config = config if config is not None else SimulationConfig()
        self.config.validate()
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.width, self.height = self.config.world.to_tuple()

        self.agents: Dict[int, Agent] = {}
        self.spatial = SpatialIndex(self.width, self.height, self.config.world.bucket_size)
        self.population_cap = self.config.clamp_cap(self.config.population.initial_cap)
        self.speed_multiplier = 1.0
        self.paused = False
        self.best_genome: Optional[BestGenome] = None
        self.diversity = 0.0

        self.tick_count = 0
        self.births = 0
        self.deaths = 0
        self.dropped_spawns = 0
        self.respawns = 0
        self.fps = 0.0

        self._next_id = 0
        self._step_budget = 0.0
        self._frame_times: Deque[float] = deque()
        self._window_elapsed = 0.0
        self._best_id: Optional[int] = None
        # agent whose genome is held in best_genome; ids restart per Simulation
        self._best_source: Optional[Agent] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        if populate:
            self._populate(self.config.world.initial_population)
            self._update_metrics()

    # ---------- lifecycle ----------
    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "Simulation":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------- control ----------
    def set_paused(self, paused: bool) -> None:
        self.paused = bool(paused)

    def set_speed_multiplier(self, value: float) -> float:
        self.speed_multiplier = float(min(SPEED_MAX, max(SPEED_MIN, value)))
        return self.speed_multiplier

    def reset_with_best_genome(self) -> int:
        count = self._respawn("reset")
        self._update_metrics()
        return count

    def load_best_genome(self, best: BestGenome) -> None:
        self.best_genome = best
        self._best_source = None
        logger.info("best genome loaded (fitness %.1f)", best.fitness)

    def spawn_agent(
        self,
        genome: Optional[Genome] = None,
        position: Optional[Tuple[float, float]] = None,
        energy: Optional[float] = None,
    ) -> Agent:
        agent = Agent.spawn(self._take_id(), self.rng, self.config, genome=genome, position=position, energy=energy)
        self.agents[agent.id] = agent
        return agent

    # ---------- read-only views ----------
    @property
    def population(self) -> int:
        return len(self.agents)

    @property
    def alive_count(self) -> int:
        return sum(1 for a in self.agents.values() if a.alive)

    @property
    def corpse_count(self) -> int:
        return sum(1 for a in self.agents.values() if a.is_corpse)

    @property
    def mean_energy(self) -> float:
        living = [a.energy for a in self.agents.values() if a.alive]
        return float(np.mean(living)) if living else 0.0

    def agent(self, agent_id: int) -> Optional[Agent]:
        return self.agents.get(agent_id)

    def agents_view(self) -> List[AgentView]:
        full = self.config.metabolism.full_size_age
        return [AgentView.from_agent(a, full) for a in self.agents.values()]

    def best_agent(self) -> Optional[AgentView]:
        if self._best_id is None:
            return None
        agent = self.agents.get(self._best_id)
        if agent is None:
            return None
        return AgentView.from_agent(agent, self.config.metabolism.full_size_age)

    def stats(self) -> Dict[str, float]:
        return {
            "tick": self.tick_count,
            "population": self.population,
            "alive": self.alive_count,
            "corpses": self.corpse_count,
            "population_cap": self.population_cap,
            "mean_energy": self.mean_energy,
            "births": self.births,
            "deaths": self.deaths,
            "dropped_spawns": self.dropped_spawns,
            "respawns": self.respawns,
            "diversity": self.diversity,
            "best_fitness": self.best_genome.fitness if self.best_genome else 0.0,
            "fps": self.fps,
            "speed": self.speed_multiplier,
        }

    # ---------- main loop ----------
    def tick(self, delta_time: float) -> int:
        """Advance by one frame. Returns the number of simulation steps run."""
        if self.paused:
            return 0
        self._record_frame(delta_time)
        self._step_budget += self.speed_multiplier
        steps = int(self._step_budget)
        self._step_budget -= steps
        for _ in range(steps):
            self.step()
        self._maybe_recalculate_cap()
        return steps

    def step(self) -> TickReport:
        self.tick_count += 1
        order = list(self.agents.values())
        snapshot = self._snapshot(order)
        updates = self._plan_all(snapshot, order)
        report = self._merge(order, updates)
        if not self.agents:
            self._respawn("extinct")
            report.respawned = True
        self._update_metrics()
        logger.debug(
            "tick %d: pop=%d births=%d deaths=%d removed=%d dropped=%d",
            report.tick, len(self.agents), report.births, report.deaths, report.removed, report.dropped_spawns,
        )
        return report

    # ---------- phase 1: snapshot ----------
    def _snapshot(self, order: List[Agent]) -> PopulationSnapshot:
        n = len(order)
        full = self.config.metabolism.full_size_age
        ids = np.fromiter((a.id for a in order), dtype=np.int64, count=n)
        x = np.fromiter((a.x for a in order), dtype=np.float64, count=n)
        y = np.fromiter((a.y for a in order), dtype=np.float64, count=n)
        energy = np.fromiter((a.energy for a in order), dtype=np.float64, count=n)
        mass = np.fromiter((a.mass for a in order), dtype=np.float64, count=n)
        radius = np.fromiter((a.current_radius(full) for a in order), dtype=np.float64, count=n)
        remains = np.fromiter((a.remains for a in order), dtype=np.float64, count=n)
        alive = np.fromiter((a.alive for a in order), dtype=bool, count=n)
        self.spatial.rebuild(np.column_stack((x, y)))
        return PopulationSnapshot(
            ids=ids, x=x, y=y, energy=energy, mass=mass, radius=radius,
            remains=remains, alive=alive, index=self.spatial,
        )

    # ---------- phase 2: parallel planning ----------
    def _chunk_bounds(self, n: int) -> List[Tuple[int, int]]:
        if n == 0:
            return []
        workers = self.config.concurrency.workers
        size = max(self.config.concurrency.min_chunk, int(math.ceil(n / workers)), 1)
        return [(start, min(n, start + size)) for start in range(0, n, size)]

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.concurrency.workers,
                thread_name_prefix="cellsim-worker",
            )
        return self._executor

    def _plan_chunk(self, snapshot: PopulationSnapshot, order: List[Agent], start: int, stop: int) -> List[AgentUpdate]:
        cfg = self.config
        return [order[row].plan(snapshot, row, cfg) for row in range(start, stop)]

    def _plan_all(self, snapshot: PopulationSnapshot, order: List[Agent]) -> List[AgentUpdate]:
        bounds = self._chunk_bounds(len(order))
        if len(bounds) <= 1:
            buffers = [self._plan_chunk(snapshot, order, s, e) for s, e in bounds]
        else:
            pool = self._pool()
            futures = [pool.submit(self._plan_chunk, snapshot, order, s, e) for s, e in bounds]
            # chunk order == agent order, so the merge stays deterministic
            buffers = [f.result() for f in futures]
        return [u for buf in buffers for u in buf]

    # ---------- phase 3: serial merge ----------
    def _merge(self, order: List[Agent], updates: List[AgentUpdate]) -> TickReport:
        cfg = self.config
        report = TickReport(tick=self.tick_count)

        for agent, update in zip(order, updates):
            agent.apply(update)

        for agent, update in zip(order, updates):
            if not update.bites or not agent.alive:
                continue
            for target_id in update.bites:
                target = self.agents.get(target_id)
                if target is None:
                    continue
                taken = target.take_bite(agent.genome.energy_chunk_size)
                if taken > 0:
                    agent.gain_energy(taken * agent.genome.species_multiplier)
                    report.bites += 1

        threshold = cfg.metabolism.reproduction_threshold
        for agent, update in zip(order, updates):
            if not update.wants_spawn or not agent.can_reproduce(threshold):
                continue
            if len(self.agents) >= self.population_cap:
                report.dropped_spawns += 1
                continue
            child = agent.reproduce(self._take_id(), self.rng, cfg)
            self.agents[child.id] = child
            report.births += 1

        for agent, update in zip(order, updates):
            if update.died and agent.alive:
                agent.kill(cfg.corpse.remains_fraction)
                report.deaths += 1

        window = cfg.corpse.visibility_ticks
        for agent in order:
            if not agent.is_corpse:
                continue
            if corpse_expired(agent, window):
                agent.remove()
                del self.agents[agent.id]
                report.removed += 1

        self.births += report.births
        self.deaths += report.deaths
        self.dropped_spawns += report.dropped_spawns
        return report

    # ---------- phase 4: extinction ----------
    def _populate(self, count: int, best: Optional[BestGenome] = None) -> int:
        for i in range(count):
            if best is None:
                genome = None
            elif i == 0:
                genome = best.genome.clone()
            else:
                genome = best.genome.mutated(self.rng, self.config)
            self.spawn_agent(genome=genome)
        return count

    def _respawn(self, reason: str) -> int:
        count = max(1, min(self.config.world.initial_population, self.population_cap))
        for agent in self.agents.values():
            agent.remove()
        self.agents.clear()
        self._best_id = None
        self._step_budget = 0.0
        best = self.best_genome
        self._populate(count, best)
        self.respawns += 1
        if best is not None:
            logger.info("[%s] reseed from best genome (fitness %.1f) -> %d", reason, best.fitness, count)
        else:
            logger.info("[%s] no best genome -> random reinit %d", reason, count)
        return count

    # ---------- phase 5: population cap ----------
    def _record_frame(self, delta_time: float) -> None:
        if delta_time <= 0:
            return
        self._frame_times.append(float(delta_time))
        self._window_elapsed += float(delta_time)

    def _maybe_recalculate_cap(self) -> None:
        if self._window_elapsed < self.config.population.recalc_interval:
            return
        frames = len(self._frame_times)
        self.fps = frames / self._window_elapsed if self._window_elapsed > 0 else 0.0
        self._frame_times.clear()
        self._window_elapsed = 0.0
        self.recalculate_cap(self.fps)

    def recalculate_cap(self, fps: float) -> int:
        p = self.config.population
        cap = self.population_cap
        if fps < p.fps_floor:
            target = min(cap - 1, int(cap * (1.0 - p.adjust_fraction)))
        elif fps > p.fps_ceiling:
            target = max(cap + 1, int(math.ceil(cap * (1.0 + p.adjust_fraction))))
        else:
            return cap
        target = self.config.clamp_cap(target)
        if target != cap:
            logger.info("population cap %d -> %d (fps %.1f)", cap, target, fps)
            self.population_cap = target
            self._cull_to_cap()
        return self.population_cap

    def _cull_to_cap(self) -> int:
        excess = len(self.agents) - self.population_cap
        if excess <= 0:
            return 0
        victims = heapq.nsmallest(excess, self.agents.values(), key=lambda a: (a.alive, a.energy, a.id))
        for agent in victims:
            agent.remove()
            del self.agents[agent.id]
        logger.info("culled %d agents to respect cap %d", len(victims), self.population_cap)
        return len(victims)

    # ---------- phase 6: metrics ----------
    def _update_metrics(self) -> None:
        living = [a for a in self.agents.values() if a.alive]
        if not living:
            self.diversity = 0.0
            self._best_id = None
            return
        hues = np.fromiter((a.hue for a in living), dtype=np.float64, count=len(living))
        self.diversity = float(np.var(hues))

        best = max(living, key=lambda a: (a.fitness, -a.id))
        self._best_id = best.id
        stored = self.best_genome
        if stored is not None and best is self._best_source:
            stored.fitness = max(stored.fitness, best.fitness)
        elif stored is None or best.fitness > stored.fitness:
            self.best_genome = BestGenome(
                genome=best.genome.clone(),
                fitness=best.fitness,
                agent_id=best.id,
                tick=self.tick_count,
                generation=best.generation,
            )
            self._best_source = best
            logger.debug("new best genome from agent %d (fitness %.1f)", best.id, best.fitness)

    def _take_id(self) -> int:
        nid = self._next_id
        self._next_id += 1
        return nid


def corpse_expired(agent: Agent, window: int) -> bool:
    """A corpse is swept once its visibility window has passed or nothing is left to eat."""
    if agent.corpse_ticks <= 0:
        return window <= 0
    return agent.corpse_ticks >= window or agent.remains <= 0.0
