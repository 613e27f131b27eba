from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Union

from .config import SimulationConfig
from cellsim.sim.simulation import BestGenome, Simulation

logger = logging.getLogger(__name__)

BEST_GENOME_PATH = Path("cells_best.json")


@dataclass
class SimulationState:
    tick: int = 0
    population: int = 0
    alive: int = 0
    corpses: int = 0
    mean_energy: float = 0.0
    births: int = 0
    deaths: int = 0
    population_cap: int = 0
    diversity: float = 0.0
    best_fitness: float = 0.0
    fps: float = 0.0
    paused: bool = False
    speed: float = 1.0
    frame: Dict | None = None
    telemetry: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "tick": self.tick,
            "population": self.population,
            "alive": self.alive,
            "corpses": self.corpses,
            "mean_energy": self.mean_energy,
            "births": self.births,
            "deaths": self.deaths,
            "population_cap": self.population_cap,
            "diversity": self.diversity,
            "best_fitness": self.best_fitness,
            "fps": self.fps,
            "paused": self.paused,
            "speed": self.speed,
            "frame": self.frame,
            "telemetry": self.telemetry,
        }


class SimulationBackend(Protocol):
    """Interface an embedding application uses to control a simulation."""

    def configure(self, config: SimulationConfig) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def step(self) -> SimulationState:
        ...

    def snapshot(self) -> Dict:
        ...

    def set_paused(self, paused: bool) -> None:
        ...

    def set_speed_multiplier(self, value: float) -> float:
        ...

    def reset_with_best(self) -> int:
        ...

    def save_best(self, path: Optional[Path] = None) -> Path:
        ...

    def load_best(self, path: Path) -> None:
        ...


class CellSimulationBackend:
    """
    Adapter that drives a `Simulation` through the backend protocol.
    Each `step()` feeds the wall-clock time since the previous call into
    `Simulation.tick`, so the population cap follows the real frame rate.
    """

    def __init__(
        self,
        *,
        seed: Optional[int] = None,
        sleep_interval: float = 0.01,
        clock: Callable[[], float] = time.perf_counter,
        capture_frames: bool = True,
    ) -> None:
        self._seed = seed
        self._config: SimulationConfig = SimulationConfig()
        self._simulation: Optional[Simulation] = None
        self._state = SimulationState()
        self._lock = threading.Lock()
        self._running = False
        self._sleep_interval = max(0.0, float(sleep_interval))
        self._clock = clock
        self._last_step: Optional[float] = None
        self._capture_frames = capture_frames

    @property
    def simulation(self) -> Simulation:
        with self._lock:
            return self._ensure_simulation()

    @property
    def running(self) -> bool:
        return self._running

    def configure(self, config: SimulationConfig) -> None:
        config.validate()
        with self._lock:
            previous_best = self._simulation.best_genome if self._simulation is not None else None
            if self._simulation is not None:
                self._simulation.close()
            self._config = config
            self._simulation = Simulation(config, seed=self._seed)
            if previous_best is not None:
                self._simulation.load_best_genome(previous_best)
            self._state = SimulationState()
            self._last_step = None

    def start(self) -> None:
        with self._lock:
            self._ensure_simulation()
            self._running = True
            self._last_step = None

    def stop(self) -> None:
        with self._lock:
            self._running = False

    def close(self) -> None:
        with self._lock:
            self._running = False
            if self._simulation is not None:
                self._simulation.close()

    def step(self) -> SimulationState:
        if self._sleep_interval > 0:
            time.sleep(self._sleep_interval)
        with self._lock:
            sim = self._ensure_simulation()
            now = self._clock()
            if self._running:
                delta = 0.0 if self._last_step is None else max(0.0, now - self._last_step)
                sim.tick(delta)
            self._last_step = now
            self._refresh_state(sim)
            return self._state

    def snapshot(self) -> Dict:
        with self._lock:
            sim = self._ensure_simulation()
            return {
                "config": self._config.to_dict(),
                "state": sim.stats(),
                "best_agent": self._best_agent_payload(sim),
                "frame": self._capture_frame(sim),
            }

    # ----- controls -----
    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._ensure_simulation().set_paused(paused)

    def set_speed_multiplier(self, value: float) -> float:
        with self._lock:
            return self._ensure_simulation().set_speed_multiplier(value)

    def reset_with_best(self) -> int:
        with self._lock:
            return self._ensure_simulation().reset_with_best_genome()

    # ----- best genome persistence -----
    def save_best(self, path: Optional[Path] = None) -> Path:
        target = Path(path) if path is not None else BEST_GENOME_PATH
        with self._lock:
            best = self._ensure_simulation().best_genome
            if best is None:
                raise ValueError("No best genome recorded yet")
            payload = best.to_dict()
        target.write_text(json.dumps(payload, indent=2))
        logger.info("best genome saved (fitness %.1f) -> %s", best.fitness, target)
        return target

    def load_best(self, path: Union[str, Path]) -> None:
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise FileNotFoundError(resolved)
        try:
            data = json.loads(resolved.read_text())
            best = BestGenome.from_dict(data)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            raise ValueError(f"Failed to load best genome from {resolved}: {exc}") from exc
        with self._lock:
            sim = self._ensure_simulation()
            sim.load_best_genome(best)
            sim.reset_with_best_genome()
            self._refresh_state(sim)

    # ----- internals -----
    def _ensure_simulation(self) -> Simulation:
        if self._simulation is None:
            self._simulation = Simulation(self._config, seed=self._seed)
        return self._simulation

    def _refresh_state(self, sim: Simulation) -> None:
        stats = sim.stats()
        self._state.tick = sim.tick_count
        self._state.population = sim.population
        self._state.alive = int(stats["alive"])
        self._state.corpses = int(stats["corpses"])
        self._state.mean_energy = float(stats["mean_energy"])
        self._state.births = sim.births
        self._state.deaths = sim.deaths
        self._state.population_cap = sim.population_cap
        self._state.diversity = sim.diversity
        self._state.best_fitness = float(stats["best_fitness"])
        self._state.fps = sim.fps
        self._state.paused = sim.paused
        self._state.speed = sim.speed_multiplier
        self._state.frame = self._capture_frame(sim) if self._capture_frames else None
        self._state.telemetry = {
            "dropped_spawns": sim.dropped_spawns,
            "respawns": sim.respawns,
            "best_agent": self._best_agent_payload(sim),
        }

    def _best_agent_payload(self, sim: Simulation) -> Optional[Dict]:
        best = sim.best_agent()
        if best is None:
            return None
        return {
            "id": best.id,
            "x": best.x,
            "y": best.y,
            "energy": best.energy,
            "age": best.age,
            "fitness": best.fitness,
            "hue": best.hue,
            "alive": best.alive,
        }

    def _capture_frame(self, sim: Simulation) -> Dict:
        frame = {
            "width": sim.width,
            "height": sim.height,
            "agents": [],
        }
        for view in sim.agents_view():
            frame["agents"].append(
                {
                    "id": view.id,
                    "x": float(view.x),
                    "y": float(view.y),
                    "radius": float(view.radius),
                    "hue": float(view.hue),
                    "alive": bool(view.alive),
                    "energy": float(view.energy),
                    "age": float(view.age),
                }
            )
        return frame
