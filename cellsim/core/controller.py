from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional, Union

from PySide6.QtCore import QObject, QThread, Signal

from .config import SimulationConfig
from .simulation_backend import SimulationBackend, SimulationState

logger = logging.getLogger(__name__)


class SimulationWorker(QThread):
    progressed = Signal(object)
    stopped = Signal()

    def __init__(self, backend: SimulationBackend, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._backend = backend
        self._stop_flag = threading.Event()

    def start(self, *args) -> None:
        # cleared here, not in run(), so an early request_stop() is never lost
        self._stop_flag.clear()
        super().start(*args)

    def run(self) -> None:
        while not self._stop_flag.is_set():
            state = self._backend.step()
            self.progressed.emit(state)
        self.stopped.emit()

    def request_stop(self) -> None:
        self._stop_flag.set()


class QtLogHandler(logging.Handler):
    """Forwards `cellsim` log records to a controller's `log_emitted` signal."""

    def __init__(self, controller: "SimulationController", level: int = logging.INFO) -> None:
        super().__init__(level)
        self._controller = controller
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._controller.log_emitted.emit(self.format(record))
        except RuntimeError:
            # controller already deleted on the Qt side
            self.handleError(record)


class SimulationController(QObject):
    config_changed = Signal(dict)
    state_updated = Signal(dict)
    simulation_started = Signal()
    simulation_stopped = Signal()
    log_emitted = Signal(str)

    def __init__(
        self,
        backend: SimulationBackend,
        config: Optional[SimulationConfig] = None,
        parent: Optional[QObject] = None,
        *,
        forward_logs: bool = True,
    ) -> None:
        super().__init__(parent)
        self._config = config or SimulationConfig()
        self._backend = backend
        self._backend.configure(self._config)
        self._worker = SimulationWorker(self._backend)
        self._worker.progressed.connect(self._on_progress)
        self._worker.stopped.connect(self._on_worker_stopped)
        self._log_handler: Optional[QtLogHandler] = None
        if forward_logs:
            self._log_handler = QtLogHandler(self)
            logging.getLogger("cellsim").addHandler(self._log_handler)

    @property
    def config(self) -> SimulationConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._worker.isRunning()

    def update_config(self, config: SimulationConfig) -> None:
        was_running = self.running
        self.stop()
        self._config = config
        self._backend.configure(config)
        self.config_changed.emit(config.to_dict())
        if was_running:
            self.start()

    def start(self) -> None:
        if self._worker.isRunning():
            return
        self._backend.start()
        self._worker.start()
        self.simulation_started.emit()
        self.log_emitted.emit("Simulation started.")

    def stop(self) -> None:
        if not self._worker.isRunning():
            return
        self._worker.request_stop()
        self._worker.wait()
        self._backend.stop()

    def shutdown(self) -> None:
        self.stop()
        if self._log_handler is not None:
            logging.getLogger("cellsim").removeHandler(self._log_handler)
            self._log_handler = None

    def request_snapshot(self) -> None:
        snapshot = self._backend.snapshot()
        self.state_updated.emit(snapshot)

    # ----- runtime controls -----
    def set_paused(self, paused: bool) -> None:
        self._backend.set_paused(paused)
        self.log_emitted.emit("Simulation paused." if paused else "Simulation resumed.")

    def set_speed_multiplier(self, value: float) -> float:
        applied = self._backend.set_speed_multiplier(value)
        self.log_emitted.emit(f"Speed x{applied:g}")
        return applied

    def reset_with_best(self) -> int:
        count = self._backend.reset_with_best()
        self.request_snapshot()
        return count

    def save_best(self, path: Optional[Union[str, Path]] = None) -> Optional[Path]:
        try:
            return self._backend.save_best(Path(path) if path is not None else None)
        except (OSError, ValueError) as exc:
            logger.warning("could not save best genome: %s", exc)
            return None

    def load_best(self, path: Union[str, Path]) -> bool:
        try:
            self._backend.load_best(Path(path))
        except (OSError, ValueError) as exc:
            logger.warning("could not load best genome: %s", exc)
            return False
        self.request_snapshot()
        return True

    def _on_progress(self, state: SimulationState) -> None:
        self.state_updated.emit(
            {
                "tick": state.tick,
                "population": state.population,
                "alive": state.alive,
                "corpses": state.corpses,
                "mean_energy": state.mean_energy,
                "births": state.births,
                "deaths": state.deaths,
                "population_cap": state.population_cap,
                "diversity": state.diversity,
                "best_fitness": state.best_fitness,
                "fps": state.fps,
                "paused": state.paused,
                "speed": state.speed,
                "frame": state.frame,
                "telemetry": state.telemetry,
            }
        )

    def _on_worker_stopped(self) -> None:
        self.simulation_stopped.emit()
        self.log_emitted.emit("Simulation stopped.")
