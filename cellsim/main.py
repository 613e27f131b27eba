from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from PySide6.QtCore import QCoreApplication, QTimer

from cellsim.core import SimulationConfig, load_config
from cellsim.core.controller import SimulationController
from cellsim.core.simulation_backend import CellSimulationBackend

logger = logging.getLogger("cellsim.main")


def create_application(argv: Sequence[str]) -> QCoreApplication:
    app = QCoreApplication.instance() or QCoreApplication(list(argv))
    app.setApplicationName("Cell Evolution Simulator")
    return app


def parse_args(argv: Sequence[str]) -> tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Headless cell evolution simulation")
    parser.add_argument("--config", type=str, help="JSON file with configuration overrides")
    parser.add_argument("--seed", type=int, default=None, help="Random seed (default: nondeterministic)")
    parser.add_argument(
        "--duration",
        type=float,
        default=30.0,
        help="Seconds to run before stopping (default: 30)",
    )
    parser.add_argument("--workers", type=int, help="Override concurrency.workers")
    parser.add_argument("--speed", type=float, default=1.0, help="Speed multiplier in [0.125, 8]")
    parser.add_argument("--load-best", type=str, help="Seed the population from a saved best genome")
    parser.add_argument("--save-best", type=str, help="Write the best genome here on exit")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level (default: INFO)",
    )
    return parser.parse_known_args(argv)


def build_config(args: argparse.Namespace) -> SimulationConfig:
    config = load_config(args.config)
    if args.workers is not None:
        config.concurrency.workers = args.workers
    config.validate()
    return config


def main(argv: Sequence[str] | None = None) -> int:
    argv = list(argv if argv is not None else sys.argv)
    args, qt_args = parse_args(argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    app = create_application([argv[0], *qt_args])
    backend = CellSimulationBackend(seed=args.seed, capture_frames=False)
    # stdlib logging already prints; the signal is for embedding UIs
    controller = SimulationController(backend, config, forward_logs=False)

    if args.load_best:
        if not controller.load_best(args.load_best):
            return 1
    controller.set_speed_multiplier(args.speed)

    def finish() -> None:
        controller.stop()
        logger.info("final state: %s", json.dumps(backend.snapshot()["state"]))
        if args.save_best:
            controller.save_best(args.save_best)
        controller.shutdown()
        backend.close()
        app.quit()

    controller.start()
    QTimer.singleShot(int(max(0.0, args.duration) * 1000), finish)
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
