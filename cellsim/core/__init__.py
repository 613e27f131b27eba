# SPDX-License-Identifier: MIT
"""
Configuration, backend adapter and Qt controller for the cell simulator.

Only the configuration is re-exported here: `cellsim.sim` depends on it, and
the backend/controller modules depend on `cellsim.sim`. Import those from
`cellsim.core.simulation_backend` and `cellsim.core.controller`.
"""

from .config import (
    BrainConfig,
    ConcurrencyConfig,
    CorpseConfig,
    GenomeConfig,
    MetabolismConfig,
    PopulationConfig,
    SimulationConfig,
    WorldConfig,
    load_config,
)  # noqa: F401
