# SPDX-License-Identifier: MIT
"""
Simulation modules: neural controllers, spatial index, agents and the world loop.
"""

from .neural import Action, NeuralController  # noqa: F401
from .spatial import SpatialIndex  # noqa: F401
from .agent import Agent, Genome, LifeStage  # noqa: F401
from .simulation import AgentView, BestGenome, Simulation, TickReport  # noqa: F401

__all__ = [
    "Action",
    "Agent",
    "AgentView",
    "BestGenome",
    "Genome",
    "LifeStage",
    "NeuralController",
    "Simulation",
    "SpatialIndex",
    "TickReport",
]
