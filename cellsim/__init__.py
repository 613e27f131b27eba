# SPDX-License-Identifier: MIT
"""
Cell evolution simulator.

`cellsim.sim` holds the simulation itself (controllers, spatial index, agents,
world loop), while `cellsim.core` hosts configuration and the Qt-facing
controller/backend layer. `cellsim.main` runs a headless session.
"""

__all__ = ["main"]
